"""
ClaimJoin - Announcements

Flooding of pegin_started / pegin_ended across the Lightning graph.

A node forwards an announcement only the first time it sees it: a start
whose sender it has no route to yet, or an end whose sender it still
routes. Routes learned here are what the secure channel later uses to
reach a session key.
"""

import logging
from typing import Callable

from .cj_types import Announcement, Memo, Message, Role
from .session import Session
from .transport import Transport, TransportError

log = logging.getLogger(__name__)


class Gossip:
    def __init__(self, session: Session, transport: Transport,
                 clock: Callable[[], float]):
        self.session = session
        self.transport = transport
        self.clock = clock

    # =========================================================================
    # OUTBOUND
    # =========================================================================

    def _invitation(self, sender: str, timestamp: int, join_block_height: int) -> Message:
        return Message(
            memo=Memo.BROADCAST,
            asset=Announcement.STARTED.value,
            amount=join_block_height,
            timestamp=timestamp,
            sender=sender,
        )

    def announce_started(self) -> bool:
        s = self.session
        message = self._invitation(s.my_pubkey, s.handler_ts, s.join_block_height)
        return self.broadcast(self.transport.node_id, message)

    def announce_ended(self, txid: str, status: str) -> bool:
        s = self.session
        message = Message(
            memo=Memo.BROADCAST,
            asset=Announcement.ENDED.value,
            amount=s.claim_block_height,
            timestamp=int(self.clock()),
            sender=s.my_pubkey,
            payload=txid.encode(),
            status=status,
        )
        return self.broadcast(self.transport.node_id, message)

    def end_session(self, txid: str, status: str) -> bool:
        """
        Announce the end of this node's ClaimJoin and reset.

        A non-empty txid means the joint claim was broadcast.
        """
        s = self.session
        if txid:
            s.claimed_txid = txid
            log.info(f"ClaimJoin pegin successful! Liquid TxId: {txid}")
        else:
            log.warning(f"ClaimJoin failed: {status}")

        sent = self.announce_ended(txid, status)
        s.reset()
        if txid:
            s.status = f"ClaimJoin pegin successful! Liquid TxId: {txid}"
        else:
            s.status = f"ClaimJoin failed: {status}"
        s.commit()
        return sent

    def share_invite(self, peer_id: str):
        """Answer a poll with the invitation this node knows of, if any."""
        s = self.session
        if s.role is Role.INITIATOR and s.parties:
            message = self._invitation(s.my_pubkey, s.handler_ts, s.join_block_height)
        elif s.handler and s.routing.knows(s.handler):
            message = self._invitation(s.handler, s.handler_ts, s.join_block_height)
        else:
            return

        try:
            self.transport.send(peer_id, message.to_bytes())
            log.debug(f"Shared invitation of {message.sender} with {peer_id}")
        except TransportError as e:
            log.error(f"Cannot share invitation with {peer_id}: {e}")

    # =========================================================================
    # INBOUND
    # =========================================================================

    def broadcast(self, from_node_id: str, message: Message) -> bool:
        """
        Handle an announcement received from from_node_id (or created here,
        when from_node_id is this node).

        Returns False if the local announcement could not be sent anywhere.
        """
        s = self.session
        local = from_node_id == self.transport.node_id
        started = message.asset == Announcement.STARTED.value
        ended = message.asset == Announcement.ENDED.value

        first_sighting = message.sender != s.my_pubkey and (
            (started and not s.routing.knows(message.sender)) or
            (ended and s.routing.knows(message.sender))
        )

        sent = True
        if local or first_sighting:
            sent = self._forward(from_node_id, message)

        if local or message.sender == s.my_pubkey:
            return sent

        s.routing.learn(message.sender, from_node_id)

        if started:
            self._on_started(from_node_id, message)
        elif ended:
            self._on_ended(message)
        else:
            log.warning(f"Unknown announcement '{message.asset}' from {message.sender}")
        return True

    def _forward(self, from_node_id: str, message: Message) -> bool:
        try:
            peers = self.transport.list_peers()
        except TransportError as e:
            log.error(f"Cannot list peers: {e}")
            return False

        data = message.to_bytes()
        delivered = 0
        for peer_id in peers:
            if peer_id == from_node_id:
                continue
            try:
                self.transport.send(peer_id, data)
                delivered += 1
            except TransportError as e:
                log.warning(f"Cannot forward {message.asset} to {peer_id}: {e}")
        return delivered > 0

    def _on_started(self, from_node_id: str, message: Message):
        s = self.session

        if s.role is Role.JOINER:
            return

        if s.role is Role.INITIATOR:
            if len(s.parties) > 1 or s.handler_ts <= message.timestamp:
                log.info(f"Initiator collision with {message.sender}, staying as initiator")
                return
            log.info(f"Initiator collision with {message.sender}, switching to 'none'")
            s.role = Role.NONE

        if s.handler != message.sender:
            s.handler = message.sender
            s.handler_ts = message.timestamp
            s.join_block_height = message.amount
            s.join_counter = 0
            s.status = "Received invitation to ClaimJoin"
            log.info(f"{s.status} from {message.sender} via {from_node_id}")
        s.commit()

    def _on_ended(self, message: Message):
        s = self.session

        if s.handler != message.sender:
            s.routing.forget(message.sender)
            return

        txid = message.payload.decode(errors="replace")
        if s.role is Role.JOINER and txid:
            s.claimed_txid = txid
            status = f"ClaimJoin pegin successful! Liquid TxId: {txid}"
        else:
            status = "Invitation to ClaimJoin revoked"
        log.info(status)

        s.reset()
        s.status = status
        s.commit()
