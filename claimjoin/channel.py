"""
ClaimJoin - Secure Channel

Encrypted coordination addressed to a session public key, delivered to
the peer that last relayed a message from it and forwarded hop by hop.
"""

import logging
from typing import Optional

from . import ecies
from .cj_types import Coordination, Memo, Message
from .ecies import EciesError
from .session import Session
from .transport import Transport, TransportError

log = logging.getLogger(__name__)


class SecureChannel:
    def __init__(self, session: Session, transport: Transport):
        self.session = session
        self.transport = transport

    def send(self, pubkey: str, coordination: Coordination) -> bool:
        """Encrypt for pubkey and hand to the next hop. False if undeliverable."""
        node_id = self.session.routing.resolve(pubkey)
        if not node_id:
            log.warning(f"Cannot send {coordination.action.value}: {pubkey} has no matching NodeId")
            return False

        try:
            ciphertext = ecies.encrypt(pubkey, coordination.to_bytes())
        except EciesError as e:
            log.error(f"Cannot encrypt for {pubkey}: {e}")
            return False

        message = Message(
            memo=Memo.PROCESS,
            sender=self.session.my_pubkey,
            destination=pubkey,
            payload=ciphertext,
        )
        try:
            self.transport.send(node_id, message.to_bytes())
        except TransportError as e:
            log.error(f"Cannot send {coordination.action.value} to {pubkey}: {e}")
            return False

        log.debug(f"Sent {coordination.action.value} to {pubkey} via {node_id}")
        return True

    def open(self, message: Message) -> Optional[Coordination]:
        """Decrypt a message addressed to this node. None if unreadable."""
        if self.session.identity is None:
            log.warning(f"Message from {message.sender} but no session key")
            return None
        try:
            plaintext = ecies.decrypt(self.session.identity, message.payload)
            return Coordination.from_bytes(plaintext)
        except (EciesError, ValueError) as e:
            log.warning(f"Dropped message from {message.sender}: {e}")
            return None

    def relay(self, from_node_id: str, message: Message) -> bool:
        """
        Pass a message towards its destination.

        When no route is known the previous hop is told "unable" so it can
        drop its own stale entry. Returns False in that case.
        """
        node_id = self.session.routing.resolve(message.destination)
        if not node_id:
            log.info(f"Cannot relay: {message.destination} has no matching NodeId")
            unable = Message(
                memo=Memo.UNABLE,
                sender=self.session.my_pubkey,
                destination=message.destination,
            )
            try:
                self.transport.send(from_node_id, unable.to_bytes())
            except TransportError as e:
                log.error(f"Cannot report unreachable {message.destination}: {e}")
            return False

        try:
            self.transport.send(node_id, message.to_bytes())
            log.debug(f"Relayed message for {message.destination} to {node_id}")
        except TransportError as e:
            log.error(f"Cannot relay to {node_id}: {e}")
        return True
