"""
ClaimJoin - Node

Wires the protocol components together and is the only entry point the
outside world calls. Every entry point runs under one lock, so inbound
messages and block ticks never interleave their state changes.
"""

import logging
import threading
import time
from typing import Callable, Optional

from .bitcoin import BitcoinChain
from .channel import SecureChannel
from .cj_types import Action, Coordination, MESSAGE_VERSION, Memo, Message, Pegin, Role
from .config import Config
from .elements import ElementsService
from .engine import Engine, Outcome
from .gossip import Gossip
from .membership import Membership
from .session import Session
from .store import JsonStore
from .transport import Transport

log = logging.getLogger(__name__)


class ClaimJoinNode:
    """
    One Lightning node taking part in ClaimJoin.

    Usage:
        node = ClaimJoinNode(config, transport, chain, liquid, JsonStore(path))
        node.load()
        transport.listen(node.on_message)           # background thread
        node.on_block(height)                       # every new block
        node.on_pegin_confirmed(claim_height, height)
    """

    def __init__(self, config: Config, transport: Transport, chain: BitcoinChain,
                 liquid: ElementsService, store: JsonStore,
                 clock: Callable[[], float] = time.time,
                 pegin: Optional[Pegin] = None):
        self.config = config
        self.transport = transport
        self.session = Session(store)
        self.channel = SecureChannel(self.session, transport)
        self.gossip = Gossip(self.session, transport, clock)
        self.membership = Membership(
            config, self.session, self.channel, self.gossip, transport,
            chain, liquid, clock, pegin=pegin or config.pegin,
        )
        self.engine = Engine(self.session, liquid, self.channel, self.membership, self.gossip)
        self._lock = threading.RLock()

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def load(self, pegin_pending: bool = True):
        """
        Restore the session after a restart.

        pegin_pending is False once this node's peg-in was claimed some
        other way; any session still on disk is then stale.
        """
        with self._lock:
            s = self.session
            s.load()

            if s.role is not Role.NONE and not pegin_pending:
                log.info("Pegin no longer pending, resetting ClaimJoin")
                s.reset()
                return

            if s.role is Role.INITIATOR:
                log.info(f"Resuming as initiator with {len(s.parties)} parties")
                self.gossip.announce_started()
            elif s.role is Role.JOINER:
                log.info(f"Resuming as joiner of {s.handler}")

    def initiate(self, claim_block_height: int) -> bool:
        with self._lock:
            return self.membership.initiate(claim_block_height)

    def join(self, claim_block_height: int) -> bool:
        with self._lock:
            return self.membership.join(claim_block_height)

    def end(self, txid: str, status: str) -> bool:
        with self._lock:
            return self.gossip.end_session(txid, status)

    # =========================================================================
    # DRIVERS
    # =========================================================================

    def on_block(self, height: int) -> Optional[Outcome]:
        with self._lock:
            if not self.config.claimjoin_enabled:
                return None
            return self.engine.on_block(height)

    def on_pegin_confirmed(self, claim_block_height: int, current_height: int) -> bool:
        """
        Decide what to do with this node's confirmed peg-in: follow a known
        invitation while joining is still allowed, otherwise start one.
        """
        with self._lock:
            s = self.session
            if not self.config.claimjoin_enabled or s.role is not Role.NONE:
                return False

            if s.handler and current_height < s.join_block_height:
                return self.membership.join(claim_block_height)
            return self.membership.initiate(claim_block_height)

    def on_message(self, peer_id: str, data: bytes):
        with self._lock:
            try:
                message = Message.from_bytes(data)
            except ValueError as e:
                log.warning(f"Dropped message from {peer_id}: {e}")
                return

            if message.version != MESSAGE_VERSION:
                log.debug(f"Dropped version {message.version} message from {peer_id}")
                return

            if message.memo is Memo.BROADCAST:
                self.gossip.broadcast(peer_id, message)
            elif message.memo is Memo.UNABLE:
                self.membership.forget_pubkey(message.destination)
            elif message.memo is Memo.POLL:
                self.gossip.share_invite(peer_id)
            elif message.memo is Memo.PROCESS:
                self._on_process(peer_id, message)

    def _on_process(self, peer_id: str, message: Message):
        s = self.session
        s.routing.learn(message.sender, peer_id)

        if not message.destination or message.destination != s.my_pubkey:
            if not self.channel.relay(peer_id, message):
                self.membership.forget_pubkey(message.destination)
            return

        if not self.config.claimjoin_enabled:
            return

        coordination = self.channel.open(message)
        if coordination is not None:
            self._dispatch(message.sender, coordination)

    def _dispatch(self, sender: str, coordination: Coordination):
        self.membership.heard_from(sender)

        action = coordination.action
        if action is Action.ADD:
            self.membership.handle_add(sender, coordination)
        elif action is Action.REMOVE:
            self.membership.handle_remove(sender, coordination)
        elif action is Action.CONFIRM_ADD:
            self.membership.handle_confirm_add(sender, coordination)
        elif action is Action.REFUSE_ADD:
            self.membership.handle_refuse_add(sender, coordination)
        else:
            self.engine.handle_process(sender, coordination)

    # =========================================================================
    # TELEMETRY
    # =========================================================================

    def status(self) -> dict:
        with self._lock:
            s = self.session
            return {
                "role": s.role.value,
                "status": s.status,
                "pubkey": s.my_pubkey,
                "handler": s.handler,
                "claim_block_height": s.claim_block_height,
                "join_block_height": s.join_block_height,
                "participants": len(s.parties),
                "draft_attempts": s.draft_attempts,
                "awaiting": s.awaiting,
                "routes": len(s.routing),
                "claimed_txid": s.claimed_txid,
            }
