"""
ClaimJoin - Membership

Roles and the roster: who initiates, who joins, who gets refused, removed
or kicked. The initiator is the only node that mutates the roster; joiners
ask for changes through coordination messages.
"""

import logging
from typing import Callable, Optional, Tuple

from .bitcoin import BitcoinChain
from .channel import SecureChannel
from .cj_types import (
    Action, ClaimParty, Coordination, MAX_JOIN_ATTEMPTS, MAX_PARTIES,
    MAX_SENDS, Memo, Message, Pegin, RESEND_COOLDOWN, Role,
)
from .config import Config
from .elements import ElementsService
from .gossip import Gossip
from .rpc_client import RPCError
from .session import Session
from .transport import Transport, TransportError

log = logging.getLogger(__name__)


class Membership:
    def __init__(self, config: Config, session: Session, channel: SecureChannel,
                 gossip: Gossip, transport: Transport, chain: BitcoinChain,
                 liquid: ElementsService, clock: Callable[[], float],
                 pegin: Optional[Pegin] = None):
        self.config = config
        self.session = session
        self.channel = channel
        self.gossip = gossip
        self.transport = transport
        self.chain = chain
        self.liquid = liquid
        self.clock = clock
        self.pegin = pegin

    # =========================================================================
    # OWN PEG-IN
    # =========================================================================

    def create_claim_party(self, claim_block_height: int) -> Optional[ClaimParty]:
        """Build this node's roster entry from its own peg-in."""
        pegin = self.pegin
        if pegin is None:
            log.warning("No pegin configured, cannot take part in ClaimJoin")
            return None

        try:
            raw_tx = self.chain.get_raw_transaction(pegin.txid)
            vout = self.chain.find_output_index(raw_tx, pegin.amount)
            proof = self.chain.get_inclusion_proof(pegin.txid)
            if not pegin.address:
                pegin.address = self.liquid.new_address()
        except RPCError as e:
            log.error(f"Cannot create ClaimParty for {pegin.txid}: {e}")
            return None

        return ClaimParty(
            txid=pegin.txid,
            vout=vout,
            claim_script=pegin.claim_script,
            address=pegin.address,
            claim_block_height=claim_block_height,
            raw_tx=raw_tx,
            txout_proof=proof,
            amount=pegin.amount,
            pubkey=self.session.my_pubkey,
        )

    def _own_party_ready(self) -> bool:
        s = self.session
        return len(s.parties) == 1 and s.parties[0].pubkey == s.my_pubkey

    # =========================================================================
    # INITIATOR
    # =========================================================================

    def initiate(self, claim_block_height: int) -> bool:
        """Start a ClaimJoin, or re-announce the one already started."""
        s = self.session
        s.ensure_identity()

        if s.role is not Role.INITIATOR:
            party = self.create_claim_party(claim_block_height)
            if party is None:
                return False
            s.parties = [party]
            s.role = Role.INITIATOR
            s.handler = ""
            s.handler_ts = int(self.clock())
            s.claim_block_height = claim_block_height
            s.join_block_height = claim_block_height - 1
            s.invalidate_draft()
            s.draft_attempts = 0
            s.target_fee = 0
            s.status = "Invites sent, awaiting joiners"
            s.commit()
            log.info(f"Initiated ClaimJoin, claim block height {claim_block_height}")

        if not self.gossip.announce_started():
            log.warning("Invitation could not be sent to any peer")
            return False
        return True

    def add_party(self, party: ClaimParty) -> Tuple[bool, str]:
        s = self.session

        for existing in s.parties:
            if existing.claim_script == party.claim_script:
                return True, f"Successfully joined, total participants: {len(s.parties)}"

        if len(s.parties) >= MAX_PARTIES:
            return False, f"Refuse to add, over limit of {MAX_PARTIES}"

        try:
            proof = self.chain.get_inclusion_proof(party.txid)
        except RPCError as e:
            log.warning(f"No inclusion proof for {party.txid}: {e}")
            return False, "Refuse to add, TX not confirmed"

        if proof != party.txout_proof:
            log.info(f"TxoutProof of {party.txid} was stale, refreshed")
            party.txout_proof = proof

        party.fee_share = 0
        party.sent_count = 0
        party.last_sent = 0.0
        s.parties.append(party)
        s.invalidate_draft()
        s.commit()
        return True, f"Successfully joined, total participants: {len(s.parties)}"

    def remove_party(self, pubkey: str) -> bool:
        s = self.session
        index = s.find_party(pubkey)
        if not index:
            # unknown, or index 0 which is this node
            return False

        del s.parties[index]
        s.claim_block_height = max(p.claim_block_height for p in s.parties)
        s.invalidate_draft()
        s.target_fee = 0
        s.draft_attempts = 0
        s.commit()
        return True

    def notify_joiners(self, status: str, exclude: str = ""):
        """Tell every joiner the current claim height and roster news."""
        s = self.session
        for party in s.parties[1:]:
            if party.pubkey == exclude:
                continue
            self.channel.send(party.pubkey, Coordination(
                action=Action.CONFIRM_ADD,
                claim_block_height=s.claim_block_height,
                status=status,
            ))

    def kick(self, pubkey: str, reason: str) -> bool:
        s = self.session
        if not self.remove_party(pubkey):
            self.gossip.end_session("", "Coordination failure")
            return False

        s.status = f"Joiner {pubkey} kicked, total participants: {len(s.parties)}"
        s.commit()
        log.info(s.status)

        self.channel.send(pubkey, Coordination(
            action=Action.REFUSE_ADD,
            status=f"Kicked for {reason}",
        ))
        self.notify_joiners(f"One peer was kicked, total participants: {len(s.parties)}")
        return True

    def check_peer_status(self, index: int) -> bool:
        """
        Gate a delegation to parties[index].

        Returns True when the send may go ahead (and counts it). False when
        the party is inside its resend cooldown or has just been kicked.
        """
        s = self.session
        party = s.parties[index]
        now = self.clock()

        if party.sent_count and now - party.last_sent < RESEND_COOLDOWN:
            return False

        if party.sent_count >= MAX_SENDS:
            self.kick(party.pubkey, "being unresponsive")
            return False

        party.sent_count += 1
        party.last_sent = now
        s.commit()
        return True

    def heard_from(self, pubkey: str):
        s = self.session
        if s.role is not Role.INITIATOR:
            return
        index = s.find_party(pubkey)
        if index and s.parties[index].sent_count:
            s.parties[index].sent_count = 0
            s.commit()

    def handle_add(self, sender: str, coordination: Coordination):
        s = self.session
        if s.role is not Role.INITIATOR:
            log.info(f"Add request from {sender} refused: not a claim initiator")
            self.channel.send(sender, Coordination(
                action=Action.REFUSE_ADD, status="Refuse to add, not a claim initiator"))
            return

        joiner = coordination.joiner
        if joiner is None:
            log.warning(f"Add request from {sender} without a ClaimParty")
            return
        joiner.pubkey = sender
        rejoin = any(p.claim_script == joiner.claim_script for p in s.parties)

        added, status = self.add_party(joiner)
        if not added:
            log.info(f"Refused {sender}: {status}")
            self.channel.send(sender, Coordination(action=Action.REFUSE_ADD, status=status))
            return

        height = max(s.claim_block_height, coordination.claim_block_height,
                     joiner.claim_block_height)
        if not self.channel.send(sender, Coordination(
                action=Action.CONFIRM_ADD, claim_block_height=height, status=status)):
            if not rejoin:
                s.parties.pop()
                s.commit()
                log.warning(f"Joiner {sender} unreachable, not added")
            return

        raised = height != s.claim_block_height
        s.claim_block_height = height
        s.status = f"Added new joiner, total participants: {len(s.parties)}"
        s.commit()
        log.info(s.status)

        message = f"Another peer joined, total participants: {len(s.parties)}"
        if raised:
            message += f", claim block height {height}"
        self.notify_joiners(message, exclude=sender)

    def handle_remove(self, sender: str, coordination: Coordination):
        s = self.session
        if s.role is not Role.INITIATOR:
            log.warning(f"Remove request from {sender} ignored: not a claim initiator")
            return

        if coordination.joiner is not None and coordination.joiner.pubkey not in ("", sender):
            log.warning(f"{sender} asked to remove another party, ignored")
            return

        if self.remove_party(sender):
            s.status = f"Removed a joiner, total participants: {len(s.parties)}"
            s.commit()
            log.info(s.status)
            self.notify_joiners(f"One peer left, total participants: {len(s.parties)}")
        else:
            log.info(f"Remove request from {sender}: not in the roster")

    # =========================================================================
    # JOINER
    # =========================================================================

    def join(self, claim_block_height: int) -> bool:
        """Ask the followed initiator to add this node's peg-in."""
        s = self.session
        if not s.handler:
            return False

        if s.join_counter >= MAX_JOIN_ATTEMPTS:
            self._abandon_handler()
            return False

        s.ensure_identity()
        if not self._own_party_ready():
            party = self.create_claim_party(claim_block_height)
            if party is None:
                return False
            s.parties = [party]
            s.claim_block_height = claim_block_height

        if not self.channel.send(s.handler, Coordination(
                action=Action.ADD,
                joiner=s.parties[0],
                claim_block_height=claim_block_height)):
            self.forget_pubkey(s.handler)
            return False

        s.join_counter += 1
        s.status = "Responded to invitation, awaiting confirmation"
        s.commit()
        log.info(f"{s.status} (attempt {s.join_counter})")
        return True

    def _abandon_handler(self):
        s = self.session
        handler = s.handler
        log.info(f"Initiator {handler} does not respond, forgetting it")

        if s.parties:
            self.channel.send(handler, Coordination(action=Action.REMOVE, joiner=s.parties[0]))
        self.forget_pubkey(handler)
        s.join_counter = 0
        s.status = "Initiator does not respond, forget him"
        s.commit()
        self.poll_peers()

    def poll_peers(self):
        """Ask every peer to share the invitation it knows of."""
        message = Message(memo=Memo.POLL, sender=self.session.my_pubkey).to_bytes()
        try:
            peers = self.transport.list_peers()
        except TransportError as e:
            log.error(f"Cannot list peers: {e}")
            return
        for peer_id in peers:
            try:
                self.transport.send(peer_id, message)
            except TransportError as e:
                log.warning(f"Cannot poll {peer_id}: {e}")

    def leave(self, reason: str):
        """Remove this node from the initiator's roster and stop taking part."""
        s = self.session
        log.warning(f"Leaving ClaimJoin: {reason}")

        if s.handler and s.parties:
            self.channel.send(s.handler, Coordination(action=Action.REMOVE, joiner=s.parties[0]))

        # reset also drops the route to the initiator
        s.reset()
        s.status = f"Left ClaimJoin group: {reason}"
        s.commit()
        self.config.claimjoin_enabled = False

    def handle_confirm_add(self, sender: str, coordination: Coordination):
        s = self.session
        if s.role is Role.INITIATOR or sender != s.handler:
            log.warning(f"Unexpected confirm_add from {sender}, ignored")
            return

        s.role = Role.JOINER
        s.join_counter = 0
        if coordination.claim_block_height:
            s.claim_block_height = coordination.claim_block_height
        s.status = coordination.status
        s.commit()
        log.info(f"{s.status}, claim block height {s.claim_block_height}")

    def handle_refuse_add(self, sender: str, coordination: Coordination):
        s = self.session
        if s.role is Role.INITIATOR or sender != s.handler:
            log.warning(f"Unexpected refuse_add from {sender}, ignored")
            return

        log.info(f"Refused by {sender}: {coordination.status}")
        self.forget_pubkey(sender)
        s.status = coordination.status
        s.commit()

    def forget_pubkey(self, pubkey: str):
        """Drop an unreachable session key. Losing the initiator ends a joiner's session."""
        s = self.session
        if pubkey and s.handler == pubkey:
            if s.role is Role.JOINER:
                s.role = Role.NONE
                s.status = "Unable to contact Initiator, resetting"
                log.info(s.status)
            s.handler = ""
            s.commit()
        s.routing.forget(pubkey)
