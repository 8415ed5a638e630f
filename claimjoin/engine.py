"""
ClaimJoin - Claim Engine

Drives the joint claim transaction from draft to broadcast.

The initiator builds one PSET spending every party's peg-in, then walks
it through blinding (ascending blinder index) and signing (descending
input index). Its own steps run locally; every other step is delegated
to the owning party, and the engine waits for the draft to come back.
Each tick is a bounded loop of steps that either continue, wait for a
reply or the next block, finish, or abort the session.
"""

import base64
import logging
import random
from enum import Enum
from typing import List, Optional, Tuple

from .channel import SecureChannel
from .cj_types import (
    Action, ClaimParty, Coordination, DEFAULT_FEE_PER_PARTY, DUST_TOLERANCE,
    MARKER_DATA, MAX_DRAFT_ATTEMPTS, Role,
)
from .elements import (
    AddressOutput, AnalyzedPset, DataOutput, DecodedPset, ElementsService,
    FeeOutput, PeginInput, PsetOutputRequest, RPC_VERIFY_ALREADY_IN_CHAIN,
)
from .gossip import Gossip
from .membership import Membership
from .rpc_client import RPCError
from .session import Session

log = logging.getLogger(__name__)

# Local steps allowed in one tick
MAX_STEPS = 64

_rng = random.SystemRandom()


class Outcome(Enum):
    CONTINUE = "continue"
    WAIT = "wait"
    DONE = "done"
    ABORT = "abort"


def build_claim_request(parties: List[ClaimParty], total_fee: int,
                        shuffle=_rng.shuffle) -> Tuple[List[PeginInput], List[PsetOutputRequest]]:
    """
    Inputs and outputs of a fresh claim draft.

    Every party pays an equal share of total_fee; the last one also pays
    the rounding remainder. Sets fee_share on each party.
    """
    n = len(parties)
    fee_part = total_fee // n

    inputs = []
    outputs: List[PsetOutputRequest] = []
    for i, party in enumerate(parties):
        party.fee_share = fee_part if i < n - 1 else total_fee - fee_part * (n - 1)
        inputs.append(PeginInput(
            txid=party.txid,
            vout=party.vout,
            pegin_bitcoin_tx=party.raw_tx,
            pegin_txout_proof=party.txout_proof,
            pegin_claim_script=party.claim_script,
        ))
        outputs.append(AddressOutput(
            address=party.address,
            amount=party.amount - party.fee_share,
            blinder_index=i,
        ))

    # output order must not reveal who is who
    shuffle(outputs)
    outputs.append(FeeOutput(amount=total_fee))
    if n > 1:
        outputs.append(DataOutput(data=MARKER_DATA))
    return inputs, outputs


def expected_outputs(n: int) -> int:
    return n + 1 + (1 if n > 1 else 0)


class Engine:
    def __init__(self, session: Session, liquid: ElementsService,
                 channel: SecureChannel, membership: Membership, gossip: Gossip):
        self.session = session
        self.liquid = liquid
        self.channel = channel
        self.membership = membership
        self.gossip = gossip

    # =========================================================================
    # INITIATOR TICK
    # =========================================================================

    def on_block(self, height: int) -> Optional[Outcome]:
        s = self.session
        if s.role is not Role.INITIATOR or not s.parties or height < s.claim_block_height:
            return None

        for _ in range(MAX_STEPS):
            outcome = self._step()
            if outcome is not Outcome.CONTINUE:
                return outcome

        log.warning(f"No progress after {MAX_STEPS} steps, waiting for the next block")
        return Outcome.WAIT

    def _step(self) -> Outcome:
        s = self.session

        if not s.pset:
            return self._build_draft()

        try:
            decoded = self.liquid.decode_pset(s.pset)
            analyzed = self.liquid.analyze_pset(s.pset)
        except RPCError as e:
            log.error(f"Cannot inspect PSET: {e}")
            return Outcome.WAIT

        n = len(s.parties)
        if (len(decoded.inputs) != n or
                len(decoded.outputs) != expected_outputs(n) or
                len(analyzed.outputs) != len(decoded.outputs)):
            log.warning(f"PSET has {len(decoded.inputs)} inputs and {len(decoded.outputs)} "
                        f"outputs for {n} parties, rebuilding")
            return self._rebuild()

        outcome = self._blinding_round(decoded, analyzed)
        if outcome is not None:
            return outcome

        outcome = self._signing_round(decoded)
        if outcome is not None:
            return outcome

        return self._finalize()

    def _build_draft(self) -> Outcome:
        s = self.session
        n = len(s.parties)
        total_fee = s.target_fee or DEFAULT_FEE_PER_PARTY * n

        inputs, outputs = build_claim_request(s.parties, total_fee)
        try:
            s.pset = self.liquid.create_pset(inputs, outputs)
        except RPCError as e:
            log.error(f"Cannot create PSET: {e}")
            return Outcome.WAIT

        s.awaiting = ""
        s.status = f"Created PSET for {n} parties, fee {total_fee} sats"
        s.commit()
        log.info(s.status)
        return Outcome.CONTINUE

    def _rebuild(self, target_fee: int = 0) -> Outcome:
        s = self.session
        s.invalidate_draft()
        s.draft_attempts += 1
        if target_fee:
            s.target_fee = target_fee

        if s.draft_attempts >= MAX_DRAFT_ATTEMPTS:
            self.gossip.end_session("", "Unable to converge on a valid PSET")
            return Outcome.ABORT

        s.commit()
        return Outcome.CONTINUE

    def _blinding_round(self, decoded: DecodedPset, analyzed: AnalyzedPset) -> Optional[Outcome]:
        n = len(self.session.parties)
        pending = [i for i, output in enumerate(analyzed.outputs) if output.pending]
        if not pending:
            return None

        blinders = sorted(decoded.outputs[i].blinder_index for i in pending
                          if decoded.outputs[i].blinder_index is not None)
        if len(blinders) != len(pending) or blinders[-1] >= n:
            log.warning("PSET output awaits blinding by an unknown party, rebuilding")
            return self._rebuild()

        blinder = blinders[0]
        status = f"Blinding {n - len(pending) + 1}/{n}"

        if blinder == 0:
            return self._process_locally(status, "Coordination failure")

        action = Action.PROCESS
        if blinder == n - 1:
            # last blinder also signs, saving a round trip
            action = Action.PROCESS2
            status += f" and Signing 1/{n}"
        return self._delegate(blinder, action, status)

    def _signing_round(self, decoded: DecodedPset) -> Optional[Outcome]:
        n = len(self.session.parties)
        for i in range(n - 1, -1, -1):
            if decoded.inputs[i].signed:
                continue
            status = f"Signing {n - i}/{n}"
            if i == 0:
                return self._process_locally(status, "Initiator signing failure")
            return self._delegate(i, Action.PROCESS, status)
        return None

    def _process_locally(self, status: str, failure: str) -> Outcome:
        s = self.session
        log.info(status)
        try:
            processed = self.liquid.process_pset(s.pset)
        except RPCError as e:
            log.error(f"{status} failed: {e}")
            self.gossip.end_session("", failure)
            return Outcome.ABORT

        if processed.pset == s.pset:
            log.error(f"{status} failed: wallet left the PSET unchanged")
            self.gossip.end_session("", failure)
            return Outcome.ABORT

        s.pset = processed.pset
        s.status = status + " done"
        s.commit()
        return Outcome.CONTINUE

    def _delegate(self, index: int, action: Action, status: str) -> Outcome:
        s = self.session
        party = s.parties[index]

        if not self.membership.check_peer_status(index):
            return Outcome.WAIT

        s.status = status
        s.commit()
        log.info(f"{status}: sending to {party.pubkey}")

        sent = self.channel.send(party.pubkey, Coordination(
            action=action,
            claim_block_height=s.claim_block_height,
            status=status,
            pset=base64.b64decode(s.pset),
        ))
        if not sent:
            self.membership.kick(party.pubkey, "being unreachable")
            return Outcome.WAIT

        s.awaiting = party.pubkey
        s.commit()
        return Outcome.WAIT

    def _finalize(self) -> Outcome:
        s = self.session
        try:
            finalized = self.liquid.finalize_pset(s.pset)
        except RPCError as e:
            log.error(f"finalizepsbt: {e}")
            finalized = None
        if finalized is None or not finalized.complete:
            self.gossip.end_session("", "Cannot finalize PSET")
            return Outcome.ABORT

        try:
            tx = self.liquid.decode_raw_transaction(finalized.hex)
        except RPCError as e:
            log.error(f"decoderawtransaction: {e}")
            self.gossip.end_session("", "Final TX fee failure")
            return Outcome.ABORT

        if tx.fee is None:
            self.gossip.end_session("", "Final TX fee failure")
            return Outcome.ABORT

        if tx.fee != tx.exact_fee:
            log.info(f"Paid fee: {tx.fee}, required fee: {tx.exact_fee}, starting over")
            s.status = "Redo to improve fee"
            return self._rebuild(target_fee=tx.exact_fee)

        log.info("Posting final TX")
        try:
            txid = self.liquid.send_raw_transaction(finalized.hex)
        except RPCError as e:
            if e.code != RPC_VERIFY_ALREADY_IN_CHAIN:
                log.error(f"sendrawtransaction: {e}")
                self.gossip.end_session("", "Final TX send failure")
                return Outcome.ABORT
            txid = tx.txid

        self.gossip.end_session(txid, "done")
        return Outcome.DONE

    # =========================================================================
    # RETURNED AND DELEGATED DRAFTS
    # =========================================================================

    def handle_process(self, sender: str, coordination: Coordination):
        s = self.session
        if s.role is Role.INITIATOR:
            self._accept_return(sender, coordination)
        elif s.role is Role.JOINER and sender == s.handler:
            self._process_for_initiator(coordination)
        else:
            log.warning(f"Unexpected {coordination.action.value} from {sender}, ignored")

    def _accept_return(self, sender: str, coordination: Coordination):
        s = self.session
        if coordination.action is not Action.PROCESS or sender != s.awaiting:
            log.warning(f"Unexpected PSET from {sender}, ignored")
            return

        returned = base64.b64encode(coordination.pset).decode()
        if not self.verify(returned, previous=s.pset):
            self.membership.kick(sender, "broken PSET return")
            return

        s.pset = returned
        s.awaiting = ""
        s.status = coordination.status
        s.commit()
        log.info(s.status)

        self.on_block(s.claim_block_height)

    def _process_for_initiator(self, coordination: Coordination):
        s = self.session
        pset = base64.b64encode(coordination.pset).decode()
        rounds = 2 if coordination.action is Action.PROCESS2 else 1

        try:
            for _ in range(rounds):
                pset = self.liquid.process_pset(pset).pset
        except RPCError as e:
            log.error(f"Unable to process PSET: {e}")
            return

        if not self.verify(pset):
            self.membership.leave("PSET verification failure")
            return

        if coordination.claim_block_height:
            s.claim_block_height = coordination.claim_block_height
        s.status = coordination.status + " done"
        s.commit()
        log.info(s.status)

        if not self.channel.send(s.handler, Coordination(
                action=Action.PROCESS,
                status=s.status,
                pset=base64.b64decode(pset))):
            self.membership.forget_pubkey(s.handler)

    # =========================================================================
    # VERIFICATION
    # =========================================================================

    def verify(self, pset: str, previous: Optional[str] = None) -> bool:
        """
        Check a draft before trusting it.

        The draft must keep the shape of previous (when given) and must
        still pay this node's output, at most DUST_TOLERANCE sats short.
        """
        s = self.session
        if not s.parties:
            return False
        me = s.parties[0]

        try:
            decoded = self.liquid.decode_pset(pset)
            if previous is not None:
                before = self.liquid.decode_pset(previous)
                if (len(decoded.inputs) != len(before.inputs) or
                        len(decoded.outputs) != len(before.outputs)):
                    log.warning("PSET verification failure: shape changed")
                    return False
            address = self.liquid.unconfidential_address(me.address)
        except RPCError as e:
            log.warning(f"PSET verification failure: {e}")
            return False

        expected = me.amount - me.fee_share
        for output in decoded.outputs:
            if output.address == address and expected - output.amount <= DUST_TOLERANCE:
                return True

        log.warning(f"PSET verification failure: no output of {expected} sats to {address}")
        return False
