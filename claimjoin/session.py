"""
ClaimJoin - Session State

The single owner of everything a node knows about the ClaimJoin it takes
part in. Each mutation is followed by commit(), which writes the whole
snapshot to the durable store, so a restart resumes from the last step.
"""

import logging
from typing import List, Optional

from .cj_types import ClaimParty, DEFAULT_STATUS, Role
from .identity import Identity
from .routing import RoutingTable
from .store import JsonStore

log = logging.getLogger(__name__)

NAMESPACE = "ClaimJoin"


class Session:
    """
    Session aggregate.

    Attributes:
        role: none, initiator or joiner
        identity: session keypair, created on first use after a reset
        handler: pubkey of the initiator whose invitation is followed
        handler_ts: timestamp of that invitation (own one for an initiator)
        claim_block_height: when the joint claim becomes valid
        join_block_height: last height at which joining is allowed
        status: human readable progress
        parties: roster, index 0 is always this node
        pset: draft being blinded and signed (initiator)
        join_counter: unanswered join attempts (joiner)
        draft_attempts: rebuilds of the draft in this session (initiator)
        target_fee: fee for the next draft, 0 for the default estimate
        awaiting: pubkey of the party holding the draft (initiator)
        claimed_txid: last successful claim, survives resets
    """

    def __init__(self, store: JsonStore):
        self.store = store
        self.routing = RoutingTable(store)
        self.claimed_txid = ""
        self._defaults()

    def _defaults(self):
        self.role = Role.NONE
        self.identity: Optional[Identity] = None
        self.handler = ""
        self.handler_ts = 0
        self.claim_block_height = 0
        self.join_block_height = 0
        self.status = DEFAULT_STATUS
        self.parties: List[ClaimParty] = []
        self.pset = ""
        self.join_counter = 0
        self.draft_attempts = 0
        self.target_fee = 0
        self.awaiting = ""

    # =========================================================================
    # IDENTITY
    # =========================================================================

    @property
    def my_pubkey(self) -> str:
        return self.identity.public_key_b64 if self.identity else ""

    def ensure_identity(self) -> Identity:
        if self.identity is None:
            self.identity = Identity.generate()
            log.info(f"New ClaimJoin session key {self.identity.public_key_b64}")
            self.commit()
        return self.identity

    # =========================================================================
    # ROSTER
    # =========================================================================

    def find_party(self, pubkey: str) -> Optional[int]:
        for i, party in enumerate(self.parties):
            if party.pubkey == pubkey:
                return i
        return None

    def invalidate_draft(self):
        self.pset = ""
        self.awaiting = ""

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def reset(self):
        """Erase all traces of the session, including learned routes."""
        self._defaults()
        self.routing.clear()
        self.commit()

    def snapshot(self) -> dict:
        return {
            "MyRole": self.role.value,
            "serializedPrivateKey": self.identity.to_bytes().hex() if self.identity else "",
            "ClaimJoinHandler": self.handler,
            "ClaimJoinHandlerTS": self.handler_ts,
            "ClaimBlockHeight": self.claim_block_height,
            "JoinBlockHeight": self.join_block_height,
            "ClaimStatus": self.status,
            "ClaimParties": [p.to_dict() for p in self.parties],
            "claimPSET": self.pset,
            "joinCounter": self.join_counter,
            "draftAttempts": self.draft_attempts,
            "targetFee": self.target_fee,
            "awaiting": self.awaiting,
            "claimedTxId": self.claimed_txid,
        }

    def commit(self):
        self.store.save_many(NAMESPACE, self.snapshot())

    def load(self):
        """Restore the last committed snapshot."""
        load = lambda key, default: self.store.load(NAMESPACE, key, default)

        self.role = Role(load("MyRole", Role.NONE.value))
        secret = load("serializedPrivateKey", "")
        self.identity = Identity.from_bytes(bytes.fromhex(secret)) if secret else None
        self.handler = load("ClaimJoinHandler", "")
        self.handler_ts = int(load("ClaimJoinHandlerTS", 0))
        self.claim_block_height = int(load("ClaimBlockHeight", 0))
        self.join_block_height = int(load("JoinBlockHeight", 0))
        self.status = load("ClaimStatus", DEFAULT_STATUS)
        self.parties = [ClaimParty.from_dict(p) for p in load("ClaimParties", [])]
        self.pset = load("claimPSET", "")
        self.join_counter = int(load("joinCounter", 0))
        self.draft_attempts = int(load("draftAttempts", 0))
        self.target_fee = int(load("targetFee", 0))
        self.awaiting = load("awaiting", "")
        self.claimed_txid = load("claimedTxId", "")
        self.routing.load()
