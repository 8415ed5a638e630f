"""
ClaimJoin - Data Types

Roster entries, coordination messages and the envelope that carries them
between Lightning peers.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional
import base64
import json

# Maximum number of participants in one ClaimJoin
MAX_PARTIES = 10

# Unanswered sends before a counterpart is kicked (1 send + 4 resends)
MAX_SENDS = 5

# Seconds before an unanswered delegation may be resent
RESEND_COOLDOWN = 10

# Unanswered join attempts before a joiner gives up on an initiator
MAX_JOIN_ATTEMPTS = 3

# Draft rebuilds allowed before the session is abandoned
MAX_DRAFT_ATTEMPTS = 10

# Opening fee estimate per party, in sats
DEFAULT_FEE_PER_PARTY = 36

# A returned output may be this many sats short of the expected share
DUST_TOLERANCE = 50

# Envelope protocol version and Lightning custom message type
MESSAGE_VERSION = 1
MESSAGE_TYPE = 42065

# OP_RETURN marker added when more than one party claims
MARKER_DATA = "6a0f506565725377617020576562205549"

SATS_PER_BTC = 100_000_000

DEFAULT_STATUS = "No ClaimJoin pegin is pending"


class Role(Enum):
    """Role of this node in the current session"""
    NONE = "none"
    INITIATOR = "initiator"
    JOINER = "joiner"


class Action(Enum):
    """Coordination actions"""
    ADD = "add"
    CONFIRM_ADD = "confirm_add"
    REFUSE_ADD = "refuse_add"
    REMOVE = "remove"
    PROCESS = "process"
    PROCESS2 = "process2"


class Memo(Enum):
    """Envelope kinds"""
    BROADCAST = "broadcast"
    PROCESS = "process"
    UNABLE = "unable"
    POLL = "poll"


class Announcement(Enum):
    """Broadcast subjects"""
    STARTED = "pegin_started"
    ENDED = "pegin_ended"


def to_bitcoin(sats: int) -> float:
    return round(sats / SATS_PER_BTC, 8)


def to_sats(btc: float) -> int:
    return int(round(btc * SATS_PER_BTC))


def _b64(data: Optional[bytes]) -> str:
    return base64.b64encode(data).decode() if data else ""


def _unb64(text: Optional[str]) -> bytes:
    return base64.b64decode(text) if text else b""


@dataclass
class ClaimParty:
    """
    One participant's contribution to the joint claim.

    The peg-in fields are filled by the party itself. fee_share is set by
    the initiator when it builds a draft; sent_count and last_sent track
    unanswered delegations to this party.
    """
    # Peg-in
    txid: str
    vout: int
    claim_script: str
    address: str
    claim_block_height: int
    raw_tx: str = ""
    txout_proof: str = ""
    amount: int = 0

    # Filled by the initiator
    fee_share: int = 0
    pubkey: str = ""

    # Delivery bookkeeping
    sent_count: int = 0
    last_sent: float = 0.0

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "txid": self.txid,
            "vout": self.vout,
            "claim_script": self.claim_script,
            "address": self.address,
            "claim_block_height": self.claim_block_height,
            "raw_tx": self.raw_tx,
            "txout_proof": self.txout_proof,
            "amount": self.amount,
            "fee_share": self.fee_share,
            "pubkey": self.pubkey,
            "sent_count": self.sent_count,
            "last_sent": self.last_sent,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ClaimParty":
        """Create ClaimParty from dictionary."""
        return cls(
            txid=data["txid"],
            vout=int(data["vout"]),
            claim_script=data["claim_script"],
            address=data["address"],
            claim_block_height=int(data["claim_block_height"]),
            raw_tx=data.get("raw_tx", ""),
            txout_proof=data.get("txout_proof", ""),
            amount=int(data.get("amount", 0)),
            fee_share=int(data.get("fee_share", 0)),
            pubkey=data.get("pubkey", ""),
            sent_count=int(data.get("sent_count", 0)),
            last_sent=float(data.get("last_sent", 0.0)),
        )


@dataclass
class Coordination:
    """
    Point-to-point coordination message, always sent encrypted.

    Actions:
      add          - joiner asks the initiator to be added
      confirm_add  - initiator accepts (also re-sent on height changes)
      refuse_add   - initiator refuses or kicks
      remove       - joiner leaves
      process      - blind or sign the attached PSET, or return it
      process2     - blind and sign in one visit
    """
    action: Action
    joiner: Optional[ClaimParty] = None
    claim_block_height: int = 0
    status: str = ""
    pset: bytes = b""

    def to_dict(self) -> dict:
        return {
            "action": self.action.value,
            "joiner": self.joiner.to_dict() if self.joiner else None,
            "claim_block_height": self.claim_block_height,
            "status": self.status,
            "pset": _b64(self.pset),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Coordination":
        joiner = data.get("joiner")
        return cls(
            action=Action(data["action"]),
            joiner=ClaimParty.from_dict(joiner) if joiner else None,
            claim_block_height=int(data.get("claim_block_height", 0)),
            status=data.get("status", ""),
            pset=_unb64(data.get("pset")),
        )

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict()).encode()

    @classmethod
    def from_bytes(cls, data: bytes) -> "Coordination":
        """Raises ValueError on anything that is not a coordination."""
        try:
            return cls.from_dict(json.loads(data.decode()))
        except (KeyError, TypeError, UnicodeDecodeError) as e:
            raise ValueError(f"Malformed coordination: {e}") from e


@dataclass
class Message:
    """
    Envelope exchanged as a Lightning custom message.

    Broadcasts travel in cleartext: asset names the announcement, amount
    carries JoinBlockHeight (start) or ClaimBlockHeight (end) and payload
    the final txid (end). Process messages carry ECIES ciphertext in
    payload and are relayed hop by hop towards destination.
    """
    memo: Memo
    version: int = MESSAGE_VERSION
    asset: str = ""
    amount: int = 0
    timestamp: int = 0
    sender: str = ""
    destination: str = ""
    payload: bytes = b""
    status: str = ""

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "memo": self.memo.value,
            "asset": self.asset,
            "amount": self.amount,
            "timestamp": self.timestamp,
            "sender": self.sender,
            "destination": self.destination,
            "payload": _b64(self.payload),
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        return cls(
            memo=Memo(data["memo"]),
            version=int(data.get("version", 0)),
            asset=data.get("asset", ""),
            amount=int(data.get("amount", 0)),
            timestamp=int(data.get("timestamp", 0)),
            sender=data.get("sender", ""),
            destination=data.get("destination", ""),
            payload=_unb64(data.get("payload")),
            status=data.get("status", ""),
        )

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict()).encode()

    @classmethod
    def from_bytes(cls, data: bytes) -> "Message":
        """Raises ValueError on anything that is not an envelope."""
        try:
            return cls.from_dict(json.loads(data.decode()))
        except (KeyError, TypeError, UnicodeDecodeError) as e:
            raise ValueError(f"Malformed message: {e}") from e


@dataclass
class Pegin:
    """This node's own peg-in, as known to the wallet that funded it."""
    txid: str
    claim_script: str
    amount: int
    address: str = ""
