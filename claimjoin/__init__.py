"""
ClaimJoin

Batched Liquid peg-in claims coordinated across Lightning peers.

Architecture:
  - Peg-in owners find each other through announcements flooded over
    Lightning custom messages
  - One initiator builds a single claim PSET for everybody
  - Blinding and signing hop between parties, encrypted end to end
  - Intermediate nodes relay without learning who is claiming what

Usage:
    from claimjoin import ClaimJoinNode, Config, JsonStore

    node = ClaimJoinNode(config, transport, chain, liquid, JsonStore(path))
    node.load()
    node.on_pegin_confirmed(claim_block_height, current_height)
"""

from .cj_types import (
    Action,
    ClaimParty,
    Coordination,
    Memo,
    Message,
    Pegin,
    Role,
    MAX_PARTIES,
    MESSAGE_TYPE,
    MESSAGE_VERSION,
)
from .config import Config
from .identity import Identity
from .ecies import EciesError
from .rpc_client import RPCClient, RPCError
from .bitcoin import BitcoinChain
from .elements import ElementsService
from .store import JsonStore
from .session import Session
from .transport import Transport, LndTransport, TransportError
from .engine import Outcome
from .node import ClaimJoinNode

__version__ = "0.1.0"
__all__ = [
    # Types
    "Action", "ClaimParty", "Coordination", "Memo", "Message", "Pegin", "Role",
    "MAX_PARTIES", "MESSAGE_TYPE", "MESSAGE_VERSION",
    # Collaborators
    "Config", "Identity", "EciesError", "RPCClient", "RPCError",
    "BitcoinChain", "ElementsService", "JsonStore", "Session",
    "Transport", "LndTransport", "TransportError",
    # Core
    "Outcome", "ClaimJoinNode",
]
