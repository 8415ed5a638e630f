"""
ClaimJoin - Routing Table

Maps a session public key to the peer node id that last delivered a
message from it. Replies are sent back along that hop, so no node learns
more of the topology than its direct neighbours.
"""

import logging
from typing import Dict, Optional

from .store import JsonStore

log = logging.getLogger(__name__)

NAMESPACE = "ClaimJoin"
KEY = "keyToNodeId"


class RoutingTable:
    def __init__(self, store: JsonStore):
        self.store = store
        self.routes: Dict[str, str] = {}

    def load(self):
        self.routes = {k: v for k, v in self.store.load(NAMESPACE, KEY, {}).items() if v}

    def _save(self):
        self.store.save(NAMESPACE, KEY, self.routes)

    def learn(self, pubkey: str, node_id: str) -> bool:
        """Remember the hop for pubkey. Returns True if the route changed."""
        if not pubkey or self.routes.get(pubkey) == node_id:
            return False
        self.routes[pubkey] = node_id
        self._save()
        return True

    def resolve(self, pubkey: str) -> Optional[str]:
        return self.routes.get(pubkey)

    def knows(self, pubkey: str) -> bool:
        return pubkey in self.routes

    def forget(self, pubkey: str):
        if self.routes.pop(pubkey, None) is not None:
            log.debug(f"Forgot route to {pubkey}")
            self._save()

    def clear(self):
        self.routes = {}
        self._save()

    def __len__(self) -> int:
        return len(self.routes)
