"""
ClaimJoin - Peer Transport

Point-to-point delivery of envelopes between directly connected
Lightning peers. ClaimJoin never opens its own connections: it rides on
the node's custom message facility.
"""

import base64
import json
import logging
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

import requests

from .cj_types import MESSAGE_TYPE

log = logging.getLogger(__name__)

# (sender node id, raw envelope bytes)
MessageCallback = Callable[[str, bytes], None]


class TransportError(Exception):
    """Peer unreachable or the Lightning node refused the message."""


class Transport(ABC):
    """Contract the protocol needs from the Lightning node."""

    @property
    @abstractmethod
    def node_id(self) -> str:
        """This node's network identity (hex pubkey)."""

    @abstractmethod
    def send(self, peer_id: str, data: bytes):
        """Deliver data to a directly connected peer. Raises TransportError."""

    @abstractmethod
    def list_peers(self) -> List[str]:
        """Node ids of currently connected peers."""

    @abstractmethod
    def listen(self, callback: MessageCallback):
        """Block and feed inbound messages to callback."""


class LndTransport(Transport):
    """
    Custom messages over LND's REST API.

    Usage:
        transport = LndTransport("localhost", 8080, "/path/admin.macaroon",
                                 "/path/tls.cert")
        transport.send(peer_id, b"...")
        transport.listen(node.on_message)   # blocks
    """

    def __init__(self, host: str, port: int, macaroon_path: str,
                 tls_cert_path: Optional[str] = None, timeout: int = 30):
        self.base_url = f"https://{host}:{port}"
        with open(macaroon_path, "rb") as f:
            self.headers = {"Grpc-Metadata-macaroon": f.read().hex()}
        self.verify = tls_cert_path or True
        self.timeout = timeout
        self._node_id = ""

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        try:
            response = requests.request(
                method,
                self.base_url + path,
                headers=self.headers,
                verify=self.verify,
                timeout=kwargs.pop("timeout", self.timeout),
                **kwargs
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise TransportError(f"{method} {path} failed: {e}") from e
        return response

    @property
    def node_id(self) -> str:
        if not self._node_id:
            self._node_id = self._request("GET", "/v1/getinfo").json()["identity_pubkey"]
        return self._node_id

    def send(self, peer_id: str, data: bytes):
        self._request("POST", "/v1/custommessage", json={
            "peer": base64.b64encode(bytes.fromhex(peer_id)).decode(),
            "type": MESSAGE_TYPE,
            "data": base64.b64encode(data).decode(),
        })

    def list_peers(self) -> List[str]:
        peers = self._request("GET", "/v1/peers").json().get("peers", [])
        return [p["pub_key"] for p in peers]

    def listen(self, callback: MessageCallback):
        response = self._request("GET", "/v1/custommessage/subscribe", stream=True, timeout=None)
        log.info("Subscribed to custom messages")

        try:
            for line in response.iter_lines():
                if not line:
                    continue
                try:
                    result = json.loads(line).get("result") or {}
                    if int(result.get("type", 0)) != MESSAGE_TYPE:
                        continue
                    peer_id = base64.b64decode(result["peer"]).hex()
                    data = base64.b64decode(result["data"])
                except (ValueError, KeyError, TypeError, AttributeError) as e:
                    log.warning(f"Unreadable custom message: {e}")
                    continue
                callback(peer_id, data)
        except requests.exceptions.RequestException as e:
            raise TransportError(f"Custom message stream broken: {e}") from e
        finally:
            response.close()
