"""
ClaimJoin - RPC Client

JSON-RPC client for Bitcoin Core and Elements Core.
"""

import requests
from typing import Any, Optional


class RPCError(Exception):
    """RPC call failed."""
    def __init__(self, code: int, message: str):
        self.code = code
        self.message = message
        super().__init__(f"RPC Error {code}: {message}")


class RPCClient:
    """
    JSON-RPC client for bitcoind and elementsd.

    Usage:
        rpc = RPCClient("localhost", 7041, "user", "pass", wallet="peerswap")
        height = rpc.getblockcount()
        decoded = rpc.call("decodepsbt", [pset])
    """

    def __init__(self, host: str = "localhost", port: int = 7041,
                 user: str = "", password: str = "",
                 wallet: Optional[str] = None, timeout: int = 30):
        self.url = f"http://{host}:{port}"
        if wallet:
            self.url += f"/wallet/{wallet}"
        self.auth = (user, password) if user or password else None
        self.timeout = timeout
        self._id = 0

    def call(self, method: str, params: list = None) -> Any:
        """Make RPC call."""
        self._id += 1
        payload = {
            "jsonrpc": "1.0",
            "id": self._id,
            "method": method,
            "params": params or []
        }

        try:
            response = requests.post(
                self.url,
                json=payload,
                auth=self.auth,
                timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise RPCError(-1, f"Connection failed: {e}")

        # bitcoind answers RPC errors with HTTP 500 and a JSON body
        try:
            result = response.json()
        except ValueError:
            raise RPCError(response.status_code, response.text.strip() or response.reason)

        if result.get("error"):
            raise RPCError(result["error"]["code"], result["error"]["message"])

        return result.get("result")

    def getblockcount(self) -> int:
        """Get current block height."""
        return self.call("getblockcount")

    def test_connection(self) -> bool:
        """Test if RPC connection works."""
        try:
            self.getblockcount()
            return True
        except RPCError:
            return False
