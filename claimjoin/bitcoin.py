"""
ClaimJoin - Bitcoin Chain Facts

Peg-in data read from Bitcoin Core: heights, raw funding transactions
and their inclusion proofs.
"""

from typing import List

from .cj_types import to_sats
from .rpc_client import RPCClient, RPCError


class BitcoinChain:
    """
    Usage:
        chain = BitcoinChain(RPCClient("localhost", 8332, "user", "pass"))
        height = chain.current_height()
        proof = chain.get_inclusion_proof(txid)
    """

    def __init__(self, rpc: RPCClient):
        self.rpc = rpc

    def current_height(self) -> int:
        return int(self.rpc.call("getblockcount"))

    def get_raw_transaction(self, txid: str) -> str:
        """Raw transaction hex."""
        return self.rpc.call("getrawtransaction", [txid, False])

    def confirmations(self, txid: str) -> int:
        """0 while in the mempool."""
        tx = self.rpc.call("getrawtransaction", [txid, True])
        return int(tx.get("confirmations", 0))

    def get_inclusion_proof(self, txid: str) -> str:
        """Merkle proof hex; fails while the transaction is unconfirmed."""
        return self.rpc.call("gettxoutproof", [[txid]])

    def output_amounts(self, raw_tx: str) -> List[int]:
        decoded = self.rpc.call("decoderawtransaction", [raw_tx])
        return [to_sats(vout["value"]) for vout in decoded.get("vout", [])]

    def find_output_index(self, raw_tx: str, amount: int) -> int:
        """
        Locate the peg-in output by its amount.

        Raises:
            RPCError: no output pays exactly amount sats
        """
        for i, value in enumerate(self.output_amounts(raw_tx)):
            if value == amount:
                return i
        raise RPCError(-8, f"No output of {amount} sats")
