"""
ClaimJoin - Elements Transaction Service

Typed wrappers over the Elements Core RPCs used to build, blind, sign,
finalize and broadcast the joint peg-in claim.

Amounts cross this boundary in sats; conversion to the node's BTC floats
happens here only.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Union

from .cj_types import to_bitcoin, to_sats
from .rpc_client import RPCClient

# sendrawtransaction: "Transaction already in block chain"
RPC_VERIFY_ALREADY_IN_CHAIN = -27


# =============================================================================
# REQUEST SCHEMA
# =============================================================================

@dataclass
class PeginInput:
    txid: str
    vout: int
    pegin_bitcoin_tx: str
    pegin_txout_proof: str
    pegin_claim_script: str

    def to_rpc(self) -> dict:
        return {
            "txid": self.txid,
            "vout": self.vout,
            "pegin_bitcoin_tx": self.pegin_bitcoin_tx,
            "pegin_txout_proof": self.pegin_txout_proof,
            "pegin_claim_script": self.pegin_claim_script,
        }


@dataclass
class AddressOutput:
    address: str
    amount: int
    blinder_index: int

    def to_rpc(self) -> dict:
        return {self.address: to_bitcoin(self.amount), "blinder_index": self.blinder_index}


@dataclass
class FeeOutput:
    amount: int

    def to_rpc(self) -> dict:
        return {"fee": to_bitcoin(self.amount)}


@dataclass
class DataOutput:
    data: str

    def to_rpc(self) -> dict:
        return {"data": self.data}


PsetOutputRequest = Union[AddressOutput, FeeOutput, DataOutput]


# =============================================================================
# RESPONSE SCHEMA
# =============================================================================

@dataclass
class PsetInputInfo:
    signed: bool = False

    @classmethod
    def from_rpc(cls, data: dict) -> "PsetInputInfo":
        return cls(signed=bool(data.get("final_scriptwitness")))


@dataclass
class PsetOutputInfo:
    address: str = ""
    amount: int = 0
    blinder_index: Optional[int] = None

    @classmethod
    def from_rpc(cls, data: dict) -> "PsetOutputInfo":
        blinder = data.get("blinder_index")
        return cls(
            address=data.get("script", {}).get("address", ""),
            amount=to_sats(data.get("amount", 0)),
            blinder_index=int(blinder) if blinder is not None else None,
        )


@dataclass
class DecodedPset:
    inputs: List[PsetInputInfo] = field(default_factory=list)
    outputs: List[PsetOutputInfo] = field(default_factory=list)

    @classmethod
    def from_rpc(cls, data: dict) -> "DecodedPset":
        return cls(
            inputs=[PsetInputInfo.from_rpc(i) for i in data.get("inputs", [])],
            outputs=[PsetOutputInfo.from_rpc(o) for o in data.get("outputs", [])],
        )


@dataclass
class AnalyzedOutput:
    blind: bool = False
    status: str = ""

    @property
    def pending(self) -> bool:
        """Blinding requested but not yet done."""
        return self.blind and self.status == "unblinded"


@dataclass
class AnalyzedPset:
    outputs: List[AnalyzedOutput] = field(default_factory=list)
    next: str = ""

    @classmethod
    def from_rpc(cls, data: dict) -> "AnalyzedPset":
        return cls(
            outputs=[AnalyzedOutput(blind=bool(o.get("blind")), status=o.get("status", ""))
                     for o in data.get("outputs", [])],
            next=data.get("next", ""),
        )


@dataclass
class ProcessedPset:
    pset: str
    complete: bool


@dataclass
class FinalizedPset:
    complete: bool
    hex: str = ""
    pset: str = ""


@dataclass
class DecodedTransaction:
    txid: str
    discount_vsize: int
    fee: Optional[int] = None

    @classmethod
    def from_rpc(cls, data: dict) -> "DecodedTransaction":
        fees = data.get("fee") or {}
        fee = None
        for value in fees.values():
            fee = to_sats(value)
            break
        return cls(
            txid=data["txid"],
            discount_vsize=int(data.get("discountvsize", data.get("vsize", 0))),
            fee=fee,
        )

    @property
    def exact_fee(self) -> int:
        """Fee at 0.1 sat per discounted vbyte, rounded up."""
        return -(-self.discount_vsize // 10)


# =============================================================================
# SERVICE
# =============================================================================

class ElementsService:
    """
    Elements Core operations for the claim PSET.

    Args:
        rpc: Node-level client
        wallet_rpc: Client bound to the wallet holding this node's peg-in
    """

    def __init__(self, rpc: RPCClient, wallet_rpc: RPCClient):
        self.rpc = rpc
        self.wallet_rpc = wallet_rpc

    def create_pset(self, inputs: List[PeginInput], outputs: List[PsetOutputRequest]) -> str:
        """Returns the base64 PSET."""
        return self.rpc.call("createpsbt", [
            [i.to_rpc() for i in inputs],
            [o.to_rpc() for o in outputs],
        ])

    def decode_pset(self, pset: str) -> DecodedPset:
        return DecodedPset.from_rpc(self.rpc.call("decodepsbt", [pset]))

    def analyze_pset(self, pset: str) -> AnalyzedPset:
        return AnalyzedPset.from_rpc(self.rpc.call("analyzepsbt", [pset]))

    def process_pset(self, pset: str) -> ProcessedPset:
        """Blind and/or sign whatever this wallet is able to."""
        result = self.wallet_rpc.call("walletprocesspsbt", [pset])
        return ProcessedPset(pset=result["psbt"], complete=bool(result.get("complete")))

    def finalize_pset(self, pset: str) -> FinalizedPset:
        result = self.rpc.call("finalizepsbt", [pset])
        if result.get("complete"):
            return FinalizedPset(complete=True, hex=result["hex"])
        return FinalizedPset(complete=False, pset=result.get("psbt", ""))

    def decode_raw_transaction(self, raw_hex: str) -> DecodedTransaction:
        return DecodedTransaction.from_rpc(self.rpc.call("decoderawtransaction", [raw_hex]))

    def send_raw_transaction(self, raw_hex: str) -> str:
        return self.rpc.call("sendrawtransaction", [raw_hex])

    def unconfidential_address(self, address: str) -> str:
        info = self.wallet_rpc.call("getaddressinfo", [address])
        return info.get("unconfidential", address)

    def new_address(self) -> str:
        return self.wallet_rpc.call("getnewaddress")
