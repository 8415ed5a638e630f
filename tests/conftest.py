"""
Pytest fixtures for ClaimJoin.

An in-memory Lightning network with queued delivery, fake Bitcoin and
Elements RPC backends and a controllable clock. PSETs produced by the fake
Elements backend are base64 JSON, so any node can decode any draft, while
only the owning wallet can blind its outputs and sign its inputs.
"""

import base64
import hashlib
import json
from collections import defaultdict, deque
from typing import Dict, List

import pytest

from claimjoin.bitcoin import BitcoinChain
from claimjoin.cj_types import Pegin, to_bitcoin, to_sats
from claimjoin.config import Config
from claimjoin.elements import ElementsService
from claimjoin.node import ClaimJoinNode
from claimjoin.rpc_client import RPCError
from claimjoin.store import JsonStore
from claimjoin.transport import Transport, TransportError


# =============================================================================
# Clock
# =============================================================================

class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


# =============================================================================
# Network
# =============================================================================

class MemoryNetwork:
    """Peers linked in pairs; messages wait in a queue until run()."""

    def __init__(self):
        self.links = defaultdict(set)
        self.callbacks = {}
        self.queue = deque()
        self.dropped = set()
        self.delivered = 0

    def connect(self, a: str, b: str):
        self.links[a].add(b)
        self.links[b].add(a)

    def transport(self, node_id: str) -> "MemoryTransport":
        return MemoryTransport(self, node_id)

    def drop(self, node_id: str):
        """Discard everything addressed to node_id from now on."""
        self.dropped.add(node_id)

    def run(self, limit: int = 10_000):
        while self.queue:
            if self.delivered >= limit:
                raise RuntimeError("message storm")
            source, target, data = self.queue.popleft()
            if target in self.dropped or target not in self.callbacks:
                continue
            self.delivered += 1
            self.callbacks[target](source, data)


class MemoryTransport(Transport):
    def __init__(self, network: MemoryNetwork, node_id: str):
        self.network = network
        self._node_id = node_id

    @property
    def node_id(self) -> str:
        return self._node_id

    def send(self, peer_id: str, data: bytes):
        if peer_id not in self.network.links[self._node_id]:
            raise TransportError(f"{peer_id} is not a peer")
        self.network.queue.append((self._node_id, peer_id, data))

    def list_peers(self) -> List[str]:
        return sorted(self.network.links[self._node_id])

    def listen(self, callback):
        self.network.callbacks[self._node_id] = callback


# =============================================================================
# Bitcoin
# =============================================================================

class FakeBitcoin:
    """Bitcoin Core RPC with a handful of peg-in transactions."""

    def __init__(self, height: int = 150):
        self.height = height
        self.txs: Dict[str, dict] = {}

    def add_pegin(self, txid: str, amount: int, confirmations: int = 10):
        raw = json.dumps({"txid": txid, "amount": amount}).encode().hex()
        self.txs[txid] = {"hex": raw, "amount": amount, "confirmations": confirmations}

    def call(self, method: str, params: list = None):
        params = params or []
        if method == "getblockcount":
            return self.height
        if method == "getrawtransaction":
            tx = self._tx(params[0])
            if params[1]:
                return {"txid": params[0], "confirmations": tx["confirmations"]}
            return tx["hex"]
        if method == "gettxoutproof":
            tx = self._tx(params[0][0])
            if tx["confirmations"] < 1:
                raise RPCError(-5, "Transaction not yet in block")
            return f"proof-{params[0][0]}"
        if method == "decoderawtransaction":
            amount = json.loads(bytes.fromhex(params[0]))["amount"]
            # change output first, peg-in second
            return {"vout": [{"value": 0.001}, {"value": to_bitcoin(amount)}]}
        raise RPCError(-32601, f"Method not found: {method}")

    def _tx(self, txid: str) -> dict:
        if txid not in self.txs:
            raise RPCError(-5, "No such mempool or blockchain transaction")
        return self.txs[txid]


# =============================================================================
# Elements
# =============================================================================

def unconfidential(address: str) -> str:
    return "ex1" + address[3:] if address.startswith("lq1") else address


def encode_pset(pset: dict) -> str:
    return base64.b64encode(json.dumps(pset, sort_keys=True).encode()).decode()


def decode_pset(text: str) -> dict:
    return json.loads(base64.b64decode(text))


class FakeLiquid:
    """Shared Liquid chain: fee policy and broadcast transactions."""

    def __init__(self, vsize_per_party: int = 360):
        self.vsize_per_party = vsize_per_party
        self.created: List[dict] = []
        self.broadcast: List[dict] = []
        self.already_in_chain = False

    def wallet(self, name: str) -> "FakeElementsWallet":
        return FakeElementsWallet(self, name)


class FakeElementsWallet:
    """
    Elements RPC for one wallet.

    walletprocesspsbt blinds the wallet's own outputs first; once every
    output is blinded it signs the wallet's own inputs.
    """

    def __init__(self, liquid: FakeLiquid, name: str):
        self.liquid = liquid
        self.name = name
        self.claim_scripts = set()
        self.addresses = set()
        self.calls: List[str] = []

    def own(self, claim_script: str, address: str):
        self.claim_scripts.add(claim_script)
        self.addresses.add(address)

    def call(self, method: str, params: list = None):
        params = params or []
        self.calls.append(method)
        handler = getattr(self, f"_{method}", None)
        if handler is None:
            raise RPCError(-32601, f"Method not found: {method}")
        return handler(*params)

    def _createpsbt(self, inputs, outputs):
        pset = {"inputs": [], "outputs": []}
        for i in inputs:
            pset["inputs"].append({
                "txid": i["txid"],
                "claim_script": i["pegin_claim_script"],
                "signed": False,
            })
        for o in outputs:
            if "fee" in o:
                pset["outputs"].append({"kind": "fee", "amount": to_sats(o["fee"])})
            elif "data" in o:
                pset["outputs"].append({"kind": "data", "data": o["data"]})
            else:
                address = next(k for k in o if k != "blinder_index")
                pset["outputs"].append({
                    "kind": "address",
                    "address": address,
                    "amount": to_sats(o[address]),
                    "blinder_index": o["blinder_index"],
                    "blinded": False,
                })
        self.liquid.created.append(pset)
        return encode_pset(pset)

    def _decodepsbt(self, text):
        pset = decode_pset(text)
        outputs = []
        for o in pset["outputs"]:
            if o["kind"] == "address":
                outputs.append({
                    "amount": to_bitcoin(o["amount"]),
                    "script": {"address": unconfidential(o["address"])},
                    "blinder_index": o["blinder_index"],
                })
            elif o["kind"] == "fee":
                outputs.append({"amount": to_bitcoin(o["amount"]), "script": {"type": "fee"}})
            else:
                outputs.append({"amount": 0.0, "script": {"type": "nulldata"}})
        inputs = [{"final_scriptwitness": ["00"]} if i["signed"] else {} for i in pset["inputs"]]
        return {"inputs": inputs, "outputs": outputs}

    def _analyzepsbt(self, text):
        pset = decode_pset(text)
        outputs = []
        for o in pset["outputs"]:
            if o["kind"] == "address":
                outputs.append({"blind": True, "status": "blinded" if o["blinded"] else "unblinded"})
            else:
                outputs.append({"blind": False, "status": "unblinded"})
        return {"outputs": outputs, "next": "signer"}

    def _walletprocesspsbt(self, text):
        pset = decode_pset(text)
        addresses = [o for o in pset["outputs"] if o["kind"] == "address"]

        mine = [o for o in addresses if o["address"] in self.addresses and not o["blinded"]]
        if mine:
            for o in mine:
                o["blinded"] = True
        elif all(o["blinded"] for o in addresses):
            for i in pset["inputs"]:
                if i["claim_script"] in self.claim_scripts:
                    i["signed"] = True

        complete = all(i["signed"] for i in pset["inputs"])
        return {"psbt": encode_pset(pset), "complete": complete}

    def _finalizepsbt(self, text):
        pset = decode_pset(text)
        blinded = all(o["blinded"] for o in pset["outputs"] if o["kind"] == "address")
        signed = all(i["signed"] for i in pset["inputs"])
        if not (blinded and signed):
            return {"psbt": text, "complete": False}
        fee = sum(o["amount"] for o in pset["outputs"] if o["kind"] == "fee")
        tx = {"inputs": len(pset["inputs"]), "outputs": pset["outputs"], "fee": fee}
        return {"hex": json.dumps(tx, sort_keys=True).encode().hex(), "complete": True}

    def _decoderawtransaction(self, raw):
        tx = json.loads(bytes.fromhex(raw))
        return {
            "txid": hashlib.sha256(raw.encode()).hexdigest(),
            "discountvsize": self.liquid.vsize_per_party * tx["inputs"],
            "fee": {"bitcoin": to_bitcoin(tx["fee"])},
        }

    def _sendrawtransaction(self, raw):
        decoded = self._decoderawtransaction(raw)
        if self.liquid.already_in_chain:
            raise RPCError(-27, "Transaction already in block chain")
        self.liquid.broadcast.append({"txid": decoded["txid"], **json.loads(bytes.fromhex(raw))})
        return decoded["txid"]

    def _getaddressinfo(self, address):
        return {"address": address, "unconfidential": unconfidential(address)}

    def _getnewaddress(self):
        return f"lq1{self.name}"


# =============================================================================
# Cluster
# =============================================================================

class Cluster:
    """A set of ClaimJoin nodes sharing one network, chain and clock."""

    def __init__(self, tmp_path, clock: FakeClock):
        self.tmp_path = tmp_path
        self.clock = clock
        self.network = MemoryNetwork()
        self.bitcoin = FakeBitcoin()
        self.liquid = FakeLiquid()
        self.nodes: Dict[str, ClaimJoinNode] = {}
        self.wallets: Dict[str, FakeElementsWallet] = {}

    def add(self, name: str, amount: int = 1_000_000) -> ClaimJoinNode:
        txid = f"{name}-pegin"
        self.bitcoin.add_pegin(txid, amount)
        pegin = Pegin(txid=txid, claim_script=f"script-{name}", amount=amount,
                      address=f"lq1{name}")

        wallet = self.wallets.get(name) or self.liquid.wallet(name)
        wallet.own(pegin.claim_script, pegin.address)
        self.wallets[name] = wallet

        transport = self.network.transport(name)
        node = ClaimJoinNode(
            Config(),
            transport,
            BitcoinChain(self.bitcoin),
            ElementsService(wallet, wallet),
            JsonStore(str(self.tmp_path / f"{name}.json")),
            clock=self.clock,
            pegin=pegin,
        )
        transport.listen(node.on_message)
        self.nodes[name] = node
        return node

    def connect(self, a: str, b: str):
        self.network.connect(a, b)

    def run(self):
        self.network.run()

    def __getitem__(self, name: str) -> ClaimJoinNode:
        return self.nodes[name]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cluster(tmp_path, clock):
    return Cluster(tmp_path, clock)


@pytest.fixture
def pair(cluster):
    """alice and bob, directly connected, both with confirmed peg-ins."""
    cluster.add("alice")
    cluster.add("bob")
    cluster.connect("alice", "bob")
    return cluster


@pytest.fixture
def joined_pair(pair):
    """bob has joined alice's ClaimJoin, claimable at block 200."""
    assert pair["alice"].on_pegin_confirmed(200, 150)
    pair.run()
    assert pair["bob"].on_pegin_confirmed(200, 150)
    pair.run()
    return pair
