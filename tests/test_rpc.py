"""
Tests for the JSON-RPC client, chain wrappers and the daemon tick
"""

import base64
import json

import pytest
import requests

from claimjoin.bitcoin import BitcoinChain
from claimjoin.config import Config
from claimjoin import daemon as daemon_module
from claimjoin.daemon import ClaimJoinDaemon
from claimjoin.elements import (
    AddressOutput, DataOutput, DecodedTransaction, FeeOutput, PsetOutputInfo,
)
from claimjoin.rpc_client import RPCClient, RPCError
from claimjoin.transport import LndTransport, TransportError


class FakeResponse:
    def __init__(self, body, status_code=200):
        self.body = body
        self.status_code = status_code
        self.text = "" if isinstance(body, dict) else str(body)
        self.reason = "Internal Server Error"

    def json(self):
        if not isinstance(self.body, dict):
            raise ValueError("not json")
        return self.body


class TestRPCClient:
    """Tests for the requests-based JSON-RPC client."""

    def test_wallet_path(self):
        rpc = RPCClient("localhost", 7041, "user", "pass", wallet="peerswap")
        assert rpc.url == "http://localhost:7041/wallet/peerswap"

    def test_result(self, monkeypatch):
        sent = {}

        def post(url, json, auth, timeout):
            sent.update(json)
            return FakeResponse({"result": 150, "error": None, "id": json["id"]})

        monkeypatch.setattr(requests, "post", post)
        assert RPCClient(user="u", password="p").getblockcount() == 150
        assert sent["method"] == "getblockcount"

    def test_error_surfaced_from_http_500(self, monkeypatch):
        body = {"result": None, "error": {"code": -27, "message": "Transaction already in block chain"}}
        monkeypatch.setattr(requests, "post", lambda *a, **k: FakeResponse(body, 500))

        with pytest.raises(RPCError) as excinfo:
            RPCClient().call("sendrawtransaction", ["00"])
        assert excinfo.value.code == -27

    def test_connection_failure(self, monkeypatch):
        def post(*args, **kwargs):
            raise requests.exceptions.ConnectionError("refused")

        monkeypatch.setattr(requests, "post", post)
        with pytest.raises(RPCError) as excinfo:
            RPCClient().call("getblockcount")
        assert excinfo.value.code == -1
        assert not RPCClient().test_connection()

    def test_non_json_body(self, monkeypatch):
        monkeypatch.setattr(requests, "post", lambda *a, **k: FakeResponse("Unauthorized", 401))
        with pytest.raises(RPCError) as excinfo:
            RPCClient().call("getblockcount")
        assert excinfo.value.code == 401


class TestElementsSchema:
    """Tests for the typed request and response objects."""

    def test_output_requests(self):
        assert AddressOutput("lq1alice", 999_964, 0).to_rpc() == {"lq1alice": 0.00999964, "blinder_index": 0}
        assert FeeOutput(72).to_rpc() == {"fee": 0.00000072}
        assert DataOutput("6a").to_rpc() == {"data": "6a"}

    def test_decoded_output(self):
        info = PsetOutputInfo.from_rpc({
            "amount": 0.00999964,
            "script": {"address": "ex1alice"},
            "blinder_index": 1,
        })
        assert (info.address, info.amount, info.blinder_index) == ("ex1alice", 999_964, 1)

    def test_exact_fee_rounds_up(self):
        tx = DecodedTransaction.from_rpc({"txid": "ab", "discountvsize": 721, "fee": {"bitcoin": 0.00000072}})
        assert tx.fee == 72
        assert tx.exact_fee == 73

    def test_missing_fee(self):
        tx = DecodedTransaction.from_rpc({"txid": "ab", "discountvsize": 720})
        assert tx.fee is None


class TestDaemonTick:
    """Tests for the block poller."""

    def test_pegin_output_located(self, cluster):
        chain = BitcoinChain(cluster.bitcoin)
        cluster.bitcoin.add_pegin("tx", 1_000_000)
        assert chain.find_output_index(chain.get_raw_transaction("tx"), 1_000_000) == 1
        with pytest.raises(RPCError):
            chain.find_output_index(chain.get_raw_transaction("tx"), 5)

    def test_confirmed_pegin_starts_claimjoin(self, cluster):
        node = cluster.add("alice")
        config = Config(pegin_txid="alice-pegin", pegin_blocks=102)
        daemon = ClaimJoinDaemon(config, node, BitcoinChain(cluster.bitcoin), node.transport)

        daemon.poll()

        # 10 confirmations at height 150: claimable at 150 - 10 + 102
        assert node.session.claim_block_height == 242
        assert node.status()["role"] == "initiator"

    def test_unconfirmed_pegin_waits(self, cluster):
        node = cluster.add("alice")
        cluster.bitcoin.txs["alice-pegin"]["confirmations"] = 0
        daemon = ClaimJoinDaemon(Config(pegin_txid="alice-pegin"), node,
                                 BitcoinChain(cluster.bitcoin), node.transport)

        daemon.poll()

        assert node.status()["role"] == "none"

    def test_claimed_pegin_not_restarted(self, cluster):
        node = cluster.add("alice")
        node.session.claimed_txid = "ab" * 32
        daemon = ClaimJoinDaemon(Config(pegin_txid="alice-pegin"), node,
                                 BitcoinChain(cluster.bitcoin), node.transport)

        daemon.poll()

        assert node.status()["claimed_txid"] == "ab" * 32
        assert node.status()["role"] == "none"

    def test_same_block_polled_once(self, cluster):
        node = cluster.add("alice")
        daemon = ClaimJoinDaemon(Config(), node, BitcoinChain(cluster.bitcoin), node.transport)
        daemon.poll()
        cluster.bitcoin.height = 150
        daemon.poll()
        assert daemon.last_height == 150


class FakeStream:
    def __init__(self, lines, error=None):
        self.lines = lines
        self.error = error
        self.closed = False

    def raise_for_status(self):
        pass

    def iter_lines(self):
        for line in self.lines:
            yield line
        if self.error:
            raise self.error

    def close(self):
        self.closed = True


def custom_message(peer: str, data: bytes, msg_type: int = 42065) -> bytes:
    return json.dumps({"result": {
        "peer": base64.b64encode(bytes.fromhex(peer)).decode(),
        "type": msg_type,
        "data": base64.b64encode(data).decode(),
    }}).encode()


@pytest.fixture
def lnd(tmp_path):
    macaroon = tmp_path / "admin.macaroon"
    macaroon.write_bytes(b"\x01\x02")
    return LndTransport("localhost", 8080, str(macaroon))


class TestLndTransport:
    """Tests for the LND custom message stream."""

    def test_broken_stream_is_a_transport_error(self, lnd, monkeypatch):
        """A connection reset in the middle of the stream surfaces as TransportError."""
        stream = FakeStream(
            [custom_message("02aa", b"hello")],
            error=requests.exceptions.ChunkedEncodingError("connection reset"),
        )
        monkeypatch.setattr(requests, "request", lambda *a, **k: stream)
        received = []

        with pytest.raises(TransportError):
            lnd.listen(lambda peer, data: received.append((peer, data)))

        assert received == [("02aa", b"hello")]
        assert stream.closed

    def test_unreadable_lines_skipped(self, lnd, monkeypatch):
        stream = FakeStream([
            b'{"result": null}',
            b'["not", "an", "object"]',
            b"{not json",
            custom_message("02bb", b"other protocol", msg_type=32768),
            custom_message("02cc", b"claimjoin"),
        ])
        monkeypatch.setattr(requests, "request", lambda *a, **k: stream)
        received = []

        lnd.listen(lambda peer, data: received.append((peer, data)))

        assert received == [("02cc", b"claimjoin")]


class TestDaemonStartup:
    """Tests for the daemon's connection checks."""

    def test_startup_stops_when_rpc_unreachable(self, cluster, monkeypatch):
        """Nothing is subscribed or polled while bitcoind cannot be reached."""
        def post(*args, **kwargs):
            raise requests.exceptions.ConnectionError("refused")

        monkeypatch.setattr(requests, "post", post)
        node = cluster.add("alice")
        daemon = ClaimJoinDaemon(Config(), node, BitcoinChain(cluster.bitcoin), node.transport,
                                 rpcs={"Bitcoin Core": RPCClient(port=8332)})
        subscribed = []
        monkeypatch.setattr(node.transport, "listen", subscribed.append)

        daemon.run()

        assert subscribed == []
        assert daemon.last_height == 0

    def test_listener_survives_lost_subscription(self, cluster, monkeypatch):
        """The daemon resubscribes after the stream breaks."""
        monkeypatch.setattr(daemon_module, "LISTEN_RETRY", 0)
        node = cluster.add("alice")
        daemon = ClaimJoinDaemon(Config(), node, BitcoinChain(cluster.bitcoin), node.transport)
        attempts = []

        def listen(callback):
            attempts.append(callback)
            if len(attempts) == 1:
                raise TransportError("stream broken")
            daemon._stop.set()

        monkeypatch.setattr(node.transport, "listen", listen)
        daemon.listen_forever()

        assert len(attempts) == 2
