#!/usr/bin/env python3
# Copyright (c) 2025 The ClaimJoin developers
# Distributed under the MIT software license

"""
ClaimJoin Daemon - Joint peg-in claims with Lightning peers

This daemon:
  1. Listens for ClaimJoin custom messages from LND peers
  2. Polls Bitcoin Core for new blocks
  3. Starts or joins a ClaimJoin once the own peg-in confirms
  4. Drives the claim transaction when this node is the initiator
"""

import argparse
import logging
import os
import threading
import time
from typing import Dict, Optional

from .bitcoin import BitcoinChain
from .config import Config
from .elements import ElementsService
from .node import ClaimJoinNode
from .rpc_client import RPCClient, RPCError
from .store import JsonStore
from .transport import LndTransport, Transport, TransportError

log = logging.getLogger(__name__)

# Seconds between attempts to resubscribe to custom messages
LISTEN_RETRY = 10


class ClaimJoinDaemon:
    """
    Main ClaimJoin daemon - watches Bitcoin blocks and LND messages
    """

    def __init__(self, config: Config, node: ClaimJoinNode, chain: BitcoinChain,
                 transport: Transport, rpcs: Optional[Dict[str, RPCClient]] = None):
        self.config = config
        self.node = node
        self.chain = chain
        self.transport = transport
        self.rpcs = rpcs or {}
        self.last_height = 0
        self._stop = threading.Event()

    def listen_forever(self):
        while not self._stop.is_set():
            try:
                self.transport.listen(self.node.on_message)
            except TransportError as e:
                log.error(f"Custom message subscription lost: {e}")
            self._stop.wait(LISTEN_RETRY)

    def claim_height(self) -> Optional[int]:
        """Block at which the own peg-in becomes claimable, None while unconfirmed."""
        confirmations = self.chain.confirmations(self.config.pegin_txid)
        if confirmations < 1:
            return None
        return self.last_height - confirmations + self.config.pegin_blocks

    def poll(self):
        """One tick: react to a new block, if there is one."""
        height = self.chain.current_height()
        if height == self.last_height:
            return
        self.last_height = height
        log.debug(f"New block {height}")

        self.node.on_block(height)

        if not self.config.pegin_txid or self.node.status()["claimed_txid"]:
            return

        claim_height = self.claim_height()
        if claim_height is None:
            log.debug(f"Pegin {self.config.pegin_txid} not confirmed yet")
            return
        self.node.on_pegin_confirmed(claim_height, height)

    def run(self):
        """Main daemon loop"""
        log.info("=" * 60)
        log.info("ClaimJoin Daemon starting...")
        log.info(f"  Bitcoin RPC: {self.config.bitcoin_host}:{self.config.bitcoin_port}")
        log.info(f"  Elements RPC: {self.config.elements_host}:{self.config.elements_port}")
        log.info(f"  LND REST: {self.config.lnd_host}:{self.config.lnd_rest_port}")
        log.info(f"  Pegin: {self.config.pegin_txid or '(none, relay only)'}")
        log.info(f"  Poll interval: {self.config.poll_interval}s")
        log.info("=" * 60)

        # Test connections
        for name, rpc in self.rpcs.items():
            if not rpc.test_connection():
                log.error(f"Failed to connect to {name} at {rpc.url}")
                return
            log.info(f"{name} connected - block height: {rpc.getblockcount()}")

        try:
            log.info(f"LND connected - node id: {self.transport.node_id}")
        except TransportError as e:
            log.error(f"Failed to connect to LND: {e}")
            return

        listener = threading.Thread(target=self.listen_forever, name="claimjoin-listener",
                                    daemon=True)
        listener.start()

        log.info("Starting main loop...")
        while True:
            try:
                self.poll()
            except KeyboardInterrupt:
                log.info("Shutting down...")
                break
            except (RPCError, TransportError) as e:
                log.error(f"Error in main loop: {e}")

            status = self.node.status()
            log.debug(f"{status['role']}: {status['status']}")

            try:
                time.sleep(self.config.poll_interval)
            except KeyboardInterrupt:
                log.info("Shutting down...")
                break

        self._stop.set()


def build_daemon(config: Config) -> ClaimJoinDaemon:
    bitcoin_rpc = RPCClient(config.bitcoin_host, config.bitcoin_port,
                            config.bitcoin_user, config.bitcoin_password)
    elements_rpc = RPCClient(config.elements_host, config.elements_port,
                             config.elements_user, config.elements_password)
    wallet_rpc = RPCClient(config.elements_host, config.elements_port,
                           config.elements_user, config.elements_password,
                           wallet=config.elements_wallet)
    transport = LndTransport(
        config.lnd_host,
        config.lnd_rest_port,
        os.path.expanduser(config.lnd_macaroon),
        os.path.expanduser(config.lnd_tls_cert) if config.lnd_tls_cert else None,
    )

    chain = BitcoinChain(bitcoin_rpc)
    node = ClaimJoinNode(config, transport, chain,
                         ElementsService(elements_rpc, wallet_rpc),
                         JsonStore(config.store_path))
    return ClaimJoinDaemon(config, node, chain, transport,
                           rpcs={"Bitcoin Core": bitcoin_rpc, "Elements": elements_rpc})


# =============================================================================
# MAIN
# =============================================================================

def main():
    parser = argparse.ArgumentParser(description="ClaimJoin daemon for Liquid peg-ins")
    parser.add_argument("--bitcoin-host", default="localhost")
    parser.add_argument("--bitcoin-port", type=int, default=8332)
    parser.add_argument("--bitcoin-user", default="")
    parser.add_argument("--bitcoin-password", default="")
    parser.add_argument("--elements-host", default="localhost")
    parser.add_argument("--elements-port", type=int, default=7041)
    parser.add_argument("--elements-user", default="")
    parser.add_argument("--elements-password", default="")
    parser.add_argument("--elements-wallet", default="peerswap", help="Wallet holding the peg-in")
    parser.add_argument("--lnd-host", default="localhost")
    parser.add_argument("--lnd-rest-port", type=int, default=8080)
    parser.add_argument("--lnd-macaroon", default=Config.lnd_macaroon, help="Path to admin.macaroon")
    parser.add_argument("--lnd-tls-cert", default=Config.lnd_tls_cert, help="Path to tls.cert")
    parser.add_argument("--pegin-txid", default="", help="Bitcoin txid of the own peg-in")
    parser.add_argument("--pegin-claim-script", default="", help="Claim script of the own peg-in")
    parser.add_argument("--pegin-amount", type=int, default=0, help="Peg-in amount in sats")
    parser.add_argument("--pegin-address", default="", help="Liquid address to claim to")
    parser.add_argument("--pegin-blocks", type=int, default=102, help="Confirmations before claiming")
    parser.add_argument("--data-dir", default="~/.claimjoin")
    parser.add_argument("--poll-interval", type=int, default=30, help="Poll interval in seconds")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--disable", action="store_true", help="Relay only, never join or initiate")
    parser.add_argument("--reset", action="store_true", help="Forget any pending ClaimJoin on startup")
    parser.add_argument("--once", action="store_true", help="Run once and exit (for testing)")

    args = parser.parse_args()

    # Setup logging
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    config = Config(
        bitcoin_host=args.bitcoin_host,
        bitcoin_port=args.bitcoin_port,
        bitcoin_user=args.bitcoin_user,
        bitcoin_password=args.bitcoin_password,
        elements_host=args.elements_host,
        elements_port=args.elements_port,
        elements_user=args.elements_user,
        elements_password=args.elements_password,
        elements_wallet=args.elements_wallet,
        lnd_host=args.lnd_host,
        lnd_rest_port=args.lnd_rest_port,
        lnd_macaroon=args.lnd_macaroon,
        lnd_tls_cert=args.lnd_tls_cert,
        pegin_txid=args.pegin_txid,
        pegin_claim_script=args.pegin_claim_script,
        pegin_amount=args.pegin_amount,
        pegin_address=args.pegin_address,
        pegin_blocks=args.pegin_blocks,
        data_dir=args.data_dir,
        poll_interval=args.poll_interval,
        log_level=args.log_level,
        claimjoin_enabled=not args.disable,
    )

    daemon = build_daemon(config)
    daemon.node.load(pegin_pending=bool(config.pegin_txid) and not args.reset)

    if args.once:
        daemon.poll()
        print(daemon.node.status())
    else:
        daemon.run()


if __name__ == "__main__":
    main()
