"""
ClaimJoin - Configuration
"""

import os
from dataclasses import dataclass
from typing import Optional

from .cj_types import Pegin


@dataclass
class Config:
    # Bitcoin Core RPC
    bitcoin_host: str = "localhost"
    bitcoin_port: int = 8332
    bitcoin_user: str = ""
    bitcoin_password: str = ""

    # Elements Core RPC
    elements_host: str = "localhost"
    elements_port: int = 7041
    elements_user: str = ""
    elements_password: str = ""
    elements_wallet: str = "peerswap"

    # LND REST
    lnd_host: str = "localhost"
    lnd_rest_port: int = 8080
    lnd_macaroon: str = "~/.lnd/data/chain/bitcoin/mainnet/admin.macaroon"
    lnd_tls_cert: str = "~/.lnd/tls.cert"

    # Own peg-in (empty txid: relay and join others only)
    pegin_txid: str = ""
    pegin_claim_script: str = ""
    pegin_amount: int = 0  # sats
    pegin_address: str = ""

    # Confirmations before a peg-in can be claimed
    pegin_blocks: int = 102

    # Daemon settings
    data_dir: str = "~/.claimjoin"
    poll_interval: int = 30  # seconds
    log_level: str = "INFO"
    claimjoin_enabled: bool = True

    @property
    def store_path(self) -> str:
        return os.path.join(os.path.expanduser(self.data_dir), "claimjoin.json")

    @property
    def pegin(self) -> Optional[Pegin]:
        if not self.pegin_txid:
            return None
        return Pegin(
            txid=self.pegin_txid,
            claim_script=self.pegin_claim_script,
            amount=self.pegin_amount,
            address=self.pegin_address,
        )
