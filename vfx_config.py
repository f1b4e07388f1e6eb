"""
Network constants and typed configuration for the VFX ledger.

Core services receive a ``VfxConfig`` explicitly. Environment variables and
the ``.env`` file are only read by ``VfxConfig.from_env()``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from enum import Enum, IntEnum
from pathlib import Path

from dotenv import load_dotenv

from vfx_errors import VfxConfigError

PROJECT_ROOT = Path(__file__).parent

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

VFX_API_BASE_URL_MAINNET = "https://data.verifiedx.io/api"
VFX_API_BASE_URL_TESTNET = "https://data-testnet.verifiedx.io/api"

# Address version bytes
ADDRESS_VERSION_MAINNET = 0x3C  # 'R...'
ADDRESS_VERSION_TESTNET = 0x89  # 'x...'

# ADNR purchase cost, in VFX
DOMAIN_PURCHASE_COST = 5.0

ADNR_BASE_ADDRESS = "Adnr_Base"

DEFAULT_TIMEOUT_SECONDS = 10.0


class Network(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"

    @property
    def is_testnet(self) -> bool:
        return self is Network.TESTNET

    @property
    def address_version(self) -> int:
        return ADDRESS_VERSION_TESTNET if self.is_testnet else ADDRESS_VERSION_MAINNET

    @property
    def default_api_url(self) -> str:
        return VFX_API_BASE_URL_TESTNET if self.is_testnet else VFX_API_BASE_URL_MAINNET

    @classmethod
    def parse(cls, value: Network | str) -> Network:
        if isinstance(value, Network):
            return value
        raw = str(value).strip().lower()
        for member in cls:
            if member.value == raw:
                return member
        raise VfxConfigError(f"Invalid network {value!r}. Expected 'mainnet' or 'testnet'.")


class TxType(IntEnum):
    """Ledger transaction types."""

    RBX_TRANSFER = 0
    NODE = 1
    NFT_MINT = 2
    NFT_TX = 3
    NFT_BURN = 4
    NFT_SALE = 5
    ADNR = 6
    DST_SHOP = 7
    VOTE_TOPIC = 8
    VOTE = 9
    RESERVE = 10
    TOKEN_TX = 15
    TOKEN_DEPLOY = 17
    TOKENIZE_TX = 18


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() not in ("false", "0", "no", "off")


@dataclass(frozen=True)
class VfxConfig:
    """
    Settings shared by the VFX API clients and the transaction pipeline.

    Environment variables (read only by ``from_env``):
    - VFX_NETWORK: "mainnet" or "testnet" (defaults to "testnet").
    - VFX_API_URL: override the ledger API base URL.
    - VFX_DRY_RUN: if true, stop every submission before broadcast
      (defaults to true).
    - VFX_TIMEOUT: per-request timeout in seconds.
    """

    network: Network = Network.TESTNET
    api_base_url: str = VFX_API_BASE_URL_TESTNET
    dry_run: bool = False
    timeout: float = DEFAULT_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        if self.timeout <= 0:
            raise VfxConfigError(f"Timeout must be positive, got {self.timeout}.")

    @classmethod
    def for_network(cls, network: Network | str, dry_run: bool = False) -> VfxConfig:
        net = Network.parse(network)
        return cls(network=net, api_base_url=net.default_api_url, dry_run=dry_run)

    @classmethod
    def from_env(cls, env_file: str | Path | None = None) -> VfxConfig:
        """Build VfxConfig from environment variables (and an optional .env file)."""
        load_dotenv(env_file or PROJECT_ROOT / ".env")

        network = Network.parse(os.getenv("VFX_NETWORK", "testnet"))
        api_url = os.getenv("VFX_API_URL") or network.default_api_url
        dry_run = _parse_bool(os.getenv("VFX_DRY_RUN", "true"))

        timeout_raw = os.getenv("VFX_TIMEOUT")
        timeout = DEFAULT_TIMEOUT_SECONDS
        if timeout_raw is not None and timeout_raw.strip():
            try:
                timeout = float(timeout_raw)
            except ValueError as exc:
                raise VfxConfigError(
                    f"Invalid VFX_TIMEOUT={timeout_raw!r}. Expected a number of seconds."
                ) from exc

        return cls(
            network=network,
            api_base_url=api_url.rstrip("/"),
            dry_run=dry_run,
            timeout=timeout,
        )

    def with_dry_run(self, dry_run: bool) -> VfxConfig:
        return replace(self, dry_run=dry_run)
