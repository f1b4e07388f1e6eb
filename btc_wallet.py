from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Any

import requests
from bitcoin import SelectParams
from bitcoin.core import (
    CMutableTransaction,
    CMutableTxIn,
    CMutableTxOut,
    COutPoint,
    CScript,
    Hash160,
    b2x,
    lx,
)
from bitcoin.core.script import (
    OP_CHECKSIG,
    OP_DUP,
    OP_EQUALVERIFY,
    OP_HASH160,
    SIGHASH_ALL,
    CScriptWitness,
    SignatureHash,
)
from bitcoin.wallet import CBitcoinAddress, CBitcoinAddressError, CBitcoinSecret
from dotenv import load_dotenv

from btc_keypair import BtcKeypair, BtcKeypairService
from vfx_config import DEFAULT_TIMEOUT_SECONDS, Network
from vfx_errors import RemoteRequestError, ValidationError, VfxConfigError, VfxError

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).parent

MEMPOOL_API_MAINNET = "https://mempool.space/api"
MEMPOOL_API_TESTNET = "https://mempool.space/testnet4/api"

SATS_PER_BTC = Decimal("1e8")

# vbyte estimates for native segwit spends
P2WPKH_INPUT_SIZE = 68
P2WPKH_OUTPUT_SIZE = 31
TX_OVERHEAD_SIZE = 10

DUST_THRESHOLD_SATS = 546
RBF_SEQUENCE = 0xFFFFFFFD

# Used when no explicit rate is given and mempool.space has no estimate
DEFAULT_FEE_RATE_MAINNET = 5
DEFAULT_FEE_RATE_TESTNET = 5

DRY_RUN_TX_HEX = "dry_run_transaction_hex"
DRY_RUN_TXID = "dry_run_transaction_id"


class BtcConfigError(VfxConfigError):
    """Configuration error for the BTC client."""

    pass


@dataclass(frozen=True)
class BtcConfig:
    """
    Configuration for the BTC client.

    Environment variables (read only by ``from_env``):
    - BTC_NETWORK: "mainnet" or "testnet" (defaults to "testnet").
    - BTC_API_URL: override the mempool.space API base URL.
    - BTC_DRY_RUN: if true, never build or broadcast real transactions
      (defaults to true).
    - BTC_FEE_RATE_SAT_PER_BYTE: optional fixed fee rate (sat/vB); overrides
      the mempool.space economy rate when set.
    """

    network: Network = Network.TESTNET
    api_base_url: str = MEMPOOL_API_TESTNET
    dry_run: bool = False
    fee_rate_sat_per_byte: int | None = None
    timeout: float = DEFAULT_TIMEOUT_SECONDS

    @classmethod
    def for_network(cls, network: Network | str, dry_run: bool = False) -> BtcConfig:
        net = Network.parse(network)
        url = MEMPOOL_API_TESTNET if net.is_testnet else MEMPOOL_API_MAINNET
        return cls(network=net, api_base_url=url, dry_run=dry_run)

    @classmethod
    def from_env(cls, env_file: str | Path | None = None) -> BtcConfig:
        load_dotenv(env_file or PROJECT_ROOT / ".env")

        raw_network = os.getenv("BTC_NETWORK", "testnet")
        try:
            network = Network.parse(raw_network)
        except VfxConfigError as exc:
            raise BtcConfigError(
                f"Invalid BTC_NETWORK={raw_network!r}. Expected 'mainnet' or 'testnet'."
            ) from exc

        default_url = MEMPOOL_API_TESTNET if network.is_testnet else MEMPOOL_API_MAINNET
        api_url = os.getenv("BTC_API_URL") or default_url

        # Dry run unless explicitly disabled with "false", "0", "no" or "off"
        dry_run_env = os.getenv("BTC_DRY_RUN", "true").lower()
        dry_run = dry_run_env not in ("false", "0", "no", "off")

        fee_rate: int | None = None
        fee_rate_env = os.getenv("BTC_FEE_RATE_SAT_PER_BYTE")
        if fee_rate_env is not None and fee_rate_env.strip():
            try:
                fee_rate = max(1, int(fee_rate_env))
            except ValueError as exc:
                raise BtcConfigError(
                    f"Invalid BTC_FEE_RATE_SAT_PER_BYTE={fee_rate_env!r}. Expected an integer."
                ) from exc

        return cls(
            network=network,
            api_base_url=api_url.rstrip("/"),
            dry_run=dry_run,
            fee_rate_sat_per_byte=fee_rate,
        )

    def with_dry_run(self, dry_run: bool) -> BtcConfig:
        return replace(self, dry_run=dry_run)


@dataclass
class AccountInfo:
    total_received: int | Decimal
    total_sent: int | Decimal
    balance: int | Decimal
    tx_count: int


@dataclass
class FeeRates:
    fastest_fee: int
    half_hour_fee: int
    hour_fee: int
    economy_fee: int
    minimum_fee: int

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> FeeRates:
        return cls(
            fastest_fee=int(data.get("fastestFee", 0)),
            half_hour_fee=int(data.get("halfHourFee", 0)),
            hour_fee=int(data.get("hourFee", 0)),
            economy_fee=int(data.get("economyFee", 0)),
            minimum_fee=int(data.get("minimumFee", 0)),
        )


@dataclass
class TxResponse:
    """Outcome of building or broadcasting a transaction."""

    success: bool
    result: str | None
    error: str | None = None


def btc_to_sats(amount_btc: Decimal | float | int | str) -> int:
    amount = Decimal(str(amount_btc)) * SATS_PER_BTC
    return int(amount.to_integral_value(rounding=ROUND_HALF_UP))


def estimate_tx_size(num_inputs: int, num_outputs: int = 2) -> int:
    """Virtual size of a P2WPKH spend with the given input and output counts."""
    return num_inputs * P2WPKH_INPUT_SIZE + num_outputs * P2WPKH_OUTPUT_SIZE + TX_OVERHEAD_SIZE


def _build_native_segwit_tx(
    wif: str,
    utxos: list[dict[str, Any]],
    to_address: str,
    amount_sats: int,
    fee_sats: int,
    change_address: str,
    network: Network,
) -> str:
    """
    Build and sign a native SegWit (P2WPKH) transaction using python-bitcoinlib.

    Every UTXO is spent; change below the dust threshold is left to the fee.
    Signing follows BIP143.
    """
    SelectParams("testnet" if network.is_testnet else "mainnet")

    try:
        privkey = CBitcoinSecret(wif)
    except Exception as exc:  # noqa: BLE001
        raise ValidationError(f"Invalid WIF: {exc}") from exc

    pubkey = privkey.pub
    pubkey_hash = Hash160(pubkey)

    txins = []
    total_input = 0
    for u in utxos:
        total_input += int(u.get("value", 0))
        txins.append(
            CMutableTxIn(COutPoint(lx(str(u["txid"])), int(u["vout"])), nSequence=RBF_SEQUENCE)
        )

    change_sats = total_input - amount_sats - fee_sats
    if change_sats < 0:
        raise ValidationError(
            f"Insufficient funds: need {amount_sats + fee_sats} sats, have {total_input} sats"
        )

    try:
        to_script = CBitcoinAddress(to_address).to_scriptPubKey()
    except (CBitcoinAddressError, ValueError) as exc:
        raise ValidationError(f"Invalid recipient address {to_address!r}: {exc}") from exc

    txouts = [CMutableTxOut(amount_sats, to_script)]
    if change_sats > DUST_THRESHOLD_SATS:
        change_script = CBitcoinAddress(change_address).to_scriptPubKey()
        txouts.append(CMutableTxOut(change_sats, change_script))

    tx = CMutableTransaction(txins, txouts)

    # P2WPKH scriptCode is the P2PKH script of the key hash
    script_code = CScript([OP_DUP, OP_HASH160, pubkey_hash, OP_EQUALVERIFY, OP_CHECKSIG])
    for i, u in enumerate(utxos):
        sighash = SignatureHash(
            script_code, tx, i, SIGHASH_ALL, amount=int(u.get("value", 0)), sigversion=1
        )
        sig = privkey.sign(sighash) + bytes([SIGHASH_ALL])
        tx.wit.vtxinwit[i] = CScriptWitness([sig, pubkey])

    return b2x(tx.serialize())


class BtcClient:
    """Bitcoin keypairs plus mempool.space account, fee and transaction calls."""

    def __init__(self, cfg: BtcConfig, session: requests.Session | None = None) -> None:
        self.cfg = cfg
        self.session = session or requests.Session()
        self.keypair_service = BtcKeypairService(cfg.network)

    # ---- keypairs ----

    def generate_private_key(self) -> BtcKeypair:
        return self.keypair_service.keypair_from_random()

    def generate_mnemonic(self) -> BtcKeypair:
        return self.keypair_service.keypair_from_random_mnemonic()

    def private_key_from_mnemonic(self, mnemonic: str, index: int = 0) -> BtcKeypair:
        return self.keypair_service.keypair_from_mnemonic(mnemonic, index)

    def public_from_private(self, private_key: str) -> BtcKeypair:
        return self.keypair_service.keypair_from_private_key(private_key)

    def address_from_private(self, private_key: str) -> BtcKeypair:
        return self.keypair_service.keypair_from_private_key(private_key)

    def address_from_wif(self, wif: str) -> BtcKeypair:
        return self.keypair_service.keypair_from_wif(wif)

    def generate_email_keypair(self, email: str, password: str, index: int = 0) -> BtcKeypair:
        return self.keypair_service.keypair_from_email_password(email, password, index)

    def get_signature(self, message: str, private_key: str) -> str:
        return self.keypair_service.sign_message_with_private_key(private_key, message)

    def get_signature_from_wif(self, message: str, wif: str) -> str:
        return self.keypair_service.sign_message(wif, message)

    # ---- mempool.space ----

    def _url(self, path: str) -> str:
        return f"{self.cfg.api_base_url.rstrip('/')}{path}"

    def _get(self, path: str) -> requests.Response:
        url = self._url(path)
        logger.debug("GET %s", url)
        try:
            resp = self.session.get(url, timeout=self.cfg.timeout)
        except requests.RequestException as exc:
            raise RemoteRequestError(f"GET {url} failed: {exc}") from exc
        if not resp.ok:
            error_msg = resp.text or f"HTTP {resp.status_code}"
            raise RemoteRequestError(
                f"GET {url} returned {resp.status_code}: {error_msg}",
                status_code=resp.status_code,
            )
        return resp

    def get_address_info(self, address: str, in_satoshis: bool = True) -> AccountInfo:
        data = self._get(f"/address/{address}").json()
        stats = data.get("chain_stats", {}) or {}
        received = int(stats.get("funded_txo_sum", 0))
        sent = int(stats.get("spent_txo_sum", 0))
        tx_count = int(stats.get("tx_count", 0))
        if in_satoshis:
            return AccountInfo(received, sent, received - sent, tx_count)
        return AccountInfo(
            total_received=Decimal(received) / SATS_PER_BTC,
            total_sent=Decimal(sent) / SATS_PER_BTC,
            balance=Decimal(received - sent) / SATS_PER_BTC,
            tx_count=tx_count,
        )

    def get_transactions(
        self, address: str, limit: int = 50, before: str | None = None
    ) -> list[dict[str, Any]]:
        """
        Transactions for an address, newest first.

        before: a txid; only confirmed transactions older than it are returned.
        """
        path = f"/address/{address}/txs"
        if before:
            path = f"{path}/chain/{before}"
        data = self._get(path).json()
        if not isinstance(data, list):
            return []
        return data[:limit]

    def get_fee_rates(self) -> FeeRates | None:
        """Recommended fee rates, or None when mempool.space is unavailable."""
        try:
            data = self._get("/v1/fees/recommended").json()
        except (RemoteRequestError, ValueError) as exc:
            logger.warning("Could not fetch fee rates: %s", exc)
            return None
        return FeeRates.from_api(data)

    def get_utxos(self, address: str) -> list[dict[str, Any]]:
        data = self._get(f"/address/{address}/utxo").json()
        return data if isinstance(data, list) else []

    def get_raw_transaction(self, txid: str) -> bytes:
        return self._get(f"/tx/{txid}/raw").content

    def _resolve_fee_rate(self, fee_rate: int) -> int:
        if fee_rate:
            return fee_rate
        if self.cfg.fee_rate_sat_per_byte:
            return self.cfg.fee_rate_sat_per_byte
        # mempool.space testnet estimates are unreliable
        if self.cfg.network.is_testnet:
            return DEFAULT_FEE_RATE_TESTNET
        rates = self.get_fee_rates()
        if rates and rates.economy_fee > 0:
            return rates.economy_fee
        return DEFAULT_FEE_RATE_MAINNET

    def create_transaction(
        self,
        sender_wif: str,
        recipient_address: str,
        amount: Decimal | float | int | str,
        fee_rate: int = 0,
    ) -> TxResponse:
        """
        Build and sign a transaction spending every UTXO of the sender's
        native segwit address, with change back to that address.
        """
        if self.cfg.dry_run:
            return TxResponse(success=True, result=DRY_RUN_TX_HEX)

        try:
            amount_sats = btc_to_sats(amount)
            if amount_sats <= 0:
                raise ValidationError("Amount must be greater than zero.")

            sender = self.keypair_service.keypair_from_wif(sender_wif)
            utxos = self.get_utxos(sender.address)
            if not utxos:
                return self._create_failure("No UTXOs found for the given address.")

            rate = self._resolve_fee_rate(fee_rate)
            fee_sats = estimate_tx_size(len(utxos)) * rate
            logger.debug(
                "Building tx from %s: %d inputs, %d sats, fee %d sats",
                sender.address,
                len(utxos),
                amount_sats,
                fee_sats,
            )

            raw_hex = _build_native_segwit_tx(
                wif=sender_wif,
                utxos=utxos,
                to_address=recipient_address,
                amount_sats=amount_sats,
                fee_sats=fee_sats,
                change_address=sender.address,
                network=self.cfg.network,
            )
        except VfxError as exc:
            return self._create_failure(str(exc))

        return TxResponse(success=True, result=raw_hex)

    @staticmethod
    def _create_failure(error: str) -> TxResponse:
        logger.warning("Could not create transaction: %s", error)
        return TxResponse(success=False, result=None, error=error)

    def broadcast_transaction(self, transaction_hex: str) -> TxResponse:
        if self.cfg.dry_run:
            return TxResponse(success=True, result=DRY_RUN_TXID)

        url = self._url("/tx")
        try:
            resp = self.session.post(
                url,
                data=transaction_hex,
                headers={"Content-Type": "text/plain"},
                timeout=self.cfg.timeout,
            )
        except requests.RequestException as exc:
            return TxResponse(success=False, result=None, error=f"Error: {exc}")

        if not resp.ok:
            return TxResponse(success=False, result=None, error=f"Error: {resp.text}")
        # mempool.space returns the txid as plain text.
        return TxResponse(success=True, result=resp.text.strip())

    def send_btc(
        self,
        sender_wif: str,
        recipient_address: str,
        amount: Decimal | float | int | str,
        fee_rate: int = 0,
    ) -> str | None:
        """Create and broadcast; returns the txid, or None on failure."""
        created = self.create_transaction(sender_wif, recipient_address, amount, fee_rate)
        if not created.success or not created.result:
            logger.error("Failed to create transaction: %s", created.error)
            return None

        broadcast = self.broadcast_transaction(created.result)
        if not broadcast.success or not broadcast.result:
            logger.error("Failed to broadcast transaction: %s", broadcast.error)
            return None

        return broadcast.result
