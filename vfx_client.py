"""
High-level VFX wallet client.

Wraps key management, explorer lookups and the raw-transaction pipeline
behind one object per network. Submissions from the same sender address are
serialised so each one sees a fresh nonce.
"""

from __future__ import annotations

import logging
import re
import time
from decimal import Decimal
from typing import Any

from btc_wallet import BtcClient, BtcConfig
from vfx_api import AddressApiClient, AdnrApiClient, TransactionApiClient, VfxAddress
from vfx_config import ADNR_BASE_ADDRESS, DOMAIN_PURCHASE_COST, TxType, VfxConfig
from vfx_errors import ValidationError
from vfx_keypair import Keypair, KeypairService
from vfx_raw_transaction import AddressLocks, RawTransactionService, TxResult

logger = logging.getLogger(__name__)

VFX_DOMAIN_SUFFIX = ".vfx"
BTC_DOMAIN_SUFFIX = ".btc"
_KNOWN_SUFFIXES = (".vfx", ".btc", ".rbx")

_VFX_DOMAIN_RE = re.compile(r"^[a-z0-9]+\.vfx$")
_BTC_DOMAIN_RE = re.compile(r"^[a-z0-9]+\.btc$")


# ---------------------------------------------------------------------------
# Domain helpers
# ---------------------------------------------------------------------------


def _clean_domain(domain: str, suffix: str) -> str:
    cleaned = domain.strip().lower()
    if not cleaned.endswith(suffix):
        cleaned += suffix
    return cleaned


def clean_vfx_domain(domain: str) -> str:
    """Lowercase, trim and ensure a ``.vfx`` suffix."""
    return _clean_domain(domain, VFX_DOMAIN_SUFFIX)


def clean_btc_domain(domain: str) -> str:
    return _clean_domain(domain, BTC_DOMAIN_SUFFIX)


def is_valid_vfx_domain(domain: str) -> bool:
    return bool(_VFX_DOMAIN_RE.match(domain.strip().lower()))


def is_valid_btc_domain(domain: str) -> bool:
    return bool(_BTC_DOMAIN_RE.match(domain.strip().lower()))


def domain_without_suffix(domain: str) -> str:
    if any(suffix in domain for suffix in _KNOWN_SUFFIXES):
        return domain.split(".")[0]
    return domain


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class VfxClient:
    def __init__(
        self,
        cfg: VfxConfig,
        raw_transaction_service: RawTransactionService | None = None,
        address_api: AddressApiClient | None = None,
        adnr_api: AdnrApiClient | None = None,
        transaction_api: TransactionApiClient | None = None,
        btc_client: BtcClient | None = None,
        locks: AddressLocks | None = None,
    ) -> None:
        self.cfg = cfg
        self.keypair_service = KeypairService(cfg.network)
        self.raw_transaction_service = raw_transaction_service or RawTransactionService(
            cfg, keypair_service=self.keypair_service
        )
        self.address_api = address_api or AddressApiClient(cfg)
        self.adnr_api = adnr_api or AdnrApiClient(cfg)
        self.transaction_api = transaction_api or TransactionApiClient(cfg)
        self.btc_client = btc_client or BtcClient(
            BtcConfig.for_network(cfg.network, dry_run=cfg.dry_run)
        )
        self.locks = locks or AddressLocks()

    # ---- keypairs ----

    def generate_private_key(self) -> str:
        return self.keypair_service.generate_private_key()

    def generate_mnemonic(self, words: int = 12) -> str:
        return self.keypair_service.generate_mnemonic(words)

    def private_key_from_email_password(
        self, email: str, password: str, index: int = 0
    ) -> str:
        return self.keypair_service.private_key_from_email_password(email, password, index)

    def private_key_from_mnemonic(self, mnemonic: str, index: int = 0) -> str:
        return self.keypair_service.private_key_from_mnemonic(mnemonic, index)

    def public_from_private(self, private_key: str) -> str:
        return self.keypair_service.public_from_private(private_key)

    def address_from_private(self, private_key: str) -> str:
        return self.keypair_service.address_from_private(private_key)

    def keypair_from_private_key(self, private_key: str) -> Keypair:
        return self.keypair_service.keypair_from_private_key(private_key)

    def get_signature(self, message: str, private_key: str) -> str:
        return self.keypair_service.get_signature(message, private_key)

    # ---- explorer lookups ----

    def get_address_details(self, address: str) -> VfxAddress | None:
        return self.address_api.get_address_details(address)

    def domain_available(self, domain: str) -> bool:
        return self.address_api.domain_available(domain)

    def lookup_domain(self, domain: str) -> str | None:
        return self.address_api.lookup_domain(domain)

    def lookup_btc_domain(self, domain: str) -> str | None:
        return self.adnr_api.lookup_btc_domain(domain)

    def lookup_btc_domain_from_btc_address(self, address: str) -> str | None:
        return self.adnr_api.lookup_btc_domain_from_btc_address(address)

    def list_transactions_for_address(
        self, address: str, page: int = 1, limit: int = 10
    ) -> dict[str, Any]:
        return self.transaction_api.list_transactions_for_address(address, page, limit)

    # ---- transactions ----

    def _process(
        self,
        keypair: Keypair,
        to_address: str,
        amount: Decimal | float | int,
        tx_type: TxType = TxType.RBX_TRANSFER,
        data: Any = None,
    ) -> TxResult:
        # Callers hold the sender's lock
        return self.raw_transaction_service.process(
            keypair,
            to_address,
            amount=amount,
            tx_type=tx_type,
            data=data,
            dry_run=self.cfg.dry_run,
        )

    def _submit(
        self,
        keypair: Keypair,
        to_address: str,
        amount: Decimal | float | int,
        tx_type: TxType = TxType.RBX_TRANSFER,
        data: Any = None,
    ) -> TxResult:
        with self.locks.hold(keypair.address):
            return self._process(keypair, to_address, amount, tx_type, data)

    def send_coin(
        self, keypair: Keypair, to_address: str, amount: Decimal | float | int
    ) -> TxResult:
        return self._submit(keypair, to_address, amount)

    def send_vbtc(
        self,
        keypair: Keypair,
        to_address: str,
        contract_uid: str,
        amount: Decimal | float | int,
    ) -> TxResult:
        """Transfer tokenized BTC from a vBTC contract."""
        data = [
            {
                "Function": "TransferCoin()",
                "ContractUID": contract_uid,
                "Amount": Decimal(str(amount)),
            }
        ]
        return self._submit(keypair, to_address, 0, tx_type=TxType.TOKENIZE_TX, data=data)

    def buy_vfx_domain(self, keypair: Keypair, domain: str) -> TxResult:
        """
        Register ``domain`` (a .vfx name) to the keypair's address.

        Raises ValidationError if the name is malformed, the address already
        owns a domain, or the domain is taken. The checks and the submission
        run under the sender's lock.
        """
        domain = clean_vfx_domain(domain)
        if not is_valid_vfx_domain(domain):
            raise ValidationError(f"Invalid vfx domain: {domain}")

        with self.locks.hold(keypair.address):
            details = self.address_api.get_address_details(keypair.address)
            if details is not None and details.adnr is not None:
                raise ValidationError(f"Address already has a domain: {details.adnr}")

            if not self.address_api.domain_available(domain):
                raise ValidationError(f"Domain already exists: {domain}")

            data = {"Function": "AdnrCreate()", "Name": domain_without_suffix(domain)}
            logger.info("Buying domain %s for %s", domain, keypair.address)
            return self._process(
                keypair, ADNR_BASE_ADDRESS, DOMAIN_PURCHASE_COST, tx_type=TxType.ADNR, data=data
            )

    def buy_btc_domain(self, keypair: Keypair, domain: str, btc_private_key: str) -> TxResult:
        """
        Register ``domain`` (a .btc name) bound to the BTC address of
        ``btc_private_key``. One VFX address may own several .btc domains.
        """
        domain = clean_btc_domain(domain)
        if not is_valid_btc_domain(domain):
            raise ValidationError(f"Invalid btc domain: {domain}")

        with self.locks.hold(keypair.address):
            if not self.address_api.domain_available(domain):
                raise ValidationError(f"Domain already exists: {domain}")

            message = str(int(time.time()))
            signature = self.btc_client.get_signature(message, btc_private_key)
            btc_account = self.btc_client.address_from_private(btc_private_key)

            data = {
                "Function": "BTCAdnrCreate()",
                "Name": domain_without_suffix(domain),
                "BTCAddress": btc_account.address,
                "Message": message,
                "Signature": signature,
            }
            logger.info("Buying domain %s for %s", domain, btc_account.address)
            return self._process(
                keypair, ADNR_BASE_ADDRESS, DOMAIN_PURCHASE_COST, tx_type=TxType.ADNR, data=data
            )
