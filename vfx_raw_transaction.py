"""
Ledger transaction construction: the ordered raw-transaction handshake.

A submission walks these steps, strictly in order, against the ledger API:

    validate -> timestamp -> nonce -> draft -> fee -> hash -> sign
             -> validate-signature -> verify -> (dry run stops here) -> send

Inputs are checked locally before the first request, so a malformed key,
recipient or amount never reaches the ledger. Every call to
``RawTransactionService.process`` builds a fresh draft and re-fetches the
timestamp and nonce. The outcome is a ``TxResult`` tagged with the step that
failed, never an exception.
"""

from __future__ import annotations

import logging
import threading
import weakref
from contextlib import contextmanager
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Iterator, Union

from vfx_api import RawTransactionApiClient
from vfx_config import ADNR_BASE_ADDRESS, TxType, VfxConfig
from vfx_encoding import is_valid_address, private_key_to_bytes
from vfx_errors import ProtocolError, RemoteRequestError, UnknownError, ValidationError, VfxError
from vfx_keypair import Keypair, KeypairService

logger = logging.getLogger(__name__)

# Ledger contract recipients that are not wallet addresses
SYSTEM_ADDRESSES = frozenset({ADNR_BASE_ADDRESS})


class PipelineStep(str, Enum):
    VALIDATE = "validate"
    TIMESTAMP = "timestamp"
    NONCE = "nonce"
    DRAFT = "draft"
    FEE = "fee"
    HASH = "hash"
    SIGN = "sign"
    VALIDATE_SIGNATURE = "validate_signature"
    VERIFY = "verify"
    SEND = "send"


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    REMOTE = "remote"
    PROTOCOL = "protocol"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class TxSuccess:
    hash: str
    dry_run: bool = False

    def __bool__(self) -> bool:
        return True


@dataclass(frozen=True)
class TxFailure:
    step: PipelineStep
    kind: ErrorKind
    detail: str

    @property
    def hash(self) -> None:
        return None

    def __bool__(self) -> bool:
        return False


TxResult = Union[TxSuccess, TxFailure]


def _error_kind(exc: Exception) -> ErrorKind:
    if isinstance(exc, ValidationError):
        return ErrorKind.VALIDATION
    if isinstance(exc, RemoteRequestError):
        return ErrorKind.REMOTE
    if isinstance(exc, ProtocolError):
        return ErrorKind.PROTOCOL
    return ErrorKind.UNKNOWN


def _as_vfx_error(exc: Exception) -> VfxError:
    if isinstance(exc, VfxError):
        return exc
    return UnknownError(f"{type(exc).__name__}: {exc}")


def _to_wire(value: Any) -> Any:
    """Decimals become JSON numbers; containers are converted recursively."""
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, dict):
        return {k: _to_wire(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_wire(v) for v in value]
    return value


# ---------------------------------------------------------------------------
# Draft
# ---------------------------------------------------------------------------


@dataclass
class TransactionDraft:
    """The transaction as it travels between handshake steps."""

    to_address: str
    from_address: str
    transaction_type: TxType
    amount: Decimal
    nonce: int
    timestamp: int
    data: Any = None
    fee: Decimal = field(default_factory=lambda: Decimal("0"))
    hash: str = ""
    signature: str = ""
    height: int = 0
    unlock_time: int | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "Hash": self.hash,
            "ToAddress": self.to_address,
            "FromAddress": self.from_address,
            "TransactionType": int(self.transaction_type),
            "Amount": _to_wire(self.amount),
            "Nonce": self.nonce,
            "Fee": _to_wire(self.fee),
            "Timestamp": self.timestamp,
            "Signature": self.signature,
            "Height": self.height,
            "Data": _to_wire(self.data),
            "UnlockTime": self.unlock_time,
        }


# ---------------------------------------------------------------------------
# Per-address serialisation
# ---------------------------------------------------------------------------


class AddressLocks:
    """
    One lock per sender address, so concurrent submissions cannot share a nonce.

    Locks are held weakly: an address's lock is dropped once no caller holds
    or references it.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, threading.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._guard = threading.Lock()

    def get(self, address: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(address)
            if lock is None:
                lock = self._locks[address] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, address: str) -> Iterator[None]:
        with self.get(address):
            yield


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class RawTransactionService:
    def __init__(
        self,
        cfg: VfxConfig,
        api: RawTransactionApiClient | None = None,
        keypair_service: KeypairService | None = None,
    ) -> None:
        self.cfg = cfg
        self.api = api or RawTransactionApiClient(cfg)
        self.keypair_service = keypair_service or KeypairService(cfg.network)

    def process(
        self,
        keypair: Keypair,
        to_address: str,
        amount: Decimal | float | int = 0,
        tx_type: TxType = TxType.RBX_TRANSFER,
        data: Any = None,
        dry_run: bool | None = None,
    ) -> TxResult:
        """
        Build, sign, validate and (unless dry_run) broadcast one transaction.

        dry_run: stop after server-side verification and return the hash.
                 If None, uses cfg.dry_run.
        """
        if dry_run is None:
            dry_run = self.cfg.dry_run
        from_address = keypair.address

        step = PipelineStep.VALIDATE
        try:
            amount_dec = self._validate(keypair, to_address, amount)

            step = PipelineStep.TIMESTAMP
            timestamp = self.api.get_timestamp()
            logger.debug("Timestamp %s for %s", timestamp, from_address)

            step = PipelineStep.NONCE
            nonce = self.api.get_nonce(from_address)
            logger.debug("Nonce %s for %s", nonce, from_address)

            step = PipelineStep.DRAFT
            draft = TransactionDraft(
                to_address=to_address,
                from_address=from_address,
                transaction_type=TxType(tx_type),
                amount=amount_dec,
                nonce=nonce,
                timestamp=timestamp,
                data=data,
            )

            step = PipelineStep.FEE
            draft.fee = self.api.get_fee(draft.to_payload())
            logger.debug("Fee %s", draft.fee)

            step = PipelineStep.HASH
            draft.hash = self.api.get_hash(draft.to_payload())
            logger.debug("Hash %s", draft.hash)

            step = PipelineStep.SIGN
            signature = self.keypair_service.get_signature(draft.hash, keypair.private_key)

            step = PipelineStep.VALIDATE_SIGNATURE
            if not self.api.validate_signature(draft.hash, from_address, signature):
                raise ProtocolError("Invalid Signature")
            draft.signature = signature

            step = PipelineStep.VERIFY
            if not self.api.verify_transaction(draft.to_payload()):
                raise ProtocolError("Invalid Transaction")

            if dry_run:
                logger.info("Dry run: transaction %s verified, not sent", draft.hash)
                return TxSuccess(hash=draft.hash, dry_run=True)

            step = PipelineStep.SEND
            if not self.api.send_transaction(draft.to_payload()):
                raise ProtocolError("Transaction failed to send")
        except Exception as exc:  # noqa: BLE001
            error = _as_vfx_error(exc)
            failure = TxFailure(step=step, kind=_error_kind(error), detail=str(error))
            logger.warning(
                "Transaction from %s failed at %s (%s): %s",
                from_address,
                step.value,
                failure.kind.value,
                failure.detail,
                extra={"step": step.value, "kind": failure.kind.value},
            )
            return failure

        logger.info("Transaction %s sent from %s", draft.hash, from_address)
        return TxSuccess(hash=draft.hash)

    def _validate(
        self, keypair: Keypair, to_address: str, amount: Decimal | float | int
    ) -> Decimal:
        """Local checks that must pass before the ledger is contacted."""
        try:
            private_key_to_bytes(keypair.private_key)
        except ValidationError as exc:
            # The parser echoes its input; keep the key out of logs
            raise ValidationError("Invalid private key.") from exc

        testnet = self.cfg.network.is_testnet
        if to_address not in SYSTEM_ADDRESSES and not is_valid_address(to_address, testnet):
            raise ValidationError(f"Invalid destination address {to_address!r}.")

        try:
            amount_dec = Decimal(str(amount))
        except InvalidOperation as exc:
            raise ValidationError(f"Invalid amount {amount!r}.") from exc
        if not amount_dec.is_finite() or amount_dec < 0:
            raise ValidationError(f"Amount must be a non-negative number, got {amount}.")
        return amount_dec
