"""
HTTP clients for the VFX ledger API.

Implements:
- a shared request helper (JSON / text / boolean responses, timeouts,
  transport errors mapped to RemoteRequestError)
- the /raw transaction-construction endpoints used by RawTransactionService
- read-only address, ADNR domain and transaction-history lookups
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import requests

from vfx_config import VfxConfig
from vfx_errors import ProtocolError, RemoteRequestError, ValidationError

logger = logging.getLogger(__name__)

RESULT_SUCCESS = "Success"


@dataclass
class VfxAddress:
    """Account summary returned by GET /addresses/{address}."""

    address: str
    balance: Decimal
    balance_total: Decimal
    balance_locked: Decimal
    adnr: str | None
    activated: bool

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> VfxAddress:
        return cls(
            address=data.get("address", ""),
            balance=Decimal(str(data.get("balance", 0))),
            balance_total=Decimal(str(data.get("balance_total", 0))),
            balance_locked=Decimal(str(data.get("balance_locked", 0))),
            adnr=data.get("adnr"),
            activated=bool(data.get("activated", False)),
        )


# ---------------------------------------------------------------------------
# Base client
# ---------------------------------------------------------------------------


class BaseApiClient:
    """Issues requests against ``{api_base_url}{base_path}{path}``."""

    base_path = "/"

    def __init__(self, cfg: VfxConfig, session: requests.Session | None = None) -> None:
        self.cfg = cfg
        self.session = session or requests.Session()

    def _url(self, path: str) -> str:
        return f"{self.cfg.api_base_url.rstrip('/')}{self.base_path}{path}"

    def _request(
        self,
        path: str,
        method: str = "GET",
        params: dict[str, Any] | None = None,
    ) -> requests.Response:
        url = self._url(path)
        kwargs: dict[str, Any] = {"timeout": self.cfg.timeout}
        if method == "GET":
            kwargs["params"] = params or {}
        else:
            kwargs["json"] = params or {}

        logger.debug("%s %s", method, url)
        try:
            resp = self.session.request(method, url, **kwargs)
        except requests.RequestException as exc:
            raise RemoteRequestError(f"{method} {url} failed: {exc}") from exc

        if not resp.ok:
            error_msg = resp.text or f"HTTP {resp.status_code}"
            raise RemoteRequestError(
                f"{method} {url} returned {resp.status_code}: {error_msg}",
                status_code=resp.status_code,
            )
        return resp

    def make_json_request(
        self,
        path: str,
        method: str = "GET",
        params: dict[str, Any] | None = None,
    ) -> Any:
        resp = self._request(path, method, params)
        try:
            return resp.json(parse_float=Decimal)
        except ValueError as exc:
            raise ProtocolError(
                f"Expected JSON from {path}, got: {resp.text[:200]!r}"
            ) from exc

    def make_text_request(
        self,
        path: str,
        method: str = "GET",
        params: dict[str, Any] | None = None,
    ) -> str:
        return self._request(path, method, params).text

    def make_bool_request(
        self,
        path: str,
        method: str = "GET",
        params: dict[str, Any] | None = None,
    ) -> bool:
        return self.make_text_request(path, method, params).strip() == "true"


# ---------------------------------------------------------------------------
# Raw transaction endpoints
# ---------------------------------------------------------------------------


def _parse_int(text: str, what: str) -> int:
    try:
        return int(text.strip().strip('"'))
    except ValueError as exc:
        raise ProtocolError(f"Unexpected {what} response: {text!r}") from exc


class RawTransactionApiClient(BaseApiClient):
    """The seven calls of the transaction-construction handshake."""

    base_path = "/raw"

    def get_timestamp(self) -> int:
        return _parse_int(self.make_text_request("/timestamp/", "POST"), "timestamp")

    def get_nonce(self, address: str) -> int:
        return _parse_int(self.make_text_request(f"/nonce/{address}/", "POST"), "nonce")

    def get_fee(self, tx_data: dict[str, Any]) -> Decimal:
        response = self.make_json_request("/fee/", "POST", {"transaction": tx_data})
        if _is_success(response) and response.get("Fee") is not None:
            return Decimal(str(response["Fee"]))
        raise ProtocolError(f"Unexpected get_fee() result: {response!r}")

    def get_hash(self, tx_data: dict[str, Any]) -> str:
        response = self.make_json_request("/hash/", "POST", {"transaction": tx_data})
        if _is_success(response) and response.get("Hash"):
            return str(response["Hash"])
        raise ProtocolError(f"Unexpected get_hash() result: {response!r}")

    def validate_signature(self, message: str, address: str, signature: str) -> bool:
        # The ledger expects the signature verbatim in the path.
        return self.make_bool_request(
            f"/validate-signature/{message}/{address}/{signature}/", "POST"
        )

    def verify_transaction(self, tx_data: dict[str, Any]) -> bool:
        response = self.make_json_request("/verify/", "POST", {"transaction": tx_data})
        return _is_success(response)

    def send_transaction(self, tx_data: dict[str, Any]) -> bool:
        response = self.make_json_request("/send/", "POST", {"transaction": tx_data})
        return _is_success(response)


def _is_success(response: Any) -> bool:
    return isinstance(response, dict) and response.get("Result") == RESULT_SUCCESS


# ---------------------------------------------------------------------------
# Read-only lookups
# ---------------------------------------------------------------------------


def _is_not_found(exc: RemoteRequestError) -> bool:
    return exc.status_code == 404


class AddressApiClient(BaseApiClient):
    base_path = "/addresses"

    def get_address_details(self, address: str) -> VfxAddress | None:
        """Account summary, or None when the explorer does not know the address."""
        try:
            result = self.make_json_request(f"/{address}")
        except RemoteRequestError as exc:
            if _is_not_found(exc):
                return None
            raise
        if not result:
            return None
        return VfxAddress.from_api(result)

    def domain_available(self, domain: str) -> bool:
        """A domain is available when the lookup 404s."""
        try:
            self.make_json_request(f"/adnr/{domain}/")
        except RemoteRequestError as exc:
            if _is_not_found(exc):
                return True
            raise
        return False

    def lookup_domain(self, domain: str) -> str | None:
        """Resolve a .vfx domain to its owning address."""
        try:
            result = self.make_json_request(f"/adnr/{domain}/")
        except RemoteRequestError as exc:
            if _is_not_found(exc):
                return None
            raise
        if isinstance(result, dict):
            return result.get("address") or None
        return None


class AdnrApiClient(BaseApiClient):
    base_path = "/adnr"

    def lookup_btc_domain(self, domain: str) -> str | None:
        """Resolve a .btc domain to its BTC address."""
        try:
            result = self.make_json_request(f"/{domain}/")
        except RemoteRequestError as exc:
            if _is_not_found(exc):
                return None
            raise
        if isinstance(result, dict):
            return result.get("btc_address") or None
        return None

    def lookup_btc_domain_from_btc_address(self, btc_address: str) -> str | None:
        """Reverse lookup: the .btc domain bound to a BTC address."""
        try:
            result = self.make_json_request(f"/btc-address/{btc_address}/")
        except RemoteRequestError as exc:
            if _is_not_found(exc):
                return None
            raise
        if isinstance(result, dict):
            return result.get("domain") or None
        return None


class TransactionApiClient(BaseApiClient):
    base_path = "/transaction"

    def list_transactions_for_address(
        self, address: str, page: int = 1, limit: int = 10
    ) -> dict[str, Any]:
        """Paginated transaction history for an address."""
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive.")
        return self.make_json_request(
            f"/address/{address}/", "GET", {"page": page, "limit": limit}
        )
