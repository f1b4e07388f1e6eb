"""
Error taxonomy for the VFX wallet SDK.

Key derivation and encoding raise these directly so callers can tell a bad
input from a network failure. The raw transaction pipeline catches them and
folds them into a step-tagged failure result instead.
"""

from __future__ import annotations


class VfxError(Exception):
    """Base class for every error raised by the SDK."""

    pass


class ValidationError(VfxError):
    """Malformed address, domain, private key or other input, caught before any network call."""

    pass


class RemoteRequestError(VfxError):
    """Transport failure or non-success HTTP status from a remote API."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProtocolError(VfxError):
    """The ledger rejected a signature or transaction, or answered out of contract."""

    pass


class UnknownError(VfxError):
    """Anything that does not fit the categories above."""

    pass


class KeyGenerationError(VfxError):
    """Random key generation exhausted its attempt budget."""

    pass


class VfxConfigError(VfxError):
    """Configuration error (bad network name, URL or timeout in the environment)."""

    pass
