"""
Byte, hash and Base58 primitives shared by the VFX and BTC modules.

Implements:
- hex <-> bytes conversion with input-format errors
- SHA-256, double SHA-256, RIPEMD-160 and hash160
- Base58 / Base58Check encoding (Bitcoin alphabet)
- private key range checks and legacy 33-byte key normalisation
- VFX address shape checks
"""

from __future__ import annotations

import hashlib
import re

from bip_utils import Base58Decoder, Base58Encoder
from Crypto.Hash import RIPEMD160

from vfx_errors import ValidationError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

PRIVATE_KEY_BYTES = 32
CHECKSUM_BYTES = 4
ADDRESS_LENGTH = 34

# First character of a Base58Check-encoded address for each version byte
ADDRESS_PREFIX_MAINNET = "R"
ADDRESS_PREFIX_TESTNET = "x"

_ALNUM_RE = re.compile(r"^[a-zA-Z0-9]+$")


# ---------------------------------------------------------------------------
# Hex helpers
# ---------------------------------------------------------------------------


def hex_to_bytes(value: str) -> bytes:
    """Decode a hex string (an optional 0x prefix is allowed)."""
    if not isinstance(value, str):
        raise ValidationError(f"Expected a hex string, got {type(value).__name__}.")
    cleaned = value.strip()
    if cleaned[:2].lower() == "0x":
        cleaned = cleaned[2:]
    if len(cleaned) % 2 != 0:
        raise ValidationError("Must have an even number of hex digits to convert to bytes.")
    try:
        return bytes.fromhex(cleaned)
    except ValueError as exc:
        raise ValidationError(f"Invalid hex string: {value!r}") from exc


def bytes_to_hex(data: bytes) -> str:
    return data.hex()


# ---------------------------------------------------------------------------
# Hashes
# ---------------------------------------------------------------------------


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def double_sha256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def ripemd160(data: bytes) -> bytes:
    # pycryptodome ships RIPEMD-160 even where OpenSSL 3 has dropped it.
    return RIPEMD160.new(data).digest()


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    return ripemd160(sha256(data))


def checksum(payload: bytes) -> bytes:
    """First four bytes of the double SHA-256 of *payload*."""
    return double_sha256(payload)[:CHECKSUM_BYTES]


# ---------------------------------------------------------------------------
# Base58
# ---------------------------------------------------------------------------


def base58_encode(data: bytes) -> str:
    return Base58Encoder.Encode(data)


def base58_decode(value: str) -> bytes:
    try:
        return Base58Decoder.Decode(value)
    except (ValueError, TypeError) as exc:
        raise ValidationError(f"Invalid Base58 string: {value!r}") from exc


def base58check_encode(version: int, payload: bytes) -> str:
    """
    Encode ``version ++ payload ++ checksum`` in Base58.

    The checksum covers the version byte and the payload.
    """
    versioned = bytes([version]) + payload
    return base58_encode(versioned + checksum(versioned))


def base58check_decode(value: str) -> tuple[int, bytes]:
    """Decode a Base58Check string into (version, payload), verifying the checksum."""
    raw = base58_decode(value)
    if len(raw) < 1 + CHECKSUM_BYTES:
        raise ValidationError(f"Base58Check string too short: {value!r}")
    versioned, check = raw[:-CHECKSUM_BYTES], raw[-CHECKSUM_BYTES:]
    if checksum(versioned) != check:
        raise ValidationError(f"Base58Check checksum mismatch: {value!r}")
    return versioned[0], versioned[1:]


# ---------------------------------------------------------------------------
# Private keys
# ---------------------------------------------------------------------------


def normalize_private_key(private_key_hex: str) -> str:
    """
    Strip the leading ``00`` from a 33-byte (66 hex chars) private key.

    Keys exported for the ledger CLI carry the extra zero byte so they parse
    as a positive BigInteger.
    """
    key = private_key_hex.strip().lower()
    if key.startswith("0x"):
        key = key[2:]
    if len(key) == 66 and key.startswith("00"):
        return key[2:]
    return key


def is_valid_private_key_bytes(key: bytes) -> bool:
    if len(key) != PRIVATE_KEY_BYTES:
        return False
    scalar = int.from_bytes(key, "big")
    return 0 < scalar < SECP256K1_ORDER


def is_valid_private_key(private_key_hex: str) -> bool:
    """True when the hex key (32 bytes, optionally 00-padded) is in [1, n-1]."""
    try:
        key = hex_to_bytes(normalize_private_key(private_key_hex))
    except ValidationError:
        return False
    return is_valid_private_key_bytes(key)


def private_key_to_bytes(private_key_hex: str) -> bytes:
    """Parse and range-check a hex private key."""
    key = hex_to_bytes(normalize_private_key(private_key_hex))
    if len(key) != PRIVATE_KEY_BYTES:
        raise ValidationError(
            f"Private key must be {PRIVATE_KEY_BYTES} bytes, got {len(key)}."
        )
    if not is_valid_private_key_bytes(key):
        raise ValidationError("Private key is outside the secp256k1 range.")
    return key


# ---------------------------------------------------------------------------
# Addresses
# ---------------------------------------------------------------------------


def address_prefix(testnet: bool) -> str:
    return ADDRESS_PREFIX_TESTNET if testnet else ADDRESS_PREFIX_MAINNET


def is_valid_address(address: str | None, testnet: bool) -> bool:
    """
    Shape check for a VFX address: 34 alphanumeric chars with the network marker.

    This does not verify the checksum; see ``is_valid_address_checksum``.
    """
    if not address:
        return False
    if len(address) != ADDRESS_LENGTH:
        return False
    if address[0] != address_prefix(testnet):
        return False
    return bool(_ALNUM_RE.match(address))


def is_valid_address_checksum(address: str, version: int) -> bool:
    try:
        decoded_version, payload = base58check_decode(address)
    except ValidationError:
        return False
    return decoded_version == version and len(payload) == 20
