"""
VFX ledger identities: key derivation, addresses and signatures.

Implements:
- random private keys (rejection sampled against the secp256k1 order)
- BIP-39 mnemonics and BIP-32 derivation at m/0'/0'/{index}'
- the email + password key derivation shared with the BTC wallet
- public keys (uncompressed SEC1) and Base58Check ledger addresses
- the composite "{base64 DER}.{base58 pubkey}" signature the ledger validates
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import re
import secrets
from dataclasses import dataclass

import coincurve
from bip_utils import (
    Bip32Slip10Secp256k1,
    Bip39MnemonicGenerator,
    Bip39MnemonicValidator,
    Bip39SeedGenerator,
    Bip39WordsNum,
)

from vfx_config import Network
from vfx_encoding import (
    PRIVATE_KEY_BYTES,
    base58_decode,
    base58_encode,
    base58check_encode,
    hash160,
    is_valid_private_key_bytes,
    private_key_to_bytes,
    sha256,
)
from vfx_errors import KeyGenerationError, ValidationError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

VFX_DERIVATION_PATH = "m/0'/0'"

# Rejection probability per draw is about 2**-128; the bound only exists so
# the loop cannot spin forever on a broken entropy source.
MAX_KEYGEN_ATTEMPTS = 1_000_000

# The email/password stretch runs i = 0..50 inclusive.
EMAIL_PASSWORD_HASH_ROUNDS = 51

_MNEMONIC_WORDS = {
    12: Bip39WordsNum.WORDS_NUM_12,
    24: Bip39WordsNum.WORDS_NUM_24,
}

UNCOMPRESSED_PREFIX = b"\x04"


@dataclass(frozen=True)
class Keypair:
    """A ledger identity. All fields are hex / Base58 strings."""

    private_key: str
    public_key: str
    address: str

    def to_dict(self) -> dict[str, str]:
        return {
            "privateKey": self.private_key,
            "publicKey": self.public_key,
            "address": self.address,
        }

    def __repr__(self) -> str:
        # Keep private keys out of logs and tracebacks
        return f"Keypair(address={self.address!r})"


# ---------------------------------------------------------------------------
# Email / password derivation
# ---------------------------------------------------------------------------


def _run_count(pattern: str, text: str) -> int:
    """Number of maximal runs matching *pattern*, or 1 if there are none."""
    return len(re.findall(pattern, text)) or 1


def email_password_seed_string(email: str, password: str) -> str:
    """
    Build the pre-hash seed string for an email/password wallet.

    Every wallet that supports email/password login derives from this exact
    string, so the layout must not change.
    """
    email = email.lower()
    seed = f"{email}|{password}|"
    seed = f"{seed}{len(seed)}|!@{((len(password) * 7) + len(email)) * 7}"

    classes = (
        _run_count(r"[a-z]+", password)
        + _run_count(r"[A-Z]+", password)
        + _run_count(r"[0-9]+", password)
    )
    seed = f"{seed}{classes * len(password)}3571"
    return seed + seed


def email_password_seed(email: str, password: str) -> bytes:
    """Stretch the seed string with chained SHA-256 and return the 32-byte BIP-32 seed."""
    if not email or not password:
        raise ValidationError("Email and password are both required.")

    seed = email_password_seed_string(email, password)
    for _ in range(EMAIL_PASSWORD_HASH_ROUNDS):
        seed = hashlib.sha256(seed.encode("utf-8")).hexdigest()
    return bytes.fromhex(seed)


def derive_private_key_from_seed(seed: bytes, path: str) -> bytes:
    """BIP-32 derivation of *path* from a raw seed."""
    ctx = Bip32Slip10Secp256k1.FromSeed(seed).DerivePath(path)
    return ctx.PrivateKey().Raw().ToBytes()


def mnemonic_to_seed(mnemonic: str, passphrase: str = "") -> bytes:
    mnemonic = " ".join(mnemonic.split())
    if not Bip39MnemonicValidator().IsValid(mnemonic):
        raise ValidationError(
            "Mnemonic is not a valid BIP-39 seed phrase. Double-check words and spacing."
        )
    return bytes(Bip39SeedGenerator(mnemonic).Generate(passphrase))


def validate_index(index: int) -> None:
    """Reject anything that is not a non-hardened BIP-32 child index."""
    if not isinstance(index, int) or isinstance(index, bool) or not 0 <= index < 0x80000000:
        raise ValidationError(f"Derivation index must be in [0, 2**31), got {index!r}.")


# ---------------------------------------------------------------------------
# Keypair service
# ---------------------------------------------------------------------------


class KeypairService:
    """
    Derive and use ledger identities for one network.

    The network only affects the address version byte; private and public
    keys are network independent.
    """

    def __init__(self, network: Network | str = Network.MAINNET) -> None:
        self.network = Network.parse(network)

    # ---- private keys ----

    def generate_private_key(self, padded: bool = False) -> str:
        """
        Draw a uniformly random valid private key.

        padded: prepend "00" (33-byte form expected by the ledger CLI).
        """
        for _ in range(MAX_KEYGEN_ATTEMPTS):
            candidate = secrets.token_bytes(PRIVATE_KEY_BYTES)
            if is_valid_private_key_bytes(candidate):
                key_hex = candidate.hex()
                return f"00{key_hex}" if padded else key_hex
        raise KeyGenerationError(
            f"No valid private key after {MAX_KEYGEN_ATTEMPTS} attempts; "
            "the entropy source is likely broken."
        )

    def generate_mnemonic(self, words: int = 12) -> str:
        if words not in _MNEMONIC_WORDS:
            raise ValidationError(f"Mnemonic must have 12 or 24 words, got {words}.")
        return Bip39MnemonicGenerator().FromWordsNumber(_MNEMONIC_WORDS[words]).ToStr()

    def private_key_from_mnemonic(self, mnemonic: str, index: int = 0) -> str:
        validate_index(index)
        seed = mnemonic_to_seed(mnemonic)
        key = derive_private_key_from_seed(seed, f"{VFX_DERIVATION_PATH}/{index}'")
        return key.hex()

    def private_key_from_email_password(
        self, email: str, password: str, index: int = 0
    ) -> str:
        """
        Derive a key from an email and password (non-standard, unsalted KDF).

        Kept bit-for-bit compatible with the existing web and mobile wallets;
        changing any step changes every derived address.
        """
        validate_index(index)
        seed = email_password_seed(email, password)
        key = derive_private_key_from_seed(seed, f"{VFX_DERIVATION_PATH}/{index}'")
        return key.hex()

    # ---- public keys and addresses ----

    def public_key_bytes(self, private_key: str) -> bytes:
        """Uncompressed 65-byte public key (0x04 || X || Y)."""
        key = private_key_to_bytes(private_key)
        return coincurve.PrivateKey(key).public_key.format(compressed=False)

    def public_from_private(self, private_key: str) -> str:
        return self.public_key_bytes(private_key).hex()

    def address_from_public_key(self, public_key: bytes) -> str:
        """Base58Check(version || RIPEMD160(SHA256(pubkey)))."""
        return base58check_encode(self.network.address_version, hash160(public_key))

    def address_from_private(self, private_key: str) -> str:
        return self.address_from_public_key(self.public_key_bytes(private_key))

    def keypair_from_private_key(self, private_key: str) -> Keypair:
        public_key = self.public_key_bytes(private_key)
        return Keypair(
            private_key=private_key,
            public_key=public_key.hex(),
            address=self.address_from_public_key(public_key),
        )

    def keypair_from_mnemonic(self, mnemonic: str, index: int = 0) -> Keypair:
        return self.keypair_from_private_key(self.private_key_from_mnemonic(mnemonic, index))

    def keypair_from_email_password(
        self, email: str, password: str, index: int = 0
    ) -> Keypair:
        return self.keypair_from_private_key(
            self.private_key_from_email_password(email, password, index)
        )

    # ---- signatures ----

    def get_signature(self, message: str, private_key: str) -> str:
        """
        Sign *message* in the ledger's composite format.

        Returns "{base64(DER signature of SHA256(message))}.{base58(pubkey X||Y)}".
        """
        key = private_key_to_bytes(private_key)
        priv = coincurve.PrivateKey(key)

        digest = sha256(message.encode("utf-8"))
        der_signature = priv.sign(digest, hasher=None)
        signature_b64 = base64.b64encode(der_signature).decode("ascii")

        public_key = priv.public_key.format(compressed=False)
        if public_key[:1] == UNCOMPRESSED_PREFIX:
            public_key = public_key[1:]

        return f"{signature_b64}.{base58_encode(public_key)}"

    @staticmethod
    def split_signature(signature: str) -> tuple[bytes, bytes]:
        """Split a composite signature into (DER signature, 64-byte public key)."""
        parts = signature.split(".")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise ValidationError("Signature must be '<base64>.<base58>'.")
        try:
            der_signature = base64.b64decode(parts[0], validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValidationError("Signature left part is not valid Base64.") from exc
        public_key = base58_decode(parts[1])
        if len(public_key) != 64:
            raise ValidationError(
                f"Signature public key must be 64 bytes, got {len(public_key)}."
            )
        return der_signature, public_key

    def verify_signature(self, message: str, signature: str) -> bool:
        """Check a composite signature locally against its embedded public key."""
        der_signature, public_key = self.split_signature(signature)
        digest = sha256(message.encode("utf-8"))
        try:
            pub = coincurve.PublicKey(UNCOMPRESSED_PREFIX + public_key)
            return pub.verify(der_signature, digest, hasher=None)
        except ValueError:
            return False

    def signer_address(self, signature: str) -> str:
        """Ledger address of the public key embedded in a composite signature."""
        _, public_key = self.split_signature(signature)
        return self.address_from_public_key(UNCOMPRESSED_PREFIX + public_key)
