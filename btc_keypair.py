"""
Bitcoin keypairs and message signatures.

Implements:
- keypairs from a random key, WIF, raw hex, BIP-39 mnemonic or email/password
- the four standard address forms of one compressed public key
- the "{DER-ish hex}.{compressed pubkey hex}" signature used to bind a BTC
  address to a .btc ADNR domain
"""

from __future__ import annotations

from dataclasses import dataclass, field

import coincurve
from bip_utils import (
    Bip39MnemonicGenerator,
    Bip39WordsNum,
    P2PKHAddrEncoder,
    P2SHAddrEncoder,
    P2WPKHAddrEncoder,
    SegwitBech32Encoder,
)
from bit import Key, PrivateKeyTestnet
from bit.format import wif_to_bytes

from vfx_config import Network
from vfx_encoding import double_sha256, private_key_to_bytes
from vfx_errors import ValidationError
from vfx_keypair import (
    derive_private_key_from_seed,
    email_password_seed,
    mnemonic_to_seed,
    validate_index,
)

# Coin type stays 0 on testnet so email/password and mnemonic wallets resolve
# to the same keys on both networks.
BTC_DERIVATION_PATH = "m/44'/0'/0'/0"

_NET_PARAMS = {
    Network.MAINNET: {"p2pkh": b"\x00", "p2sh": b"\x05", "hrp": "bc", "wif": "main"},
    Network.TESTNET: {"p2pkh": b"\x6f", "p2sh": b"\xc4", "hrp": "tb", "wif": "test"},
}

TAPROOT_WITNESS_VERSION = 1

# Fixed DER framing written in front of r and s
SIGNATURE_PREFIX = "30440220"
SIGNATURE_S_MARKER = "0220"


@dataclass(frozen=True)
class BtcAddresses:
    p2pkh: str  # legacy
    p2sh: str  # nested segwit (P2SH-P2WPKH)
    bech32: str  # native segwit (P2WPKH)
    bech32m: str  # taproot (P2TR)

    def to_dict(self) -> dict[str, str]:
        return {
            "p2pkh": self.p2pkh,
            "p2sh": self.p2sh,
            "bech32": self.bech32,
            "bech32m": self.bech32m,
        }


@dataclass(frozen=True)
class BtcKeypair:
    address: str
    addresses: BtcAddresses
    wif: str
    private_key: str
    public_key: str
    mnemonic: str | None = field(default=None)

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = {
            "address": self.address,
            "addresses": self.addresses.to_dict(),
            "wif": self.wif,
            "privateKey": self.private_key,
            "publicKey": self.public_key,
        }
        if self.mnemonic:
            out["mnemonic"] = self.mnemonic
        return out

    def __repr__(self) -> str:
        return f"BtcKeypair(address={self.address!r})"


def public_key_to_addresses(public_key: bytes, network: Network) -> BtcAddresses:
    """Encode a compressed public key in every standard address form."""
    params = _NET_PARAMS[network]
    # Taproot here commits to the untweaked x-only key, as the web wallet does.
    x_only = public_key[1:] if len(public_key) == 33 else public_key
    return BtcAddresses(
        p2pkh=P2PKHAddrEncoder.EncodeKey(public_key, net_ver=params["p2pkh"]),
        p2sh=P2SHAddrEncoder.EncodeKey(public_key, net_ver=params["p2sh"]),
        bech32=P2WPKHAddrEncoder.EncodeKey(public_key, hrp=params["hrp"]),
        bech32m=SegwitBech32Encoder.Encode(params["hrp"], TAPROOT_WITNESS_VERSION, x_only),
    )


def _inject_after_64th_char(value: str, marker: str) -> str:
    if len(value) <= 64:
        return value + marker
    return value[:64] + marker + value[64:]


class BtcKeypairService:
    def __init__(self, network: Network | str = Network.MAINNET) -> None:
        self.network = Network.parse(network)

    def _key_class(self):
        return PrivateKeyTestnet if self.network.is_testnet else Key

    def _build_output(self, key: Key, mnemonic: str | None = None) -> BtcKeypair:
        public_key = key.public_key
        addresses = public_key_to_addresses(public_key, self.network)
        return BtcKeypair(
            address=addresses.bech32,
            addresses=addresses,
            wif=key.to_wif(),
            private_key=key.to_hex(),
            public_key=public_key.hex(),
            mnemonic=mnemonic,
        )

    def _key_from_bytes(self, key: bytes) -> Key:
        return self._key_class().from_hex(key.hex())

    def _key_from_wif(self, wif: str) -> Key:
        try:
            _, _, version = wif_to_bytes(wif)
        except (ValueError, KeyError) as exc:
            raise ValidationError(f"Invalid WIF: {exc}") from exc
        expected = _NET_PARAMS[self.network]["wif"]
        if version != expected:
            raise ValidationError(
                f"WIF is for the {version} network but this wallet is on {self.network.value}."
            )
        return self._key_class()(wif)

    # ---- keypairs ----

    def keypair_from_random(self) -> BtcKeypair:
        return self._build_output(self._key_class()())

    def keypair_from_wif(self, wif: str) -> BtcKeypair:
        return self._build_output(self._key_from_wif(wif))

    def keypair_from_private_key(self, private_key: str) -> BtcKeypair:
        return self._build_output(self._key_from_bytes(private_key_to_bytes(private_key)))

    def keypair_from_mnemonic(self, mnemonic: str, index: int = 0) -> BtcKeypair:
        validate_index(index)
        seed = mnemonic_to_seed(mnemonic)
        key = derive_private_key_from_seed(seed, f"{BTC_DERIVATION_PATH}/{index}")
        return self._build_output(self._key_from_bytes(key), mnemonic=mnemonic)

    def keypair_from_random_mnemonic(self) -> BtcKeypair:
        mnemonic = Bip39MnemonicGenerator().FromWordsNumber(Bip39WordsNum.WORDS_NUM_24).ToStr()
        return self.keypair_from_mnemonic(mnemonic)

    def keypair_from_email_password(
        self, email: str, password: str, index: int = 0
    ) -> BtcKeypair:
        validate_index(index)
        seed = email_password_seed(email, password)
        key = derive_private_key_from_seed(seed, f"{BTC_DERIVATION_PATH}/{index}")
        return self._build_output(self._key_from_bytes(key))

    # ---- signatures ----

    @staticmethod
    def _sign(private_key: bytes, public_key: bytes, message: str) -> str:
        digest = double_sha256(message.encode("utf-8"))
        compact = coincurve.PrivateKey(private_key).sign_recoverable(digest, hasher=None)[:64]
        rs_hex = compact.hex()
        body = _inject_after_64th_char(rs_hex, SIGNATURE_S_MARKER)
        return f"{SIGNATURE_PREFIX}{body}.{public_key.hex()}"

    def sign_message(self, wif: str, message: str) -> str:
        key = self._key_from_wif(wif)
        return self._sign(key.to_bytes(), key.public_key, message)

    def sign_message_with_private_key(self, private_key: str, message: str) -> str:
        key = private_key_to_bytes(private_key)
        public_key = coincurve.PrivateKey(key).public_key.format(compressed=True)
        return self._sign(key, public_key, message)
