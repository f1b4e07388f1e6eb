import base64
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

import vfx_keypair  # noqa: E402
from vfx_config import Network  # noqa: E402
from vfx_encoding import base58_decode, is_valid_address, is_valid_private_key  # noqa: E402
from vfx_errors import KeyGenerationError, ValidationError  # noqa: E402
from vfx_keypair import Keypair, KeypairService  # noqa: E402

MNEMONIC = (
    "entire taste skull already invest view turtle surge razor key next buffalo "
    "venue canoe sheriff winner wash ten subject hamster scrap unit shield garden"
)
EMAIL = "tyler@tylersavery.com"
PASSWORD = "password123"

KEY_ONE = f"{1:064x}"
KEY_ONE_PUBLIC = (
    "0479be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"
    "483ada7726a3c4655da4fbfc0e1108a8fd17b448a68554199c47d08ffb10d4b8"
)


@pytest.fixture
def testnet():
    return KeypairService(Network.TESTNET)


@pytest.fixture
def mainnet():
    return KeypairService(Network.MAINNET)


# ---------------------------------------------------------------------------
# Random keys and mnemonics
# ---------------------------------------------------------------------------


def test_generate_private_key_is_valid_and_unique(testnet):
    keys = {testnet.generate_private_key() for _ in range(200)}
    assert len(keys) == 200
    for key in keys:
        assert len(key) == 64
        assert is_valid_private_key(key)


def test_generate_private_key_padded(testnet):
    key = testnet.generate_private_key(padded=True)
    assert len(key) == 66
    assert key.startswith("00")
    assert is_valid_private_key(key)


def test_generate_private_key_redraws_invalid_candidates(monkeypatch, testnet):
    draws = iter([b"\x00" * 32, b"\xff" * 32, b"\x00" * 31 + b"\x07"])
    monkeypatch.setattr(vfx_keypair.secrets, "token_bytes", lambda n: next(draws))
    assert testnet.generate_private_key() == f"{7:064x}"


def test_generate_private_key_gives_up_after_bound(monkeypatch, testnet):
    monkeypatch.setattr(vfx_keypair, "MAX_KEYGEN_ATTEMPTS", 3)
    monkeypatch.setattr(vfx_keypair.secrets, "token_bytes", lambda n: b"\x00" * n)
    with pytest.raises(KeyGenerationError):
        testnet.generate_private_key()


@pytest.mark.parametrize("words", [12, 24])
def test_generate_mnemonic_word_counts(testnet, words):
    mnemonic = testnet.generate_mnemonic(words)
    assert len(mnemonic.split()) == words
    assert is_valid_private_key(testnet.private_key_from_mnemonic(mnemonic))


def test_generate_mnemonic_rejects_other_counts(testnet):
    with pytest.raises(ValidationError):
        testnet.generate_mnemonic(15)


def test_invalid_mnemonic_is_rejected(testnet):
    with pytest.raises(ValidationError):
        testnet.private_key_from_mnemonic("not a real seed phrase at all")


def test_negative_index_is_rejected(testnet):
    with pytest.raises(ValidationError):
        testnet.private_key_from_mnemonic(MNEMONIC, -1)


# ---------------------------------------------------------------------------
# Recorded derivation vectors
# ---------------------------------------------------------------------------


def test_mnemonic_vectors(testnet, mainnet):
    key0 = testnet.private_key_from_mnemonic(MNEMONIC, 0)
    assert key0 == "7631b14a28c60a9fee2e8f7ff015ef78613c9c2b9286280c73fcbb2861aff2eb"
    assert testnet.address_from_private(key0) == "xPLSSRzfUsfCf4vfyywb7JUwnZ3ermSo35"
    assert mainnet.address_from_private(key0) == "RQJzd53UoyyjghC16gJ3meXNKiD2ABSHW7"

    key1 = testnet.private_key_from_mnemonic(MNEMONIC, 1)
    assert key1 == "bbdd64f38afdb369533846179e1e5fea066f46e919dcbb600f5b5e53981d3f08"
    assert testnet.address_from_private(key1) == "xEwT5cfC1y4Rwi8zBvQSKcp7tnFWDer1La"
    assert mainnet.address_from_private(key1) == "RFv1GFi1M5NxyLQKJcktyxrYRwQsTdiqym"


def test_email_password_seed_string_layout():
    seed = vfx_keypair.email_password_seed_string("A@b.co", "Ab1")
    half = "a@b.co|Ab1|11|!@18993571"
    assert seed == half + half


def test_email_password_seed_counts_missing_classes_as_one():
    # "password": one lowercase run, no uppercase, no digits -> (1 + 1 + 1) * 8
    seed = vfx_keypair.email_password_seed_string("a@b.co", "password")
    assert seed.endswith("243571")


def test_email_password_seed_vector():
    assert (
        vfx_keypair.email_password_seed(EMAIL, PASSWORD).hex()
        == "66eef2a8601b5f65c1e28ee4a05937b96cc3b6c5cdb7e3f48537f38553398d40"
    )


def test_email_password_vectors(testnet, mainnet):
    key0 = testnet.private_key_from_email_password(EMAIL, PASSWORD, 0)
    assert key0 == "d9293900a68536a854dc42e2cf6a83a4a6299cf39abba6fb2f8836d4b5ca8d62"
    assert testnet.address_from_private(key0) == "xKoSdYkMuvb8AT2VnmfuSQrTCqQbbsGTEV"
    assert mainnet.address_from_private(key0) == "RLmzpBoBF2ufC5HpuU2N6ktsjzZxpne9ne"

    key1 = testnet.private_key_from_email_password(EMAIL, PASSWORD, 1)
    assert key1 == "b7741182291146829a724f77d51680067f43eec79135a45b265f7b7510d41638"
    assert testnet.address_from_private(key1) == "xQ29rPgi82buhvsWyctdskkQiUdZC3pa7i"


def test_email_is_case_insensitive(testnet):
    assert testnet.private_key_from_email_password(
        EMAIL.upper(), PASSWORD
    ) == testnet.private_key_from_email_password(EMAIL, PASSWORD)


def test_email_password_requires_both(testnet):
    with pytest.raises(ValidationError):
        testnet.private_key_from_email_password("", PASSWORD)
    with pytest.raises(ValidationError):
        testnet.private_key_from_email_password(EMAIL, "")


# ---------------------------------------------------------------------------
# Public keys and addresses
# ---------------------------------------------------------------------------


def test_public_and_address_for_key_one(testnet, mainnet):
    assert testnet.public_from_private(KEY_ONE) == KEY_ONE_PUBLIC
    assert testnet.address_from_private(KEY_ONE) == "xMb1TyEXahWwxkLpgXmnCQLpwrpwLRRhrb"
    assert mainnet.address_from_private(KEY_ONE) == "RNZZecHLuoqUzNc9oE8ErkPFV1zJdvDBAH"


def test_padded_key_derives_same_address(testnet):
    assert testnet.address_from_private("00" + KEY_ONE) == testnet.address_from_private(KEY_ONE)


def test_address_shape_matches_network(testnet, mainnet):
    key = testnet.generate_private_key()
    assert is_valid_address(testnet.address_from_private(key), testnet=True)
    assert is_valid_address(mainnet.address_from_private(key), testnet=False)


def test_invalid_private_key_raises(testnet):
    with pytest.raises(ValidationError):
        testnet.public_from_private("00" * 32)
    with pytest.raises(ValidationError):
        testnet.address_from_private("xyz")


def test_keypair_from_private_key(testnet):
    keypair = testnet.keypair_from_private_key(KEY_ONE)
    assert keypair == Keypair(
        private_key=KEY_ONE,
        public_key=KEY_ONE_PUBLIC,
        address="xMb1TyEXahWwxkLpgXmnCQLpwrpwLRRhrb",
    )
    assert keypair.to_dict()["publicKey"] == KEY_ONE_PUBLIC


def test_keypair_repr_hides_private_key(testnet):
    keypair = testnet.keypair_from_private_key(KEY_ONE)
    assert KEY_ONE not in repr(keypair)
    assert keypair.address in repr(keypair)


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------


def test_signature_format(testnet):
    signature = testnet.get_signature("hello", KEY_ONE)
    assert signature.count(".") == 1

    left, right = signature.split(".")
    der = base64.b64decode(left, validate=True)
    assert der[0] == 0x30
    assert base58_decode(right) == bytes.fromhex(KEY_ONE_PUBLIC)[1:]
    assert right == "3SB8tA9Kbn7FBtT6GWR6AJk73QceudisHaGThPoLCDgC9tan7d3cwZFiDZtrmhSAf8aTynEdQ3N7KXhMm3nWhekP"


def test_signature_is_deterministic_and_verifies(testnet):
    message = "a1b2c3"
    signature = testnet.get_signature(message, KEY_ONE)
    assert signature == testnet.get_signature(message, KEY_ONE)
    assert testnet.verify_signature(message, signature)
    assert not testnet.verify_signature("other message", signature)


def test_signer_address(testnet):
    key = testnet.generate_private_key()
    signature = testnet.get_signature("msg", key)
    assert testnet.signer_address(signature) == testnet.address_from_private(key)


@pytest.mark.parametrize(
    "signature",
    ["no-dot", "a.b.c", ".abc", "!!!.3SB8", "MEUCIQ==.abc"],
)
def test_split_signature_rejects_malformed(testnet, signature):
    with pytest.raises(ValidationError):
        testnet.split_signature(signature)
