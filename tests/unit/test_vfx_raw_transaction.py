import copy
import logging
import sys
import threading
from decimal import Decimal
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

from vfx_config import Network, TxType, VfxConfig  # noqa: E402
from vfx_errors import ProtocolError, RemoteRequestError  # noqa: E402
from vfx_keypair import Keypair, KeypairService  # noqa: E402
from vfx_raw_transaction import (  # noqa: E402
    AddressLocks,
    ErrorKind,
    PipelineStep,
    RawTransactionService,
    TransactionDraft,
    TxFailure,
    TxSuccess,
)

KEY_ONE = f"{1:064x}"
TO_ADDRESS = "xPLSSRzfUsfCf4vfyywb7JUwnZ3ermSo35"
TX_HASH = "6a0e8f0b7ad4f3b2b4d1b6d2c1e0f9a8b7c6d5e4f3a2b1c0d9e8f7a6b5c4d3e2"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeRawApi:
    """
    In-memory ledger: records the order of calls and the payloads sent.

    fail_at: name of the call that raises ``error``.
    """

    def __init__(self, fail_at=None, error=None, signature_ok=True, verify_ok=True, send_ok=True):
        self.fail_at = fail_at
        self.error = error or RemoteRequestError("ledger unreachable", status_code=502)
        self.signature_ok = signature_ok
        self.verify_ok = verify_ok
        self.send_ok = send_ok
        self.calls = []
        self.payloads = {}
        self.next_nonce = 7
        self.signature = None

    def _enter(self, name, payload=None):
        self.calls.append(name)
        if payload is not None:
            self.payloads[name] = copy.deepcopy(payload)
        if self.fail_at == name:
            raise self.error

    def get_timestamp(self):
        self._enter("timestamp")
        return 1700000000

    def get_nonce(self, address):
        self._enter("nonce")
        nonce = self.next_nonce
        self.next_nonce += 1
        return nonce

    def get_fee(self, tx):
        self._enter("fee", tx)
        return Decimal("0.00003")

    def get_hash(self, tx):
        self._enter("hash", tx)
        return TX_HASH

    def validate_signature(self, message, address, signature):
        self._enter("validate_signature")
        self.signature = (message, address, signature)
        return self.signature_ok

    def verify_transaction(self, tx):
        self._enter("verify", tx)
        return self.verify_ok

    def send_transaction(self, tx):
        self._enter("send", tx)
        return self.send_ok


ALL_CALLS = ["timestamp", "nonce", "fee", "hash", "validate_signature", "verify", "send"]


@pytest.fixture
def keypair_service():
    return KeypairService(Network.TESTNET)


@pytest.fixture
def keypair(keypair_service):
    return keypair_service.keypair_from_private_key(KEY_ONE)


def _service(api, keypair_service, dry_run=False):
    cfg = VfxConfig.for_network(Network.TESTNET, dry_run=dry_run)
    return RawTransactionService(cfg, api=api, keypair_service=keypair_service)


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


def test_process_runs_every_step_in_order(keypair, keypair_service):
    api = FakeRawApi()
    result = _service(api, keypair_service).process(keypair, TO_ADDRESS, Decimal("1.5"))

    assert result == TxSuccess(hash=TX_HASH, dry_run=False)
    assert result
    assert result.hash == TX_HASH
    assert api.calls == ALL_CALLS


def test_draft_evolves_between_steps(keypair, keypair_service):
    api = FakeRawApi()
    _service(api, keypair_service).process(keypair, TO_ADDRESS, Decimal("1.5"))

    fee_payload = api.payloads["fee"]
    assert fee_payload["Fee"] == 0
    assert fee_payload["Hash"] == ""
    assert fee_payload["Signature"] == ""
    assert fee_payload["FromAddress"] == keypair.address
    assert fee_payload["ToAddress"] == TO_ADDRESS
    assert fee_payload["Amount"] == 1.5
    assert fee_payload["Nonce"] == 7
    assert fee_payload["Timestamp"] == 1700000000
    assert fee_payload["TransactionType"] == 0
    assert fee_payload["Height"] == 0
    assert fee_payload["Data"] is None
    assert fee_payload["UnlockTime"] is None

    hash_payload = api.payloads["hash"]
    assert hash_payload["Fee"] == 0.00003
    assert hash_payload["Hash"] == ""

    verify_payload = api.payloads["verify"]
    assert verify_payload["Hash"] == TX_HASH
    assert verify_payload["Signature"] != ""
    assert api.payloads["send"] == verify_payload


def test_signature_is_over_the_server_hash(keypair, keypair_service):
    api = FakeRawApi()
    _service(api, keypair_service).process(keypair, TO_ADDRESS, 1)

    message, address, signature = api.signature
    assert message == TX_HASH
    assert address == keypair.address
    assert keypair_service.verify_signature(TX_HASH, signature)
    assert api.payloads["verify"]["Signature"] == signature


def test_dry_run_never_sends(keypair, keypair_service):
    api = FakeRawApi()
    result = _service(api, keypair_service).process(keypair, TO_ADDRESS, 1, dry_run=True)

    assert result == TxSuccess(hash=TX_HASH, dry_run=True)
    assert "send" not in api.calls
    assert api.calls == ALL_CALLS[:-1]


def test_dry_run_defaults_to_config(keypair, keypair_service):
    api = FakeRawApi()
    result = _service(api, keypair_service, dry_run=True).process(keypair, TO_ADDRESS, 1)

    assert result.dry_run is True
    assert "send" not in api.calls


def test_each_process_fetches_a_fresh_nonce(keypair, keypair_service):
    api = FakeRawApi()
    service = _service(api, keypair_service)

    service.process(keypair, TO_ADDRESS, 1)
    first_nonce = api.payloads["fee"]["Nonce"]
    service.process(keypair, TO_ADDRESS, 1)
    second_nonce = api.payloads["fee"]["Nonce"]

    assert api.calls.count("nonce") == 2
    assert api.calls.count("timestamp") == 2
    assert first_nonce != second_nonce


def test_data_and_tx_type_reach_the_wire(keypair, keypair_service):
    api = FakeRawApi()
    data = [{"Function": "TransferCoin()", "ContractUID": "abc", "Amount": Decimal("0.25")}]
    _service(api, keypair_service).process(
        keypair, TO_ADDRESS, 0, tx_type=TxType.TOKENIZE_TX, data=data
    )

    payload = api.payloads["fee"]
    assert payload["TransactionType"] == 18
    assert payload["Data"] == [{"Function": "TransferCoin()", "ContractUID": "abc", "Amount": 0.25}]


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "fail_at, step",
    [
        ("timestamp", PipelineStep.TIMESTAMP),
        ("nonce", PipelineStep.NONCE),
        ("fee", PipelineStep.FEE),
        ("hash", PipelineStep.HASH),
        ("validate_signature", PipelineStep.VALIDATE_SIGNATURE),
        ("verify", PipelineStep.VERIFY),
        ("send", PipelineStep.SEND),
    ],
)
def test_remote_failure_stops_at_its_step(keypair, keypair_service, fail_at, step):
    api = FakeRawApi(fail_at=fail_at)
    result = _service(api, keypair_service).process(keypair, TO_ADDRESS, 1)

    assert isinstance(result, TxFailure)
    assert not result
    assert result.hash is None
    assert result.step is step
    assert result.kind is ErrorKind.REMOTE
    assert "ledger unreachable" in result.detail
    assert api.calls == ALL_CALLS[: ALL_CALLS.index(fail_at) + 1]


def test_protocol_error_kind(keypair, keypair_service):
    api = FakeRawApi(fail_at="hash", error=ProtocolError("Unexpected get_hash() result"))
    result = _service(api, keypair_service).process(keypair, TO_ADDRESS, 1)

    assert result.step is PipelineStep.HASH
    assert result.kind is ErrorKind.PROTOCOL


def test_unexpected_exception_is_unknown_kind(keypair, keypair_service):
    api = FakeRawApi(fail_at="fee", error=KeyError("Fee"))
    result = _service(api, keypair_service).process(keypair, TO_ADDRESS, 1)

    assert result.step is PipelineStep.FEE
    assert result.kind is ErrorKind.UNKNOWN
    assert result.detail == "KeyError: 'Fee'"


def test_rejected_signature_aborts_before_verify(keypair, keypair_service):
    api = FakeRawApi(signature_ok=False)
    result = _service(api, keypair_service).process(keypair, TO_ADDRESS, 1)

    assert result == TxFailure(
        PipelineStep.VALIDATE_SIGNATURE, ErrorKind.PROTOCOL, "Invalid Signature"
    )
    assert "verify" not in api.calls


def test_rejected_transaction_aborts_before_send(keypair, keypair_service):
    api = FakeRawApi(verify_ok=False)
    result = _service(api, keypair_service).process(keypair, TO_ADDRESS, 1)

    assert result == TxFailure(PipelineStep.VERIFY, ErrorKind.PROTOCOL, "Invalid Transaction")
    assert "send" not in api.calls


def test_send_rejection_is_failure(keypair, keypair_service):
    api = FakeRawApi(send_ok=False)
    result = _service(api, keypair_service).process(keypair, TO_ADDRESS, 1)

    assert result.step is PipelineStep.SEND
    assert result.detail == "Transaction failed to send"


def test_invalid_private_key_fails_before_any_request(keypair_service, caplog):
    api = FakeRawApi()
    broken = Keypair(private_key="zz", public_key="", address=TO_ADDRESS)
    with caplog.at_level(logging.WARNING, logger="vfx_raw_transaction"):
        result = _service(api, keypair_service).process(broken, TO_ADDRESS, 1)

    assert result.step is PipelineStep.VALIDATE
    assert result.kind is ErrorKind.VALIDATION
    assert api.calls == []
    assert "'zz'" not in caplog.text


@pytest.mark.parametrize(
    "to_address",
    [
        "not-an-address!!",
        "",
        "RQJzd53UoyyjghC16gJ3meXNKiD2ABSHW7",  # mainnet address on testnet
        TO_ADDRESS[:-1],
    ],
)
def test_malformed_destination_fails_before_any_request(keypair, keypair_service, to_address):
    api = FakeRawApi()
    result = _service(api, keypair_service).process(keypair, to_address, 1)

    assert result.step is PipelineStep.VALIDATE
    assert result.kind is ErrorKind.VALIDATION
    assert api.calls == []


def test_system_recipient_is_accepted(keypair, keypair_service):
    api = FakeRawApi()
    result = _service(api, keypair_service).process(keypair, "Adnr_Base", 5, tx_type=TxType.ADNR)

    assert result
    assert api.payloads["fee"]["ToAddress"] == "Adnr_Base"


@pytest.mark.parametrize("amount", [-1, "abc", "NaN"])
def test_bad_amount_fails_before_any_request(keypair, keypair_service, amount):
    api = FakeRawApi()
    result = _service(api, keypair_service).process(keypair, TO_ADDRESS, amount)

    assert result.step is PipelineStep.VALIDATE
    assert result.kind is ErrorKind.VALIDATION
    assert api.calls == []


def test_failure_is_logged_with_step(keypair, keypair_service, caplog):
    api = FakeRawApi(fail_at="verify")
    with caplog.at_level(logging.WARNING, logger="vfx_raw_transaction"):
        _service(api, keypair_service).process(keypair, TO_ADDRESS, 1)

    assert any("verify" in record.getMessage() for record in caplog.records)
    assert caplog.records[-1].step == "verify"
    assert caplog.records[-1].kind == "remote"
    assert KEY_ONE not in caplog.text


# ---------------------------------------------------------------------------
# Draft and locks
# ---------------------------------------------------------------------------


def test_draft_payload_uses_wire_names():
    draft = TransactionDraft(
        to_address="Adnr_Base",
        from_address=TO_ADDRESS,
        transaction_type=TxType.ADNR,
        amount=Decimal("5"),
        nonce=3,
        timestamp=1700000000,
        data={"Function": "AdnrCreate()", "Name": "alice"},
    )
    assert draft.to_payload() == {
        "Hash": "",
        "ToAddress": "Adnr_Base",
        "FromAddress": TO_ADDRESS,
        "TransactionType": 6,
        "Amount": 5.0,
        "Nonce": 3,
        "Fee": 0.0,
        "Timestamp": 1700000000,
        "Signature": "",
        "Height": 0,
        "Data": {"Function": "AdnrCreate()", "Name": "alice"},
        "UnlockTime": None,
    }


def test_address_locks_are_per_address():
    locks = AddressLocks()
    assert locks.get("xA") is locks.get("xA")
    assert locks.get("xA") is not locks.get("xB")

    with locks.hold("xA"):
        assert locks.get("xA").locked()
        assert not locks.get("xB").locked()
    assert not locks.get("xA").locked()


def test_address_locks_serialise_threads():
    locks = AddressLocks()
    active = []
    overlaps = []

    def worker():
        with locks.hold("xA"):
            active.append(1)
            if len(active) > 1:
                overlaps.append(True)
            threading.Event().wait(0.01)
            active.pop()

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert overlaps == []


def test_address_locks_are_released_when_unused():
    locks = AddressLocks()
    with locks.hold("xA"):
        assert "xA" in locks._locks
    assert "xA" not in locks._locks
