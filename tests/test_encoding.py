import pytest
import rlp
from eth_account import Account

from gasless_relay.encoding import (
    RELAY_CALL_SELECTOR,
    decode_raw_transaction,
    decode_relay_call,
    decode_revert_reason,
    encode_relay_call,
    encode_revert_reason,
)

from conftest import CHAIN_ID, build_relay_request, make_account

WORKER = make_account(13)


@pytest.fixture
def relay_request():
    return build_relay_request(
        make_account(1).address,
        make_account(10).address,
        make_account(11).address,
        make_account(12).address,
        WORKER.address,
        data=b"\xca\xfe",
        nonce=7,
        token_gas=50_000,
        payback_tokens=3,
    )


def test_relay_call_decodes_to_same_arguments(relay_request):
    data = encode_relay_call(285_000, relay_request, "0x" + "11" * 65, "0xbeef", 3_000_000)

    args = decode_relay_call(data)

    assert data[:4] == RELAY_CALL_SELECTOR
    assert args.max_acceptance_budget == 285_000
    assert args.relay_request == relay_request
    assert args.signature == b"\x11" * 65
    assert args.approval_data == b"\xbe\xef"
    assert args.external_gas_limit == 3_000_000


def test_decode_rejects_other_selector():
    with pytest.raises(ValueError, match="not a relayCall"):
        decode_relay_call(b"\x00\x00\x00\x00" + b"\x00" * 32)


def test_decode_rejects_truncated_calldata(relay_request):
    data = encode_relay_call(1, relay_request, b"", b"", 1)

    with pytest.raises(ValueError, match="malformed"):
        decode_relay_call(data[:100])


def test_revert_reason_roundtrip():
    assert decode_revert_reason(encode_revert_reason("Paymaster balance too low")) == "Paymaster balance too low"


def test_revert_reason_of_empty_and_custom_payloads():
    assert decode_revert_reason(b"") is None
    assert decode_revert_reason(None) is None
    assert decode_revert_reason(b"\xde\xad\xbe\xef") == "0xdeadbeef"


def test_decode_raw_transaction_recovers_sender():
    signed = Account.sign_transaction(
        {
            "to": make_account(20).address,
            "data": "0x1234",
            "gas": 100_000,
            "gasPrice": 60,
            "nonce": 5,
            "value": 0,
            "chainId": CHAIN_ID,
        },
        WORKER.key,
    )

    tx = decode_raw_transaction(signed.raw_transaction.to_0x_hex())

    assert tx.sender == WORKER.address
    assert tx.to == make_account(20).address
    assert tx.nonce == 5
    assert tx.gas == 100_000
    assert tx.gas_price == 60
    assert tx.data == b"\x12\x34"
    assert tx.chain_id == CHAIN_ID
    assert tx.hash == signed.hash.to_0x_hex()
    assert tx.raw_hex == signed.raw_transaction.to_0x_hex()


def test_decode_raw_transaction_rejects_typed_transactions():
    with pytest.raises(ValueError, match="legacy"):
        decode_raw_transaction("0x02f8")


def test_decode_raw_transaction_rejects_garbage():
    with pytest.raises(ValueError):
        decode_raw_transaction("0xc3010203")


def test_decode_raw_transaction_rejects_invalid_signature():
    raw = rlp.encode([0, 1, 21_000, b"\x11" * 20, 0, b"", 27, 0, 0])

    with pytest.raises(ValueError, match="invalid transaction signature"):
        decode_raw_transaction(raw)


def test_decode_raw_transaction_rejects_nested_fields():
    raw = rlp.encode([0, 1, 21_000, [b"\x11"], 0, b"", 27, 1, 1])

    with pytest.raises(ValueError, match="byte strings"):
        decode_raw_transaction(raw)
