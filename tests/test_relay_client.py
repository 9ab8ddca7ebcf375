"""
End-to-end tests of RelayClient against fake relay servers.

The relay servers are served through httpx.MockTransport and sign real
legacy transactions; the chain is an in-memory Ledger behind a
LedgerInteractor, so a broadcast transaction is actually settled by the
RelayHub.
"""

import asyncio

import pytest

from gasless_relay.config import RelayClientConfig
from gasless_relay.contract_interactor import LedgerInteractor
from gasless_relay.errors import (
    LocalViewCallError,
    PaymasterRejectedError,
    PingFilterError,
    RelayServerError,
    RelayTimeoutError,
    ValidationFailedError,
)
from gasless_relay.events import RelayStep
from gasless_relay.http_client import RelayHttpClient
from gasless_relay.ledger import TX_BASE_GAS
from gasless_relay.models import TransactionDetails, hex_to_bytes
from gasless_relay.relay_client import RelayClient, RelayingResult, dump_relaying_result

from conftest import CHAIN_ID, RejectingPaymaster, emit_message_data, fund_paymaster, make_account

NETWORK_GAS_PRICE = 10


def make_client(ledger, hub, relay_network, accounts, **config_overrides) -> RelayClient:
    settings = {"relay_hub_address": hub.address, "chain_id": CHAIN_ID, **config_overrides}
    config = RelayClientConfig(**settings)
    client = RelayClient(
        config,
        LedgerInteractor(ledger, hub, gas_price=NETWORK_GAS_PRICE),
        http_client=RelayHttpClient(transport=relay_network.transport()),
        clock=lambda: ledger.now,
    )
    client.add_account(accounts.sender.key)
    return client


def make_details(accounts, wallet, recipient, paymaster, **overrides) -> TransactionDetails:
    fields = {
        "from_": accounts.sender.address,
        "to": recipient.address,
        "data": emit_message_data(),
        "forwarder": wallet.address,
        "paymaster": paymaster.address,
        "gas": 300_000,
    }
    fields.update(overrides)
    return TransactionDetails(**fields)


def run(client: RelayClient, details: TransactionDetails) -> RelayingResult:
    async def go():
        async with client:
            return await client.relay_transaction(details)

    return asyncio.run(go())


@pytest.fixture
def setup(ledger, hub, relay_network, accounts, wallet, recipient, funded_paymaster):
    def build(**config_overrides):
        client = make_client(ledger, hub, relay_network, accounts, **config_overrides)
        details = make_details(accounts, wallet, recipient, funded_paymaster)
        return client, details

    return build


# =============================================================================
# Successful relaying
# =============================================================================


def test_relay_transaction_through_single_relay(setup, add_relay, recipient, wallet, accounts):
    server = add_relay("http://relay1.test")
    client, details = setup()

    result = run(client, details)

    assert result.transaction is not None
    assert result.relay_url == "http://relay1.test"
    assert result.transaction.sender == server.worker.address
    assert result.ping_errors == {}
    assert result.relaying_errors == {}
    assert recipient.last_message == "hello"
    assert recipient.last_sender == accounts.sender.address
    assert wallet.get_nonce() == 1


def test_events_cover_every_step_in_order(setup, add_relay):
    add_relay("http://relay1.test")
    client, details = setup()
    events = []
    client.register_event_listener(events.append)

    run(client, details)

    assert [event.step for event in events] == list(RelayStep)
    assert [event.index for event in events] == list(range(8))
    assert all(event.total == 8 for event in events)
    assert events[2].relay_count == 1
    assert events[3].relay_url == "http://relay1.test"
    assert str(events[0]) == "[1/8] Initializing"


def test_unregistered_listener_receives_nothing(setup, add_relay):
    add_relay("http://relay1.test")
    client, details = setup()
    events = []
    client.register_event_listener(events.append)
    client.unregister_event_listener(events.append)

    run(client, details)

    assert events == []


def test_failing_listener_does_not_stop_relaying(setup, add_relay):
    add_relay("http://relay1.test")
    client, details = setup()

    def broken(event):
        raise RuntimeError("listener bug")

    client.register_event_listener(broken)

    result = run(client, details)

    assert result.transaction is not None


def test_third_candidate_wins_after_two_relay_timeouts(setup, add_relay):
    add_relay("http://relay1.test", relay_behaviour="timeout")
    add_relay("http://relay2.test", relay_behaviour="timeout")
    third = add_relay("http://relay3.test")
    client, details = setup()

    result = run(client, details)

    assert result.relay_url == "http://relay3.test"
    assert result.transaction.sender == third.worker.address
    assert set(result.relaying_errors) == {"http://relay1.test", "http://relay2.test"}
    assert all(isinstance(e, RelayTimeoutError) for e in result.relaying_errors.values())
    assert len(client.known_relays.failures) == 2


def test_force_gas_price_is_used_verbatim(setup, add_relay):
    add_relay("http://relay1.test")
    client, details = setup()

    result = run(client, details.model_copy(update={"force_gas_price": 777}))

    assert result.transaction.gas_price == 777


def test_qos_commitment_from_worker_is_accepted(setup, add_relay):
    server = add_relay("http://relay1.test")
    server.commitment_signer = server.worker
    client, details = setup(enable_qos=True)

    result = run(client, details)

    assert result.transaction is not None
    assert server.relay_requests[0].metadata.enable_qos is True


# =============================================================================
# Failures
# =============================================================================


def test_hook_error_ends_round_with_single_relaying_error(
    ledger, hub, relay_network, accounts, wallet, recipient, funded_paymaster, add_relay
):
    add_relay("http://relay1.test")
    add_relay("http://relay2.test")
    config = RelayClientConfig(relay_hub_address=hub.address, chain_id=CHAIN_ID)

    async def failing_hook(relay_request):
        raise RuntimeError("approval service down")

    client = RelayClient(
        config,
        LedgerInteractor(ledger, hub, gas_price=NETWORK_GAS_PRICE),
        http_client=RelayHttpClient(transport=relay_network.transport()),
        async_approval_data=failing_hook,
    )
    client.add_account(accounts.sender.key)

    result = run(client, make_details(accounts, wallet, recipient, funded_paymaster))

    assert result.transaction is None
    assert len(result.relaying_errors) == 1
    assert str(result.relaying_errors["http://relay1.test"]) == "approval service down"
    assert result.ping_errors == {}


def test_wrong_destination_is_not_broadcast(setup, add_relay, recipient, wallet):
    add_relay("http://relay1.test", relay_behaviour="wrong_destination")
    client, details = setup()

    result = run(client, details)

    assert result.transaction is None
    error = result.relaying_errors["http://relay1.test"]
    assert isinstance(error, ValidationFailedError)
    assert "wrong destination" in str(error)
    assert wallet.get_nonce() == 0
    assert recipient.last_message is None
    assert len(client.known_relays.failures) == 1


def test_invalid_signature_from_relay_moves_to_next_relay(setup, add_relay, recipient):
    add_relay("http://relay1.test", relay_behaviour="bad_signature")
    second = add_relay("http://relay2.test")
    client, details = setup()

    result = run(client, details)

    assert result.relay_url == "http://relay2.test"
    assert result.transaction.sender == second.worker.address
    error = result.relaying_errors["http://relay1.test"]
    assert isinstance(error, ValidationFailedError)
    assert "invalid transaction signature" in str(error)
    assert recipient.last_message == "hello"
    assert len(client.known_relays.failures) == 1


def test_relay_not_ready_is_a_ping_error(setup, add_relay):
    server = add_relay("http://relay1.test", ping_behaviour="not_ready")
    client, details = setup()

    result = run(client, details)

    assert result.transaction is None
    assert isinstance(result.ping_errors["http://relay1.test"], PingFilterError)
    assert result.relaying_errors == {}
    assert server.relay_requests == []
    assert client.known_relays.failures == ()


def test_ping_timeout_moves_to_next_relay(setup, add_relay):
    add_relay("http://relay1.test", ping_behaviour="timeout")
    add_relay("http://relay2.test")
    client, details = setup()

    result = run(client, details)

    assert result.relay_url == "http://relay2.test"
    assert isinstance(result.ping_errors["http://relay1.test"], RelayTimeoutError)
    assert client.known_relays.failures == ()


def test_unfunded_paymaster_fails_local_view_call(
    ledger, hub, relay_network, accounts, wallet, recipient, paymaster, add_relay
):
    server = add_relay("http://relay1.test")
    client = make_client(ledger, hub, relay_network, accounts)

    result = run(client, make_details(accounts, wallet, recipient, paymaster))

    error = result.relaying_errors["http://relay1.test"]
    assert isinstance(error, LocalViewCallError)
    assert not isinstance(error, PaymasterRejectedError)
    assert str(error) == "local view call to 'relayCall()' reverted: Paymaster balance too low"
    assert server.relay_requests == []


def test_rejecting_paymaster_is_never_sent_to_relay(
    ledger, hub, relay_network, accounts, wallet, recipient, add_relay
):
    server = add_relay("http://relay1.test")
    rejecting = RejectingPaymaster(ledger, owner=accounts.paymaster_owner.address, relay_hub=hub.address)
    fund_paymaster(ledger, rejecting, accounts.paymaster_owner.address)
    client = make_client(ledger, hub, relay_network, accounts)

    result = run(client, make_details(accounts, wallet, recipient, rejecting))

    error = result.relaying_errors["http://relay1.test"]
    assert isinstance(error, PaymasterRejectedError)
    assert error.paymaster_reason == "You shall not pass"
    assert server.relay_requests == []


def test_server_error_response_is_not_reported(setup, add_relay):
    add_relay("http://relay1.test", relay_behaviour="error")
    client, details = setup()

    result = run(client, details)

    error = result.relaying_errors["http://relay1.test"]
    assert isinstance(error, RelayServerError)
    assert error.server_message == "relay refused"
    assert client.known_relays.failures == ()


def test_qos_commitment_from_other_key_fails_validation(setup, add_relay):
    server = add_relay("http://relay1.test")
    server.commitment_signer = make_account(42)
    client, details = setup(enable_qos=True)

    result = run(client, details)

    assert result.transaction is None
    assert isinstance(result.relaying_errors["http://relay1.test"], ValidationFailedError)
    assert len(client.known_relays.failures) == 1


def test_unknown_sender_raises(setup, add_relay, accounts):
    add_relay("http://relay1.test")
    client, details = setup()

    with pytest.raises(ValueError, match="No signing key"):
        run(client, details.model_copy(update={"from_": accounts.other.address}))


def test_chain_id_mismatch_raises(setup):
    client, details = setup(chain_id=31)

    with pytest.raises(ValueError, match="does not match"):
        run(client, details)


# =============================================================================
# Gas
# =============================================================================


def test_gas_price_uses_network_price_with_factor(ledger, hub, relay_network, accounts):
    client = make_client(ledger, hub, relay_network, accounts, gas_price_factor_percent=20)

    assert asyncio.run(client._calculate_gas_price()) == 12


def test_gas_price_is_floored_at_min_gas_price(ledger, hub, relay_network, accounts):
    client = make_client(ledger, hub, relay_network, accounts, min_gas_price=50)

    assert asyncio.run(client._calculate_gas_price()) == 50


def test_missing_gas_is_estimated_without_base_cost(setup, ledger, wallet, recipient, accounts):
    client, details = setup()
    details = details.model_copy(update={"gas": None})

    prepared = asyncio.run(client._prepare_details(details, 10))

    data = hex_to_bytes(details.data) + hex_to_bytes(accounts.sender.address)
    expected = ledger.estimate_gas(wallet.address, recipient.address, data) - TX_BASE_GAS
    assert prepared.gas == expected
    assert prepared.gas > 0
    assert prepared.gas_price == 10
    assert prepared.token_gas == 0


def test_token_gas_defaults_when_paying_tokens(setup, token):
    client, details = setup()
    details = details.model_copy(update={"token_amount": 5, "token_contract": token.address})

    prepared = asyncio.run(client._prepare_details(details, 10))

    assert prepared.token_gas == client.config.default_token_gas


# =============================================================================
# Broadcast
# =============================================================================


def test_second_broadcast_reports_receipt_and_wrong_nonce(setup, add_relay):
    add_relay("http://relay1.test")
    client, details = setup()
    result = run(client, details)

    broadcast = asyncio.run(client._broadcast_raw_tx(result.transaction))

    assert broadcast.has_receipt is True
    assert broadcast.wrong_nonce is True
    assert broadcast.broadcast_error is not None


# =============================================================================
# Reporting
# =============================================================================


def test_dump_relaying_result_lists_errors():
    result = RelayingResult(
        ping_errors={"http://a.test": PingFilterError("Relay not ready")},
        relaying_errors={"http://b.test": RelayServerError("http://b.test", "busy")},
    )

    text = dump_relaying_result(result)

    assert text.splitlines() == [
        "No relay accepted the transaction",
        "Ping errors:",
        "  http://a.test => Relay not ready",
        "Relaying errors:",
        "  http://b.test => Got error response from relay: busy",
    ]
