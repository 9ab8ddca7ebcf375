import json
from dataclasses import replace
from types import SimpleNamespace
from typing import Callable, Optional

import httpx
import pytest
import rlp
from eth_account import Account

from gasless_relay.authenticator import SmartWallet, SmartWalletFactory
from gasless_relay.commitment import build_commitment, sign_commitment
from gasless_relay.encoding import encode_call, encode_relay_call
from gasless_relay.errors import Revert
from gasless_relay.ledger import ETHER, Ledger, abi_method
from gasless_relay.models import (
    ForwardRequest,
    RelayData,
    RelayRequest,
    RelayTransactionRequest,
)
from gasless_relay.paymaster import DEFAULT_GAS_AND_DATA_LIMITS, AcceptEverythingPaymaster
from gasless_relay.recipient import RelayRecipient
from gasless_relay.relay_hub import RelayHub
from gasless_relay.stake_manager import StakeManager
from gasless_relay.token import Erc20Token
from gasless_relay.typed_data import sign_relay_request

CHAIN_ID = 33
RELAY_GAS_LIMIT = 3_000_000
ACCEPTANCE_BUDGET = 285_000


def make_account(index: int):
    return Account.from_key("0x" + f"{index:064x}")


# =============================================================================
# Contracts used by the tests
# =============================================================================


class SampleRecipient(RelayRecipient):
    """Records the last message and its sender."""

    def __init__(self, ledger, relay_hub=None, **kwargs):
        super().__init__(ledger, **kwargs)
        self.relay_hub = relay_hub

    @property
    def last_message(self):
        return self._get("message")

    @property
    def last_sender(self):
        return self._get("sender")

    @abi_method("emitMessage(string)")
    def emit_message(self, message: str) -> None:
        sender = self._msg_sender()
        self._set("message", message)
        self._set("sender", sender)
        self._emit("SampleRecipientEmitted", message=message, real_sender=sender, msg_sender=self.msg_sender)

    @abi_method("testRevert()")
    def test_revert(self) -> None:
        raise Revert("always fail")

    @abi_method("brokenRatio()", returns=["uint256"])
    def broken_ratio(self) -> int:
        self._set("message", "partial")
        return 1 // 0

    @abi_method("depositFor(address)")
    def deposit_for(self, paymaster: str) -> None:
        result = self.ledger.call(self.relay_hub.deposit_for, paymaster, sender=self.address, value=1000)
        if not result.success:
            raise Revert(result.error)


class RejectingPaymaster(AcceptEverythingPaymaster):
    def _pre_relayed_call(self, relay_request, signature, approval_data, max_acceptance_budget):
        raise Revert("You shall not pass")


class RevertingPostPaymaster(AcceptEverythingPaymaster):
    def _post_relayed_call(self, context, success, gas_used, relay_data):
        raise Revert("post failed")


class StrictRecipientPaymaster(AcceptEverythingPaymaster):
    def get_gas_and_data_limits(self):
        return replace(DEFAULT_GAS_AND_DATA_LIMITS, revert_on_recipient_revert=True)


def emit_message_data(message: str = "hello") -> bytes:
    return encode_call("emitMessage(string)", ["string"], [message])


# =============================================================================
# Deployment helpers
# =============================================================================


def stake_and_register(
    ledger: Ledger,
    stake_manager: StakeManager,
    hub: RelayHub,
    owner: str,
    manager: str,
    workers: list[str],
    url: str = "http://relay.test",
    base_fee: int = 0,
    pct_fee: int = 0,
    unstake_delay: int = 2000,
) -> None:
    if ledger.balance_of(owner) < 2 * ETHER:
        ledger.set_balance(owner, 100 * ETHER)
    ledger.transact(stake_manager.stake_for_address, manager, unstake_delay, sender=owner, value=2 * ETHER)
    ledger.transact(stake_manager.authorize_hub_by_owner, manager, hub.address, sender=owner)
    ledger.transact(hub.add_relay_workers, workers, sender=manager)
    ledger.transact(hub.register_relay_server, base_fee, pct_fee, url, sender=manager)


def fund_paymaster(ledger: Ledger, paymaster, owner: str, amount: int = ETHER) -> None:
    ledger.set_balance(owner, ledger.balance_of(owner) + amount)
    ledger.transact(paymaster.deposit, sender=owner, value=amount)


def build_relay_request(
    sender: str,
    wallet: str,
    to: str,
    paymaster: str,
    worker: str,
    data: bytes = b"",
    nonce: int = 0,
    gas: int = 1_000_000,
    gas_price: int = 10,
    **request_fields,
) -> RelayRequest:
    return RelayRequest(
        request=ForwardRequest(
            from_=sender,
            to=to,
            gas=gas,
            nonce=nonce,
            data=data,
            **request_fields,
        ),
        relay_data=RelayData(
            gas_price=gas_price,
            relay_worker=worker,
            paymaster=paymaster,
            forwarder=wallet,
        ),
    )


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def ledger():
    return Ledger(chain_id=CHAIN_ID)


@pytest.fixture
def accounts():
    return SimpleNamespace(
        sender=make_account(1),
        relay_owner=make_account(2),
        manager=make_account(3),
        worker=make_account(4),
        paymaster_owner=make_account(5),
        token_owner=make_account(6),
        other=make_account(7),
    )


@pytest.fixture
def stake_manager(ledger):
    return StakeManager(ledger)


@pytest.fixture
def hub(ledger, stake_manager):
    return RelayHub(ledger, stake_manager)


@pytest.fixture
def relay(ledger, stake_manager, hub, accounts):
    stake_and_register(
        ledger,
        stake_manager,
        hub,
        accounts.relay_owner.address,
        accounts.manager.address,
        [accounts.worker.address],
    )
    return accounts.worker


@pytest.fixture
def paymaster(ledger, hub, accounts):
    return AcceptEverythingPaymaster(ledger, owner=accounts.paymaster_owner.address, relay_hub=hub.address)


@pytest.fixture
def funded_paymaster(ledger, paymaster, accounts):
    fund_paymaster(ledger, paymaster, accounts.paymaster_owner.address)
    return paymaster


@pytest.fixture
def wallet(ledger, accounts):
    return SmartWallet(ledger, accounts.sender.address)


@pytest.fixture
def factory(ledger):
    return SmartWalletFactory(ledger)


@pytest.fixture
def recipient(ledger, hub):
    return SampleRecipient(ledger, relay_hub=hub)


@pytest.fixture
def token(ledger, accounts):
    return Erc20Token(ledger, "Test Token", "TKN", owner=accounts.token_owner.address)


@pytest.fixture
def signed_request(ledger, accounts, wallet, recipient, funded_paymaster, relay):
    """A valid signed request from ``sender`` through its wallet, and its signature."""
    relay_request = build_relay_request(
        accounts.sender.address,
        wallet.address,
        recipient.address,
        funded_paymaster.address,
        relay.address,
        data=emit_message_data(),
    )
    signature = sign_relay_request(relay_request, accounts.sender.key, CHAIN_ID)
    return relay_request, signature


# =============================================================================
# Fake relay servers
# =============================================================================


class FakeRelayServer:
    """
    A relay server answering /getaddr and /relay from memory.

    ``relay_behaviour`` is one of "ok", "timeout", "error",
    "wrong_destination" or "bad_signature"; ``ping_behaviour`` one of "ok",
    "timeout", "not_ready".
    """

    def __init__(
        self,
        url: str,
        ledger: Ledger,
        hub: RelayHub,
        manager: str,
        worker,
        relay_behaviour: str = "ok",
        ping_behaviour: str = "ok",
        min_gas_price: int = 0,
        commitment_signer=None,
    ):
        self.url = url
        self.ledger = ledger
        self.hub = hub
        self.manager = manager
        self.worker = worker
        self.relay_behaviour = relay_behaviour
        self.ping_behaviour = ping_behaviour
        self.min_gas_price = min_gas_price
        self.commitment_signer = commitment_signer
        self.ping_count = 0
        self.relay_requests: list[RelayTransactionRequest] = []

    def ping_response(self) -> dict:
        return {
            "relayWorkerAddress": self.worker.address,
            "relayManagerAddress": self.manager,
            "relayHubAddress": self.hub.address,
            "minGasPrice": str(self.min_gas_price),
            "maxAcceptanceBudget": str(ACCEPTANCE_BUDGET),
            "chainId": self.ledger.chain_id,
            "ready": self.ping_behaviour != "not_ready",
            "version": "2.0.0",
        }

    def sign_transaction(self, request: RelayTransactionRequest, to: Optional[str] = None) -> str:
        relay_request = request.relay_request
        data = encode_relay_call(
            ACCEPTANCE_BUDGET,
            relay_request,
            request.metadata.signature,
            request.metadata.approval_data,
            RELAY_GAS_LIMIT,
        )
        signed = Account.sign_transaction(
            {
                "to": to or self.hub.address,
                "data": "0x" + data.hex(),
                "gas": RELAY_GAS_LIMIT,
                "gasPrice": relay_request.relay_data.gas_price,
                "nonce": self.ledger.get_transaction_count(self.worker.address),
                "value": 0,
                "chainId": self.ledger.chain_id,
            },
            self.worker.key,
        )
        return signed.raw_transaction.to_0x_hex()

    def handle(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/getaddr":
            self.ping_count += 1
            if self.ping_behaviour == "timeout":
                raise httpx.ConnectTimeout("ping timed out", request=request)
            return httpx.Response(200, json=self.ping_response())

        body = RelayTransactionRequest.model_validate(json.loads(request.content))
        self.relay_requests.append(body)
        if self.relay_behaviour == "timeout":
            raise httpx.ReadTimeout("relay timed out", request=request)
        if self.relay_behaviour == "error":
            return httpx.Response(200, json={"error": "relay refused"})
        if self.relay_behaviour == "bad_signature":
            unsigned = rlp.encode([0, 1, 21_000, bytes.fromhex(self.hub.address[2:]), 0, b"", 27, 0, 0])
            return httpx.Response(200, json={"signedTx": "0x" + unsigned.hex()})
        to = make_account(99).address if self.relay_behaviour == "wrong_destination" else None
        response = {"signedTx": self.sign_transaction(body, to)}
        if self.commitment_signer is not None:
            commitment = build_commitment(
                body.relay_request,
                body.metadata.signature,
                self.hub.address,
                time=self.ledger.now + 300,
            )
            receipt = sign_commitment(commitment, self.commitment_signer.key, self.hub.address)
            response["signedReceipt"] = receipt.model_dump(by_alias=True, mode="json")
        return httpx.Response(200, json=response)


class FakeRelayNetwork:
    """Routes HTTP requests to FakeRelayServers by host."""

    def __init__(self):
        self.servers: dict[str, FakeRelayServer] = {}

    def add(self, server: FakeRelayServer) -> FakeRelayServer:
        self.servers[httpx.URL(server.url).host] = server
        return server

    def handle(self, request: httpx.Request) -> httpx.Response:
        server = self.servers.get(request.url.host)
        if server is None:
            raise httpx.ConnectError("connection refused", request=request)
        return server.handle(request)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)


@pytest.fixture
def relay_network():
    return FakeRelayNetwork()


@pytest.fixture
def add_relay(ledger, stake_manager, hub, accounts, relay_network) -> Callable[..., FakeRelayServer]:
    """Stake, register and serve a new relay; returns its FakeRelayServer."""
    counter = iter(range(100, 200))

    def add(url: str, **server_kwargs) -> FakeRelayServer:
        index = next(counter)
        manager = make_account(index)
        worker = make_account(index + 100)
        stake_and_register(
            ledger,
            stake_manager,
            hub,
            accounts.relay_owner.address,
            manager.address,
            [worker.address],
            url=url,
        )
        return relay_network.add(
            FakeRelayServer(url, ledger, hub, manager.address, worker, **server_kwargs)
        )

    return add
