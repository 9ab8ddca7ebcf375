"""
RelayClient: gets a transaction relayed by one of the known relay servers.

``relay_transaction`` builds a RelayRequest from TransactionDetails, then
walks the ranked relay candidates one at a time:

1. ping the relay and check it is eligible
2. fill the relay-specific fields, run the paymaster/approval data hooks
   and sign the request
3. dry-run ``relayCall`` locally; a request that would revert is never
   sent to the relay
4. send the request to the relay and validate the signed transaction it
   returns
5. rebroadcast the validated transaction

Candidates are tried sequentially because a signed request carries one
nonce and can only be executed once. The first validated transaction
wins; otherwise the result carries the ping and relaying errors of every
candidate tried.

Example:
    >>> from gasless_relay import RelayClient, RelayClientConfig, TransactionDetails
    >>> from gasless_relay.contract_interactor import ContractInteractor
    >>>
    >>> config = RelayClientConfig.for_network("rsk-testnet", relay_hub_address="0xHub...")
    >>> interactor = ContractInteractor("https://public-node.testnet.rsk.co", config.relay_hub_address)
    >>> async with RelayClient(config, interactor) as client:
    ...     client.add_account(private_key)
    ...     result = await client.relay_transaction(TransactionDetails(...))
    ...     if result.transaction is None:
    ...         print(dump_relaying_result(result))
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

import httpx
from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3.exceptions import Web3Exception

from gasless_relay.commitment import verify_commitment_receipt
from gasless_relay.config import RelayClientConfig
from gasless_relay.contract_interactor import ChainInteractor
from gasless_relay.encoding import DecodedTransaction
from gasless_relay.errors import (
    LocalViewCallError,
    PaymasterRejectedError,
    RelayServerError,
    RelayTimeoutError,
    ValidationFailedError,
)
from gasless_relay.events import RelayEvent, RelayEventListener, RelayStep
from gasless_relay.http_client import RelayHttpClient
from gasless_relay.known_relays import KnownRelaysManager
from gasless_relay.ledger import TX_BASE_GAS
from gasless_relay.models import (
    ForwardRequest,
    RelayData,
    RelayInfo,
    RelayMetadata,
    RelayRequest,
    RelayTransactionRequest,
    TransactionDetails,
    hex_to_bytes,
)
from gasless_relay.relay_selection import PingFilter, RelaySelectionManager, make_default_ping_filter
from gasless_relay.transaction_validator import TransactionValidator
from gasless_relay.typed_data import sign_relay_request

logger = logging.getLogger(__name__)

DataHook = Callable[[RelayRequest], Awaitable[str]]

# Broadcast errors meaning the relay already got the transaction mined
_WRONG_NONCE_MESSAGES = ("nonce too low", "known transaction", "the tx doesn't have the correct nonce")


async def _empty_data(relay_request: RelayRequest) -> str:
    return "0x"


@dataclass
class RelayingResult:
    """Outcome of relay_transaction."""

    transaction: Optional[DecodedTransaction] = None
    relay_url: Optional[str] = None
    ping_errors: dict[str, Exception] = field(default_factory=dict)
    relaying_errors: dict[str, Exception] = field(default_factory=dict)


@dataclass(frozen=True)
class RelayingAttempt:
    """Outcome of trying one relay."""

    transaction: Optional[DecodedTransaction] = None
    error: Optional[Exception] = None


@dataclass(frozen=True)
class BroadcastResult:
    """Outcome of rebroadcasting a relay's transaction."""

    has_receipt: bool = False
    wrong_nonce: bool = False
    broadcast_error: Optional[Exception] = None


def dump_relaying_result(result: RelayingResult) -> str:
    """Human readable summary of a RelayingResult."""
    lines = []
    if result.transaction is not None:
        lines.append(f"Relayed by {result.relay_url}: {result.transaction.hash}")
    else:
        lines.append("No relay accepted the transaction")
    if result.ping_errors:
        lines.append("Ping errors:")
        lines.extend(f"  {url} => {error}" for url, error in result.ping_errors.items())
    if result.relaying_errors:
        lines.append("Relaying errors:")
        lines.extend(f"  {url} => {error}" for url, error in result.relaying_errors.items())
    return "\n".join(lines)


class RelayClient:
    """
    Client that gets transactions relayed through untrusted relay servers.

    Args:
        config: Client configuration
        interactor: Chain access
        http_client: Relay server transport (built from the config timeouts
            when omitted)
        known_relays: Relay registry (built from ``interactor`` when omitted)
        transaction_validator: Validator for returned transactions
        async_approval_data: Hook returning the paymaster approval data for
            a signed request
        async_paymaster_data: Hook returning the paymaster data for a
            request, before signing
        ping_filter: Replacement for the default ping filter
        clock: Time source in seconds
    """

    def __init__(
        self,
        config: RelayClientConfig,
        interactor: ChainInteractor,
        http_client: Optional[RelayHttpClient] = None,
        known_relays: Optional[KnownRelaysManager] = None,
        transaction_validator: Optional[TransactionValidator] = None,
        async_approval_data: Optional[DataHook] = None,
        async_paymaster_data: Optional[DataHook] = None,
        ping_filter: Optional[PingFilter] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.interactor = interactor
        self.http_client = http_client or RelayHttpClient(
            ping_timeout=config.ping_timeout,
            relay_timeout=config.relay_timeout,
        )
        self.known_relays = known_relays or KnownRelaysManager(interactor, config, clock=clock)
        self.transaction_validator = transaction_validator
        self.async_approval_data = async_approval_data or _empty_data
        self.async_paymaster_data = async_paymaster_data or _empty_data
        self.ping_filter = ping_filter or make_default_ping_filter(
            config.relay_hub_address if config.verify_server_hub else None
        )
        self.clock = clock
        self.chain_id = config.chain_id
        self._accounts: dict[str, LocalAccount] = {}
        self._listeners: list[RelayEventListener] = []
        self._initialized = False

    async def __aenter__(self) -> "RelayClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.http_client.aclose()

    # =========================================================================
    # Accounts and listeners
    # =========================================================================

    def add_account(self, private_key: Union[str, bytes]) -> str:
        """Register a signing key; returns its address."""
        account = Account.from_key(private_key)
        self._accounts[account.address] = account
        return account.address

    def _account_for(self, address: str) -> LocalAccount:
        account = self._accounts.get(address)
        if account is None:
            raise ValueError(f"No signing key for {address}; call add_account first")
        return account

    def register_event_listener(self, listener: RelayEventListener) -> None:
        self._listeners.append(listener)

    def unregister_event_listener(self, listener: RelayEventListener) -> None:
        self._listeners = [registered for registered in self._listeners if registered != listener]

    def _emit(self, listeners: list[RelayEventListener], event: RelayEvent) -> None:
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.warning(f"Event listener failed on {event}", exc_info=True)

    # =========================================================================
    # relay_transaction
    # =========================================================================

    async def _init(self) -> None:
        if self._initialized:
            return
        chain_id = await self.interactor.get_chain_id()
        if self.chain_id is not None and self.chain_id != chain_id:
            raise ValueError(f"Configured chain id {self.chain_id} does not match the node's {chain_id}")
        self.chain_id = chain_id
        if self.transaction_validator is None:
            self.transaction_validator = TransactionValidator(self.config.relay_hub_address, chain_id)
        self._initialized = True

    async def relay_transaction(self, details: TransactionDetails) -> RelayingResult:
        """
        Get a transaction relayed.

        Listeners registered or removed while this call runs take effect
        on the next call.

        Args:
            details: What to relay; ``from_`` must have been added with
                ``add_account``

        Returns:
            RelayingResult with the validated transaction, or without one
            and with the errors met along the way

        Raises:
            ValueError: If there is no signing key for ``details.from_``
        """
        await self._init()
        self._account_for(details.from_)
        listeners = list(self._listeners)
        self._emit(listeners, RelayEvent(RelayStep.INIT))

        gas_price = await self._calculate_gas_price(details)
        details = await self._prepare_details(details, gas_price)
        nonce = await self._get_sender_nonce(details)

        self._emit(listeners, RelayEvent(RelayStep.REFRESH_RELAYS))
        candidates = await self.known_relays.get_relays_sorted_for_transaction(details, gas_price)
        self._emit(listeners, RelayEvent(RelayStep.DONE_REFRESH_RELAYS, relay_count=len(candidates)))

        selection = RelaySelectionManager(
            candidates,
            self.http_client,
            self.known_relays,
            self.ping_filter,
            details,
            gas_price,
        )
        result = RelayingResult()
        while True:
            relay = await selection.select_next_relay()
            if relay is None:
                break
            self._emit(listeners, RelayEvent(RelayStep.NEXT_RELAY, relay_url=relay.url))
            try:
                http_request = await self._prepare_relay_http_request(relay, details, nonce, listeners)
            except Exception as e:
                # Hooks are caller code; whatever they raise ends the round
                logger.warning(f"Preparing request for {relay.url} failed: {e}")
                result.relaying_errors[relay.url] = e
                break
            attempt = await self._attempt_relay(relay, http_request, listeners)
            if attempt.transaction is not None:
                result.transaction = attempt.transaction
                result.relay_url = relay.url
                break
            result.relaying_errors[relay.url] = attempt.error

        result.ping_errors = dict(selection.errors)
        if result.transaction is None:
            logger.warning(f"Relaying failed:\n{dump_relaying_result(result)}")
        return result

    async def _calculate_gas_price(self, details: Optional[TransactionDetails] = None) -> int:
        """Forced or explicit price, else network price plus the configured factor, floored."""
        if details is not None and details.force_gas_price:
            return details.force_gas_price
        if details is not None and details.gas_price:
            return details.gas_price
        network_price = await self.interactor.get_gas_price()
        price = network_price * (100 + self.config.gas_price_factor_percent) // 100
        return max(price, self.config.min_gas_price)

    async def _prepare_details(self, details: TransactionDetails, gas_price: int) -> TransactionDetails:
        """Fill in gas price, gas limit and token gas."""
        gas = details.gas
        if gas is None:
            if details.is_deploy:
                gas = self.config.default_deploy_gas
            else:
                data = hex_to_bytes(details.data) + hex_to_bytes(details.from_)
                estimate = await self.interactor.estimate_gas(details.forwarder, details.to, data, details.value)
                gas = max(estimate - TX_BASE_GAS, 0)
        token_gas = details.token_gas
        if token_gas is None:
            token_gas = self.config.default_token_gas if details.token_amount else 0
        return details.model_copy(update={"gas": gas, "gas_price": gas_price, "token_gas": token_gas})

    async def _get_sender_nonce(self, details: TransactionDetails) -> int:
        if details.is_deploy:
            return await self.interactor.get_factory_nonce(details.factory, details.from_)
        return await self.interactor.get_sender_nonce(details.forwarder)

    async def _prepare_relay_http_request(
        self,
        relay: RelayInfo,
        details: TransactionDetails,
        nonce: Optional[int] = None,
        listeners: Optional[list[RelayEventListener]] = None,
    ) -> RelayTransactionRequest:
        """
        Build and sign the request for one relay.

        Raises:
            Exception: Whatever the data hooks raise
        """
        if nonce is None:
            nonce = await self._get_sender_nonce(details)
        candidate = relay.candidate
        worker = relay.ping_response.relay_worker_address
        relay_request = RelayRequest(
            request=ForwardRequest(
                from_=details.from_,
                to=details.to,
                value=details.value,
                gas=details.gas,
                nonce=nonce,
                data=details.data,
                token_recipient=details.token_recipient,
                token_contract=details.token_contract,
                payback_tokens=details.token_amount,
                token_gas=details.token_gas or 0,
                is_deploy=details.is_deploy,
            ),
            relay_data=RelayData(
                gas_price=details.gas_price,
                pct_relay_fee=candidate.pct_fee if candidate.pct_fee is not None else self.config.pct_relay_fee,
                base_relay_fee=candidate.base_fee if candidate.base_fee is not None else self.config.base_relay_fee,
                relay_worker=worker,
                paymaster=details.paymaster,
                forwarder=details.factory if details.is_deploy else details.forwarder,
                paymaster_data=details.paymaster_data,
                client_id=details.client_id if details.client_id is not None else self.config.client_id,
            ),
        )
        paymaster_data = await self.async_paymaster_data(relay_request)
        relay_request = relay_request.with_relay_data(paymaster_data=paymaster_data)

        self._emit(listeners or [], RelayEvent(RelayStep.SIGN_REQUEST, relay_url=relay.url))
        account = self._account_for(details.from_)
        signature = sign_relay_request(relay_request, account.key, self.chain_id)
        approval_data = await self.async_approval_data(relay_request)

        worker_nonce = await self.interactor.get_transaction_count(worker)
        metadata = RelayMetadata(
            signature=signature,
            approval_data=approval_data,
            relay_hub_address=self.config.relay_hub_address,
            relay_max_nonce=worker_nonce + self.config.max_relay_nonce_gap,
            enable_qos=self.config.enable_qos,
        )
        return RelayTransactionRequest(relay_request=relay_request, metadata=metadata)

    async def _attempt_relay(
        self,
        relay: RelayInfo,
        http_request: RelayTransactionRequest,
        listeners: Optional[list[RelayEventListener]] = None,
    ) -> RelayingAttempt:
        """
        Dry-run, send and validate one request with one relay.

        Relay timeouts and transactions failing validation are reported to
        the known-relays registry; other errors are not the relay's fault.
        """
        listeners = listeners or []
        relay_request = http_request.relay_request
        metadata = http_request.metadata
        budget = relay.ping_response.max_acceptance_budget

        self._emit(listeners, RelayEvent(RelayStep.VALIDATE_REQUEST, relay_url=relay.url))
        dry_run = await self.interactor.validate_relay_call(
            budget,
            relay_request,
            metadata.signature,
            metadata.approval_data,
            self.config.max_view_gas_limit,
        )
        if dry_run.reverted:
            return RelayingAttempt(error=LocalViewCallError(dry_run.reason or "unknown reason"))
        if not dry_run.paymaster_accepted:
            return RelayingAttempt(error=PaymasterRejectedError(dry_run.reason or "unknown reason"))

        self._emit(listeners, RelayEvent(RelayStep.SEND_TO_RELAYER, relay_url=relay.url))
        try:
            response = await self.http_client.relay_transaction(relay.url, http_request)
        except RelayTimeoutError as e:
            self.known_relays.save_relay_failure(self.clock(), relay.manager, relay.url)
            return RelayingAttempt(error=e)
        except (RelayServerError, httpx.HTTPError, ValueError) as e:
            logger.info(f"Relay {relay.url} refused the request: {e}")
            return RelayingAttempt(error=e)

        self._emit(listeners, RelayEvent(RelayStep.RELAYER_RESPONSE, relay_url=relay.url, success=True))
        try:
            transaction = self.transaction_validator.validate_relay_response(
                http_request,
                budget,
                response.signed_tx,
            )
            if metadata.enable_qos:
                verify_commitment_receipt(
                    response.signed_receipt,
                    relay_request,
                    self.config.relay_hub_address,
                    now=int(self.clock()),
                )
        except ValidationFailedError as e:
            logger.warning(f"Relay {relay.url} returned an invalid transaction: {e}")
            self.known_relays.save_relay_failure(self.clock(), relay.manager, relay.url)
            return RelayingAttempt(error=e)

        broadcast = await self._broadcast_raw_tx(transaction)
        if broadcast.broadcast_error is not None and not (broadcast.has_receipt or broadcast.wrong_nonce):
            return RelayingAttempt(error=broadcast.broadcast_error)
        return RelayingAttempt(transaction=transaction)

    async def _broadcast_raw_tx(self, transaction: DecodedTransaction) -> BroadcastResult:
        """
        Broadcast a relay's transaction ourselves.

        A relay normally broadcasts its own transaction; rebroadcasting
        guards against relays that sign but never send. A nonce error here
        usually means the relay's copy is already mined.
        """
        try:
            tx_hash = await self.interactor.send_raw_transaction(transaction.raw_hex)
        except (ValueError, Web3Exception) as e:
            message = str(e).lower()
            wrong_nonce = any(text in message for text in _WRONG_NONCE_MESSAGES)
            receipt = await self.interactor.get_transaction_receipt(transaction.hash)
            logger.warning(f"Broadcast of {transaction.hash} failed: {e}")
            return BroadcastResult(has_receipt=receipt is not None, wrong_nonce=wrong_nonce, broadcast_error=e)
        receipt = await self.interactor.get_transaction_receipt(tx_hash)
        return BroadcastResult(has_receipt=receipt is not None)
