"""
RelayHub: the settlement engine for relayed calls.

``relay_call`` runs one relay request end to end and charges the paymaster
for it. Its outcome is one of two shapes:

- ``FatalRejection``: a precondition failed, or the authenticator refused
  the signature or nonce. Nothing changes on the ledger and nobody is
  charged. Relays are expected to catch these with a dry run.
- ``Settled``: the request went through the paymaster and target call
  steps. ``status`` says how far it got; ``charge`` is what the paymaster
  paid the relay manager.

Settlement steps after the preconditions:

a. authenticator verifies the signature and advances the nonce
b. paymaster ``pre_relayed_call``
c. target call through the authenticator
d. token back-payment
e. paymaster ``post_relayed_call``
f. paymaster balance-change guard
g. charge the paymaster, credit the relay manager
h. emit ``TransactionRelayed`` and ``TransactionResult``

Example:
    >>> hub = RelayHub(ledger, stake_manager)
    >>> outcome = hub.relay_call(
    ...     max_acceptance_budget=150_000,
    ...     relay_request=relay_request,
    ...     signature=signature,
    ...     approval_data=b"",
    ...     external_gas_limit=3_000_000,
    ...     sender=worker_address,
    ... )
    >>> if isinstance(outcome, Settled):
    ...     print(outcome.status, outcome.charge)
"""

import logging
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Optional, Union

from web3 import Web3

from gasless_relay.authenticator import Authenticator
from gasless_relay.config import RelayHubConfig
from gasless_relay.encoding import decode_revert_reason, encode_relay_call
from gasless_relay.errors import Revert
from gasless_relay.ledger import Contract, Ledger, intrinsic_gas
from gasless_relay.models import RelayData, RelayRegistration, RelayRequest, hex_to_bytes
from gasless_relay.paymaster import BasePaymaster
from gasless_relay.stake_manager import StakeManager

logger = logging.getLogger(__name__)


class RelayCallStatus(IntEnum):
    """Status of a settled relay call, in on-chain order."""

    OK = 0
    RELAYED_CALL_FAILED = 1
    REJECTED_BY_PRE_RELAYED = 2
    REJECTED_BY_FORWARDER = 3
    REJECTED_BY_RECIPIENT_REVERT = 4
    POST_RELAYED_FAILED = 5
    PAYMASTER_BALANCE_CHANGED = 6
    RELAYED_TOKEN_PAYMENT_FAILED = 7


class RejectReason(str, Enum):
    """Why relay_call refused a request without charging."""

    UNKNOWN_WORKER = "unknown_worker"
    WRONG_WORKER = "wrong_worker"
    MANAGER_NOT_STAKED = "manager_not_staked"
    WORKER_IS_CONTRACT = "worker_is_contract"
    IMPOSSIBLE_GAS_LIMIT = "impossible_gas_limit"
    INSUFFICIENT_GAS = "insufficient_gas"
    INVALID_GAS_PRICE = "invalid_gas_price"
    CALLDATA_TOO_LARGE = "calldata_too_large"
    ACCEPTANCE_BUDGET_TOO_HIGH = "acceptance_budget_too_high"
    PAYMASTER_BALANCE_TOO_LOW = "paymaster_balance_too_low"
    FORWARDER_REJECTED = "forwarder_rejected"
    REVERTED = "reverted"


# Revert messages, also surfaced verbatim in FatalRejection.message
UNKNOWN_WORKER = "Unknown relay worker"
WRONG_WORKER = "Not a right worker"
NOT_STAKED = "relay manager not staked"
WORKER_IS_CONTRACT = "relay worker cannot be a smart contract"
IMPOSSIBLE_GAS_LIMIT = "Impossible gas limit"
NOT_ENOUGH_GAS = "Not enough gas left for innerRelayCall to complete"
INVALID_GAS_PRICE = "Invalid gas price"
CALLDATA_TOO_LARGE = "msg.data exceeded limit"
BUDGET_TOO_HIGH = "acceptance budget too high"
BALANCE_TOO_LOW = "Paymaster balance too low"

_REASON_BY_MESSAGE = {
    UNKNOWN_WORKER: RejectReason.UNKNOWN_WORKER,
    WRONG_WORKER: RejectReason.WRONG_WORKER,
    NOT_STAKED: RejectReason.MANAGER_NOT_STAKED,
    WORKER_IS_CONTRACT: RejectReason.WORKER_IS_CONTRACT,
    IMPOSSIBLE_GAS_LIMIT: RejectReason.IMPOSSIBLE_GAS_LIMIT,
    NOT_ENOUGH_GAS: RejectReason.INSUFFICIENT_GAS,
    INVALID_GAS_PRICE: RejectReason.INVALID_GAS_PRICE,
    CALLDATA_TOO_LARGE: RejectReason.CALLDATA_TOO_LARGE,
    BUDGET_TOO_HIGH: RejectReason.ACCEPTANCE_BUDGET_TOO_HIGH,
    BALANCE_TOO_LOW: RejectReason.PAYMASTER_BALANCE_TOO_LOW,
}


@dataclass(frozen=True)
class FatalRejection:
    """relay_call refused the request; no state changed, nothing charged."""

    reason: RejectReason
    message: str


@dataclass(frozen=True)
class Settled:
    """relay_call completed; the paymaster was charged ``charge``."""

    status: RelayCallStatus
    charge: int
    gas_used: int
    return_value: bytes = b""
    revert_reason: Optional[str] = None
    transaction_hash: Optional[str] = None

    @property
    def paymaster_accepted(self) -> bool:
        return self.status != RelayCallStatus.REJECTED_BY_PRE_RELAYED


RelayCallOutcome = Union[FatalRejection, Settled]


class _ForwarderRejected(Revert):
    """Authenticator refused the request at verification time."""


class RelayHub(Contract):
    """
    Settlement engine holding paymaster deposits and relay worker rosters.

    Args:
        ledger: Ledger the hub lives on
        stake_manager: Stake manager consulted for relay manager stakes
        config: Hub constants (stake minimums, gas reserve, deposit cap)
    """

    def __init__(
        self,
        ledger: Ledger,
        stake_manager: StakeManager,
        config: Optional[RelayHubConfig] = None,
        **kwargs,
    ):
        super().__init__(ledger, **kwargs)
        self.stake_manager = stake_manager
        self.config = config or RelayHubConfig()

    # =========================================================================
    # Views
    # =========================================================================

    def balance_of(self, target: str) -> int:
        return self._get(("balance", Web3.to_checksum_address(target)), 0)

    def worker_to_manager(self, worker: str) -> Optional[str]:
        return self._get(("manager", Web3.to_checksum_address(worker)))

    def worker_count(self, relay_manager: str) -> int:
        return self._get(("workers", relay_manager), 0)

    def is_relay_manager_staked(self, relay_manager: str) -> bool:
        return self.stake_manager.is_relay_manager_staked(
            relay_manager,
            self.address,
            self.config.minimum_stake,
            self.config.minimum_unstake_delay,
        )

    def calculate_charge(self, gas_used: int, relay_data: RelayData) -> int:
        """``base fee + gas used * gas price * (100 + pct fee) / 100``."""
        return relay_data.base_relay_fee + (
            gas_used * relay_data.gas_price * (100 + relay_data.pct_relay_fee)
        ) // 100

    def get_registrations(self, from_block: int = 0) -> list[RelayRegistration]:
        return [
            RelayRegistration(
                manager=log.args["relay_manager"],
                base_fee=log.args["base_relay_fee"],
                pct_fee=log.args["pct_relay_fee"],
                url=log.args["relay_url"],
                block_number=log.block_number,
            )
            for log in self.ledger.get_logs(self.address, "RelayServerRegistered", from_block)
        ]

    # =========================================================================
    # Balances
    # =========================================================================

    def _add_balance(self, target: str, amount: int) -> None:
        self._set(("balance", target), self.balance_of(target) + amount)

    def deposit_for(self, target: str) -> None:
        """Credit ``msg.value`` to ``target``'s deposit (payable)."""
        amount = self.msg_value
        if amount > self.config.maximum_deposit:
            raise Revert("deposit too big")
        target = Web3.to_checksum_address(target)
        self._add_balance(target, amount)
        self._emit("Deposited", paymaster=target, sender=self.msg_sender, amount=amount)

    def withdraw(self, amount: int, dest: str) -> None:
        """Withdraw from the caller's own balance to ``dest``."""
        account = self.msg_sender
        balance = self.balance_of(account)
        if balance < amount:
            raise Revert("insufficient funds")
        self._set(("balance", account), balance - amount)
        self.ledger.transfer(self.address, dest, amount)
        self._emit("Withdrawn", account=account, dest=dest, amount=amount)

    # =========================================================================
    # Relay registration
    # =========================================================================

    def add_relay_workers(self, workers: list[str]) -> None:
        manager = self.msg_sender
        count = self.worker_count(manager) + len(workers)
        if count > self.config.maximum_relay_workers:
            raise Revert("too many workers")
        if not self.is_relay_manager_staked(manager):
            raise Revert(NOT_STAKED)
        for worker in workers:
            worker = Web3.to_checksum_address(worker)
            if self.worker_to_manager(worker) is not None:
                raise Revert("this worker has a manager")
            self._set(("manager", worker), manager)
        self._set(("workers", manager), count)
        self._emit("RelayWorkersAdded", relay_manager=manager, new_relay_workers=list(workers), workers_count=count)

    def register_relay_server(self, base_relay_fee: int, pct_relay_fee: int, url: str) -> None:
        manager = self.msg_sender
        if not self.is_relay_manager_staked(manager):
            raise Revert(NOT_STAKED)
        if self.worker_count(manager) == 0:
            raise Revert("no relay workers")
        self._emit(
            "RelayServerRegistered",
            relay_manager=manager,
            base_relay_fee=base_relay_fee,
            pct_relay_fee=pct_relay_fee,
            relay_url=url,
        )

    # =========================================================================
    # relayCall
    # =========================================================================

    def relay_call(
        self,
        max_acceptance_budget: int,
        relay_request: RelayRequest,
        signature: Union[bytes, str],
        approval_data: Union[bytes, str] = b"",
        external_gas_limit: Optional[int] = None,
        *,
        sender: str,
        gas: Optional[int] = None,
        gas_price: Optional[int] = None,
        transaction_hash: Optional[str] = None,
    ) -> RelayCallOutcome:
        """
        Submit a relayCall transaction from a relay worker.

        Args:
            max_acceptance_budget: Most gas the relay lets a paymaster spend
                deciding whether to accept
            relay_request: Signed request
            signature: Sender's signature
            approval_data: Paymaster approval data
            external_gas_limit: Gas limit the relay declares for the
                transaction (defaults to ``gas``)
            sender: Relay worker sending the transaction
            gas: Transaction gas limit (defaults to ``external_gas_limit``)
            gas_price: Transaction gas price (defaults to the request's)
            transaction_hash: Hash of the raw transaction, when broadcast

        Returns:
            FatalRejection or Settled; never raises for protocol failures
        """
        if isinstance(signature, str):
            signature = hex_to_bytes(signature)
        if isinstance(approval_data, str):
            approval_data = hex_to_bytes(approval_data)
        if external_gas_limit is None:
            external_gas_limit = gas or self.ledger.block_gas_limit
        gas = gas or external_gas_limit
        if gas_price is None:
            gas_price = relay_request.relay_data.gas_price

        data = encode_relay_call(max_acceptance_budget, relay_request, signature, approval_data, external_gas_limit)
        if gas < intrinsic_gas(data):
            return FatalRejection(RejectReason.INSUFFICIENT_GAS, NOT_ENOUGH_GAS)

        receipt = self.ledger.transact(
            self._relay_call,
            max_acceptance_budget,
            relay_request,
            signature,
            approval_data,
            external_gas_limit,
            sender=sender,
            to=self.address,
            gas=gas,
            gas_price=gas_price,
            data=data,
            transaction_hash=transaction_hash,
            check=False,
        )
        if receipt.status == 0:
            message = receipt.error or ""
            if isinstance(receipt.revert, _ForwarderRejected):
                reason = RejectReason.FORWARDER_REJECTED
            else:
                reason = _REASON_BY_MESSAGE.get(message, RejectReason.REVERTED)
            logger.info(f"relayCall rejected ({reason.value}): {message}")
            return FatalRejection(reason=reason, message=message)

        settled: Settled = receipt.return_value
        return Settled(
            status=settled.status,
            charge=settled.charge,
            gas_used=settled.gas_used,
            return_value=settled.return_value,
            revert_reason=settled.revert_reason,
            transaction_hash=receipt.transaction_hash,
        )

    def _check_preconditions(
        self,
        max_acceptance_budget: int,
        relay_request: RelayRequest,
        external_gas_limit: int,
        paymaster: BasePaymaster,
    ):
        relay_data = relay_request.relay_data
        request = relay_request.request
        worker = self.msg_sender

        manager = self.worker_to_manager(worker)
        if manager is None:
            raise Revert(UNKNOWN_WORKER)
        if worker != relay_data.relay_worker:
            raise Revert(WRONG_WORKER)
        if not self.is_relay_manager_staked(manager):
            raise Revert(NOT_STAKED)
        if self.ledger.is_contract(worker):
            raise Revert(WORKER_IS_CONTRACT)
        if external_gas_limit > self.ledger.block_gas_limit:
            raise Revert(IMPOSSIBLE_GAS_LIMIT)

        limits = paymaster.get_gas_and_data_limits()
        inner_gas = (
            request.gas
            + request.token_gas
            + limits.pre_relayed_call_gas_limit
            + limits.post_relayed_call_gas_limit
        )
        if self.ledger.gas_left() < inner_gas + self.config.gas_reserve + self.config.gas_overhead:
            raise Revert(NOT_ENOUGH_GAS)
        if self.ledger.tx_gas_price < relay_data.gas_price:
            raise Revert(INVALID_GAS_PRICE)
        if len(self.ledger.msg_data) > limits.calldata_size_limit:
            raise Revert(CALLDATA_TOO_LARGE)
        if max_acceptance_budget < limits.acceptance_budget:
            raise Revert(BUDGET_TOO_HIGH)

        max_possible_gas = intrinsic_gas(self.ledger.msg_data) + self.config.gas_overhead + inner_gas
        if self.calculate_charge(max_possible_gas, relay_data) > self.balance_of(relay_data.paymaster):
            raise Revert(BALANCE_TOO_LOW)
        return manager, limits

    def _relay_call(
        self,
        max_acceptance_budget: int,
        relay_request: RelayRequest,
        signature: bytes,
        approval_data: bytes,
        external_gas_limit: int,
    ) -> Settled:
        relay_data = relay_request.relay_data
        request = relay_request.request
        ledger = self.ledger

        paymaster = ledger.get_contract(relay_data.paymaster)
        if not isinstance(paymaster, BasePaymaster):
            raise Revert("paymaster is not a contract")
        forwarder = ledger.get_contract(relay_data.forwarder)
        if not isinstance(forwarder, Authenticator):
            raise Revert("forwarder is not a contract")

        manager, limits = self._check_preconditions(
            max_acceptance_budget, relay_request, external_gas_limit, paymaster
        )

        # (a) Signature and nonce; failure aborts the whole transaction
        verified = ledger.call(forwarder.verify_and_advance_nonce, relay_request, signature, sender=self.address)
        if not verified.success:
            raise _ForwarderRejected(verified.error or "forwarder rejected")

        balance_before = self.balance_of(paymaster.address)
        inner = ledger.snapshot()
        status = RelayCallStatus.OK
        return_value = b""
        revert_reason: Optional[str] = None
        charged = True

        # (b) Paymaster acceptance
        pre = ledger.call(
            paymaster.pre_relayed_call,
            relay_request,
            signature,
            approval_data,
            max_acceptance_budget,
            sender=self.address,
            gas=limits.pre_relayed_call_gas_limit,
        )
        if not pre.success:
            status = RelayCallStatus.REJECTED_BY_PRE_RELAYED
            revert_reason = pre.error
            self._emit(
                "TransactionRejectedByPaymaster",
                relay_manager=manager,
                paymaster=paymaster.address,
                sender=request.from_,
                to=request.to,
                relay_worker=self.msg_sender,
                selector=relay_request.selector,
                inner_gas_used=pre.gas_used,
                reason=pre.error,
            )
        else:
            call_snapshot = ledger.snapshot()

            # (c) Target call through the authenticator
            executed = ledger.call(forwarder.execute, relay_request, sender=self.address)
            if not executed.success:
                status = RelayCallStatus.REJECTED_BY_FORWARDER
                revert_reason = executed.error
            else:
                result = executed.return_value
                return_value = result.return_data
                if not result.success:
                    status = RelayCallStatus.RELAYED_CALL_FAILED
                    revert_reason = result.error or decode_revert_reason(result.return_data)

                # (d) Token back-payment, rolled back together with the call
                paid = ledger.call(forwarder.pay_tokens, relay_request, sender=self.address)
                if not paid.success:
                    ledger.revert_to(call_snapshot)
                    status = RelayCallStatus.RELAYED_TOKEN_PAYMENT_FAILED
                    revert_reason = paid.error
                    return_value = paid.return_data

            if status == RelayCallStatus.REJECTED_BY_FORWARDER or (
                status == RelayCallStatus.RELAYED_CALL_FAILED and limits.revert_on_recipient_revert
            ):
                if status == RelayCallStatus.RELAYED_CALL_FAILED:
                    status = RelayCallStatus.REJECTED_BY_RECIPIENT_REVERT
                ledger.revert_to(inner)
            else:
                # (e) Paymaster audit
                post = ledger.call(
                    paymaster.post_relayed_call,
                    pre.return_value,
                    status == RelayCallStatus.OK,
                    ledger.gas_used(),
                    relay_data,
                    sender=self.address,
                    gas=limits.post_relayed_call_gas_limit,
                )
                if not post.success:
                    ledger.revert_to(inner)
                    status = RelayCallStatus.POST_RELAYED_FAILED
                    revert_reason = post.error
                    charged = False

        # (f) Nothing but the charge below may move the paymaster's deposit
        if charged and self.balance_of(paymaster.address) != balance_before:
            ledger.revert_to(inner)
            status = RelayCallStatus.PAYMASTER_BALANCE_CHANGED
            revert_reason = None
            charged = False

        # (g) Charge
        gas_used = ledger.gas_used() + self.config.post_overhead
        charge = self.calculate_charge(gas_used, relay_data) if charged else 0
        if charge:
            self._set(("balance", paymaster.address), self.balance_of(paymaster.address) - charge)
            self._add_balance(manager, charge)

        # (h) Result events
        self._emit(
            "TransactionRelayed",
            relay_manager=manager,
            relay_worker=self.msg_sender,
            sender=request.from_,
            to=request.to,
            paymaster=paymaster.address,
            selector=relay_request.selector,
            status=status,
            charge=charge,
        )
        self._emit("TransactionResult", status=status, return_value=return_value)
        logger.info(
            f"relayCall from {request.from_} settled with {status.name}, "
            f"charged {charge} to {paymaster.address}"
        )
        return Settled(
            status=status,
            charge=charge,
            gas_used=gas_used,
            return_value=return_value,
            revert_reason=revert_reason,
        )
