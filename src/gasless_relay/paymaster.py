"""
Paymasters: contracts that pay the RelayHub for relayed calls.

A paymaster keeps a deposit in the hub and is consulted twice per relayed
call:

- ``pre_relayed_call`` before the target call. Reverting rejects the
  request; the returned context is handed to the post hook.
- ``post_relayed_call`` after the target call, with its outcome and the
  gas used so far. Reverting rolls back the relayed call.

Both hooks run under the gas limits returned by ``get_gas_and_data_limits``.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

from gasless_relay.errors import Revert
from gasless_relay.ledger import Contract, Ledger
from gasless_relay.models import GasAndDataLimits, RelayData, RelayRequest

PAYMASTER_ACCEPTANCE_BUDGET = 150_000
PRE_RELAYED_CALL_GAS_LIMIT = 100_000
POST_RELAYED_CALL_GAS_LIMIT = 110_000
CALLDATA_SIZE_LIMIT = 10_500

DEFAULT_GAS_AND_DATA_LIMITS = GasAndDataLimits(
    acceptance_budget=PAYMASTER_ACCEPTANCE_BUDGET,
    pre_relayed_call_gas_limit=PRE_RELAYED_CALL_GAS_LIMIT,
    post_relayed_call_gas_limit=POST_RELAYED_CALL_GAS_LIMIT,
    calldata_size_limit=CALLDATA_SIZE_LIMIT,
)


class BasePaymaster(Contract, ABC):
    """
    Common paymaster plumbing: hub binding, hook access control and
    deposit management.

    Args:
        ledger: Ledger the paymaster lives on
        owner: Account allowed to manage the deposit
        relay_hub: Address of the hub allowed to call the hooks
    """

    def __init__(self, ledger: Ledger, owner: str, relay_hub: Optional[str] = None, **kwargs):
        super().__init__(ledger, **kwargs)
        self._set("owner", owner)
        if relay_hub is not None:
            self._set("hub", relay_hub)

    @property
    def owner(self) -> str:
        return self._get("owner")

    @property
    def relay_hub(self) -> Optional[str]:
        return self._get("hub")

    def _only_owner(self) -> None:
        if self.msg_sender != self.owner:
            raise Revert("Ownable: caller is not the owner")

    def _verify_hub(self) -> None:
        if self.msg_sender != self.relay_hub:
            raise Revert("Function can only be called by RelayHub")

    def set_relay_hub(self, relay_hub: str) -> None:
        self._only_owner()
        self._set("hub", relay_hub)

    def get_gas_and_data_limits(self) -> GasAndDataLimits:
        return DEFAULT_GAS_AND_DATA_LIMITS

    def get_relay_hub_deposit(self) -> int:
        hub = self.ledger.get_contract(self.relay_hub)
        return hub.balance_of(self.address)

    def deposit(self) -> None:
        """Forward ``msg.value`` to the hub as this paymaster's deposit (payable)."""
        hub = self.ledger.get_contract(self.relay_hub)
        result = self.ledger.call(hub.deposit_for, self.address, sender=self.address, value=self.msg_value)
        if not result.success:
            raise Revert(result.error or "deposit failed")

    def withdraw_relay_hub_deposit_to(self, amount: int, target: str) -> None:
        self._only_owner()
        hub = self.ledger.get_contract(self.relay_hub)
        result = self.ledger.call(hub.withdraw, amount, target, sender=self.address)
        if not result.success:
            raise Revert(result.error or "withdraw failed")

    def pre_relayed_call(
        self,
        relay_request: RelayRequest,
        signature: bytes,
        approval_data: bytes,
        max_acceptance_budget: int,
    ) -> Any:
        """Hub entry point; checks the caller and delegates to ``_pre_relayed_call``."""
        self._verify_hub()
        return self._pre_relayed_call(relay_request, signature, approval_data, max_acceptance_budget)

    def post_relayed_call(
        self,
        context: Any,
        success: bool,
        gas_used: int,
        relay_data: RelayData,
    ) -> None:
        """Hub entry point; checks the caller and delegates to ``_post_relayed_call``."""
        self._verify_hub()
        self._post_relayed_call(context, success, gas_used, relay_data)

    @abstractmethod
    def _pre_relayed_call(
        self,
        relay_request: RelayRequest,
        signature: bytes,
        approval_data: bytes,
        max_acceptance_budget: int,
    ) -> Any:
        """Accept (return a context) or reject (raise Revert) a request."""

    @abstractmethod
    def _post_relayed_call(
        self,
        context: Any,
        success: bool,
        gas_used: int,
        relay_data: RelayData,
    ) -> None:
        """Audit a relayed call after the fact."""


class AcceptEverythingPaymaster(BasePaymaster):
    """Pays for every request it is asked about."""

    def _pre_relayed_call(self, relay_request, signature, approval_data, max_acceptance_budget):
        return b""

    def _post_relayed_call(self, context, success, gas_used, relay_data):
        return None
