"""
Stake manager: relay managers bond native currency and authorize hubs.

Lifecycle of a relay manager's stake:

1. The owner stakes for the manager (``stake_for_address``); the first
   stake fixes the owner.
2. The owner authorizes a hub (``authorize_hub_by_owner``). The hub treats
   the manager as usable while the authorization has no end time, or its
   end time is still in the future.
3. To leave, the owner unauthorizes the hub, which starts a grace period
   of ``unstake_delay`` seconds, and unlocks the stake
   (``unlock_stake``). After the delay the stake can be withdrawn.
"""

from dataclasses import dataclass, replace
from typing import Optional

from gasless_relay.errors import Revert
from gasless_relay.ledger import Contract, Ledger
from gasless_relay.models import ZERO_ADDRESS


@dataclass(frozen=True)
class StakeInfo:
    """Stake entry of a relay manager."""

    stake: int = 0
    unstake_delay: int = 0
    # Timestamp from which the stake may be withdrawn; 0 while locked
    withdraw_time: int = 0
    owner: str = ZERO_ADDRESS


class StakeManager(Contract):
    """Holds relay manager stakes and hub authorizations."""

    def __init__(self, ledger: Ledger, max_unstake_delay: int = 30 * 24 * 3600, **kwargs):
        super().__init__(ledger, **kwargs)
        self.max_unstake_delay = max_unstake_delay

    def get_stake_info(self, relay_manager: str) -> StakeInfo:
        return self._get(("stake", relay_manager), StakeInfo())

    def get_authorized_until(self, relay_manager: str, relay_hub: str) -> Optional[int]:
        """None when the hub was never authorized, 0 while authorized without end."""
        return self._get(("authorized", relay_manager, relay_hub))

    def _owned_stake(self, relay_manager: str) -> StakeInfo:
        info = self.get_stake_info(relay_manager)
        if info.owner != self.msg_sender:
            raise Revert("not owner")
        return info

    def stake_for_address(self, relay_manager: str, unstake_delay: int) -> None:
        """Add ``msg.value`` to the manager's stake (payable)."""
        if relay_manager == self.msg_sender:
            raise Revert("relayManager cannot stake for itself")
        info = self.get_stake_info(relay_manager)
        if info.owner not in (ZERO_ADDRESS, self.msg_sender):
            raise Revert("not owner")
        if unstake_delay < info.unstake_delay:
            raise Revert("unstakeDelay cannot be decreased")
        if unstake_delay > self.max_unstake_delay:
            raise Revert("unstakeDelay too big")
        info = replace(
            info,
            stake=info.stake + self.msg_value,
            unstake_delay=unstake_delay,
            owner=self.msg_sender,
        )
        self._set(("stake", relay_manager), info)
        self._emit(
            "StakeAdded",
            relay_manager=relay_manager,
            owner=info.owner,
            stake=info.stake,
            unstake_delay=unstake_delay,
        )

    def unlock_stake(self, relay_manager: str) -> None:
        info = self._owned_stake(relay_manager)
        if info.withdraw_time != 0:
            raise Revert("already pending")
        withdraw_time = self.now + info.unstake_delay
        self._set(("stake", relay_manager), replace(info, withdraw_time=withdraw_time))
        self._emit("StakeUnlocked", relay_manager=relay_manager, owner=info.owner, withdraw_time=withdraw_time)

    def withdraw_stake(self, relay_manager: str) -> None:
        info = self._owned_stake(relay_manager)
        if info.withdraw_time == 0 or info.withdraw_time > self.now:
            raise Revert("Withdrawal is not due")
        self._set(("stake", relay_manager), None)
        self.ledger.transfer(self.address, info.owner, info.stake)
        self._emit("StakeWithdrawn", relay_manager=relay_manager, owner=info.owner, amount=info.stake)

    def authorize_hub_by_owner(self, relay_manager: str, relay_hub: str) -> None:
        self._owned_stake(relay_manager)
        self._set(("authorized", relay_manager, relay_hub), 0)
        self._emit("HubAuthorized", relay_manager=relay_manager, relay_hub=relay_hub)

    def unauthorize_hub_by_owner(self, relay_manager: str, relay_hub: str) -> None:
        info = self._owned_stake(relay_manager)
        until = self.get_authorized_until(relay_manager, relay_hub)
        if until != 0:
            raise Revert("hub not authorized")
        removal_time = self.now + info.unstake_delay
        self._set(("authorized", relay_manager, relay_hub), removal_time)
        self._emit(
            "HubUnauthorized",
            relay_manager=relay_manager,
            relay_hub=relay_hub,
            removal_time=removal_time,
        )

    def is_relay_manager_staked(
        self,
        relay_manager: str,
        relay_hub: str,
        min_stake: int,
        min_unstake_delay: int,
    ) -> bool:
        """
        Whether a manager may serve a hub right now.

        The manager must have at least ``min_stake`` locked (not unlocked),
        an unstake delay of at least ``min_unstake_delay``, and a hub
        authorization that has no end time or ends in the future.
        """
        info = self.get_stake_info(relay_manager)
        until = self.get_authorized_until(relay_manager, relay_hub)
        authorized = until is not None and (until == 0 or self.now < until)
        return (
            authorized
            and info.stake >= min_stake
            and info.unstake_delay >= min_unstake_delay
            and info.withdraw_time == 0
        )
