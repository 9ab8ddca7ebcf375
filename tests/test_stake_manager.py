import pytest

from gasless_relay.errors import Revert
from gasless_relay.ledger import ETHER

from conftest import make_account


@pytest.fixture
def owner(ledger, accounts):
    ledger.set_balance(accounts.relay_owner.address, 10 * ETHER)
    return accounts.relay_owner.address


@pytest.fixture
def manager(accounts):
    return accounts.manager.address


@pytest.fixture
def staked(ledger, stake_manager, hub, owner, manager):
    ledger.transact(stake_manager.stake_for_address, manager, 2000, sender=owner, value=2 * ETHER)
    ledger.transact(stake_manager.authorize_hub_by_owner, manager, hub.address, sender=owner)
    return manager


def test_stake_records_owner_and_amount(stake_manager, staked, owner):
    info = stake_manager.get_stake_info(staked)

    assert info.owner == owner
    assert info.stake == 2 * ETHER
    assert info.unstake_delay == 2000
    assert info.withdraw_time == 0


def test_staked_and_authorized_manager_is_usable(hub, staked):
    assert hub.is_relay_manager_staked(staked)


def test_manager_cannot_stake_for_itself(ledger, stake_manager, manager):
    ledger.set_balance(manager, ETHER)

    with pytest.raises(Revert, match="cannot stake for itself"):
        ledger.transact(stake_manager.stake_for_address, manager, 2000, sender=manager, value=ETHER)


def test_only_owner_can_add_stake(ledger, stake_manager, staked, accounts):
    ledger.set_balance(accounts.other.address, ETHER)

    with pytest.raises(Revert, match="not owner"):
        ledger.transact(stake_manager.stake_for_address, staked, 2000, sender=accounts.other.address, value=1)


def test_unstake_delay_cannot_decrease(ledger, stake_manager, staked, owner):
    with pytest.raises(Revert, match="cannot be decreased"):
        ledger.transact(stake_manager.stake_for_address, staked, 1999, sender=owner, value=1)


def test_stake_too_small_is_not_usable(ledger, stake_manager, hub, owner):
    small = make_account(70).address
    ledger.transact(stake_manager.stake_for_address, small, 2000, sender=owner, value=ETHER // 2)
    ledger.transact(stake_manager.authorize_hub_by_owner, small, hub.address, sender=owner)

    assert not hub.is_relay_manager_staked(small)


def test_unauthorized_hub_stays_usable_until_delay_passes(ledger, stake_manager, hub, staked, owner):
    ledger.transact(stake_manager.unauthorize_hub_by_owner, staked, hub.address, sender=owner)

    assert stake_manager.get_authorized_until(staked, hub.address) == ledger.now + 2000
    assert hub.is_relay_manager_staked(staked)

    ledger.advance_time(2000)

    assert not hub.is_relay_manager_staked(staked)


def test_unauthorize_requires_authorization(ledger, stake_manager, hub, staked, owner):
    ledger.transact(stake_manager.unauthorize_hub_by_owner, staked, hub.address, sender=owner)

    with pytest.raises(Revert, match="hub not authorized"):
        ledger.transact(stake_manager.unauthorize_hub_by_owner, staked, hub.address, sender=owner)


def test_withdraw_after_unlock_delay(ledger, stake_manager, hub, staked, owner):
    ledger.transact(stake_manager.unlock_stake, staked, sender=owner)
    assert not hub.is_relay_manager_staked(staked)

    with pytest.raises(Revert, match="not due"):
        ledger.transact(stake_manager.withdraw_stake, staked, sender=owner)

    ledger.advance_time(2000)
    balance_before = ledger.balance_of(owner)
    ledger.transact(stake_manager.withdraw_stake, staked, sender=owner)

    assert ledger.balance_of(owner) == balance_before + 2 * ETHER
    assert stake_manager.get_stake_info(staked).stake == 0


def test_unlock_twice_fails(ledger, stake_manager, staked, owner):
    ledger.transact(stake_manager.unlock_stake, staked, sender=owner)

    with pytest.raises(Revert, match="already pending"):
        ledger.transact(stake_manager.unlock_stake, staked, sender=owner)
