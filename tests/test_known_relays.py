import asyncio

import pytest

from gasless_relay.config import RelayClientConfig
from gasless_relay.contract_interactor import LedgerInteractor
from gasless_relay.known_relays import MAX_SCORE, KnownRelaysManager, default_score_calculator
from gasless_relay.models import RelayRegistration, TransactionDetails

from conftest import make_account, stake_and_register


class Clock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def details(accounts):
    return TransactionDetails(
        from_=accounts.sender.address,
        to=accounts.other.address,
        forwarder=accounts.other.address,
        paymaster=accounts.other.address,
        gas=300_000,
    )


@pytest.fixture
def register(ledger, stake_manager, hub, accounts):
    def add(index: int, url: str, base_fee: int = 0, pct_fee: int = 0) -> str:
        manager = make_account(100 + index).address
        stake_and_register(
            ledger,
            stake_manager,
            hub,
            accounts.relay_owner.address,
            manager,
            [make_account(200 + index).address],
            url=url,
            base_fee=base_fee,
            pct_fee=pct_fee,
        )
        return manager

    return add


def make_manager(ledger, hub, clock, **config_overrides) -> KnownRelaysManager:
    config = RelayClientConfig(relay_hub_address=hub.address, **config_overrides)
    return KnownRelaysManager(LedgerInteractor(ledger, hub), config, clock=clock)


def sorted_urls(manager: KnownRelaysManager, details: TransactionDetails) -> list[str]:
    candidates = asyncio.run(manager.get_relays_sorted_for_transaction(details, gas_price=10))
    return [candidate.url for candidate in candidates]


def test_cheaper_relays_come_first(ledger, hub, register, clock, details):
    register(1, "http://expensive.test", base_fee=1_000_000)
    register(2, "http://percent.test", pct_fee=50)
    register(3, "http://free.test")
    manager = make_manager(ledger, hub, clock)

    assert sorted_urls(manager, details) == [
        "http://free.test",
        "http://expensive.test",
        "http://percent.test",
    ]


def test_recent_failure_moves_relay_last(ledger, hub, register, clock, details):
    cheap = register(1, "http://cheap.test")
    register(2, "http://pricey.test", base_fee=1_000)
    manager = make_manager(ledger, hub, clock)

    manager.save_relay_failure(clock(), cheap, "http://cheap.test")

    assert sorted_urls(manager, details) == ["http://pricey.test", "http://cheap.test"]


def test_failure_ages_out_after_grace_period(ledger, hub, register, clock, details):
    cheap = register(1, "http://cheap.test")
    register(2, "http://pricey.test", base_fee=1_000)
    manager = make_manager(ledger, hub, clock, relay_timeout_grace_sec=60)
    manager.save_relay_failure(clock(), cheap, "http://cheap.test")

    clock.now += 61

    assert sorted_urls(manager, details) == ["http://cheap.test", "http://pricey.test"]
    # The failure log itself is never pruned
    assert len(manager.failures) == 1


def test_failing_relay_is_still_a_candidate(ledger, hub, register, clock, details):
    only = register(1, "http://only.test")
    manager = make_manager(ledger, hub, clock)
    manager.save_relay_failure(clock(), only, "http://only.test")

    candidates = asyncio.run(manager.get_relays_sorted_for_transaction(details))

    assert [c.url for c in candidates] == ["http://only.test"]
    assert candidates[0].last_failure == clock()


def test_preferred_relays_come_first_in_configured_order(ledger, hub, register, clock, details):
    register(1, "http://registered.test")
    register(2, "http://also-preferred.test", base_fee=5)
    manager = make_manager(
        ledger,
        hub,
        clock,
        preferred_relays="http://preferred.test/, http://also-preferred.test",
    )

    candidates = asyncio.run(manager.get_relays_sorted_for_transaction(details))

    assert [c.url for c in candidates] == [
        "http://preferred.test",
        "http://also-preferred.test",
        "http://registered.test",
    ]
    assert candidates[0].preferred and candidates[0].manager is None
    assert candidates[1].preferred and candidates[1].base_fee == 5
    assert not candidates[2].preferred


def test_preferred_relay_stays_first_after_failure(ledger, hub, register, clock, details):
    preferred = register(1, "http://preferred.test")
    register(2, "http://other.test")
    manager = make_manager(ledger, hub, clock, preferred_relays="http://preferred.test")
    manager.save_relay_failure(clock(), preferred, "http://preferred.test")

    assert sorted_urls(manager, details) == ["http://preferred.test", "http://other.test"]


def test_unstaked_managers_are_excluded(ledger, stake_manager, hub, register, clock, details, accounts):
    register(1, "http://staying.test")
    leaving = register(2, "http://leaving.test")
    ledger.transact(stake_manager.unlock_stake, leaving, sender=accounts.relay_owner.address)
    manager = make_manager(ledger, hub, clock)

    assert sorted_urls(manager, details) == ["http://staying.test"]


def test_latest_registration_of_a_manager_wins(ledger, hub, register, clock, details):
    relay_manager = register(1, "http://old.test")
    ledger.transact(hub.register_relay_server, 0, 0, "http://new.test", sender=relay_manager)
    manager = make_manager(ledger, hub, clock)

    assert sorted_urls(manager, details) == ["http://new.test"]
    assert len(manager.registrations) == 1


def test_ping_latency_breaks_fee_ties(ledger, hub, register, clock, details):
    register(1, "http://slow.test")
    register(2, "http://fast.test")
    manager = make_manager(ledger, hub, clock)
    manager.record_ping_latency("http://slow.test", 0.8)
    manager.record_ping_latency("http://fast.test", 0.1)

    assert sorted_urls(manager, details) == ["http://fast.test", "http://slow.test"]


def test_score_is_discounted_per_failure(details):
    registration = RelayRegistration(manager="0x" + "11" * 20, base_fee=0, pct_fee=0, url="http://r.test")

    clean = default_score_calculator(registration, details, 10, [])
    failed = default_score_calculator(registration, details, 10, [object(), object()])

    assert clean == MAX_SCORE - 3_000_000
    assert failed == pytest.approx(clean * 0.81)
