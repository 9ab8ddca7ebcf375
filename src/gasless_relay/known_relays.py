"""
Known-relays registry.

Discovers relay servers from ``RelayServerRegistered`` events, keeps the
latest registration per relay manager, and remembers failures so that
recently failing relays are tried last.

Ranking for one transaction:

1. Preferred relays from configuration, in configured order.
2. Registered relays without a failure inside the grace window, best
   score first (ping latency breaks ties).
3. Registered relays with a recent failure, same ordering.

A failing relay is never excluded; once its failures age out of
``relay_timeout_grace_sec`` it competes on score again.
"""

import logging
import time
from typing import Callable, Optional

from gasless_relay.config import RelayClientConfig
from gasless_relay.contract_interactor import ChainInteractor
from gasless_relay.models import RelayCandidate, RelayFailure, RelayRegistration, TransactionDetails

logger = logging.getLogger(__name__)

ScoreCalculator = Callable[[RelayRegistration, TransactionDetails, int, list[RelayFailure]], float]

# Upper bound of the fee-based score; cheaper relays score closer to it
MAX_SCORE = 2**54


def default_score_calculator(
    relay: RelayRegistration,
    details: TransactionDetails,
    gas_price: int,
    failures: list[RelayFailure],
) -> float:
    """Score a relay by its fee for this transaction, discounted 10% per failure."""
    gas_limit = details.gas or 0
    price = gas_price * gas_limit
    net_price = price + price * relay.pct_fee // 100 + relay.base_fee
    return max(0, MAX_SCORE - net_price) * 0.9 ** len(failures)


class KnownRelaysManager:
    """
    Registry of relay servers available to a RelayClient.

    Args:
        interactor: Chain access used to read registrations
        config: Client configuration (preferred relays, lookup window,
            failure grace period)
        score_calculator: Optional replacement for the fee-based score
        clock: Time source in seconds, for tests
    """

    def __init__(
        self,
        interactor: ChainInteractor,
        config: RelayClientConfig,
        score_calculator: Optional[ScoreCalculator] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.interactor = interactor
        self.config = config
        self.score_calculator = score_calculator or default_score_calculator
        self.clock = clock
        self.preferred_relays = list(config.preferred_relays)
        self._registrations: dict[str, RelayRegistration] = {}
        self._failures: list[RelayFailure] = []
        self._latencies: dict[str, float] = {}

    @property
    def registrations(self) -> list[RelayRegistration]:
        return list(self._registrations.values())

    @property
    def failures(self) -> tuple[RelayFailure, ...]:
        return tuple(self._failures)

    async def refresh(self) -> None:
        """Reload registrations from the lookup window, keeping staked managers only."""
        block = await self.interactor.get_block_number()
        from_block = max(0, block - self.config.relay_lookup_window_blocks)
        registrations = await self.interactor.get_registered_relays(from_block)

        latest: dict[str, RelayRegistration] = {}
        for registration in sorted(registrations, key=lambda r: r.block_number):
            latest[registration.manager] = registration

        active: dict[str, RelayRegistration] = {}
        for manager, registration in latest.items():
            if await self.interactor.is_relay_manager_staked(manager):
                active[manager] = registration
            else:
                logger.info(f"Skipping relay {registration.url}: manager {manager} is not staked")
        self._registrations = active
        logger.debug(f"Known relays refreshed from block {from_block}: {len(active)} active")

    def save_relay_failure(self, timestamp: float, relay_manager: Optional[str], relay_url: str) -> None:
        """Record a failed relay attempt. The failure log is append-only."""
        self._failures.append(RelayFailure(timestamp=timestamp, manager=relay_manager, url=relay_url))
        logger.info(f"Recorded failure of relay {relay_url} (manager {relay_manager})")

    def record_ping_latency(self, relay_url: str, seconds: float) -> None:
        self._latencies[relay_url] = seconds

    def _failures_of(self, relay_url: str, manager: Optional[str]) -> list[RelayFailure]:
        return [
            failure
            for failure in self._failures
            if failure.url == relay_url or (manager is not None and failure.manager == manager)
        ]

    def _recent_failures(self, relay_url: str, manager: Optional[str]) -> list[RelayFailure]:
        cutoff = self.clock() - self.config.relay_timeout_grace_sec
        return [f for f in self._failures_of(relay_url, manager) if f.timestamp > cutoff]

    def _candidate(self, url: str, registration: Optional[RelayRegistration], preferred: bool) -> RelayCandidate:
        manager = registration.manager if registration else None
        failures = self._failures_of(url, manager)
        return RelayCandidate(
            url=url,
            manager=manager,
            base_fee=registration.base_fee if registration else None,
            pct_fee=registration.pct_fee if registration else None,
            last_failure=max((f.timestamp for f in failures), default=None),
            ping_latency=self._latencies.get(url),
            preferred=preferred,
        )

    async def get_relays_sorted_for_transaction(
        self,
        details: TransactionDetails,
        gas_price: int = 0,
        refresh: bool = True,
    ) -> list[RelayCandidate]:
        """
        Candidates for one relay_transaction round, in the order to try them.

        Preferred relays always come first, in configuration order, even
        when they failed recently. Back-off only reorders the remaining
        registered relays.

        Args:
            details: The transaction being relayed (used for scoring)
            gas_price: Gas price the request will carry
            refresh: Reload registrations first

        Returns:
            Ordered RelayCandidate list
        """
        if refresh:
            await self.refresh()

        by_url = {r.url.rstrip("/"): r for r in self._registrations.values()}
        preferred = [self._candidate(url, by_url.get(url), preferred=True) for url in self.preferred_relays]

        scored = []
        for registration in self._registrations.values():
            url = registration.url.rstrip("/")
            if url in self.preferred_relays:
                continue
            failures = self._recent_failures(url, registration.manager)
            score = self.score_calculator(registration, details, gas_price, failures)
            latency = self._latencies.get(url, float("inf"))
            scored.append((bool(failures), -score, latency, self._candidate(url, registration, preferred=False)))

        scored.sort(key=lambda entry: entry[:3])
        return preferred + [entry[3] for entry in scored]
