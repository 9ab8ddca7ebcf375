"""
Ping-based relay selection.

Candidates are probed one at a time, in rank order. A candidate is handed
to the relay client only after it answered ``/getaddr`` in time and its
ping response passed the ping filter. Candidates that fail are recorded
in ``errors`` (ordered by URL) and skipped.
"""

import logging
import time
from typing import Callable, Optional

import httpx

from gasless_relay.errors import PingFilterError, RelayClientError
from gasless_relay.http_client import RelayHttpClient
from gasless_relay.known_relays import KnownRelaysManager
from gasless_relay.models import PingResponse, RelayCandidate, RelayInfo, TransactionDetails

logger = logging.getLogger(__name__)

PingFilter = Callable[[PingResponse, TransactionDetails, int], None]


def make_default_ping_filter(relay_hub_address: Optional[str]) -> PingFilter:
    """
    Build the standard ping filter.

    The filter rejects relays that are not ready, serve another hub (when
    ``relay_hub_address`` is given), ask more than the proposed gas price
    or report no acceptance budget.
    """

    def ping_filter(ping: PingResponse, details: TransactionDetails, gas_price: int) -> None:
        if not ping.ready:
            raise PingFilterError("Relay not ready")
        if relay_hub_address is not None and ping.relay_hub_address != relay_hub_address:
            raise PingFilterError(
                f"Client is using RelayHub {relay_hub_address} while the server "
                f"responded with RelayHub address {ping.relay_hub_address}"
            )
        if ping.min_gas_price > gas_price:
            raise PingFilterError(
                f"Proposed gas price: {gas_price}; relay's MinGasPrice: {ping.min_gas_price}"
            )
        if ping.max_acceptance_budget <= 0:
            raise PingFilterError("Relay reported no acceptance budget")

    return ping_filter


class RelaySelectionManager:
    """
    Walks ranked candidates and returns the next relay that is alive.

    Args:
        candidates: Ranked candidates from the KnownRelaysManager
        http_client: Transport used for pings
        known_relays: Registry receiving ping latencies
        ping_filter: Raises PingFilterError for ineligible relays
        details: The transaction being relayed
        gas_price: Gas price the request will carry
    """

    def __init__(
        self,
        candidates: list[RelayCandidate],
        http_client: RelayHttpClient,
        known_relays: KnownRelaysManager,
        ping_filter: PingFilter,
        details: TransactionDetails,
        gas_price: int,
    ):
        self._remaining = list(candidates)
        self.http_client = http_client
        self.known_relays = known_relays
        self.ping_filter = ping_filter
        self.details = details
        self.gas_price = gas_price
        self.errors: dict[str, Exception] = {}

    @property
    def remaining(self) -> int:
        return len(self._remaining)

    async def _ping(self, candidate: RelayCandidate) -> PingResponse:
        started = time.monotonic()
        ping = await self.http_client.get_ping_response(candidate.url, self.details.paymaster)
        self.known_relays.record_ping_latency(candidate.url, time.monotonic() - started)
        if candidate.manager is not None and ping.relay_manager_address != candidate.manager:
            raise PingFilterError(
                f"Relay manager {ping.relay_manager_address} does not match "
                f"registered manager {candidate.manager}"
            )
        self.ping_filter(ping, self.details, self.gas_price)
        return ping

    async def select_next_relay(self) -> Optional[RelayInfo]:
        """
        Ping candidates until one is eligible.

        Returns:
            RelayInfo of the first eligible candidate, or None when the
            candidates are exhausted
        """
        while self._remaining:
            candidate = self._remaining.pop(0)
            try:
                ping = await self._ping(candidate)
            except (RelayClientError, httpx.HTTPError, ValueError) as e:
                self.errors[candidate.url] = e
                logger.info(f"Relay {candidate.url} skipped after ping: {e}")
                continue
            return RelayInfo(candidate=candidate, ping_response=ping)
        return None
