"""
HTTP transport to relay servers.

Relay servers expose two endpoints:

- ``GET /getaddr``: liveness and pricing (PingResponse), answered quickly
- ``POST /relay``: relay a signed request, answered with ``{signedTx}`` or
  ``{error}``

Example:
    >>> async with RelayHttpClient(ping_timeout=3, relay_timeout=30) as http:
    ...     ping = await http.get_ping_response("https://relay.example.org")
    ...     print(ping.relay_worker_address, ping.min_gas_price)
"""

import logging
from typing import Any, Optional

import httpx

from gasless_relay.errors import RelayServerError, RelayTimeoutError
from gasless_relay.models import PingResponse, RelayResponse, RelayTransactionRequest

logger = logging.getLogger(__name__)


class RelayHttpClient:
    """
    Client for the relay server HTTP API.

    Args:
        ping_timeout: Timeout for /getaddr in seconds
        relay_timeout: Timeout for /relay in seconds
        transport: Optional httpx transport (e.g. ``httpx.MockTransport``)
    """

    def __init__(
        self,
        ping_timeout: float = 3.0,
        relay_timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.ping_timeout = ping_timeout
        self.relay_timeout = relay_timeout
        self._client = httpx.AsyncClient(timeout=relay_timeout, transport=transport)

    async def __aenter__(self) -> "RelayHttpClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _get_headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    @staticmethod
    def _check_error(url: str, body: Any) -> None:
        if isinstance(body, dict) and body.get("error"):
            raise RelayServerError(url, str(body["error"]))

    async def get_ping_response(self, relay_url: str, paymaster: Optional[str] = None) -> PingResponse:
        """
        Ping a relay server.

        Args:
            relay_url: Base URL of the relay server
            paymaster: Paymaster the request will use, for servers that
                price per paymaster

        Returns:
            Parsed PingResponse

        Raises:
            RelayTimeoutError: If the server does not answer in time
            RelayServerError: If the server answers with an error body
            httpx.HTTPStatusError: If the request fails
        """
        url = f"{relay_url.rstrip('/')}/getaddr"
        params = {"paymaster": paymaster} if paymaster else None
        try:
            response = await self._client.get(
                url,
                params=params,
                headers=self._get_headers(),
                timeout=self.ping_timeout,
            )
        except httpx.TimeoutException as e:
            raise RelayTimeoutError(relay_url, self.ping_timeout) from e
        response.raise_for_status()
        body = response.json()
        self._check_error(relay_url, body)
        logger.debug(f"Ping response from {relay_url}: {body}")
        return PingResponse.model_validate(body)

    async def relay_transaction(self, relay_url: str, request: RelayTransactionRequest) -> RelayResponse:
        """
        Send a signed relay request to a relay server.

        Args:
            relay_url: Base URL of the relay server
            request: Signed request and metadata

        Returns:
            RelayResponse carrying the signed transaction

        Raises:
            RelayTimeoutError: If the server does not answer in time
            RelayServerError: If the server answers with an error body
            httpx.HTTPStatusError: If the request fails
        """
        url = f"{relay_url.rstrip('/')}/relay"
        try:
            response = await self._client.post(
                url,
                json=request.model_dump(by_alias=True, mode="json"),
                headers=self._get_headers(),
                timeout=self.relay_timeout,
            )
        except httpx.TimeoutException as e:
            raise RelayTimeoutError(relay_url, self.relay_timeout) from e
        response.raise_for_status()
        body = response.json()
        self._check_error(relay_url, body)
        if not isinstance(body, dict) or not body.get("signedTx"):
            raise RelayServerError(relay_url, "response has no signedTx")
        return RelayResponse.model_validate(body)
