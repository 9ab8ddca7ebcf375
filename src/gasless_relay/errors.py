"""
Exceptions raised by the relay SDK.

Two families live here:

- Ledger-level failures (``Revert``, ``OutOfGas``) raised by contracts on
  the in-memory ledger. They unwind one call frame and are caught by the
  frame that made the call, exactly like a reverted message call.
- Client-side failures rooted at ``RelayClientError``. The relay client
  collects these in per-URL error maps instead of raising them out of
  ``relay_transaction``.
"""

from typing import Optional


# =============================================================================
# Ledger failures
# =============================================================================


class Revert(Exception):
    """A contract call reverted with a reason string."""

    def __init__(self, reason: str = "", data: bytes = b""):
        super().__init__(reason)
        self.reason = reason
        self.data = data


class OutOfGas(Revert):
    """A call frame ran out of gas."""

    def __init__(self, needed: int = 0, available: int = 0):
        super().__init__("out of gas")
        self.needed = needed
        self.available = available


# =============================================================================
# Client failures
# =============================================================================


class RelayClientError(Exception):
    """Base class for relay client failures."""


class RelayTimeoutError(RelayClientError):
    """A relay server did not answer within the allotted time."""

    def __init__(self, url: str, timeout: float):
        super().__init__(f"Relay request to {url} timed out after {timeout}s")
        self.url = url
        self.timeout = timeout


class RelayServerError(RelayClientError):
    """A relay server answered with an ``{error}`` body."""

    def __init__(self, url: str, message: str):
        super().__init__(f"Got error response from relay: {message}")
        self.url = url
        self.server_message = message


class PingFilterError(RelayClientError):
    """A relay answered its ping but is not eligible for this request."""


class LocalViewCallError(RelayClientError):
    """The local dry-run of relayCall failed; the server is not contacted."""

    def __init__(self, reason: str):
        super().__init__(f"local view call to 'relayCall()' reverted: {reason}")
        self.reason = reason


class PaymasterRejectedError(LocalViewCallError):
    """The local dry-run was rejected by the paymaster's preRelayedCall."""

    def __init__(self, reason: str):
        super().__init__(f"paymaster rejected in local view call: {reason}")
        self.paymaster_reason = reason


class ValidationFailedError(RelayClientError):
    """The transaction returned by a relay does not match the request."""

    def __init__(self, detail: Optional[str] = None):
        message = "Returned transaction did not pass validation"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.detail = detail
