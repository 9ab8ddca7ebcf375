"""
Progress events emitted by the RelayClient.

Every ``relay_transaction`` call walks the same ordered steps, so
listeners can render progress as ``step / total``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional


class RelayStep(str, Enum):
    """Steps of relay_transaction, in order."""

    INIT = "Initializing"
    REFRESH_RELAYS = "Refreshing relays"
    DONE_REFRESH_RELAYS = "Relays refreshed"
    NEXT_RELAY = "Trying next relay"
    SIGN_REQUEST = "Signing request"
    VALIDATE_REQUEST = "Validating request"
    SEND_TO_RELAYER = "Sending request to relay"
    RELAYER_RESPONSE = "Relay responded"


_STEPS = list(RelayStep)
TOTAL_STEPS = len(_STEPS)


@dataclass(frozen=True)
class RelayEvent:
    """A progress notification."""

    step: RelayStep
    relay_url: Optional[str] = None
    relay_count: Optional[int] = None
    success: Optional[bool] = None

    @property
    def index(self) -> int:
        return _STEPS.index(self.step)

    @property
    def total(self) -> int:
        return TOTAL_STEPS

    def __str__(self) -> str:
        suffix = f" ({self.relay_url})" if self.relay_url else ""
        return f"[{self.index + 1}/{self.total}] {self.step.value}{suffix}"


RelayEventListener = Callable[[RelayEvent], None]
