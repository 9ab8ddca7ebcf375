"""
Data models for the relay protocol.

Wire models (requests sent to relay servers, ping responses, signed
commitments) are pydantic models with camelCase aliases, matching the JSON
spoken by relay servers. A RelayRequest is frozen: once signed, any change
has to go through ``model_copy`` and produces a request whose signature no
longer verifies.

Example:
    >>> from gasless_relay.models import ForwardRequest, RelayData, RelayRequest
    >>>
    >>> request = RelayRequest(
    ...     request=ForwardRequest(
    ...         from_="0xSender...",
    ...         to="0xRecipient...",
    ...         gas=1_000_000,
    ...         nonce=0,
    ...         data="0x...",
    ...     ),
    ...     relay_data=RelayData(
    ...         gas_price=10,
    ...         relay_worker="0xWorker...",
    ...         paymaster="0xPaymaster...",
    ...         forwarder="0xSmartWallet...",
    ...     ),
    ... )
"""

from dataclasses import dataclass
from typing import Annotated, Any, Optional

from pydantic import AfterValidator, BaseModel, BeforeValidator, Field, field_validator
from web3 import Web3

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def _to_checksum(value: str) -> str:
    return Web3.to_checksum_address(value)


def _to_hex_data(value: Any) -> str:
    if value is None or value == "":
        return "0x"
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, str):
        body = value.removeprefix("0x").removeprefix("0X")
        # Validate it is hex
        bytes.fromhex(body if len(body) % 2 == 0 else "0" + body)
        return "0x" + body.lower()
    raise ValueError(f"Cannot convert {type(value).__name__} to hex data")


Address = Annotated[str, AfterValidator(_to_checksum)]
HexData = Annotated[str, BeforeValidator(_to_hex_data)]


def hex_to_bytes(value: str) -> bytes:
    """Convert a 0x-prefixed hex string (possibly empty) to bytes."""
    body = value.removeprefix("0x")
    if len(body) % 2:
        body = "0" + body
    return bytes.fromhex(body)


# =============================================================================
# Relay request
# =============================================================================


class ForwardRequest(BaseModel):
    """The call the sender wants executed (the signed 'request' part)."""

    from_: Address = Field(..., alias="from")
    to: Address
    value: int = 0
    gas: int
    nonce: int
    data: HexData = "0x"
    token_recipient: Address = Field(ZERO_ADDRESS, alias="tokenRecipient")
    token_contract: Address = Field(ZERO_ADDRESS, alias="tokenContract")
    payback_tokens: int = Field(0, alias="paybackTokens")
    token_gas: int = Field(0, alias="tokenGas")
    is_deploy: bool = Field(False, alias="isDeploy")

    class Config:
        populate_by_name = True
        frozen = True


class RelayData(BaseModel):
    """Relay-specific part of a request: pricing, worker and collaborators."""

    gas_price: int = Field(..., alias="gasPrice")
    pct_relay_fee: int = Field(0, alias="pctRelayFee")
    base_relay_fee: int = Field(0, alias="baseRelayFee")
    relay_worker: Address = Field(..., alias="relayWorker")
    paymaster: Address
    forwarder: Address
    paymaster_data: HexData = Field("0x", alias="paymasterData")
    client_id: int = Field(1, alias="clientId")

    class Config:
        populate_by_name = True
        frozen = True


class RelayRequest(BaseModel):
    """A complete relay request as signed by the sender."""

    request: ForwardRequest
    relay_data: RelayData = Field(..., alias="relayData")

    class Config:
        populate_by_name = True
        frozen = True

    @property
    def selector(self) -> bytes:
        """First four bytes of the target call data (empty for deploys)."""
        return hex_to_bytes(self.request.data)[:4]

    def with_relay_data(self, **changes: Any) -> "RelayRequest":
        """Return a copy with some relay data fields replaced."""
        return self.model_copy(
            update={"relay_data": self.relay_data.model_copy(update=changes)}
        )


# =============================================================================
# Relay server wire models
# =============================================================================


class PingResponse(BaseModel):
    """Response of a relay server's GET /getaddr endpoint."""

    relay_worker_address: Address = Field(..., alias="relayWorkerAddress")
    relay_manager_address: Address = Field(..., alias="relayManagerAddress")
    relay_hub_address: Address = Field(..., alias="relayHubAddress")
    min_gas_price: int = Field(0, alias="minGasPrice")
    max_acceptance_budget: int = Field(0, alias="maxAcceptanceBudget")
    chain_id: Optional[int] = Field(None, alias="chainId")
    ready: bool = False
    version: str = ""

    class Config:
        populate_by_name = True

    @field_validator("min_gas_price", "max_acceptance_budget", mode="before")
    @classmethod
    def _empty_is_zero(cls, value: Any) -> Any:
        # Servers report unset amounts as empty strings
        if value == "" or value is None:
            return 0
        return value


class RelayMetadata(BaseModel):
    """Unsigned data sent alongside a relay request."""

    signature: HexData
    approval_data: HexData = Field("0x", alias="approvalData")
    relay_hub_address: Address = Field(..., alias="relayHubAddress")
    relay_max_nonce: int = Field(..., alias="relayMaxNonce")
    enable_qos: bool = Field(False, alias="enableQos")

    class Config:
        populate_by_name = True


class RelayTransactionRequest(BaseModel):
    """Body of POST /relay."""

    relay_request: RelayRequest = Field(..., alias="relayRequest")
    metadata: RelayMetadata

    class Config:
        populate_by_name = True


class Commitment(BaseModel):
    """A relay worker's promise to get a request mined before ``time``."""

    time: int
    from_: Address = Field(..., alias="from")
    to: Address
    data: HexData = "0x"
    relay_hub_address: Address = Field(..., alias="relayHubAddress")
    relay_worker: Address = Field(..., alias="relayWorker")
    enabled_qos: bool = Field(False, alias="enabledQos")
    signature: HexData = "0x"

    class Config:
        populate_by_name = True
        frozen = True


class CommitmentReceipt(BaseModel):
    """A Commitment countersigned by the relay worker."""

    commitment: Commitment
    worker_signature: HexData = Field(..., alias="workerSignature")
    worker_address: Address = Field(..., alias="workerAddress")

    class Config:
        populate_by_name = True


class RelayResponse(BaseModel):
    """Successful body of POST /relay."""

    signed_tx: HexData = Field(..., alias="signedTx")
    signed_receipt: Optional[CommitmentReceipt] = Field(None, alias="signedReceipt")
    transaction_hash: Optional[HexData] = Field(None, alias="transactionHash")

    class Config:
        populate_by_name = True


# =============================================================================
# Client-side request description
# =============================================================================


class TransactionDetails(BaseModel):
    """What the caller wants relayed; the client turns this into a RelayRequest."""

    from_: Address = Field(..., alias="from")
    to: Address
    data: HexData = "0x"
    value: int = 0
    gas: Optional[int] = None
    gas_price: Optional[int] = Field(None, alias="gasPrice")
    force_gas_price: Optional[int] = Field(None, alias="forceGasPrice")
    forwarder: Address
    paymaster: Address
    paymaster_data: HexData = Field("0x", alias="paymasterData")
    client_id: Optional[int] = Field(None, alias="clientId")
    token_recipient: Address = Field(ZERO_ADDRESS, alias="tokenRecipient")
    token_contract: Address = Field(ZERO_ADDRESS, alias="tokenContract")
    token_amount: int = Field(0, alias="tokenAmount")
    token_gas: Optional[int] = Field(None, alias="tokenGas")
    factory: Optional[Address] = None

    class Config:
        populate_by_name = True

    @property
    def is_deploy(self) -> bool:
        """A request naming a factory deploys a new smart wallet."""
        return self.factory is not None and self.factory != ZERO_ADDRESS


# =============================================================================
# Plain records
# =============================================================================


@dataclass(frozen=True)
class GasAndDataLimits:
    """Limits a paymaster imposes on the calls it sponsors."""

    acceptance_budget: int
    pre_relayed_call_gas_limit: int
    post_relayed_call_gas_limit: int
    calldata_size_limit: int
    revert_on_recipient_revert: bool = False


@dataclass(frozen=True)
class RelayRegistration:
    """A RelayServerRegistered event as seen on chain."""

    manager: str
    base_fee: int
    pct_fee: int
    url: str
    block_number: int = 0


@dataclass(frozen=True)
class RelayFailure:
    """A failed relay attempt, recorded for back-off."""

    timestamp: float
    manager: Optional[str]
    url: str


@dataclass(frozen=True)
class RelayCandidate:
    """A relay server being considered for one relay_transaction round."""

    url: str
    manager: Optional[str] = None
    base_fee: Optional[int] = None
    pct_fee: Optional[int] = None
    last_failure: Optional[float] = None
    ping_latency: Optional[float] = None
    preferred: bool = False


@dataclass(frozen=True)
class RelayInfo:
    """A candidate that answered its ping and passed the ping filter."""

    candidate: RelayCandidate
    ping_response: PingResponse

    @property
    def url(self) -> str:
        return self.candidate.url

    @property
    def manager(self) -> str:
        return self.candidate.manager or self.ping_response.relay_manager_address
