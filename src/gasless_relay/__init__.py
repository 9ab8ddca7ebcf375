"""
gasless-relay-sdk: meta-transaction relaying for accounts without gas.

A sender signs a RelayRequest; a relay server's worker submits it to the
RelayHub and a paymaster pays for the gas.

- ``RelayClient`` finds a relay, signs the request, and validates what
  the relay returns
- ``RelayHub`` settles relayed calls and charges paymasters (runs on the
  in-memory ``Ledger``)

Example:
    >>> from gasless_relay import RelayClient, RelayClientConfig, TransactionDetails
    >>> from gasless_relay.contract_interactor import ContractInteractor
    >>>
    >>> config = RelayClientConfig.for_network("rsk-testnet", relay_hub_address="0xHub...")
    >>> client = RelayClient(config, ContractInteractor(rpc_url, config.relay_hub_address))
    >>> client.add_account(private_key)
    >>> result = await client.relay_transaction(
    ...     TransactionDetails(
    ...         from_=sender,
    ...         to=recipient,
    ...         data=calldata,
    ...         forwarder=smart_wallet,
    ...         paymaster=paymaster,
    ...     )
    ... )
"""

__version__ = "0.4.0"

from gasless_relay.config import RelayClientConfig, RelayHubConfig
from gasless_relay.errors import (
    LocalViewCallError,
    OutOfGas,
    PaymasterRejectedError,
    PingFilterError,
    RelayClientError,
    RelayServerError,
    RelayTimeoutError,
    Revert,
    ValidationFailedError,
)
from gasless_relay.events import RelayEvent, RelayStep
from gasless_relay.ledger import ETHER, Ledger
from gasless_relay.models import (
    ZERO_ADDRESS,
    ForwardRequest,
    PingResponse,
    RelayData,
    RelayRequest,
    TransactionDetails,
)
from gasless_relay.relay_client import RelayClient, RelayingResult, dump_relaying_result
from gasless_relay.relay_hub import FatalRejection, RejectReason, RelayCallStatus, RelayHub, Settled
from gasless_relay.typed_data import recover_relay_request_signer, sign_relay_request

__all__ = [
    "__version__",
    # Client
    "RelayClient",
    "RelayClientConfig",
    "RelayingResult",
    "dump_relaying_result",
    "RelayEvent",
    "RelayStep",
    # Settlement
    "Ledger",
    "ETHER",
    "RelayHub",
    "RelayHubConfig",
    "RelayCallStatus",
    "RejectReason",
    "FatalRejection",
    "Settled",
    # Models
    "ZERO_ADDRESS",
    "ForwardRequest",
    "RelayData",
    "RelayRequest",
    "PingResponse",
    "TransactionDetails",
    # Signing
    "sign_relay_request",
    "recover_relay_request_signer",
    # Errors
    "Revert",
    "OutOfGas",
    "RelayClientError",
    "RelayTimeoutError",
    "RelayServerError",
    "PingFilterError",
    "LocalViewCallError",
    "PaymasterRejectedError",
    "ValidationFailedError",
]
