"""
ABI codec for the RelayHub entry point and for relay transactions.

- ``encode_relay_call`` / ``decode_relay_call``: calldata of
  ``relayCall(maxAcceptanceBudget, relayRequest, signature, approvalData,
  externalGasLimit)``
- ``encode_revert_reason`` / ``decode_revert_reason``: ``Error(string)``
  revert payloads
- ``decode_raw_transaction``: legacy (EIP-155) signed transactions as
  returned by relay servers
"""

from dataclasses import dataclass
from typing import Any, Optional, Sequence, Union

import rlp
from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_account import Account
from eth_keys.exceptions import BadSignature
from eth_keys.exceptions import ValidationError as SignatureValidationError
from rlp.exceptions import RLPException
from web3 import Web3

from gasless_relay.models import (
    ForwardRequest,
    RelayData,
    RelayRequest,
    hex_to_bytes,
)

# =============================================================================
# Signatures and selectors
# =============================================================================

FORWARD_REQUEST_TUPLE = (
    "(address,address,uint256,uint256,uint256,bytes,address,address,uint256,uint256,bool)"
)
RELAY_DATA_TUPLE = "(uint256,uint256,uint256,address,address,address,bytes,uint256)"
RELAY_REQUEST_TUPLE = f"({FORWARD_REQUEST_TUPLE},{RELAY_DATA_TUPLE})"

RELAY_CALL_ARG_TYPES = ["uint256", RELAY_REQUEST_TUPLE, "bytes", "bytes", "uint256"]
RELAY_CALL_SIGNATURE = f"relayCall({','.join(RELAY_CALL_ARG_TYPES)})"
RELAY_CALL_SELECTOR = Web3.keccak(text=RELAY_CALL_SIGNATURE)[:4]

# relayCall returns (paymasterAccepted, returnValue) to view callers
RELAY_CALL_RETURN_TYPES = ["bool", "bytes"]

ERROR_SELECTOR = Web3.keccak(text="Error(string)")[:4]

RELAY_SERVER_REGISTERED_SIGNATURE = "RelayServerRegistered(address,uint256,uint256,string)"
RELAY_SERVER_REGISTERED_TOPIC = Web3.keccak(text=RELAY_SERVER_REGISTERED_SIGNATURE)


def encode_call(signature: str, arg_types: Sequence[str], args: Sequence[Any]) -> bytes:
    """
    Encode calldata for a function call.

    Example:
        >>> encode_call("transfer(address,uint256)", ["address", "uint256"], [to, 10])
    """
    return Web3.keccak(text=signature)[:4] + encode(list(arg_types), list(args))


# =============================================================================
# relayCall
# =============================================================================


@dataclass(frozen=True)
class RelayCallArguments:
    """Decoded arguments of a relayCall transaction."""

    max_acceptance_budget: int
    relay_request: RelayRequest
    signature: bytes
    approval_data: bytes
    external_gas_limit: int


def relay_request_to_tuple(relay_request: RelayRequest) -> tuple:
    req = relay_request.request
    data = relay_request.relay_data
    return (
        (
            req.from_,
            req.to,
            req.value,
            req.gas,
            req.nonce,
            hex_to_bytes(req.data),
            req.token_recipient,
            req.token_contract,
            req.payback_tokens,
            req.token_gas,
            req.is_deploy,
        ),
        (
            data.gas_price,
            data.pct_relay_fee,
            data.base_relay_fee,
            data.relay_worker,
            data.paymaster,
            data.forwarder,
            hex_to_bytes(data.paymaster_data),
            data.client_id,
        ),
    )


def relay_request_from_tuple(value: tuple) -> RelayRequest:
    req, data = value
    return RelayRequest(
        request=ForwardRequest(
            from_=req[0],
            to=req[1],
            value=req[2],
            gas=req[3],
            nonce=req[4],
            data=req[5],
            token_recipient=req[6],
            token_contract=req[7],
            payback_tokens=req[8],
            token_gas=req[9],
            is_deploy=req[10],
        ),
        relay_data=RelayData(
            gas_price=data[0],
            pct_relay_fee=data[1],
            base_relay_fee=data[2],
            relay_worker=data[3],
            paymaster=data[4],
            forwarder=data[5],
            paymaster_data=data[6],
            client_id=data[7],
        ),
    )


def encode_relay_call(
    max_acceptance_budget: int,
    relay_request: RelayRequest,
    signature: Union[bytes, str],
    approval_data: Union[bytes, str],
    external_gas_limit: int,
) -> bytes:
    """
    Encode the calldata of a relayCall transaction.

    Args:
        max_acceptance_budget: Relay's maximum paymaster acceptance budget
        relay_request: The signed request
        signature: Sender's signature over the request
        approval_data: Paymaster approval data
        external_gas_limit: Gas limit of the enclosing transaction

    Returns:
        Selector-prefixed ABI calldata
    """
    if isinstance(signature, str):
        signature = hex_to_bytes(signature)
    if isinstance(approval_data, str):
        approval_data = hex_to_bytes(approval_data)
    return RELAY_CALL_SELECTOR + encode(
        RELAY_CALL_ARG_TYPES,
        [
            max_acceptance_budget,
            relay_request_to_tuple(relay_request),
            signature,
            approval_data,
            external_gas_limit,
        ],
    )


def decode_relay_call(data: Union[bytes, str]) -> RelayCallArguments:
    """
    Decode relayCall calldata.

    Raises:
        ValueError: If the data is not a relayCall invocation
    """
    if isinstance(data, str):
        data = hex_to_bytes(data)
    if data[:4] != RELAY_CALL_SELECTOR:
        raise ValueError("calldata is not a relayCall invocation")
    try:
        budget, request, signature, approval_data, gas_limit = decode(
            RELAY_CALL_ARG_TYPES, data[4:]
        )
    except DecodingError as e:
        raise ValueError(f"malformed relayCall calldata: {e}") from e
    return RelayCallArguments(
        max_acceptance_budget=budget,
        relay_request=relay_request_from_tuple(request),
        signature=signature,
        approval_data=approval_data,
        external_gas_limit=gas_limit,
    )


# =============================================================================
# Revert reasons
# =============================================================================


def encode_revert_reason(reason: str) -> bytes:
    return ERROR_SELECTOR + encode(["string"], [reason])


def decode_revert_reason(data: Union[bytes, str, None]) -> Optional[str]:
    """
    Extract the message of an ``Error(string)`` revert payload.

    Returns None for empty data; payloads of any other shape are returned
    as hex so that they are still visible in error reports.
    """
    if data is None:
        return None
    if isinstance(data, str):
        data = hex_to_bytes(data)
    if not data:
        return None
    if data[:4] == ERROR_SELECTOR:
        try:
            return decode(["string"], data[4:])[0]
        except DecodingError:
            pass
    return "0x" + data.hex()


# =============================================================================
# Raw transactions
# =============================================================================


@dataclass(frozen=True)
class DecodedTransaction:
    """A signed legacy transaction, decoded."""

    raw: bytes
    hash: str
    nonce: int
    gas_price: int
    gas: int
    to: Optional[str]
    value: int
    data: bytes
    v: int
    r: int
    s: int
    chain_id: Optional[int]
    sender: str

    @property
    def raw_hex(self) -> str:
        return "0x" + self.raw.hex()


def _to_int(value: bytes) -> int:
    return int.from_bytes(value, "big")


def decode_raw_transaction(raw: Union[bytes, str]) -> DecodedTransaction:
    """
    Decode a signed legacy transaction and recover its sender.

    Args:
        raw: RLP-encoded signed transaction, as bytes or 0x-hex

    Returns:
        DecodedTransaction with the recovered sender

    Raises:
        ValueError: If the payload is not a signed legacy transaction
    """
    if isinstance(raw, str):
        raw = hex_to_bytes(raw)
    if not raw or raw[0] < 0xC0:
        raise ValueError("only legacy transactions are supported")
    try:
        fields = rlp.decode(raw)
    except RLPException as e:
        raise ValueError(f"invalid transaction encoding: {e}") from e
    if not isinstance(fields, list) or len(fields) != 9:
        raise ValueError("signed legacy transaction must have 9 fields")
    if not all(isinstance(field, bytes) for field in fields):
        raise ValueError("transaction fields must be byte strings")

    nonce, gas_price, gas, to, value, data, v, r, s = fields
    v_int = _to_int(v)
    chain_id = (v_int - 35) // 2 if v_int >= 35 else None
    if to and len(to) != 20:
        raise ValueError(f"invalid destination address: 0x{to.hex()}")
    try:
        sender = Account.recover_transaction(raw)
    except (BadSignature, SignatureValidationError, RLPException, TypeError) as e:
        raise ValueError(f"invalid transaction signature: {e}") from e
    return DecodedTransaction(
        raw=raw,
        hash=Web3.keccak(raw).to_0x_hex(),
        nonce=_to_int(nonce),
        gas_price=_to_int(gas_price),
        gas=_to_int(gas),
        to=Web3.to_checksum_address(to) if to else None,
        value=_to_int(value),
        data=bytes(data),
        v=v_int,
        r=_to_int(r),
        s=_to_int(s),
        chain_id=chain_id,
        sender=Web3.to_checksum_address(sender),
    )


