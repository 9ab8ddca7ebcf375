"""
QoS commitments.

With QoS enabled, a relay worker countersigns a Commitment: a promise to
get the request mined before ``commitment.time``. The worker signs the
keccak hash of the ABI encoding of the commitment together with the hub
address, as an EIP-191 personal message.
"""

from typing import Optional, Union

from eth_abi import encode
from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from gasless_relay.errors import ValidationFailedError
from gasless_relay.models import Commitment, CommitmentReceipt, RelayRequest, hex_to_bytes

COMMITMENT_TUPLE = "(uint256,address,address,bytes,address,address,bool)"


def build_commitment(
    relay_request: RelayRequest,
    signature: str,
    relay_hub_address: str,
    time: int,
    enabled_qos: bool = True,
) -> Commitment:
    """Commitment covering a signed relay request, valid until ``time``."""
    return Commitment(
        time=time,
        from_=relay_request.request.from_,
        to=relay_request.request.to,
        data=relay_request.request.data,
        relay_hub_address=relay_hub_address,
        relay_worker=relay_request.relay_data.relay_worker,
        enabled_qos=enabled_qos,
        signature=signature,
    )


def encode_commitment_for_sign(commitment: Commitment, relay_hub_address: str) -> bytes:
    return encode(
        [COMMITMENT_TUPLE, "address"],
        [
            (
                commitment.time,
                commitment.from_,
                commitment.to,
                hex_to_bytes(commitment.data),
                commitment.relay_hub_address,
                commitment.relay_worker,
                commitment.enabled_qos,
            ),
            Web3.to_checksum_address(relay_hub_address),
        ],
    )


def commitment_digest(commitment: Commitment, relay_hub_address: str) -> bytes:
    return Web3.keccak(encode_commitment_for_sign(commitment, relay_hub_address))


def sign_commitment(
    commitment: Commitment,
    worker_private_key: Union[str, bytes],
    relay_hub_address: str,
) -> CommitmentReceipt:
    """Countersign a commitment as the relay worker."""
    worker = Account.from_key(worker_private_key)
    signed = worker.sign_message(encode_defunct(primitive=commitment_digest(commitment, relay_hub_address)))
    return CommitmentReceipt(
        commitment=commitment,
        worker_signature=signed.signature.to_0x_hex(),
        worker_address=worker.address,
    )


def recover_commitment_signer(receipt: CommitmentReceipt, relay_hub_address: str) -> str:
    digest = commitment_digest(receipt.commitment, relay_hub_address)
    signer = Account.recover_message(
        encode_defunct(primitive=digest),
        signature=hex_to_bytes(receipt.worker_signature),
    )
    return Web3.to_checksum_address(signer)


def verify_commitment_receipt(
    receipt: Optional[CommitmentReceipt],
    relay_request: RelayRequest,
    relay_hub_address: str,
    now: int,
) -> None:
    """
    Check a worker's commitment receipt against the request that was sent.

    Raises:
        ValidationFailedError: If the receipt is missing, does not cover the
            request, has expired, or was not signed by the request's worker
    """
    if receipt is None:
        raise ValidationFailedError("relay did not return a commitment receipt")
    commitment = receipt.commitment
    request = relay_request.request
    worker = relay_request.relay_data.relay_worker
    expected = (request.from_, request.to, request.data, relay_hub_address, worker)
    actual = (
        commitment.from_,
        commitment.to,
        commitment.data,
        commitment.relay_hub_address,
        commitment.relay_worker,
    )
    if actual != expected:
        raise ValidationFailedError("commitment does not match the relay request")
    if not commitment.enabled_qos:
        raise ValidationFailedError("commitment does not enable QoS")
    if commitment.time <= now:
        raise ValidationFailedError("commitment already expired")
    if receipt.worker_address != worker:
        raise ValidationFailedError("commitment signed by another worker")
    try:
        signer = recover_commitment_signer(receipt, relay_hub_address)
    except Exception as e:
        raise ValidationFailedError("invalid commitment signature") from e
    if signer != worker:
        raise ValidationFailedError("commitment signature does not match the worker")
