"""
EIP-712 typed data for relay requests.

A relay request is signed as typed data under a domain bound to the
authenticator (the smart wallet, or the factory for deploy requests) and
the chain id. The same request signed for another authenticator or another
chain produces a different digest, and the nonce is part of the signed
struct, so a signature can only ever be accepted once.

Example:
    >>> from gasless_relay.typed_data import sign_relay_request, recover_relay_request_signer
    >>>
    >>> signature = sign_relay_request(relay_request, private_key, chain_id=33)
    >>> recover_relay_request_signer(relay_request, signature, chain_id=33)
    '0xSender...'
"""

from typing import Any, Optional, Union

from eth_abi import encode
from eth_account import Account
from eth_account.messages import SignableMessage, encode_typed_data
from web3 import Web3

from gasless_relay.models import RelayRequest, hex_to_bytes

DOMAIN_NAME = "RSK Enveloping Transaction"
DOMAIN_VERSION = "2"

EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

RELAY_DATA_TYPE = [
    {"name": "gasPrice", "type": "uint256"},
    {"name": "pctRelayFee", "type": "uint256"},
    {"name": "baseRelayFee", "type": "uint256"},
    {"name": "relayWorker", "type": "address"},
    {"name": "paymaster", "type": "address"},
    {"name": "forwarder", "type": "address"},
    {"name": "paymasterData", "type": "bytes"},
    {"name": "clientId", "type": "uint256"},
]

RELAY_REQUEST_TYPE = [
    {"name": "from", "type": "address"},
    {"name": "to", "type": "address"},
    {"name": "value", "type": "uint256"},
    {"name": "gas", "type": "uint256"},
    {"name": "nonce", "type": "uint256"},
    {"name": "data", "type": "bytes"},
    {"name": "tokenRecipient", "type": "address"},
    {"name": "tokenContract", "type": "address"},
    {"name": "paybackTokens", "type": "uint256"},
    {"name": "tokenGas", "type": "uint256"},
    {"name": "isDeploy", "type": "bool"},
    {"name": "relayData", "type": "RelayData"},
]

EIP712_DOMAIN_TYPEHASH = Web3.keccak(
    text="EIP712Domain(string name,string version,uint256 chainId,address verifyingContract)"
)


def build_typed_data(
    relay_request: RelayRequest,
    chain_id: int,
    verifying_contract: Optional[str] = None,
) -> dict[str, Any]:
    """
    Build the full EIP-712 message for a relay request.

    Args:
        relay_request: Request to sign
        chain_id: Chain the request is meant for
        verifying_contract: Authenticator address (defaults to the
            request's forwarder)

    Returns:
        Dict accepted by ``eth_account.messages.encode_typed_data(full_message=...)``
    """
    req = relay_request.request
    data = relay_request.relay_data
    verifier = Web3.to_checksum_address(verifying_contract or data.forwarder)
    return {
        "types": {
            "EIP712Domain": EIP712_DOMAIN_TYPE,
            "RelayRequest": RELAY_REQUEST_TYPE,
            "RelayData": RELAY_DATA_TYPE,
        },
        "primaryType": "RelayRequest",
        "domain": {
            "name": DOMAIN_NAME,
            "version": DOMAIN_VERSION,
            "chainId": chain_id,
            "verifyingContract": verifier,
        },
        "message": {
            "from": req.from_,
            "to": req.to,
            "value": req.value,
            "gas": req.gas,
            "nonce": req.nonce,
            "data": hex_to_bytes(req.data),
            "tokenRecipient": req.token_recipient,
            "tokenContract": req.token_contract,
            "paybackTokens": req.payback_tokens,
            "tokenGas": req.token_gas,
            "isDeploy": req.is_deploy,
            "relayData": {
                "gasPrice": data.gas_price,
                "pctRelayFee": data.pct_relay_fee,
                "baseRelayFee": data.base_relay_fee,
                "relayWorker": data.relay_worker,
                "paymaster": data.paymaster,
                "forwarder": data.forwarder,
                "paymasterData": hex_to_bytes(data.paymaster_data),
                "clientId": data.client_id,
            },
        },
    }


def _signable(relay_request: RelayRequest, chain_id: int, verifying_contract: Optional[str]) -> SignableMessage:
    return encode_typed_data(full_message=build_typed_data(relay_request, chain_id, verifying_contract))


def get_domain_separator(verifying_contract: str, chain_id: int) -> bytes:
    """Domain separator for an authenticator on a chain."""
    return Web3.keccak(
        encode(
            ["bytes32", "bytes32", "bytes32", "uint256", "address"],
            [
                EIP712_DOMAIN_TYPEHASH,
                Web3.keccak(text=DOMAIN_NAME),
                Web3.keccak(text=DOMAIN_VERSION),
                chain_id,
                Web3.to_checksum_address(verifying_contract),
            ],
        )
    )


def hash_relay_request(
    relay_request: RelayRequest,
    chain_id: int,
    verifying_contract: Optional[str] = None,
) -> bytes:
    """The 32-byte digest that gets signed (``keccak(0x1901 ‖ domain ‖ struct)``)."""
    signable = _signable(relay_request, chain_id, verifying_contract)
    return Web3.keccak(b"\x19" + signable.version + signable.header + signable.body)


def sign_relay_request(
    relay_request: RelayRequest,
    private_key: Union[str, bytes],
    chain_id: int,
    verifying_contract: Optional[str] = None,
) -> str:
    """
    Sign a relay request.

    Args:
        relay_request: Request to sign
        private_key: Sender's private key
        chain_id: Chain the request is meant for
        verifying_contract: Authenticator address (defaults to the
            request's forwarder)

    Returns:
        0x-prefixed 65-byte signature
    """
    signed = Account.from_key(private_key).sign_message(
        _signable(relay_request, chain_id, verifying_contract)
    )
    return signed.signature.to_0x_hex()


def recover_relay_request_signer(
    relay_request: RelayRequest,
    signature: Union[str, bytes],
    chain_id: int,
    verifying_contract: Optional[str] = None,
) -> str:
    """
    Recover the address that signed a relay request.

    Raises:
        ValueError: If the signature is malformed
    """
    if isinstance(signature, str):
        signature = hex_to_bytes(signature)
    if len(signature) != 65:
        raise ValueError(f"Signature must be 65 bytes, got {len(signature)}")
    signer = Account.recover_message(
        _signable(relay_request, chain_id, verifying_contract),
        signature=signature,
    )
    return Web3.to_checksum_address(signer)
