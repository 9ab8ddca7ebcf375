"""
Chain access for the relay client.

The relay client never talks to a node directly; it goes through a
ChainInteractor. Two implementations are provided:

- ``ContractInteractor``: AsyncWeb3 over JSON-RPC, for real deployments
- ``LedgerInteractor``: runs against an in-memory Ledger and RelayHub.
  Broadcast raw transactions are decoded and executed through the hub,
  which makes it suitable for simulations and tests.

Example:
    >>> from gasless_relay.contract_interactor import ContractInteractor
    >>>
    >>> interactor = ContractInteractor(
    ...     rpc_url="https://public-node.testnet.rsk.co",
    ...     relay_hub_address="0xHub...",
    ... )
    >>> gas_price = await interactor.get_gas_price()
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from eth_abi import decode
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TransactionNotFound

from gasless_relay.encoding import (
    RELAY_CALL_RETURN_TYPES,
    RELAY_SERVER_REGISTERED_TOPIC,
    decode_raw_transaction,
    decode_relay_call,
    decode_revert_reason,
    encode_call,
    encode_relay_call,
)
from gasless_relay.ledger import Ledger
from gasless_relay.models import RelayRegistration, RelayRequest, hex_to_bytes
from gasless_relay.relay_hub import FatalRejection, RelayHub, Settled

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RelayCallDryRun:
    """Result of simulating relayCall against current chain state."""

    paymaster_accepted: bool
    reverted: bool = False
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.paymaster_accepted and not self.reverted


@dataclass(frozen=True)
class ReceiptInfo:
    """The parts of a transaction receipt the client looks at."""

    transaction_hash: str
    status: int
    block_number: int
    gas_used: int


class ChainInteractor(ABC):
    """Everything the relay client needs to know about the chain."""

    relay_hub_address: str

    @abstractmethod
    async def get_chain_id(self) -> int: ...

    @abstractmethod
    async def get_gas_price(self) -> int: ...

    @abstractmethod
    async def get_block_gas_limit(self) -> int: ...

    @abstractmethod
    async def get_block_number(self) -> int: ...

    @abstractmethod
    async def get_sender_nonce(self, forwarder: str) -> int:
        """Next relay nonce of a smart wallet."""

    @abstractmethod
    async def get_factory_nonce(self, factory: str, owner: str) -> int:
        """Next deploy nonce of ``owner`` at a smart wallet factory."""

    @abstractmethod
    async def get_transaction_count(self, address: str) -> int: ...

    @abstractmethod
    async def is_relay_manager_staked(self, relay_manager: str) -> bool: ...

    @abstractmethod
    async def validate_relay_call(
        self,
        max_acceptance_budget: int,
        relay_request: RelayRequest,
        signature: str,
        approval_data: str,
        external_gas_limit: int,
    ) -> RelayCallDryRun:
        """Simulate relayCall as the request's relay worker would send it."""

    @abstractmethod
    async def estimate_gas(self, sender: str, to: str, data: bytes, value: int = 0) -> int: ...

    @abstractmethod
    async def get_registered_relays(self, from_block: int = 0) -> list[RelayRegistration]: ...

    @abstractmethod
    async def send_raw_transaction(self, raw_transaction: str) -> str:
        """Broadcast a signed transaction and return its hash."""

    @abstractmethod
    async def get_transaction_receipt(self, transaction_hash: str) -> Optional[ReceiptInfo]: ...


# =============================================================================
# JSON-RPC
# =============================================================================


class ContractInteractor(ChainInteractor):
    """
    ChainInteractor backed by an Ethereum-compatible JSON-RPC node.

    Args:
        rpc_url: Node endpoint
        relay_hub_address: RelayHub deployment to talk to
        timeout: RPC request timeout in seconds
    """

    def __init__(self, rpc_url: str, relay_hub_address: str, timeout: float = 30.0):
        self.rpc_url = rpc_url
        self.relay_hub_address = Web3.to_checksum_address(relay_hub_address)
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))

    async def get_chain_id(self) -> int:
        return await self.w3.eth.chain_id

    async def get_gas_price(self) -> int:
        return await self.w3.eth.gas_price

    async def get_block_gas_limit(self) -> int:
        block = await self.w3.eth.get_block("latest")
        return block["gasLimit"]

    async def get_block_number(self) -> int:
        return await self.w3.eth.block_number

    async def _call_uint(self, to: str, data: bytes) -> int:
        result = await self.w3.eth.call({"to": Web3.to_checksum_address(to), "data": data})
        return decode(["uint256"], result)[0]

    async def get_sender_nonce(self, forwarder: str) -> int:
        return await self._call_uint(forwarder, encode_call("nonce()", [], []))

    async def get_factory_nonce(self, factory: str, owner: str) -> int:
        return await self._call_uint(
            factory,
            encode_call("nonce(address)", ["address"], [Web3.to_checksum_address(owner)]),
        )

    async def get_transaction_count(self, address: str) -> int:
        return await self.w3.eth.get_transaction_count(Web3.to_checksum_address(address), "pending")

    async def is_relay_manager_staked(self, relay_manager: str) -> bool:
        result = await self.w3.eth.call({
            "to": self.relay_hub_address,
            "data": encode_call(
                "isRelayManagerStaked(address)",
                ["address"],
                [Web3.to_checksum_address(relay_manager)],
            ),
        })
        return decode(["bool"], result)[0]

    async def validate_relay_call(
        self,
        max_acceptance_budget: int,
        relay_request: RelayRequest,
        signature: str,
        approval_data: str,
        external_gas_limit: int,
    ) -> RelayCallDryRun:
        data = encode_relay_call(
            max_acceptance_budget, relay_request, signature, approval_data, external_gas_limit
        )
        try:
            result = await self.w3.eth.call({
                "from": relay_request.relay_data.relay_worker,
                "to": self.relay_hub_address,
                "data": data,
                "gas": external_gas_limit,
                "gasPrice": relay_request.relay_data.gas_price,
            })
        except ContractLogicError as e:
            reason = e.message if getattr(e, "message", None) else str(e)
            return RelayCallDryRun(paymaster_accepted=False, reverted=True, reason=reason)

        paymaster_accepted, return_value = decode(RELAY_CALL_RETURN_TYPES, result)
        if not paymaster_accepted:
            return RelayCallDryRun(
                paymaster_accepted=False,
                reason=decode_revert_reason(return_value),
            )
        return RelayCallDryRun(paymaster_accepted=True)

    async def estimate_gas(self, sender: str, to: str, data: bytes, value: int = 0) -> int:
        return await self.w3.eth.estimate_gas({
            "from": Web3.to_checksum_address(sender),
            "to": Web3.to_checksum_address(to),
            "data": data,
            "value": value,
        })

    async def get_registered_relays(self, from_block: int = 0) -> list[RelayRegistration]:
        logs = await self.w3.eth.get_logs({
            "address": self.relay_hub_address,
            "fromBlock": from_block,
            "toBlock": "latest",
            "topics": [RELAY_SERVER_REGISTERED_TOPIC],
        })
        registrations = []
        for log in logs:
            manager = Web3.to_checksum_address(bytes(log["topics"][1])[-20:])
            base_fee, pct_fee, url = decode(["uint256", "uint256", "string"], bytes(log["data"]))
            registrations.append(
                RelayRegistration(
                    manager=manager,
                    base_fee=base_fee,
                    pct_fee=pct_fee,
                    url=url,
                    block_number=log["blockNumber"],
                )
            )
        return registrations

    async def send_raw_transaction(self, raw_transaction: str) -> str:
        tx_hash = await self.w3.eth.send_raw_transaction(hex_to_bytes(raw_transaction))
        return tx_hash.to_0x_hex()

    async def get_transaction_receipt(self, transaction_hash: str) -> Optional[ReceiptInfo]:
        try:
            receipt = await self.w3.eth.get_transaction_receipt(transaction_hash)
        except TransactionNotFound:
            return None
        return ReceiptInfo(
            transaction_hash=transaction_hash,
            status=receipt["status"],
            block_number=receipt["blockNumber"],
            gas_used=receipt["gasUsed"],
        )


# =============================================================================
# In-memory ledger
# =============================================================================


class LedgerInteractor(ChainInteractor):
    """
    ChainInteractor backed by an in-memory Ledger and RelayHub.

    Args:
        ledger: The ledger
        relay_hub: The hub deployed on it
        gas_price: Gas price reported as the network price
    """

    def __init__(self, ledger: Ledger, relay_hub: RelayHub, gas_price: int = 1):
        self.ledger = ledger
        self.relay_hub = relay_hub
        self.relay_hub_address = relay_hub.address
        self.gas_price = gas_price

    async def get_chain_id(self) -> int:
        return self.ledger.chain_id

    async def get_gas_price(self) -> int:
        return self.gas_price

    async def get_block_gas_limit(self) -> int:
        return self.ledger.block_gas_limit

    async def get_block_number(self) -> int:
        return self.ledger.block_number

    def _contract(self, address: str) -> Any:
        contract = self.ledger.get_contract(address)
        if contract is None:
            raise ValueError(f"No contract at {address}")
        return contract

    async def get_sender_nonce(self, forwarder: str) -> int:
        return self._contract(forwarder).get_nonce()

    async def get_factory_nonce(self, factory: str, owner: str) -> int:
        return self._contract(factory).get_nonce(owner)

    async def get_transaction_count(self, address: str) -> int:
        return self.ledger.get_transaction_count(address)

    async def is_relay_manager_staked(self, relay_manager: str) -> bool:
        return self.relay_hub.is_relay_manager_staked(relay_manager)

    async def validate_relay_call(
        self,
        max_acceptance_budget: int,
        relay_request: RelayRequest,
        signature: str,
        approval_data: str,
        external_gas_limit: int,
    ) -> RelayCallDryRun:
        with self.ledger.simulation():
            outcome = self.relay_hub.relay_call(
                max_acceptance_budget,
                relay_request,
                signature,
                approval_data,
                external_gas_limit,
                sender=relay_request.relay_data.relay_worker,
            )
        if isinstance(outcome, FatalRejection):
            return RelayCallDryRun(paymaster_accepted=False, reverted=True, reason=outcome.message)
        if not outcome.paymaster_accepted:
            return RelayCallDryRun(paymaster_accepted=False, reason=outcome.revert_reason)
        return RelayCallDryRun(paymaster_accepted=True)

    async def estimate_gas(self, sender: str, to: str, data: bytes, value: int = 0) -> int:
        return self.ledger.estimate_gas(sender, to, data, value)

    async def get_registered_relays(self, from_block: int = 0) -> list[RelayRegistration]:
        return self.relay_hub.get_registrations(from_block)

    async def send_raw_transaction(self, raw_transaction: str) -> str:
        """
        Decode a signed relayCall transaction and execute it through the hub.

        Raises:
            ValueError: Wrong destination, wrong chain, or a nonce that is
                already used ("nonce too low")
        """
        tx = decode_raw_transaction(raw_transaction)
        if self.ledger.get_receipt(tx.hash) is not None:
            raise ValueError(f"known transaction: {tx.hash}")
        if tx.to != self.relay_hub_address:
            raise ValueError(f"transaction is not addressed to the RelayHub: {tx.to}")
        if tx.chain_id is not None and tx.chain_id != self.ledger.chain_id:
            raise ValueError(f"invalid chain id: {tx.chain_id}")
        expected_nonce = self.ledger.get_transaction_count(tx.sender)
        if tx.nonce < expected_nonce:
            raise ValueError(f"nonce too low: {tx.nonce} < {expected_nonce}")

        args = decode_relay_call(tx.data)
        outcome = self.relay_hub.relay_call(
            args.max_acceptance_budget,
            args.relay_request,
            args.signature,
            args.approval_data,
            args.external_gas_limit,
            sender=tx.sender,
            gas=tx.gas,
            gas_price=tx.gas_price,
            transaction_hash=tx.hash,
        )
        if isinstance(outcome, Settled):
            logger.info(f"Broadcast {tx.hash} settled with {outcome.status.name}")
        else:
            logger.info(f"Broadcast {tx.hash} rejected: {outcome.message}")
        return tx.hash

    async def get_transaction_receipt(self, transaction_hash: str) -> Optional[ReceiptInfo]:
        receipt = self.ledger.get_receipt(transaction_hash)
        if receipt is None:
            return None
        return ReceiptInfo(
            transaction_hash=receipt.transaction_hash,
            status=receipt.status,
            block_number=receipt.block_number,
            gas_used=receipt.gas_used,
        )
