"""
In-memory ledger for running the settlement contracts.

The RelayHub, stake manager, smart wallets and paymasters are on-ledger
state machines. This module gives them the execution environment they
expect from a chain:

- journaled contract storage, native balances and event logs, with
  ``snapshot()`` / ``revert_to()`` for nested sub-transactions
- call frames carrying ``msg.sender``, ``msg.data`` and ``msg.value``
- gas metering with per-frame limits and the 63/64 forwarding rule
- transactions with an origin and gas price, one block per transaction

Example:
    >>> from gasless_relay.ledger import Ledger, ETHER
    >>>
    >>> ledger = Ledger(chain_id=33)
    >>> ledger.set_balance(owner, 10 * ETHER)
    >>> receipt = ledger.transact(
    ...     stake_manager.stake_for_address,
    ...     manager,
    ...     2000,
    ...     sender=owner,
    ...     value=2 * ETHER,
    ... )
    >>> receipt.status
    1
"""

import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional, Sequence

import rlp
from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from gasless_relay.encoding import encode_revert_reason
from gasless_relay.errors import OutOfGas, Revert

logger = logging.getLogger(__name__)

ETHER = 10**18

# =============================================================================
# Gas schedule
# =============================================================================

TX_BASE_GAS = 21_000
TX_DATA_ZERO_GAS = 4
TX_DATA_NON_ZERO_GAS = 16
CALL_GAS = 700
SLOAD_GAS = 800
SSTORE_SET_GAS = 20_000
SSTORE_RESET_GAS = 5_000
LOG_GAS = 375
LOG_DATA_GAS = 8
WORD_SIZE = 32

DEFAULT_BLOCK_GAS_LIMIT = 6_800_000
GENESIS_TIMESTAMP = 1_600_000_000
DEFAULT_DEPLOYER = "0x00000000000000000000000000000000DeaDBeef"


def intrinsic_gas(data: bytes) -> int:
    """Gas charged for a transaction before any code runs."""
    zeros = data.count(0)
    return TX_BASE_GAS + zeros * TX_DATA_ZERO_GAS + (len(data) - zeros) * TX_DATA_NON_ZERO_GAS


def create_address(deployer: str, nonce: int) -> str:
    """Address of a contract created by ``deployer`` at ``nonce`` (CREATE)."""
    encoded = rlp.encode([bytes.fromhex(deployer[2:]), nonce])
    return Web3.to_checksum_address(Web3.keccak(encoded)[12:])


def create2_address(deployer: str, salt: bytes, init_code_hash: bytes) -> str:
    """Address of a contract created by ``deployer`` with CREATE2."""
    preimage = b"\xff" + bytes.fromhex(deployer[2:]) + salt + init_code_hash
    return Web3.to_checksum_address(Web3.keccak(preimage)[12:])


def function_selector(signature: str) -> bytes:
    return Web3.keccak(text=signature)[:4]


def split_argument_types(signature: str) -> list[str]:
    """
    Split the argument list of a function signature into ABI types.

    Args:
        signature: e.g. ``"transfer(address,uint256)"``

    Returns:
        e.g. ``["address", "uint256"]``; tuple types are kept whole
    """
    match = re.fullmatch(r"\s*\w+\((.*)\)\s*", signature)
    if match is None:
        raise ValueError(f"Invalid function signature: {signature}")
    body = match.group(1)
    types: list[str] = []
    depth = 0
    current = ""
    for char in body:
        if char == "," and depth == 0:
            types.append(current)
            current = ""
            continue
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        current += char
    if current:
        types.append(current)
    return types


# =============================================================================
# Records
# =============================================================================


@dataclass(frozen=True)
class Log:
    """An event emitted by a contract."""

    address: str
    event: str
    args: dict[str, Any]
    block_number: int
    transaction_hash: Optional[str] = None


@dataclass
class CallResult:
    """Outcome of a message call made from one contract to another."""

    success: bool
    return_value: Any = None
    return_data: bytes = b""
    gas_used: int = 0
    error: Optional[str] = None


@dataclass
class TransactionReceipt:
    """Outcome of a transaction included in a block."""

    transaction_hash: str
    sender: str
    to: Optional[str]
    status: int
    gas_used: int
    gas_price: int
    block_number: int
    logs: list[Log] = field(default_factory=list)
    return_value: Any = None
    error: Optional[str] = None
    revert: Optional[Revert] = field(default=None, repr=False)


# =============================================================================
# Gas metering
# =============================================================================


class GasMeter:
    """Tracks gas consumption against the limit of one call frame."""

    def __init__(self, limit: int, used: int = 0):
        self.limit = limit
        self.used = used

    @property
    def remaining(self) -> int:
        return self.limit - self.used

    def consume(self, amount: int) -> None:
        if amount > self.remaining:
            available = self.remaining
            self.used = self.limit
            raise OutOfGas(needed=amount, available=available)
        self.used += amount


@dataclass
class Frame:
    sender: str
    address: Optional[str]
    data: bytes
    value: int
    meter: GasMeter


@dataclass
class TransactionContext:
    origin: str
    gas_price: int
    hash: str


# =============================================================================
# Ledger
# =============================================================================


class Ledger:
    """
    Journaled in-memory chain state.

    Every mutation goes through the journal, so any prefix of work can be
    undone with ``revert_to(snapshot)``. Reverted calls, failed
    transactions and ``simulation()`` blocks all rely on this.
    """

    def __init__(
        self,
        chain_id: int = 33,
        block_gas_limit: int = DEFAULT_BLOCK_GAS_LIMIT,
        timestamp: int = GENESIS_TIMESTAMP,
        block_time: int = 1,
    ):
        self.chain_id = chain_id
        self.block_gas_limit = block_gas_limit
        self.block_number = 0
        self.timestamp = timestamp
        self.block_time = block_time
        self._storage: dict[tuple[str, Any], Any] = {}
        self._balances: dict[str, int] = {}
        self._tx_counts: dict[str, int] = {}
        self._contracts: dict[str, "Contract"] = {}
        self._receipts: dict[str, TransactionReceipt] = {}
        self._logs: list[Log] = []
        self._journal: list[Callable[[], None]] = []
        self._frames: list[Frame] = []
        self._tx: Optional[TransactionContext] = None

    # -------------------------------------------------------------------------
    # Journal
    # -------------------------------------------------------------------------

    def snapshot(self) -> tuple[int, int]:
        return len(self._journal), len(self._logs)

    def revert_to(self, snapshot: tuple[int, int]) -> None:
        journal_size, log_count = snapshot
        while len(self._journal) > journal_size:
            undo = self._journal.pop()
            undo()
        del self._logs[log_count:]

    @contextmanager
    def simulation(self) -> Iterator["Ledger"]:
        """Run a block of work and discard every state change it made."""
        snap = self.snapshot()
        try:
            yield self
        finally:
            self.revert_to(snap)

    def _set_attr(self, name: str, value: Any) -> None:
        old = getattr(self, name)
        self._journal.append(lambda: setattr(self, name, old))
        setattr(self, name, value)

    def _set_entry(self, table: dict, key: Any, value: Any) -> None:
        if key in table:
            old = table[key]
            self._journal.append(lambda: table.__setitem__(key, old))
        else:
            self._journal.append(lambda: table.pop(key, None))
        if value is None:
            table.pop(key, None)
        else:
            table[key] = value

    # -------------------------------------------------------------------------
    # Blocks and time
    # -------------------------------------------------------------------------

    @property
    def now(self) -> int:
        return self.timestamp

    def mine(self) -> int:
        self._set_attr("block_number", self.block_number + 1)
        self._set_attr("timestamp", self.timestamp + self.block_time)
        return self.block_number

    def advance_time(self, seconds: int) -> None:
        self._set_attr("timestamp", self.timestamp + seconds)

    # -------------------------------------------------------------------------
    # Accounts and contracts
    # -------------------------------------------------------------------------

    def balance_of(self, address: str) -> int:
        return self._balances.get(Web3.to_checksum_address(address), 0)

    def set_balance(self, address: str, amount: int) -> None:
        self._set_entry(self._balances, Web3.to_checksum_address(address), amount)

    def transfer(self, sender: str, recipient: str, amount: int) -> None:
        """Move native value between accounts; raises Revert when short."""
        if amount == 0:
            return
        balance = self.balance_of(sender)
        if balance < amount:
            raise Revert("insufficient balance for transfer")
        self.set_balance(sender, balance - amount)
        self.set_balance(recipient, self.balance_of(recipient) + amount)

    def get_transaction_count(self, address: str) -> int:
        return self._tx_counts.get(Web3.to_checksum_address(address), 0)

    def _bump_transaction_count(self, address: str) -> None:
        address = Web3.to_checksum_address(address)
        self._set_entry(self._tx_counts, address, self.get_transaction_count(address) + 1)

    def register(self, contract: "Contract", deployer: Optional[str] = None, address: Optional[str] = None) -> str:
        """Place a contract on the ledger and return its address."""
        if address is None:
            deployer = Web3.to_checksum_address(deployer or DEFAULT_DEPLOYER)
            address = create_address(deployer, self.get_transaction_count(deployer))
            self._bump_transaction_count(deployer)
        address = Web3.to_checksum_address(address)
        if address in self._contracts:
            raise Revert("contract already deployed at address")
        self._set_entry(self._contracts, address, contract)
        return address

    def get_contract(self, address: str) -> Optional["Contract"]:
        return self._contracts.get(Web3.to_checksum_address(address))

    def is_contract(self, address: str) -> bool:
        return Web3.to_checksum_address(address) in self._contracts

    def code_size(self, address: str) -> int:
        return 1 if self.is_contract(address) else 0

    # -------------------------------------------------------------------------
    # Storage and logs
    # -------------------------------------------------------------------------

    def load(self, address: str, key: Any, default: Any = None) -> Any:
        self.charge_gas(SLOAD_GAS)
        return self._storage.get((address, key), default)

    def store(self, address: str, key: Any, value: Any) -> None:
        old = self._storage.get((address, key))
        self.charge_gas(SSTORE_SET_GAS if not old and value else SSTORE_RESET_GAS)
        self._set_entry(self._storage, (address, key), value)

    def emit(self, address: str, event: str, /, **args: Any) -> None:
        self.charge_gas(LOG_GAS + LOG_DATA_GAS * WORD_SIZE * len(args))
        log = Log(
            address=address,
            event=event,
            args=args,
            block_number=self.block_number,
            transaction_hash=self._tx.hash if self._tx else None,
        )
        self._logs.append(log)

    def get_logs(
        self,
        address: Optional[str] = None,
        event: Optional[str] = None,
        from_block: int = 0,
    ) -> list[Log]:
        return [
            log
            for log in self._logs
            if (address is None or log.address == Web3.to_checksum_address(address))
            and (event is None or log.event == event)
            and log.block_number >= from_block
        ]

    def get_receipt(self, transaction_hash: str) -> Optional[TransactionReceipt]:
        return self._receipts.get(transaction_hash.lower())

    # -------------------------------------------------------------------------
    # Execution context
    # -------------------------------------------------------------------------

    @property
    def frame(self) -> Frame:
        if not self._frames:
            raise RuntimeError("No active call frame")
        return self._frames[-1]

    @property
    def msg_sender(self) -> str:
        return self.frame.sender

    @property
    def msg_data(self) -> bytes:
        return self.frame.data

    @property
    def msg_value(self) -> int:
        return self.frame.value

    @property
    def tx_origin(self) -> str:
        if self._tx is None:
            raise RuntimeError("No active transaction")
        return self._tx.origin

    @property
    def tx_gas_price(self) -> int:
        if self._tx is None:
            raise RuntimeError("No active transaction")
        return self._tx.gas_price

    def charge_gas(self, amount: int) -> None:
        if self._frames:
            self._frames[-1].meter.consume(amount)

    def gas_left(self) -> int:
        return self.frame.meter.remaining

    def gas_used(self) -> int:
        """Gas consumed so far by the running transaction, all frames included."""
        return sum(frame.meter.used for frame in self._frames)

    # -------------------------------------------------------------------------
    # Calls
    # -------------------------------------------------------------------------

    def call(
        self,
        fn: Callable[..., Any],
        *args: Any,
        sender: str,
        gas: Optional[int] = None,
        value: int = 0,
        **kwargs: Any,
    ) -> CallResult:
        """
        Call a contract method in a new frame.

        A Revert raised inside the callee rolls back everything the callee
        did and is returned as a failed CallResult; the caller keeps running.

        Args:
            fn: Bound method of a Contract
            sender: msg.sender seen by the callee
            gas: Gas limit for the callee (defaults to all available gas)
            value: Native value moved from sender to the callee
        """
        address = getattr(fn, "__self__").address
        return self._enter(sender, address, b"", value, gas, lambda: fn(*args, **kwargs))

    def call_data(
        self,
        to: str,
        data: bytes,
        *,
        sender: str,
        gas: Optional[int] = None,
        value: int = 0,
    ) -> CallResult:
        """Send ABI-encoded calldata to an address, like a low-level CALL."""
        to = Web3.to_checksum_address(to)
        return self._enter(sender, to, data, value, gas, lambda: self._dispatch(to, data))

    def _dispatch(self, to: str, data: bytes) -> Any:
        contract = self.get_contract(to)
        if contract is None:
            return _Returned((None, b""))
        return contract.dispatch(data)

    def _enter(
        self,
        sender: str,
        address: str,
        data: bytes,
        value: int,
        gas: Optional[int],
        body: Callable[[], Any],
    ) -> CallResult:
        parent = self._frames[-1].meter if self._frames else None
        if parent is not None:
            parent.consume(CALL_GAS)
            available = parent.remaining - parent.remaining // 64
            limit = available if gas is None else min(gas, available)
        else:
            limit = self.block_gas_limit if gas is None else gas

        snap = self.snapshot()
        frame = Frame(sender=sender, address=address, data=data, value=value, meter=GasMeter(limit))
        self._frames.append(frame)
        try:
            self.transfer(sender, address, value)
            result = body()
        except Exception as e:
            self._frames.pop()
            self.revert_to(snap)
            if parent is not None:
                parent.consume(frame.meter.used)
            if isinstance(e, Revert):
                reason, return_data = e.reason, e.data or encode_revert_reason(e.reason)
            else:
                logger.warning(f"Call to {address} raised {type(e).__name__}, reverting", exc_info=True)
                reason = str(e) or type(e).__name__
                return_data = encode_revert_reason(reason)
            return CallResult(success=False, return_data=return_data, gas_used=frame.meter.used, error=reason)
        self._frames.pop()
        if parent is not None:
            parent.consume(frame.meter.used)

        if isinstance(result, _Returned):
            return_value, return_data = result
        else:
            return_value, return_data = result, b""
        return CallResult(
            success=True,
            return_value=return_value,
            return_data=return_data,
            gas_used=frame.meter.used,
        )

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    def transact(
        self,
        fn: Callable[..., Any],
        *args: Any,
        sender: str,
        to: Optional[str] = None,
        gas: Optional[int] = None,
        gas_price: int = 0,
        value: int = 0,
        data: bytes = b"",
        transaction_hash: Optional[str] = None,
        check: bool = True,
    ) -> TransactionReceipt:
        """
        Run ``fn(*args)`` as a transaction sent by ``sender``.

        The transaction is mined into a new block. If ``fn`` raises Revert
        (or runs out of gas) every state change except the sender's nonce
        bump is rolled back.

        Args:
            fn: The entry point, usually a bound Contract method
            sender: Externally owned account sending the transaction
            to: Destination address (defaults to the contract owning fn)
            gas: Gas limit (defaults to the block gas limit)
            gas_price: Gas price visible to contracts as tx.gasprice
            value: Native value attached to the call
            data: Raw calldata, used for intrinsic gas
            transaction_hash: Hash to file the receipt under
            check: Raise Revert after recording a failed receipt

        Returns:
            TransactionReceipt of the mined transaction

        Raises:
            Revert: If the transaction failed and ``check`` is set
            Exception: Anything else ``fn`` raised, re-raised after its
                changes are rolled back and a failed receipt is recorded
        """
        if self._tx is not None:
            raise RuntimeError("A transaction is already running")

        sender = Web3.to_checksum_address(sender)
        if to is None:
            to = getattr(getattr(fn, "__self__", None), "address", None)
        gas = self.block_gas_limit if gas is None else gas
        if transaction_hash is None:
            preimage = f"{sender}:{self.get_transaction_count(sender)}:{self.block_number}".encode() + data
            transaction_hash = Web3.keccak(preimage).to_0x_hex()
        transaction_hash = transaction_hash.lower()

        base_gas = intrinsic_gas(data)
        if gas < base_gas:
            raise ValueError(f"intrinsic gas too low: {gas} < {base_gas}")

        self.mine()
        self._bump_transaction_count(sender)
        self._tx = TransactionContext(origin=sender, gas_price=gas_price, hash=transaction_hash)
        frame = Frame(sender=sender, address=to, data=data, value=value, meter=GasMeter(gas, base_gas))
        self._frames = [frame]
        log_start = len(self._logs)
        snap = self.snapshot()

        error: Optional[str] = None
        revert: Optional[Revert] = None
        crash: Optional[Exception] = None
        return_value = None
        try:
            if value:
                self.transfer(sender, to, value)
            return_value = fn(*args)
            if isinstance(return_value, _Returned):
                return_value = return_value[0]
        except Revert as e:
            self.revert_to(snap)
            error = e.reason
            revert = e
        except Exception as e:
            self.revert_to(snap)
            error = str(e) or type(e).__name__
            crash = e
        finally:
            self._frames = []
            self._tx = None

        receipt = TransactionReceipt(
            transaction_hash=transaction_hash,
            sender=sender,
            to=to,
            status=0 if error is not None else 1,
            gas_used=frame.meter.used,
            gas_price=gas_price,
            block_number=self.block_number,
            logs=list(self._logs[log_start:]),
            return_value=return_value,
            error=error,
            revert=revert,
        )
        self._set_entry(self._receipts, transaction_hash, receipt)
        if crash is not None:
            raise crash

        if error is not None:
            logger.debug(f"Transaction {transaction_hash} reverted: {error}")
            if check:
                raise Revert(error)
        return receipt

    def estimate_gas(self, sender: str, to: str, data: bytes, value: int = 0) -> int:
        """Gas a plain message call would use, measured in a discarded run."""
        with self.simulation():
            receipt = self.transact(
                self._dispatch,
                Web3.to_checksum_address(to),
                data,
                sender=sender,
                to=to,
                data=data,
                value=value,
            )
        return receipt.gas_used


class _Returned(tuple):
    """(python value, ABI-encoded return data) produced by Contract.dispatch."""


# =============================================================================
# Contracts
# =============================================================================


def abi_method(signature: str, returns: Sequence[str] = ()) -> Callable:
    """
    Expose a contract method to ABI-encoded calls.

    Args:
        signature: Canonical function signature, e.g. ``"emitMessage(string)"``
        returns: ABI types of the return value
    """

    def decorator(fn: Callable) -> Callable:
        fn.__abi_signature__ = signature
        fn.__abi_returns__ = tuple(returns)
        return fn

    return decorator


class Contract:
    """
    Base class for contracts living on a Ledger.

    State is kept in the ledger's journaled storage through ``_get`` and
    ``_set``; values stored there must be immutable. Methods decorated with
    ``@abi_method`` are reachable from raw calldata through ``dispatch``.
    """

    _abi_methods: dict[bytes, tuple[str, list[str], tuple[str, ...]]] = {}

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        methods = {}
        for klass in reversed(cls.__mro__):
            for name, attr in vars(klass).items():
                signature = getattr(attr, "__abi_signature__", None)
                if signature is not None:
                    methods[function_selector(signature)] = (
                        name,
                        split_argument_types(signature),
                        attr.__abi_returns__,
                    )
        cls._abi_methods = methods

    def __init__(self, ledger: Ledger, *, deployer: Optional[str] = None, address: Optional[str] = None):
        self.ledger = ledger
        self.address = ledger.register(self, deployer=deployer, address=address)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.address})"

    # Context

    @property
    def msg_sender(self) -> str:
        return self.ledger.msg_sender

    @property
    def msg_value(self) -> int:
        return self.ledger.msg_value

    @property
    def now(self) -> int:
        return self.ledger.now

    # Storage

    def _get(self, key: Any, default: Any = None) -> Any:
        return self.ledger.load(self.address, key, default)

    def _set(self, key: Any, value: Any) -> None:
        self.ledger.store(self.address, key, value)

    def _emit(self, event: str, /, **args: Any) -> None:
        self.ledger.emit(self.address, event, **args)

    # ABI dispatch

    def _calldata_for_decode(self, data: bytes) -> bytes:
        return data

    def dispatch(self, data: bytes) -> _Returned:
        """
        Decode calldata, run the selected method and encode its return value.

        Raises:
            Revert: Unknown selector or undecodable arguments
        """
        data = self._calldata_for_decode(data)
        entry = self._abi_methods.get(data[:4])
        if entry is None:
            raise Revert("function selector not recognized")
        name, arg_types, return_types = entry
        try:
            args = decode(arg_types, data[4:]) if arg_types else ()
        except DecodingError as e:
            raise Revert(f"invalid calldata: {e}") from e
        args = [
            Web3.to_checksum_address(arg) if arg_type == "address" else arg
            for arg_type, arg in zip(arg_types, args)
        ]
        result = getattr(self, name)(*args)
        if not return_types:
            return _Returned((result, b""))
        values = [result] if len(return_types) == 1 else list(result)
        return _Returned((result, encode(list(return_types), values)))
