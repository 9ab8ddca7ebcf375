"""
Authenticators: contracts that vouch for the sender of a relay request.

The RelayHub talks to an authenticator in three steps, always in this
order and always from the same caller:

1. ``verify_and_advance_nonce`` checks the nonce and the EIP-712 signature
   and bumps the nonce. The request is now "verified".
2. ``execute`` re-checks that the verified nonce is the one being
   executed and performs the call (or deploy) on behalf of the sender.
3. ``pay_tokens`` transfers the token back-payment to the relay.

Two implementations are provided:

- ``SmartWallet``: a per-owner wallet. Target calls are made from the
  wallet with the owner's address appended to the calldata.
- ``SmartWalletFactory``: authenticates deploy requests and creates
  SmartWallets at deterministic (CREATE2) addresses.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from eth_abi import encode
from web3 import Web3

from gasless_relay.encoding import encode_call, encode_revert_reason
from gasless_relay.errors import Revert
from gasless_relay.ledger import Contract, Ledger, abi_method, create2_address
from gasless_relay.models import ZERO_ADDRESS, ForwardRequest, RelayRequest, hex_to_bytes
from gasless_relay.typed_data import recover_relay_request_signer

VERIFIED = "verified"
EXECUTED = "executed"

# Stands in for keccak(creation code) in CREATE2 address derivation
SMART_WALLET_CODE_HASH = Web3.keccak(text="gasless_relay.SmartWallet")


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of the target call made by an authenticator."""

    success: bool
    return_data: bytes = b""
    error: Optional[str] = None


class Authenticator(Contract, ABC):
    """Interface the RelayHub expects from a forwarder."""

    @abstractmethod
    def get_nonce(self, sender: Optional[str] = None) -> int:
        """Next nonce expected from ``sender``."""

    @abstractmethod
    def verify_and_advance_nonce(self, relay_request: RelayRequest, signature: bytes) -> None:
        """
        Verify a request and consume its nonce.

        Raises:
            Revert: "nonce mismatch" or "signature mismatch"
        """

    @abstractmethod
    def execute(self, relay_request: RelayRequest) -> ExecutionResult:
        """
        Perform the verified request.

        Target call failures are reported in the result, not raised.

        Raises:
            Revert: "nonce mismatch" if the request is not the verified one
        """

    @abstractmethod
    def pay_tokens(self, relay_request: RelayRequest) -> None:
        """
        Transfer the request's token back-payment.

        Raises:
            Revert: If the transfer fails
        """

    # Shared checks

    def _check_signature(self, relay_request: RelayRequest, signature: bytes) -> None:
        try:
            signer = recover_relay_request_signer(
                relay_request,
                signature,
                self.ledger.chain_id,
                self.address,
            )
        except Exception as e:
            raise Revert("signature mismatch") from e
        if signer != relay_request.request.from_:
            raise Revert("signature mismatch")

    def _stage_key(self, request: ForwardRequest) -> tuple:
        return ("stage", request.from_)

    def _mark_verified(self, request: ForwardRequest) -> None:
        self._set(self._stage_key(request), (VERIFIED, request.nonce + 1, self.msg_sender))

    def _advance_stage(self, request: ForwardRequest, expected: str, next_stage: Optional[str]) -> None:
        stage = self._get(self._stage_key(request))
        if stage != (expected, request.nonce + 1, self.msg_sender):
            raise Revert("nonce mismatch")
        if next_stage is None:
            self._set(self._stage_key(request), None)
        else:
            self._set(self._stage_key(request), (next_stage, request.nonce + 1, self.msg_sender))


def _transfer_tokens(ledger: Ledger, payer: str, request: ForwardRequest) -> None:
    """Pay ``request.payback_tokens`` from ``payer`` to the token recipient."""
    if request.payback_tokens == 0:
        return
    if request.token_contract == ZERO_ADDRESS:
        raise Revert("Unable to pay for relay")
    result = ledger.call_data(
        request.token_contract,
        encode_call(
            "transfer(address,uint256)",
            ["address", "uint256"],
            [request.token_recipient, request.payback_tokens],
        ),
        sender=payer,
        gas=request.token_gas or None,
    )
    if not result.success:
        raise Revert(result.error or "Unable to pay for relay", result.return_data)
    if result.return_data and result.return_value is False:
        raise Revert("Unable to pay for relay")


# =============================================================================
# Smart wallet
# =============================================================================


class SmartWallet(Authenticator):
    """
    Per-owner wallet that executes relayed calls for its owner.

    Example:
        >>> wallet = SmartWallet(ledger, owner=sender_address)
        >>> wallet.get_nonce()
        0
    """

    def __init__(self, ledger: Ledger, owner: str, **kwargs):
        super().__init__(ledger, **kwargs)
        self._set("owner", Web3.to_checksum_address(owner))

    @property
    def owner(self) -> str:
        return self._get("owner")

    @abi_method("nonce()", returns=["uint256"])
    def get_nonce(self, sender: Optional[str] = None) -> int:
        return self._get("nonce", 0)

    def verify_and_advance_nonce(self, relay_request: RelayRequest, signature: bytes) -> None:
        request = relay_request.request
        nonce = self.get_nonce()
        if request.nonce != nonce:
            raise Revert("nonce mismatch")
        if request.from_ != self.owner:
            raise Revert("Not the owner of the SmartWallet")
        self._check_signature(relay_request, signature)
        self._set("nonce", nonce + 1)
        self._mark_verified(request)

    def execute(self, relay_request: RelayRequest) -> ExecutionResult:
        request = relay_request.request
        self._advance_stage(request, VERIFIED, EXECUTED)
        # The recipient reads the original sender from the last 20 bytes
        data = hex_to_bytes(request.data) + bytes.fromhex(request.from_[2:])
        result = self.ledger.call_data(
            request.to,
            data,
            sender=self.address,
            gas=request.gas,
            value=request.value,
        )
        return ExecutionResult(success=result.success, return_data=result.return_data, error=result.error)

    def pay_tokens(self, relay_request: RelayRequest) -> None:
        request = relay_request.request
        self._advance_stage(request, EXECUTED, None)
        _transfer_tokens(self.ledger, self.address, request)


# =============================================================================
# Smart wallet factory
# =============================================================================


class SmartWalletFactory(Authenticator):
    """
    Authenticator for deploy requests.

    Nonces are kept per owner. A deploy request's calldata may carry a
    uint256 index, allowing one owner to hold several wallets.

    Example:
        >>> factory = SmartWalletFactory(ledger)
        >>> address = factory.get_smart_wallet_address(owner)
        >>> # Fund ``address`` with tokens, then relay a deploy request
    """

    wallet_class = SmartWallet

    @abi_method("nonce(address)", returns=["uint256"])
    def get_nonce(self, sender: Optional[str] = None) -> int:
        if sender is None:
            raise ValueError("Factory nonces are per owner")
        return self._get(("nonce", Web3.to_checksum_address(sender)), 0)

    @abi_method("getSmartWalletAddress(address,uint256)", returns=["address"])
    def get_smart_wallet_address(self, owner: str, index: int = 0) -> str:
        salt = Web3.keccak(encode(["address", "uint256"], [Web3.to_checksum_address(owner), index]))
        return create2_address(self.address, salt, SMART_WALLET_CODE_HASH)

    @staticmethod
    def _deploy_index(request: ForwardRequest) -> int:
        data = hex_to_bytes(request.data)
        return int.from_bytes(data[:32], "big") if data else 0

    def verify_and_advance_nonce(self, relay_request: RelayRequest, signature: bytes) -> None:
        request = relay_request.request
        if not request.is_deploy:
            raise Revert("Not a deploy request")
        nonce = self.get_nonce(request.from_)
        if request.nonce != nonce:
            raise Revert("nonce mismatch")
        self._check_signature(relay_request, signature)
        self._set(("nonce", request.from_), nonce + 1)
        self._mark_verified(request)

    def execute(self, relay_request: RelayRequest) -> ExecutionResult:
        request = relay_request.request
        self._advance_stage(request, VERIFIED, EXECUTED)
        index = self._deploy_index(request)
        address = self.get_smart_wallet_address(request.from_, index)
        if self.ledger.is_contract(address):
            reason = "Unable to initialize SW"
            return ExecutionResult(success=False, return_data=encode_revert_reason(reason), error=reason)
        self.wallet_class(self.ledger, request.from_, address=address)
        self._emit("Deployed", wallet=address, owner=request.from_, index=index)
        return ExecutionResult(success=True, return_data=encode(["address"], [address]))

    def pay_tokens(self, relay_request: RelayRequest) -> None:
        request = relay_request.request
        self._advance_stage(request, EXECUTED, None)
        wallet = self.get_smart_wallet_address(request.from_, self._deploy_index(request))
        _transfer_tokens(self.ledger, wallet, request)
