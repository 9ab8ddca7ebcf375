"""
Base class for contracts that accept relayed calls.

Authenticators append the original sender (20 bytes) to the calldata of
the target call. A RelayRecipient trusts that suffix only when the
immediate caller is a trusted authenticator; everyone else is seen as
themselves.
"""

from typing import Callable, Optional

from web3 import Web3

from gasless_relay.ledger import Contract, Ledger


class RelayRecipient(Contract):
    """
    Contract that resolves the effective sender of relayed calls.

    Args:
        ledger: Ledger the contract lives on
        is_trusted_forwarder: Predicate deciding which callers may append
            a sender; defaults to "any contract", which suits smart wallets
            whose address is only known at deploy time
    """

    def __init__(
        self,
        ledger: Ledger,
        is_trusted_forwarder: Optional[Callable[[str], bool]] = None,
        **kwargs,
    ):
        super().__init__(ledger, **kwargs)
        self._is_trusted_forwarder = is_trusted_forwarder or ledger.is_contract

    def is_trusted_forwarder(self, address: str) -> bool:
        return self._is_trusted_forwarder(address)

    def _relayed(self) -> bool:
        frame = self.ledger.frame
        return len(frame.data) >= 24 and self.is_trusted_forwarder(frame.sender)

    def _msg_sender(self) -> str:
        """The original sender of a relayed call, or msg.sender otherwise."""
        if self._relayed():
            return Web3.to_checksum_address(self.ledger.frame.data[-20:])
        return self.msg_sender

    def _calldata_for_decode(self, data: bytes) -> bytes:
        if self._relayed():
            return data[:-20]
        return data
