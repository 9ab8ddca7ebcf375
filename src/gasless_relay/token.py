"""ERC-20 token used for paying relays back in tokens."""

from web3 import Web3

from gasless_relay.errors import Revert
from gasless_relay.ledger import Contract, Ledger, abi_method
from gasless_relay.models import ZERO_ADDRESS


class Erc20Token(Contract):
    """Minimal ERC-20 with owner minting."""

    def __init__(self, ledger: Ledger, name: str, symbol: str, decimals: int = 18, *, owner: str, **kwargs):
        super().__init__(ledger, **kwargs)
        self.name = name
        self.symbol = symbol
        self.decimals = decimals
        self._set("owner", Web3.to_checksum_address(owner))

    @abi_method("balanceOf(address)", returns=["uint256"])
    def balance_of(self, account: str) -> int:
        return self._get(("balance", Web3.to_checksum_address(account)), 0)

    @abi_method("totalSupply()", returns=["uint256"])
    def total_supply(self) -> int:
        return self._get("supply", 0)

    @abi_method("allowance(address,address)", returns=["uint256"])
    def allowance(self, owner: str, spender: str) -> int:
        return self._get(("allowance", Web3.to_checksum_address(owner), Web3.to_checksum_address(spender)), 0)

    @abi_method("mint(address,uint256)")
    def mint(self, account: str, amount: int) -> None:
        if self.msg_sender != self._get("owner"):
            raise Revert("Ownable: caller is not the owner")
        account = Web3.to_checksum_address(account)
        self._set(("balance", account), self.balance_of(account) + amount)
        self._set("supply", self.total_supply() + amount)
        self._emit("Transfer", sender=ZERO_ADDRESS, recipient=account, amount=amount)

    @abi_method("transfer(address,uint256)", returns=["bool"])
    def transfer(self, recipient: str, amount: int) -> bool:
        self._move(self.msg_sender, recipient, amount)
        return True

    @abi_method("approve(address,uint256)", returns=["bool"])
    def approve(self, spender: str, amount: int) -> bool:
        spender = Web3.to_checksum_address(spender)
        self._set(("allowance", self.msg_sender, spender), amount)
        self._emit("Approval", owner=self.msg_sender, spender=spender, amount=amount)
        return True

    @abi_method("transferFrom(address,address,uint256)", returns=["bool"])
    def transfer_from(self, sender: str, recipient: str, amount: int) -> bool:
        sender = Web3.to_checksum_address(sender)
        allowed = self.allowance(sender, self.msg_sender)
        if allowed < amount:
            raise Revert("ERC20: transfer amount exceeds allowance")
        self._set(("allowance", sender, self.msg_sender), allowed - amount)
        self._move(sender, recipient, amount)
        return True

    def _move(self, sender: str, recipient: str, amount: int) -> None:
        sender = Web3.to_checksum_address(sender)
        recipient = Web3.to_checksum_address(recipient)
        if recipient == ZERO_ADDRESS:
            raise Revert("ERC20: transfer to the zero address")
        balance = self.balance_of(sender)
        if balance < amount:
            raise Revert("ERC20: transfer amount exceeds balance")
        self._set(("balance", sender), balance - amount)
        self._set(("balance", recipient), self.balance_of(recipient) + amount)
        self._emit("Transfer", sender=sender, recipient=recipient, amount=amount)
