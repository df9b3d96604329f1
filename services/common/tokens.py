from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .errors import (
    InsufficientAllowance,
    InsufficientBalance,
    InvalidAssets,
    InvalidPercentage,
    InvalidReceiver,
    Unauthorized
)
from .fixed_point import MAX_UINT256, ONE, apply_percentage
from .network import ZERO_ADDRESS, Network, normalize_address, require_amount

LOGGER = logging.getLogger('vaultbridge.tokens')


@dataclass
class TokenState:
    balances: dict[str, int] = field(default_factory=dict)
    allowances: dict[tuple[str, str], int] = field(default_factory=dict)
    total_supply: int = 0
    minters: set[str] = field(default_factory=set)
    transfer_fee_percentage: int = 0


class Token:
    def __init__(
        self,
        network: Network,
        name: str,
        symbol: str,
        decimals: int = 18,
        *,
        address: str | None = None,
        minters: set[str] | None = None
    ) -> None:
        self.network = network
        self.name = name
        self.symbol = symbol
        self.decimals = decimals
        self.address = normalize_address(address or network.new_address(f'token:{symbol}'))
        self.state = TokenState(minters={normalize_address(m) for m in (minters or set())})
        network.deploy(self)

    def __repr__(self) -> str:
        return f'Token({self.symbol}@{self.network.network_id}:{self.address})'

    @property
    def total_supply(self) -> int:
        return self.state.total_supply

    def balance_of(self, account: str) -> int:
        return self.state.balances.get(normalize_address(account), 0)

    def allowance(self, owner: str, spender: str) -> int:
        return self.state.allowances.get((normalize_address(owner), normalize_address(spender)), 0)

    def is_minter(self, account: str) -> bool:
        return normalize_address(account) in self.state.minters

    def add_minter(self, account: str) -> None:
        self.state.minters.add(normalize_address(account))

    def remove_minter(self, account: str) -> None:
        self.state.minters.discard(normalize_address(account))

    def set_transfer_fee_percentage(self, percentage: int) -> None:
        if percentage < 0 or percentage > ONE:
            raise InvalidPercentage(percentage)
        self.state.transfer_fee_percentage = percentage

    def approve(self, caller: str, spender: str, amount: int) -> bool:
        owner = normalize_address(caller)
        spender = normalize_address(spender)
        if amount < 0 or amount > MAX_UINT256:
            raise InvalidAssets(amount)
        self.state.allowances[(owner, spender)] = amount
        self.network.emit(self.address, 'Approval', owner=owner, spender=spender, value=amount)
        return True

    def transfer(self, caller: str, recipient: str, amount: int) -> bool:
        with self.network.transaction():
            self._transfer(normalize_address(caller), normalize_address(recipient), amount)
        return True

    def transfer_from(self, caller: str, sender: str, recipient: str, amount: int) -> bool:
        with self.network.transaction():
            sender = normalize_address(sender)
            self.spend_allowance(sender, normalize_address(caller), amount)
            self._transfer(sender, normalize_address(recipient), amount)
        return True

    def spend_allowance(self, owner: str, spender: str, amount: int) -> None:
        if owner == spender:
            return
        current = self.allowance(owner, spender)
        if current == MAX_UINT256:
            return
        if current < amount:
            raise InsufficientAllowance(current, amount)
        self.state.allowances[(owner, spender)] = current - amount

    def mint(self, caller: str, recipient: str, amount: int) -> None:
        caller = normalize_address(caller)
        if caller not in self.state.minters:
            raise Unauthorized(caller, 'MINTER')
        self._mint(normalize_address(recipient), amount)

    def burn(self, caller: str, account: str, amount: int) -> None:
        caller = normalize_address(caller)
        if caller not in self.state.minters:
            raise Unauthorized(caller, 'MINTER')
        self._burn(normalize_address(account), amount)

    def _transfer(self, sender: str, recipient: str, amount: int) -> None:
        require_amount(amount)
        if recipient == ZERO_ADDRESS:
            raise InvalidReceiver(recipient)
        available = self.state.balances.get(sender, 0)
        if available < amount:
            raise InsufficientBalance(available, amount)
        fee = apply_percentage(amount, self.state.transfer_fee_percentage)
        received = amount - fee
        self.state.balances[sender] = available - amount
        self.state.balances[recipient] = self.state.balances.get(recipient, 0) + received
        self.state.total_supply -= fee
        self.network.emit(self.address, 'Transfer', sender=sender, recipient=recipient, value=received)

    def _mint(self, recipient: str, amount: int) -> None:
        require_amount(amount)
        if recipient == ZERO_ADDRESS:
            raise InvalidReceiver(recipient)
        self.state.balances[recipient] = self.state.balances.get(recipient, 0) + amount
        self.state.total_supply += amount
        self.network.emit(self.address, 'Transfer', sender=ZERO_ADDRESS, recipient=recipient, value=amount)

    def _burn(self, account: str, amount: int) -> None:
        require_amount(amount)
        available = self.state.balances.get(account, 0)
        if available < amount:
            raise InsufficientBalance(available, amount)
        self.state.balances[account] = available - amount
        self.state.total_supply -= amount
        self.network.emit(self.address, 'Transfer', sender=account, recipient=ZERO_ADDRESS, value=amount)


class WrappedNativeToken(Token):
    """Token 1:1 backed by the network's native coin it holds."""

    def deposit(self, caller: str, value: int) -> int:
        with self.network.transaction():
            caller = normalize_address(caller)
            self.network.transfer_native(caller, self.address, value)
            self._mint(caller, value)
        LOGGER.info('native wrapped network_id=%s account=%s value=%s', self.network.network_id, caller, value)
        return value

    def withdraw(self, caller: str, amount: int) -> int:
        with self.network.transaction():
            caller = normalize_address(caller)
            self._burn(caller, amount)
            self.network.transfer_native(self.address, caller, amount)
        LOGGER.info('native unwrapped network_id=%s account=%s amount=%s', self.network.network_id, caller, amount)
        return amount
