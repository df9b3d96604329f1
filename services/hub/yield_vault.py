from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

from services.common.errors import AssetsTooLarge, InsufficientBalance, InvalidPercentage, InvalidReceiver, Unauthorized
from services.common.fixed_point import MAX_UINT256, ONE, Rounding, apply_percentage, mul_div
from services.common.guards import external
from services.common.network import ZERO_ADDRESS, Network, normalize_address, require_amount
from services.common.tokens import Token

LOGGER = logging.getLogger('vaultbridge.hub.yield_vault')


class ReserveVaultAdapter(Protocol):
    address: str

    def deposit(self, caller: str, assets: int, receiver: str) -> int: ...

    def withdraw(self, caller: str, assets: int, receiver: str, owner: str) -> int: ...

    def max_deposit(self, receiver: str) -> int: ...

    def max_withdraw(self, owner: str) -> int: ...

    def convert_to_assets(self, shares: int) -> int: ...

    def preview_withdraw(self, assets: int) -> int: ...

    def balance_of(self, account: str) -> int: ...


@dataclass
class YieldVaultState:
    balances: dict[str, int] = field(default_factory=dict)
    total_shares: int = 0
    deposit_cap: int | None = None
    withdraw_cap: int | None = None
    deposit_fee_percentage: int = 0
    withdraw_share_premium_percentage: int = 0


class InMemoryYieldVault:
    """ERC-4626 style facility whose share price rises with every ``accrue``."""

    def __init__(self, network: Network, asset: Token, *, address: str | None = None) -> None:
        self.network = network
        self.asset = asset
        self.decimals = asset.decimals
        self.address = normalize_address(address or network.new_address(f'yield-vault:{asset.symbol}'))
        self.fee_sink = network.new_address(f'yield-vault-fee:{asset.symbol}')
        self.state = YieldVaultState()
        network.deploy(self)

    def __repr__(self) -> str:
        return f'InMemoryYieldVault({self.asset.symbol}@{self.network.network_id})'

    # configuration knobs

    def set_caps(self, *, deposit_cap: int | None = None, withdraw_cap: int | None = None) -> None:
        self.state.deposit_cap = deposit_cap
        self.state.withdraw_cap = withdraw_cap

    def set_slippage(self, *, deposit_fee_percentage: int = 0, withdraw_share_premium_percentage: int = 0) -> None:
        for value in (deposit_fee_percentage, withdraw_share_premium_percentage):
            if value < 0 or value > ONE:
                raise InvalidPercentage(value)
        self.state.deposit_fee_percentage = deposit_fee_percentage
        self.state.withdraw_share_premium_percentage = withdraw_share_premium_percentage

    def accrue(self, caller: str, assets: int) -> None:
        """Donate underlying to the vault, raising the share price."""
        self.asset.transfer(caller, self.address, assets)
        LOGGER.info('yield accrued vault=%s assets=%s', self.address, assets)

    # views

    def total_assets(self) -> int:
        return self.asset.balance_of(self.address)

    def total_supply(self) -> int:
        return self.state.total_shares

    def balance_of(self, account: str) -> int:
        return self.state.balances.get(normalize_address(account), 0)

    def convert_to_shares(self, assets: int, rounding: Rounding = Rounding.FLOOR) -> int:
        supply = self.state.total_shares
        total = self.total_assets()
        if supply == 0 or total == 0:
            return assets
        return mul_div(assets, supply, total, rounding)

    def convert_to_assets(self, shares: int, rounding: Rounding = Rounding.FLOOR) -> int:
        supply = self.state.total_shares
        if supply == 0:
            return shares
        return mul_div(shares, self.total_assets(), supply, rounding)

    def preview_deposit(self, assets: int) -> int:
        return self.convert_to_shares(assets)

    def preview_withdraw(self, assets: int) -> int:
        return self.convert_to_shares(assets, Rounding.CEIL)

    def max_deposit(self, receiver: str) -> int:
        if self.state.deposit_cap is None:
            return MAX_UINT256
        return self.state.deposit_cap

    def max_withdraw(self, owner: str) -> int:
        limit = min(self.convert_to_assets(self.balance_of(owner)), self.total_assets())
        if self.state.withdraw_cap is not None:
            limit = min(limit, self.state.withdraw_cap)
        return limit

    # mutations

    @external
    def deposit(self, caller: str, assets: int, receiver: str) -> int:
        require_amount(assets)
        receiver = normalize_address(receiver)
        if receiver == ZERO_ADDRESS:
            raise InvalidReceiver(receiver)
        limit = self.max_deposit(receiver)
        if assets > limit:
            raise AssetsTooLarge(limit, assets)

        before = self.total_assets()
        self.asset.transfer_from(self.address, caller, self.address, assets)
        received = self.total_assets() - before
        fee = apply_percentage(received, self.state.deposit_fee_percentage)
        if fee > 0:
            self.asset.transfer(self.address, self.fee_sink, fee)
            received -= fee
        supply = self.state.total_shares
        shares = received if supply == 0 or before == 0 else mul_div(received, supply, before)

        self.state.balances[receiver] = self.state.balances.get(receiver, 0) + shares
        self.state.total_shares += shares
        self.network.emit(self.address, 'Deposit', sender=normalize_address(caller), owner=receiver, assets=received, shares=shares)
        return shares

    @external
    def withdraw(self, caller: str, assets: int, receiver: str, owner: str) -> int:
        require_amount(assets)
        caller = normalize_address(caller)
        owner = normalize_address(owner)
        limit = self.max_withdraw(owner)
        if assets > limit:
            raise AssetsTooLarge(limit, assets)

        shares = self.preview_withdraw(assets)
        shares += apply_percentage(shares, self.state.withdraw_share_premium_percentage, Rounding.CEIL)
        balance = self.balance_of(owner)
        if shares > balance:
            raise InsufficientBalance(balance, shares)
        if caller != owner:
            raise Unauthorized(caller, 'SHARE_OWNER')

        self.state.balances[owner] = balance - shares
        self.state.total_shares -= shares
        self.asset.transfer(self.address, receiver, assets)
        self.network.emit(
            self.address,
            'Withdraw',
            sender=caller,
            receiver=normalize_address(receiver),
            owner=owner,
            assets=assets,
            shares=shares
        )
        return shares
