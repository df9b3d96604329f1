from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from services.common.errors import ExcessiveYieldVaultSharesBurned, InsufficientYieldVaultSharesMinted
from services.common.fixed_point import Rounding, apply_percentage

if TYPE_CHECKING:
    from .vault_token import VaultToken

LOGGER = logging.getLogger('vaultbridge.hub.reserve')


class ReserveRebalancer:
    def __init__(self, vault: 'VaultToken') -> None:
        self.vault = vault

    @property
    def _state(self):
        return self.vault.state

    def reserve_target(self) -> int:
        liabilities = self.vault.convert_to_assets(self.vault.total_supply)
        return apply_percentage(liabilities, self._state.minimum_reserve_percentage)

    def deposit_into_yield_vault(self, assets: int) -> int:
        state = self._state
        to_deposit = assets - apply_percentage(assets, state.minimum_reserve_percentage)

        yield_vault = self.vault.yield_vault
        cap = yield_vault.max_deposit(self.vault.address)
        if to_deposit > cap:
            LOGGER.warning(
                'yield vault deposit capped vault=%s requested=%s cap=%s',
                self.vault.symbol,
                to_deposit,
                cap
            )
            to_deposit = cap

        if to_deposit < state.minimum_yield_vault_deposit:
            to_deposit = 0

        if to_deposit > 0:
            self._deposit(to_deposit)

        state.reserved_assets += assets - to_deposit
        return to_deposit

    def _deposit(self, assets: int) -> int:
        # callers update reserved_assets after this returns, so the surplus
        # read here is the one before the move
        vault = self.vault
        yield_vault = vault.yield_vault
        surplus = vault.backing_surplus()
        staked_before = vault.staked_assets()
        minted = yield_vault.deposit(vault.address, assets, vault.address)
        gained = vault.staked_assets() - staked_before

        # rounding losses may eat into pending yield but never into backing
        allowed_loss = apply_percentage(assets, self._state.yield_vault_maximum_slippage_percentage)
        if gained + allowed_loss + max(surplus, 0) < assets:
            raise InsufficientYieldVaultSharesMinted(assets, gained)
        return minted

    def withdraw_from_yield_vault(self, assets: int, receiver: str) -> int:
        vault = self.vault
        yield_vault = vault.yield_vault
        surplus = vault.backing_surplus()
        expected = yield_vault.preview_withdraw(assets)
        allowed = expected + apply_percentage(
            expected,
            self._state.yield_vault_maximum_slippage_percentage,
            Rounding.CEIL
        )
        burned = yield_vault.withdraw(vault.address, assets, receiver, vault.address)
        if burned > allowed:
            raise ExcessiveYieldVaultSharesBurned(burned, expected)

        # the shares left behind must still back every outstanding vault share
        if vault.backing_surplus() < min(surplus - assets, 0):
            LOGGER.warning(
                'yield vault withdrawal leaves vault undercollateralized vault=%s assets=%s burned=%s',
                vault.symbol,
                assets,
                burned
            )
            raise ExcessiveYieldVaultSharesBurned(burned, expected)
        return burned

    def rebalance(self, *, force: bool, allow_rebalance_down: bool = True) -> bool:
        """Move the reserve toward its target; returns whether the reserve changed."""
        state = self._state
        vault = self.vault
        before = state.reserved_assets
        target = self.reserve_target()

        if before < target:
            shortfall = target - before
            if not force and shortfall < state.minimum_yield_vault_deposit:
                return False
            available = vault.yield_vault.max_withdraw(vault.address)
            amount = min(shortfall, available)
            if amount < shortfall:
                LOGGER.warning(
                    'reserve partially replenished vault=%s shortfall=%s withdrawable=%s',
                    vault.symbol,
                    shortfall,
                    available
                )
            if amount > 0:
                balance_before = vault.underlying.balance_of(vault.address)
                self.withdraw_from_yield_vault(amount, vault.address)
                state.reserved_assets += vault.underlying.balance_of(vault.address) - balance_before
        elif before > target and allow_rebalance_down:
            excess = before - target
            if not force and excess < state.minimum_yield_vault_deposit:
                return False
            amount = min(excess, vault.yield_vault.max_deposit(vault.address))
            if amount > 0:
                self._deposit(amount)
                state.reserved_assets -= amount

        after = state.reserved_assets
        if after == before and not force:
            return False

        percentage = vault.reserve_percentage()
        vault.network.emit(
            vault.address,
            'ReserveRebalanced',
            reserved_assets_before=before,
            reserved_assets_after=after,
            reserve_percentage=percentage
        )
        LOGGER.info(
            'reserve rebalanced vault=%s before=%s after=%s target=%s percentage=%s',
            vault.symbol,
            before,
            after,
            target,
            percentage
        )
        return after != before
