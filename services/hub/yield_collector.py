from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from services.common.errors import NoYield

if TYPE_CHECKING:
    from .vault_token import VaultToken

LOGGER = logging.getLogger('vaultbridge.hub.yield')


class YieldCollector:
    def __init__(self, vault: 'VaultToken') -> None:
        self.vault = vault

    def pending_yield(self) -> int:
        return max(self.vault.backing_surplus(), 0)

    def withdrawable_yield(self) -> int:
        """Assets the yield vault can release while the shares left behind still cover liabilities."""
        vault = self.vault
        yield_vault = vault.yield_vault
        owned = yield_vault.balance_of(vault.address)
        withdrawable = yield_vault.max_withdraw(vault.address)
        needed = vault.convert_to_assets(vault.total_supply) + vault.state.donated_buffer - vault.state.reserved_assets
        if needed <= 0:
            return withdrawable
        # preview_withdraw rounds up, so these shares are worth at least `needed`
        kept = yield_vault.preview_withdraw(needed)
        if kept >= owned:
            return 0
        return min(yield_vault.convert_to_assets(owned - kept), withdrawable)

    def collect(self, *, force: bool) -> int:
        vault = self.vault
        vault.rebalancer.rebalance(force=False)

        recipient = vault.state.yield_recipient
        pending = self.pending_yield()
        collectible = min(pending, self.withdrawable_yield())
        if collectible == 0:
            if force:
                raise NoYield()
            LOGGER.info('no yield to collect vault=%s pending=%s', vault.symbol, pending)
            return 0

        vault.rebalancer.withdraw_from_yield_vault(collectible, recipient)
        vault.network.emit(vault.address, 'YieldCollected', yield_recipient=recipient, assets=collectible)
        LOGGER.info(
            'yield collected vault=%s recipient=%s assets=%s pending=%s',
            vault.symbol,
            recipient,
            collectible,
            pending
        )
        return collectible
