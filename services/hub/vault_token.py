from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from services.bridge.local_bridge import BridgeTransport
from services.common.access import AccessControl, AccessState, Role
from services.common.errors import (
    AssetsTooLarge,
    CannotCompleteMigration,
    InsufficientBalance,
    InvalidAddress,
    InvalidAssets,
    InvalidDecimals,
    InvalidNetwork,
    InvalidOwner,
    InvalidPercentage,
    InvalidReceiver,
    InvalidShares,
    Unauthorized
)
from services.common.fixed_point import MAX_UINT256, ONE, percentage_of
from services.common.guards import external
from services.common.network import ZERO_ADDRESS, Network, normalize_address, require_amount
from services.common.tokens import Token, TokenState

from .reserve import ReserveRebalancer
from .yield_collector import YieldCollector
from .yield_vault import ReserveVaultAdapter

LOGGER = logging.getLogger('vaultbridge.hub.vault')

SCHEMA_VERSION = 2

# shares bridged here on the spoke cannot be claimed, which keeps them locked
MIGRATION_LOCK_ADDRESS = ZERO_ADDRESS


@dataclass
class VaultTokenState(TokenState):
    schema_version: int = SCHEMA_VERSION
    reserved_assets: int = 0
    minimum_reserve_percentage: int = 0
    yield_recipient: str = ZERO_ADDRESS
    donated_buffer: int = 0
    migration_manager: str = ZERO_ADDRESS
    minimum_yield_vault_deposit: int = 0
    yield_vault_maximum_slippage_percentage: int = 0
    access: AccessState = field(default_factory=AccessState)


def _check_percentage(percentage: int) -> int:
    if not isinstance(percentage, int) or percentage < 0 or percentage > ONE:
        raise InvalidPercentage(percentage)
    return percentage


def upgrade_vault_state(payload: dict[str, Any]) -> dict[str, Any]:
    """Bring an exported state dict up to ``SCHEMA_VERSION``."""
    upgraded = dict(payload)
    version = int(upgraded.get('schema_version', 1))
    if version > SCHEMA_VERSION:
        raise ValueError(f'unsupported vault state schema_version={version}')
    if version < 2:
        # v1 called the donation buffer the migration fees fund and had no
        # yield vault deposit threshold or slippage tolerance
        upgraded['donated_buffer'] = upgraded.pop('migration_fees_fund', 0)
        upgraded.setdefault('minimum_yield_vault_deposit', 0)
        upgraded.setdefault('yield_vault_maximum_slippage_percentage', 0)
    upgraded['schema_version'] = SCHEMA_VERSION
    return upgraded


class VaultToken(Token):
    def __init__(
        self,
        network: Network,
        *,
        name: str,
        symbol: str,
        underlying: Token,
        yield_vault: ReserveVaultAdapter,
        bridge: BridgeTransport,
        owner: str,
        yield_recipient: str,
        minimum_reserve_percentage: int,
        migration_manager: str = ZERO_ADDRESS,
        minimum_yield_vault_deposit: int = 0,
        yield_vault_maximum_slippage_percentage: int = 0,
        address: str | None = None
    ) -> None:
        decimals = getattr(yield_vault, 'decimals', underlying.decimals)
        if decimals != underlying.decimals:
            raise InvalidDecimals(underlying.decimals, decimals)
        if normalize_address(yield_recipient) == ZERO_ADDRESS:
            raise InvalidAddress(yield_recipient)

        super().__init__(network, name, symbol, underlying.decimals, address=address)
        self.underlying = underlying
        self.yield_vault = yield_vault
        self.bridge = bridge
        self.state = VaultTokenState(
            minimum_reserve_percentage=_check_percentage(minimum_reserve_percentage),
            yield_recipient=normalize_address(yield_recipient),
            migration_manager=normalize_address(migration_manager),
            minimum_yield_vault_deposit=minimum_yield_vault_deposit,
            yield_vault_maximum_slippage_percentage=_check_percentage(yield_vault_maximum_slippage_percentage)
        )
        self.access = AccessControl(self, owner)
        self.rebalancer = ReserveRebalancer(self)
        self.yield_collector = YieldCollector(self)
        self._entered = False

        underlying.approve(self.address, yield_vault.address, MAX_UINT256)
        LOGGER.info(
            'vault token initialized network_id=%s symbol=%s underlying=%s minimum_reserve_percentage=%s',
            network.network_id,
            symbol,
            underlying.symbol,
            minimum_reserve_percentage
        )

    # conversion: fixed 1:1, independent of total_assets()

    def convert_to_shares(self, assets: int) -> int:
        return assets

    def convert_to_assets(self, shares: int) -> int:
        return shares

    def preview_deposit(self, assets: int) -> int:
        return self.convert_to_shares(assets)

    def preview_mint(self, shares: int) -> int:
        return self.convert_to_assets(shares)

    def preview_withdraw(self, assets: int) -> int:
        return self.convert_to_shares(assets)

    def preview_redeem(self, shares: int) -> int:
        return self.convert_to_assets(shares)

    # accounting views

    @property
    def reserved_assets(self) -> int:
        return self.state.reserved_assets

    @property
    def donated_buffer(self) -> int:
        return self.state.donated_buffer

    def staked_assets(self) -> int:
        return self.yield_vault.convert_to_assets(self.yield_vault.balance_of(self.address))

    def total_assets(self) -> int:
        return self.state.reserved_assets + self.staked_assets()

    def reserve_percentage(self) -> int:
        return percentage_of(self.state.reserved_assets, self.convert_to_assets(self.total_supply))

    def backing_surplus(self) -> int:
        # signed: negative when backing has fallen below liabilities
        return self.total_assets() - self.convert_to_assets(self.total_supply) - self.state.donated_buffer

    def pending_yield(self) -> int:
        return self.yield_collector.pending_yield()

    def available_liquidity(self) -> int:
        return self.state.reserved_assets + self.yield_vault.max_withdraw(self.address)

    def max_deposit(self, receiver: str) -> int:
        return 0 if self.access.paused else MAX_UINT256

    def max_mint(self, receiver: str) -> int:
        return 0 if self.access.paused else MAX_UINT256

    def max_withdraw(self, owner: str) -> int:
        if self.access.paused:
            return 0
        return min(self.convert_to_assets(self.balance_of(owner)), self.available_liquidity())

    def max_redeem(self, owner: str) -> int:
        return self.convert_to_shares(self.max_withdraw(owner))

    # helpers

    def _check_receiver(self, receiver: str) -> str:
        receiver = normalize_address(receiver)
        if receiver in (ZERO_ADDRESS, self.address):
            raise InvalidReceiver(receiver)
        return receiver

    def _receive_underlying(self, sender: str, assets: int) -> int:
        before = self.underlying.balance_of(self.address)
        self.underlying.transfer_from(self.address, sender, self.address, assets)
        received = self.underlying.balance_of(self.address) - before
        if received <= 0:
            raise InvalidAssets(received)
        return received

    def _bridge_shares(self, destination_network: int, receiver: str, shares: int, force_update_root: bool) -> int:
        self.state.allowances[(self.address, self.bridge.address)] = shares
        deposit = self.bridge.bridge_asset(
            self.address,
            destination_network,
            receiver,
            shares,
            self.address,
            force_update_root,
            b''
        )
        return deposit.deposit_count

    # deposit side

    def _deposit(self, caller: str, assets: int, receiver: str, min_shares: int = 0) -> tuple[int, int]:
        self.access.require_not_paused()
        require_amount(assets, InvalidAssets)
        caller = normalize_address(caller)

        received = self._receive_underlying(caller, assets)
        shares = self.convert_to_shares(received)
        if shares < min_shares:
            raise InsufficientBalance(self.convert_to_assets(shares), self.convert_to_assets(min_shares))
        staked = self.rebalancer.deposit_into_yield_vault(received)
        self._mint(receiver, shares)

        self.network.emit(self.address, 'Deposit', sender=caller, owner=receiver, assets=received, shares=shares)
        LOGGER.info(
            'deposit vault=%s sender=%s receiver=%s assets=%s shares=%s staked=%s',
            self.symbol,
            caller,
            receiver,
            received,
            shares,
            staked
        )
        return received, shares

    @external
    def deposit(self, caller: str, assets: int, receiver: str) -> int:
        receiver = self._check_receiver(receiver)
        _, shares = self._deposit(caller, assets, receiver)
        return shares

    @external
    def mint(self, caller: str, shares: int, receiver: str) -> int:
        require_amount(shares, InvalidShares)
        receiver = self._check_receiver(receiver)
        received, _ = self._deposit(caller, self.preview_mint(shares), receiver, min_shares=shares)
        return received

    @external
    def deposit_and_bridge(
        self,
        caller: str,
        assets: int,
        receiver: str,
        destination_network_id: int,
        force_update_root: bool = True
    ) -> int:
        if destination_network_id == self.network.network_id:
            raise InvalidNetwork(destination_network_id)
        receiver = normalize_address(receiver)
        if receiver == ZERO_ADDRESS:
            raise InvalidReceiver(receiver)
        _, shares = self._deposit(caller, assets, self.address)
        deposit_count = self._bridge_shares(destination_network_id, receiver, shares, force_update_root)
        LOGGER.info(
            'deposit bridged vault=%s destination_network=%s receiver=%s shares=%s deposit_count=%s',
            self.symbol,
            destination_network_id,
            receiver,
            shares,
            deposit_count
        )
        return shares

    # withdraw side

    def _withdraw(self, caller: str, assets: int, shares: int, receiver: str, owner: str) -> None:
        self.access.require_not_paused()
        caller = normalize_address(caller)
        receiver = self._check_receiver(receiver)
        owner = normalize_address(owner)
        if owner == ZERO_ADDRESS:
            raise InvalidOwner(owner)

        state = self.state
        from_reserve = min(assets, state.reserved_assets)
        from_yield_vault = assets - from_reserve
        if from_yield_vault > 0:
            withdrawable = self.yield_vault.max_withdraw(self.address)
            if from_yield_vault > withdrawable:
                raise AssetsTooLarge(state.reserved_assets + withdrawable, assets)

        if caller != owner:
            self.spend_allowance(owner, caller, shares)
        self._burn(owner, shares)

        if from_reserve > 0:
            state.reserved_assets -= from_reserve
            self.underlying.transfer(self.address, receiver, from_reserve)
        if from_yield_vault > 0:
            self.rebalancer.withdraw_from_yield_vault(from_yield_vault, receiver)

        self.network.emit(
            self.address,
            'Withdraw',
            sender=caller,
            receiver=receiver,
            owner=owner,
            assets=assets,
            shares=shares
        )
        LOGGER.info(
            'withdraw vault=%s owner=%s receiver=%s assets=%s shares=%s from_reserve=%s from_yield_vault=%s',
            self.symbol,
            owner,
            receiver,
            assets,
            shares,
            from_reserve,
            from_yield_vault
        )

    @external
    def withdraw(self, caller: str, assets: int, receiver: str, owner: str) -> int:
        require_amount(assets, InvalidAssets)
        shares = self.preview_withdraw(assets)
        self._withdraw(caller, assets, shares, receiver, owner)
        return shares

    @external
    def redeem(self, caller: str, shares: int, receiver: str, owner: str) -> int:
        require_amount(shares, InvalidShares)
        assets = self.preview_redeem(shares)
        if assets == 0:
            raise InvalidAssets(assets)
        self._withdraw(caller, assets, shares, receiver, owner)
        return assets

    # migration

    @external
    def donate_for_completing_migration(self, caller: str, assets: int) -> int:
        self.access.require_not_paused()
        require_amount(assets, InvalidAssets)
        caller = normalize_address(caller)
        received = self._receive_underlying(caller, assets)
        self.rebalancer.deposit_into_yield_vault(received)
        self.state.donated_buffer += received
        self.network.emit(self.address, 'DonatedForCompletingMigration', donor=caller, assets=received)
        LOGGER.info(
            'donation received vault=%s donor=%s assets=%s donated_buffer=%s',
            self.symbol,
            caller,
            received,
            self.state.donated_buffer
        )
        return received

    @external
    def donate_as_yield(self, caller: str, assets: int) -> int:
        self.access.require_not_paused()
        require_amount(assets, InvalidAssets)
        caller = normalize_address(caller)
        received = self._receive_underlying(caller, assets)
        self.rebalancer.deposit_into_yield_vault(received)
        self.network.emit(self.address, 'DonatedAsYield', donor=caller, assets=received)
        LOGGER.info('yield donation received vault=%s donor=%s assets=%s', self.symbol, caller, received)
        return received

    @external
    def complete_migration(self, caller: str, origin_network_id: int, shares: int, assets: int) -> int:
        """Mint and lock ``shares`` for backing that arrived from a spoke; returns the covered discrepancy."""
        self.access.require_not_paused()
        caller = normalize_address(caller)
        if caller != self.state.migration_manager:
            raise Unauthorized(caller, 'MIGRATION_MANAGER')
        require_amount(shares, InvalidShares)
        if origin_network_id == self.network.network_id:
            raise InvalidNetwork(origin_network_id)

        surplus = self.backing_surplus()
        available = self.state.donated_buffer + max(surplus, 0)
        received = self._receive_underlying(caller, assets) if assets > 0 else 0
        required = self.convert_to_assets(shares)
        discrepancy = max(required - received, 0)
        from_donations = 0
        if discrepancy > 0:
            if discrepancy > available:
                raise CannotCompleteMigration(shares, received, available)
            from_donations = min(discrepancy, self.state.donated_buffer)
            self.state.donated_buffer -= from_donations

        if received > 0:
            self.rebalancer.deposit_into_yield_vault(received)
        self._mint(self.address, shares)
        if self.backing_surplus() < min(surplus, 0):
            raise CannotCompleteMigration(shares, received, available)
        deposit_count = self._bridge_shares(origin_network_id, MIGRATION_LOCK_ADDRESS, shares, True)

        self.network.emit(
            self.address,
            'MigrationCompleted',
            origin_network=origin_network_id,
            shares=shares,
            assets=received,
            discrepancy=discrepancy,
            covered_by_donations=from_donations,
            covered_by_yield=discrepancy - from_donations,
            lock_deposit_count=deposit_count
        )
        LOGGER.info(
            'migration completed vault=%s origin_network=%s shares=%s assets=%s discrepancy=%s from_donations=%s',
            self.symbol,
            origin_network_id,
            shares,
            received,
            discrepancy,
            from_donations
        )
        return discrepancy

    # reserve and yield

    @external
    def rebalance_reserve(self, caller: str) -> bool:
        self.access.require(Role.REBALANCER, caller)
        self.access.require_not_paused()
        return self.rebalancer.rebalance(force=True, allow_rebalance_down=True)

    @external
    def collect_yield(self, caller: str) -> int:
        self.access.require(Role.YIELD_COLLECTOR, caller)
        self.access.require_not_paused()
        return self.yield_collector.collect(force=True)

    # administration

    @external
    def set_yield_recipient(self, caller: str, recipient: str) -> None:
        self.access.require(Role.OWNER, caller)
        self.access.require_not_paused()
        recipient = normalize_address(recipient)
        if recipient == ZERO_ADDRESS:
            raise InvalidAddress(recipient)
        self.yield_collector.collect(force=False)
        previous = self.state.yield_recipient
        self.state.yield_recipient = recipient
        self.network.emit(self.address, 'YieldRecipientSet', previous=previous, yield_recipient=recipient)
        LOGGER.info('yield recipient changed vault=%s previous=%s new=%s', self.symbol, previous, recipient)

    @external
    def set_minimum_reserve_percentage(self, caller: str, percentage: int) -> None:
        self.access.require(Role.OWNER, caller)
        self.access.require_not_paused()
        self.state.minimum_reserve_percentage = _check_percentage(percentage)
        self.network.emit(self.address, 'MinimumReservePercentageSet', minimum_reserve_percentage=percentage)
        LOGGER.info('minimum reserve percentage changed vault=%s percentage=%s', self.symbol, percentage)

    @external
    def set_yield_vault_maximum_slippage_percentage(self, caller: str, percentage: int) -> None:
        self.access.require(Role.OWNER, caller)
        self.access.require_not_paused()
        self.state.yield_vault_maximum_slippage_percentage = _check_percentage(percentage)
        self.network.emit(self.address, 'YieldVaultMaximumSlippagePercentageSet', percentage=percentage)

    @external
    def set_minimum_yield_vault_deposit(self, caller: str, assets: int) -> None:
        self.access.require(Role.OWNER, caller)
        self.access.require_not_paused()
        if assets < 0 or assets > MAX_UINT256:
            raise InvalidAssets(assets)
        self.state.minimum_yield_vault_deposit = assets
        self.network.emit(self.address, 'MinimumYieldVaultDepositSet', assets=assets)

    @external
    def set_migration_manager(self, caller: str, migration_manager: str) -> None:
        self.access.require(Role.OWNER, caller)
        migration_manager = normalize_address(migration_manager)
        if migration_manager == ZERO_ADDRESS:
            raise InvalidAddress(migration_manager)
        self.state.migration_manager = migration_manager
        self.network.emit(self.address, 'MigrationManagerSet', migration_manager=migration_manager)
        LOGGER.info('migration manager set vault=%s migration_manager=%s', self.symbol, migration_manager)

    def pause(self, caller: str) -> None:
        with self.network.transaction():
            self.access.pause(caller)

    def unpause(self, caller: str) -> None:
        with self.network.transaction():
            self.access.unpause(caller)

    # versioned state

    def export_state(self) -> dict[str, Any]:
        state = self.state
        return {
            'schema_version': state.schema_version,
            'balances': dict(state.balances),
            'allowances': [[owner, spender, amount] for (owner, spender), amount in state.allowances.items()],
            'total_supply': state.total_supply,
            'reserved_assets': state.reserved_assets,
            'minimum_reserve_percentage': state.minimum_reserve_percentage,
            'yield_recipient': state.yield_recipient,
            'donated_buffer': state.donated_buffer,
            'migration_manager': state.migration_manager,
            'minimum_yield_vault_deposit': state.minimum_yield_vault_deposit,
            'yield_vault_maximum_slippage_percentage': state.yield_vault_maximum_slippage_percentage,
            'access': {
                'members': {role.value: sorted(members) for role, members in state.access.members.items()},
                'paused': state.access.paused
            }
        }

    def restore_state(self, caller: str, payload: dict[str, Any]) -> None:
        self.access.require(Role.OWNER, caller)
        data = upgrade_vault_state(payload)
        access = data.get('access') or {}
        with self.network.transaction():
            self.state = VaultTokenState(
                balances={normalize_address(k): int(v) for k, v in data.get('balances', {}).items()},
                allowances={
                    (normalize_address(owner), normalize_address(spender)): int(amount)
                    for owner, spender, amount in data.get('allowances', [])
                },
                total_supply=int(data.get('total_supply', 0)),
                minters=set(self.state.minters),
                schema_version=SCHEMA_VERSION,
                reserved_assets=int(data.get('reserved_assets', 0)),
                minimum_reserve_percentage=_check_percentage(int(data.get('minimum_reserve_percentage', 0))),
                yield_recipient=normalize_address(data.get('yield_recipient', self.state.yield_recipient)),
                donated_buffer=int(data.get('donated_buffer', 0)),
                migration_manager=normalize_address(data.get('migration_manager', ZERO_ADDRESS)),
                minimum_yield_vault_deposit=int(data.get('minimum_yield_vault_deposit', 0)),
                yield_vault_maximum_slippage_percentage=_check_percentage(
                    int(data.get('yield_vault_maximum_slippage_percentage', 0))
                ),
                access=AccessState(
                    members={
                        Role(role): {normalize_address(m) for m in members}
                        for role, members in access.get('members', {}).items()
                    } or dict(self.state.access.members),
                    paused=bool(access.get('paused', False))
                )
            )
        LOGGER.info('vault state restored vault=%s schema_version=%s', self.symbol, SCHEMA_VERSION)
