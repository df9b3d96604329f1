from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from services.bridge.local_bridge import BridgeDeposit, BridgeTransport
from services.common.access import AccessControl, AccessState, Role
from services.common.errors import (
    AssetsTooLarge,
    InvalidAddress,
    InvalidAssets,
    InvalidDecimals,
    InvalidNetwork,
    InvalidPercentage,
    InvalidReceiver,
    InvalidShares
)
from services.common.fixed_point import MAX_UINT256, ONE, Rounding, apply_percentage
from services.common.guards import external
from services.common.instructions import CompleteMigration, CompleteMigrationWithWrap, Instruction, encode_instruction
from services.common.network import ZERO_ADDRESS, Network, normalize_address, require_amount
from services.common.tokens import Token, WrappedNativeToken

LOGGER = logging.getLogger('vaultbridge.spoke.converter')

SCHEMA_VERSION = 2


@dataclass
class NativeConverterState:
    schema_version: int = SCHEMA_VERSION
    backing_on_layer_y: int = 0
    non_migratable_backing_percentage: int = 0
    minimum_backing_after_migration: int = 0
    total_converted: int = 0
    total_deconverted: int = 0
    total_migrated: int = 0
    access: AccessState = field(default_factory=AccessState)


def upgrade_converter_state(payload: dict[str, Any]) -> dict[str, Any]:
    upgraded = dict(payload)
    version = int(upgraded.get('schema_version', 1))
    if version > SCHEMA_VERSION:
        raise ValueError(f'unsupported converter state schema_version={version}')
    if version < 2:
        # v1 tracked only the backing; start the audit counters from it
        upgraded.setdefault('minimum_backing_after_migration', 0)
        upgraded.setdefault('total_converted', int(upgraded.get('backing_on_layer_y', 0)))
        upgraded.setdefault('total_deconverted', 0)
        upgraded.setdefault('total_migrated', 0)
    upgraded['schema_version'] = SCHEMA_VERSION
    return upgraded


def _check_percentage(percentage: int) -> int:
    if not isinstance(percentage, int) or percentage < 0 or percentage > ONE:
        raise InvalidPercentage(percentage)
    return percentage


class NativeConverter:
    def __init__(
        self,
        network: Network,
        *,
        custom_token: Token,
        underlying: Token,
        bridge: BridgeTransport,
        hub_network_id: int,
        migration_manager: str,
        owner: str,
        non_migratable_backing_percentage: int,
        minimum_backing_after_migration: int = 0,
        address: str | None = None
    ) -> None:
        if custom_token.decimals < underlying.decimals:
            raise InvalidDecimals(underlying.decimals, custom_token.decimals)
        if hub_network_id == network.network_id:
            raise InvalidNetwork(hub_network_id)
        migration_manager = normalize_address(migration_manager)
        if migration_manager == ZERO_ADDRESS:
            raise InvalidAddress(migration_manager)

        self.network = network
        self.custom_token = custom_token
        self.underlying = underlying
        self.bridge = bridge
        self.hub_network_id = hub_network_id
        self.migration_manager = migration_manager
        self.address = normalize_address(address or network.new_address(f'native-converter:{custom_token.symbol}'))
        self._decimals_offset = custom_token.decimals - underlying.decimals
        self.state = NativeConverterState(
            non_migratable_backing_percentage=_check_percentage(non_migratable_backing_percentage),
            minimum_backing_after_migration=minimum_backing_after_migration
        )
        self.access = AccessControl(self, owner)
        self._entered = False
        network.deploy(self)

        custom_token.add_minter(self.address)
        underlying.approve(self.address, bridge.address, MAX_UINT256)
        LOGGER.info(
            'native converter initialized network_id=%s custom_token=%s underlying=%s hub_network_id=%s',
            network.network_id,
            custom_token.symbol,
            underlying.symbol,
            hub_network_id
        )

    # conversion

    def convert_to_shares(self, assets: int) -> int:
        return assets * 10**self._decimals_offset

    def convert_to_assets(self, shares: int) -> int:
        return shares // 10**self._decimals_offset

    def preview_convert(self, assets: int) -> int:
        return self.convert_to_shares(assets)

    def preview_deconvert(self, shares: int) -> int:
        return self.convert_to_assets(shares)

    # views

    @property
    def backing_on_layer_y(self) -> int:
        return self.state.backing_on_layer_y

    def max_deconvert(self, owner: str) -> int:
        if self.access.paused:
            return 0
        assets = min(self.convert_to_assets(self.custom_token.balance_of(owner)), self.state.backing_on_layer_y)
        return self.convert_to_shares(assets)

    def non_migratable_backing(self) -> int:
        supply_assets = self.convert_to_assets(self.custom_token.total_supply)
        by_percentage = apply_percentage(supply_assets, self.state.non_migratable_backing_percentage, Rounding.CEIL)
        return max(by_percentage, self.state.minimum_backing_after_migration)

    def migratable_backing(self) -> int:
        return max(self.state.backing_on_layer_y - self.non_migratable_backing(), 0)

    # helpers

    def _check_receiver(self, receiver: str) -> str:
        receiver = normalize_address(receiver)
        if receiver in (ZERO_ADDRESS, self.address):
            raise InvalidReceiver(receiver)
        return receiver

    def _release_backing(self, caller: str, shares: int, owner: str) -> int:
        require_amount(shares, InvalidShares)
        assets = self.convert_to_assets(shares)
        if assets == 0:
            raise InvalidShares(shares)
        state = self.state
        if assets > state.backing_on_layer_y:
            raise AssetsTooLarge(state.backing_on_layer_y, assets)
        if caller != owner:
            self.custom_token.spend_allowance(owner, caller, shares)
        self.custom_token.burn(self.address, owner, shares)
        state.backing_on_layer_y -= assets
        state.total_deconverted += assets
        return assets

    # operations

    @external
    def convert(self, caller: str, assets: int, receiver: str) -> int:
        self.access.require_not_paused()
        require_amount(assets, InvalidAssets)
        caller = normalize_address(caller)
        receiver = self._check_receiver(receiver)

        before = self.underlying.balance_of(self.address)
        self.underlying.transfer_from(self.address, caller, self.address, assets)
        received = self.underlying.balance_of(self.address) - before
        if received <= 0:
            raise InvalidAssets(received)

        shares = self.convert_to_shares(received)
        self.state.backing_on_layer_y += received
        self.state.total_converted += received
        self.custom_token.mint(self.address, receiver, shares)

        self.network.emit(self.address, 'Converted', sender=caller, receiver=receiver, assets=received, shares=shares)
        LOGGER.info(
            'convert network_id=%s sender=%s receiver=%s assets=%s shares=%s backing=%s',
            self.network.network_id,
            caller,
            receiver,
            received,
            shares,
            self.state.backing_on_layer_y
        )
        return shares

    @external
    def deconvert(self, caller: str, shares: int, receiver: str, owner: str | None = None) -> int:
        self.access.require_not_paused()
        caller = normalize_address(caller)
        owner = normalize_address(owner) if owner is not None else caller
        receiver = self._check_receiver(receiver)

        assets = self._release_backing(caller, shares, owner)
        self.underlying.transfer(self.address, receiver, assets)

        self.network.emit(
            self.address,
            'Deconverted',
            sender=caller,
            receiver=receiver,
            owner=owner,
            assets=assets,
            shares=shares
        )
        LOGGER.info(
            'deconvert network_id=%s owner=%s receiver=%s assets=%s shares=%s backing=%s',
            self.network.network_id,
            owner,
            receiver,
            assets,
            shares,
            self.state.backing_on_layer_y
        )
        return assets

    @external
    def deconvert_and_bridge(
        self,
        caller: str,
        shares: int,
        receiver: str,
        destination_network_id: int,
        force_update_root: bool = True
    ) -> int:
        self.access.require_not_paused()
        if destination_network_id == self.network.network_id:
            raise InvalidNetwork(destination_network_id)
        caller = normalize_address(caller)
        receiver = normalize_address(receiver)
        if receiver == ZERO_ADDRESS:
            raise InvalidReceiver(receiver)

        assets = self._release_backing(caller, shares, caller)
        deposit = self.bridge.bridge_asset(
            self.address,
            destination_network_id,
            receiver,
            assets,
            self.underlying.address,
            force_update_root,
            b''
        )

        self.network.emit(
            self.address,
            'Deconverted',
            sender=caller,
            receiver=receiver,
            owner=caller,
            assets=assets,
            shares=shares,
            destination_network=destination_network_id,
            deposit_count=deposit.deposit_count
        )
        LOGGER.info(
            'deconvert bridged network_id=%s destination_network=%s receiver=%s assets=%s deposit_count=%s',
            self.network.network_id,
            destination_network_id,
            receiver,
            assets,
            deposit.deposit_count
        )
        return assets

    @external
    def migrate_backing_to_hub(self, caller: str, assets: int | None = None) -> int:
        self.access.require_not_paused()
        caller = normalize_address(caller)
        state = self.state

        if assets is None:
            assets = self.migratable_backing()
            if assets == 0:
                raise InvalidAssets(assets)
        else:
            require_amount(assets, InvalidAssets)
            if self.access.has_role(Role.MIGRATOR, caller):
                cap = state.backing_on_layer_y
            else:
                cap = self.migratable_backing()
            if assets > cap:
                raise AssetsTooLarge(cap, assets)

        shares = self.convert_to_shares(assets)
        state.backing_on_layer_y -= assets
        state.total_migrated += assets

        asset_deposit = self._bridge_backing(assets)
        instruction = self._migration_instruction(shares, asset_deposit.amount)
        message_deposit = self.bridge.bridge_message(
            self.address,
            self.hub_network_id,
            self.migration_manager,
            True,
            encode_instruction(instruction)
        )

        self.network.emit(
            self.address,
            'MigrationStarted',
            initiator=caller,
            shares=shares,
            assets=assets,
            transferred=asset_deposit.amount,
            asset_deposit_count=asset_deposit.deposit_count,
            message_deposit_count=message_deposit.deposit_count
        )
        LOGGER.info(
            'migration started network_id=%s shares=%s assets=%s transferred=%s backing=%s',
            self.network.network_id,
            shares,
            assets,
            asset_deposit.amount,
            state.backing_on_layer_y
        )
        return asset_deposit.amount

    def _bridge_backing(self, assets: int) -> BridgeDeposit:
        return self.bridge.bridge_asset(
            self.address,
            self.hub_network_id,
            self.migration_manager,
            assets,
            self.underlying.address,
            True,
            b''
        )

    def _migration_instruction(self, shares: int, assets: int) -> Instruction:
        return CompleteMigration(shares=shares, assets=assets)

    # administration

    @external
    def set_non_migratable_backing_percentage(self, caller: str, percentage: int) -> None:
        self.access.require(Role.OWNER, caller)
        self.access.require_not_paused()
        self.state.non_migratable_backing_percentage = _check_percentage(percentage)
        self.network.emit(self.address, 'NonMigratableBackingPercentageSet', percentage=percentage)
        LOGGER.info('non-migratable backing percentage changed network_id=%s percentage=%s', self.network.network_id, percentage)

    @external
    def set_minimum_backing_after_migration(self, caller: str, assets: int) -> None:
        self.access.require(Role.OWNER, caller)
        self.access.require_not_paused()
        if assets < 0 or assets > MAX_UINT256:
            raise InvalidAssets(assets)
        self.state.minimum_backing_after_migration = assets
        self.network.emit(self.address, 'MinimumBackingAfterMigrationSet', assets=assets)

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
            'backing_on_layer_y': state.backing_on_layer_y,
            'non_migratable_backing_percentage': state.non_migratable_backing_percentage,
            'minimum_backing_after_migration': state.minimum_backing_after_migration,
            'total_converted': state.total_converted,
            'total_deconverted': state.total_deconverted,
            'total_migrated': state.total_migrated,
            'paused': state.access.paused
        }

    def restore_state(self, caller: str, payload: dict[str, Any]) -> None:
        self.access.require(Role.OWNER, caller)
        data = upgrade_converter_state(payload)
        with self.network.transaction():
            self.state = NativeConverterState(
                schema_version=SCHEMA_VERSION,
                backing_on_layer_y=int(data.get('backing_on_layer_y', 0)),
                non_migratable_backing_percentage=_check_percentage(int(data.get('non_migratable_backing_percentage', 0))),
                minimum_backing_after_migration=int(data.get('minimum_backing_after_migration', 0)),
                total_converted=int(data.get('total_converted', 0)),
                total_deconverted=int(data.get('total_deconverted', 0)),
                total_migrated=int(data.get('total_migrated', 0)),
                access=AccessState(
                    members=dict(self.state.access.members),
                    paused=bool(data.get('paused', False))
                )
            )
        LOGGER.info('converter state restored network_id=%s schema_version=%s', self.network.network_id, SCHEMA_VERSION)


class GasTokenNativeConverter(NativeConverter):
    """Converter whose backing is the spoke's wrapped native coin."""

    underlying: WrappedNativeToken

    def __init__(self, network: Network, *, underlying: WrappedNativeToken, **kwargs: Any) -> None:
        if not isinstance(underlying, WrappedNativeToken):
            raise InvalidAddress(getattr(underlying, 'address', ZERO_ADDRESS))
        super().__init__(network, underlying=underlying, **kwargs)

    def _bridge_backing(self, assets: int) -> BridgeDeposit:
        self.underlying.withdraw(self.address, assets)
        return self.bridge.bridge_asset(
            self.address,
            self.hub_network_id,
            self.migration_manager,
            assets,
            None,
            True,
            b''
        )

    def _migration_instruction(self, shares: int, assets: int) -> Instruction:
        return CompleteMigrationWithWrap(inner=CompleteMigration(shares=shares, assets=assets))
