from __future__ import annotations

import logging
from dataclasses import dataclass, field

from services.bridge.local_bridge import BridgeTransport
from services.common.access import AccessControl, AccessState, Role
from services.common.errors import (
    InvalidAddress,
    InvalidNetwork,
    MalformedInstruction,
    UnauthorizedBridge,
    UnregisteredConverter,
    VaultBridgeError
)
from services.common.fixed_point import MAX_UINT256
from services.common.guards import external
from services.common.instructions import CompleteMigration, CompleteMigrationWithWrap, decode_instruction
from services.common.network import ZERO_ADDRESS, Network, normalize_address
from services.common.tokens import WrappedNativeToken

from .vault_token import VaultToken

LOGGER = logging.getLogger('vaultbridge.hub.migration')


@dataclass(frozen=True)
class RegistryEntry:
    vault_token: str
    underlying: str


@dataclass
class MigrationCoordinatorState:
    schema_version: int = 1
    registry: dict[tuple[int, str], RegistryEntry] = field(default_factory=dict)
    access: AccessState = field(default_factory=AccessState)


class MigrationCoordinator:
    def __init__(self, network: Network, *, bridge: BridgeTransport, owner: str, address: str | None = None) -> None:
        self.network = network
        self.bridge = bridge
        self.address = normalize_address(address or network.new_address('migration-coordinator'))
        self.state = MigrationCoordinatorState()
        self.access = AccessControl(self, owner)
        self._entered = False
        network.deploy(self)

    def entry_for(self, network_id: int, converter: str) -> RegistryEntry | None:
        return self.state.registry.get((network_id, normalize_address(converter)))

    def _vault(self, address: str) -> VaultToken:
        contract = self.network.contract_at(address)
        if not isinstance(contract, VaultToken):
            raise InvalidAddress(address)
        return contract

    def _revoke_if_unused(self, entry: RegistryEntry) -> None:
        still_used = any(other.vault_token == entry.vault_token for other in self.state.registry.values())
        if still_used:
            return
        underlying = self.network.contract_at(entry.underlying)
        underlying.approve(self.address, entry.vault_token, 0)
        LOGGER.info('underlying approval revoked vault=%s underlying=%s', entry.vault_token, entry.underlying)

    @external
    def set_native_converters(
        self,
        caller: str,
        network_ids: list[int],
        converters: list[str],
        vault_tokens: list[str]
    ) -> None:
        """Register, replace or (with a zero vault token) delete converters."""
        self.access.require(Role.OWNER, caller)
        if not (len(network_ids) == len(converters) == len(vault_tokens)):
            raise VaultBridgeError('network_ids, converters and vault_tokens must have the same length')

        registry = self.state.registry
        for network_id, converter, vault_address in zip(network_ids, converters, vault_tokens):
            if network_id == self.network.network_id:
                raise InvalidNetwork(network_id)
            converter = normalize_address(converter)
            if converter == ZERO_ADDRESS:
                raise InvalidAddress(converter)
            vault_address = normalize_address(vault_address)
            key = (network_id, converter)

            previous = registry.pop(key, None)
            if previous is not None and previous.vault_token != vault_address:
                self._revoke_if_unused(previous)

            if vault_address != ZERO_ADDRESS:
                vault = self._vault(vault_address)
                entry = RegistryEntry(vault_token=vault.address, underlying=vault.underlying.address)
                registry[key] = entry
                vault.underlying.approve(self.address, vault.address, MAX_UINT256)

            self.network.emit(
                self.address,
                'NativeConverterSet',
                network_id=network_id,
                native_converter=converter,
                vault_token=vault_address
            )
            LOGGER.info(
                'native converter set network_id=%s converter=%s vault_token=%s',
                network_id,
                converter,
                vault_address
            )

    @external
    def on_message_received(self, caller: str, origin_address: str, origin_network: int, data: bytes) -> None:
        self.access.require_not_paused()
        caller = normalize_address(caller)
        if caller != normalize_address(self.bridge.address):
            raise UnauthorizedBridge(caller)
        origin_address = normalize_address(origin_address)
        entry = self.entry_for(origin_network, origin_address)
        if entry is None:
            raise UnregisteredConverter(origin_network, origin_address)

        instruction = decode_instruction(data)
        if isinstance(instruction, CompleteMigrationWithWrap):
            self._wrap_native(entry, instruction.assets)
            instruction = instruction.inner
        if not isinstance(instruction, CompleteMigration):
            raise MalformedInstruction(f'unsupported instruction {type(instruction).__name__}')

        LOGGER.info(
            'migration instruction received origin_network=%s converter=%s shares=%s assets=%s',
            origin_network,
            origin_address,
            instruction.shares,
            instruction.assets
        )
        vault = self._vault(entry.vault_token)
        vault.complete_migration(self.address, origin_network, instruction.shares, instruction.assets)

    def _wrap_native(self, entry: RegistryEntry, assets: int) -> None:
        underlying = self.network.contract_at(entry.underlying)
        if not isinstance(underlying, WrappedNativeToken):
            raise MalformedInstruction('registered underlying cannot wrap the native coin')
        if assets > 0:
            underlying.deposit(self.address, assets)

    def pause(self, caller: str) -> None:
        with self.network.transaction():
            self.access.pause(caller)

    def unpause(self, caller: str) -> None:
        with self.network.transaction():
            self.access.unpause(caller)
