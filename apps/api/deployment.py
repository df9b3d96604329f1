from __future__ import annotations

import logging
from dataclasses import dataclass, field

from services.bridge.local_bridge import LocalBridge, LocalBridgeFabric
from services.common.errors import InvalidNetwork
from services.common.network import Network, normalize_address
from services.common.tokens import Token
from services.hub.migration_coordinator import MigrationCoordinator
from services.hub.vault_token import VaultToken
from services.hub.yield_vault import InMemoryYieldVault
from services.spoke.native_converter import NativeConverter

from .config import Settings

LOGGER = logging.getLogger('vaultbridge.deployment')


@dataclass
class SpokeDeployment:
    network: Network
    bridge: LocalBridge
    underlying: Token
    custom_token: Token
    converter: NativeConverter


@dataclass
class Deployment:
    owner: str
    fabric: LocalBridgeFabric
    hub: Network
    hub_bridge: LocalBridge
    underlying: Token
    yield_vault: InMemoryYieldVault
    vault: VaultToken
    coordinator: MigrationCoordinator
    spokes: dict[int, SpokeDeployment] = field(default_factory=dict)

    def networks(self) -> list[Network]:
        return [self.hub, *(spoke.network for spoke in self.spokes.values())]

    def network(self, network_id: int) -> Network:
        if network_id == self.hub.network_id:
            return self.hub
        return self.spoke(network_id).network

    def spoke(self, network_id: int) -> SpokeDeployment:
        spoke = self.spokes.get(network_id)
        if spoke is None:
            raise InvalidNetwork(network_id)
        return spoke

    def underlying_on(self, network_id: int) -> Token:
        if network_id == self.hub.network_id:
            return self.underlying
        return self.spoke(network_id).underlying

    def faucet(self, network_id: int, account: str, amount: int) -> int:
        account = normalize_address(account)
        if network_id == self.hub.network_id:
            self.underlying.mint(self.owner, account, amount)
            return amount

        spoke = self.spoke(network_id)
        with self.hub.transaction():
            self.underlying.mint(self.owner, self.owner, amount)
            self.underlying.approve(self.owner, self.hub_bridge.address, amount)
            deposit = self.hub_bridge.bridge_asset(
                self.owner,
                network_id,
                account,
                amount,
                self.underlying.address,
                True,
                b''
            )
        spoke.bridge.claim_asset(deposit.origin_network, deposit.deposit_count)
        LOGGER.info('faucet network_id=%s account=%s amount=%s', network_id, account, deposit.amount)
        return deposit.amount


def build_deployment(settings: Settings, *, owner: str | None = None) -> Deployment:
    hub = Network(settings.hub_network_id, f'hub-{settings.hub_network_id}')
    owner = normalize_address(owner or hub.new_address('sandbox-owner'))
    fabric = LocalBridgeFabric(native_origin_network=hub.network_id)
    hub_bridge = fabric.attach(hub)

    symbol = settings.underlying_symbol
    underlying = Token(hub, symbol, symbol, settings.underlying_decimals, minters={owner})
    yield_vault = InMemoryYieldVault(hub, underlying)
    if settings.yield_vault_max_deposit is not None:
        yield_vault.set_caps(deposit_cap=settings.yield_vault_max_deposit)

    coordinator = MigrationCoordinator(hub, bridge=hub_bridge, owner=owner)
    vault = VaultToken(
        hub,
        name=f'Vault Bridge {symbol}',
        symbol=f'vb{symbol}',
        underlying=underlying,
        yield_vault=yield_vault,
        bridge=hub_bridge,
        owner=owner,
        yield_recipient=owner,
        minimum_reserve_percentage=settings.minimum_reserve_percentage,
        migration_manager=coordinator.address,
        minimum_yield_vault_deposit=settings.minimum_yield_vault_deposit,
        yield_vault_maximum_slippage_percentage=settings.yield_vault_maximum_slippage_percentage
    )

    deployment = Deployment(
        owner=owner,
        fabric=fabric,
        hub=hub,
        hub_bridge=hub_bridge,
        underlying=underlying,
        yield_vault=yield_vault,
        vault=vault,
        coordinator=coordinator
    )

    routes: list[tuple[Network, LocalBridge, Token, Token]] = []
    for network_id in settings.spoke_network_ids:
        network = Network(network_id, f'spoke-{network_id}')
        spoke_underlying = Token(network, f'Bridged {symbol}', symbol, settings.underlying_decimals)
        custom_token = Token(network, vault.name, vault.symbol, vault.decimals)
        routes.append((network, fabric.attach(network), spoke_underlying, custom_token))

    fabric.register_token(underlying, wrapped=[route[2] for route in routes])
    fabric.register_token(vault, wrapped=[route[3] for route in routes])

    for network, bridge, spoke_underlying, custom_token in routes:
        converter = NativeConverter(
            network,
            custom_token=custom_token,
            underlying=spoke_underlying,
            bridge=bridge,
            hub_network_id=hub.network_id,
            migration_manager=coordinator.address,
            owner=owner,
            non_migratable_backing_percentage=settings.non_migratable_backing_percentage,
            minimum_backing_after_migration=settings.minimum_backing_after_migration
        )
        deployment.spokes[network.network_id] = SpokeDeployment(
            network=network,
            bridge=bridge,
            underlying=spoke_underlying,
            custom_token=custom_token,
            converter=converter
        )

    spokes = list(deployment.spokes.values())
    if spokes:
        coordinator.set_native_converters(
            owner,
            [spoke.network.network_id for spoke in spokes],
            [spoke.converter.address for spoke in spokes],
            [vault.address for _ in spokes]
        )

    LOGGER.info(
        'sandbox deployed hub_network_id=%s spoke_network_ids=%s underlying=%s vault=%s',
        hub.network_id,
        list(deployment.spokes),
        symbol,
        vault.symbol
    )
    return deployment
