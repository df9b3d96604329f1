from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

from services.common.errors import InvalidAddress, InvalidDecimals, InvalidNetwork, InvalidReceiver, VaultBridgeError
from services.common.guards import external
from services.common.network import ZERO_ADDRESS, Network, derive_address, normalize_address, require_amount
from services.common.tokens import Token

LOGGER = logging.getLogger('vaultbridge.bridge')

LEAF_TYPE_ASSET = 'asset'
LEAF_TYPE_MESSAGE = 'message'


class AlreadyClaimed(VaultBridgeError):
    category = 'protocol'
    status_code = 400

    def __init__(self, origin_network: int, deposit_count: int) -> None:
        super().__init__(
            f'deposit already claimed origin_network={origin_network} deposit_count={deposit_count}',
            origin_network=origin_network,
            deposit_count=deposit_count
        )


class UnknownDeposit(VaultBridgeError):
    category = 'protocol'
    status_code = 404

    def __init__(self, origin_network: int, deposit_count: int) -> None:
        super().__init__(
            f'unknown deposit origin_network={origin_network} deposit_count={deposit_count}',
            origin_network=origin_network,
            deposit_count=deposit_count
        )


class MessageReceiver(Protocol):
    def on_message_received(self, caller: str, origin_address: str, origin_network: int, data: bytes) -> None: ...


class BridgeTransport(Protocol):
    address: str

    def bridge_asset(
        self,
        caller: str,
        destination_network: int,
        destination_address: str,
        amount: int,
        token: str | None,
        force_update_root: bool,
        metadata: bytes = b''
    ) -> 'BridgeDeposit': ...

    def bridge_message(
        self,
        caller: str,
        destination_network: int,
        destination_address: str,
        force_update_root: bool,
        metadata: bytes
    ) -> 'BridgeDeposit': ...


@dataclass(frozen=True)
class BridgeDeposit:
    leaf_type: str
    deposit_count: int
    origin_network: int
    origin_address: str
    destination_network: int
    destination_address: str
    amount: int
    metadata: bytes = b''
    token_origin_network: int | None = None
    token_origin_address: str | None = None
    force_update_root: bool = True

    @property
    def is_native(self) -> bool:
        return self.leaf_type == LEAF_TYPE_ASSET and self.token_origin_address == ZERO_ADDRESS


@dataclass
class LocalBridgeState:
    outbox: list[BridgeDeposit] = field(default_factory=list)
    claimed: set[tuple[int, int]] = field(default_factory=set)


class LocalBridgeFabric:
    def __init__(self, native_origin_network: int) -> None:
        self.native_origin_network = native_origin_network
        self.address = derive_address(0, 'local-bridge')
        self.endpoints: dict[int, LocalBridge] = {}
        # (network_id, token address) -> (origin network, origin token address)
        self._origins: dict[tuple[int, str], tuple[int, str]] = {}
        # (origin network, origin token address) -> {network_id: token}
        self._tokens: dict[tuple[int, str], dict[int, Token]] = {}

    def attach(self, network: Network) -> 'LocalBridge':
        if network.network_id in self.endpoints:
            raise InvalidNetwork(network.network_id)
        endpoint = LocalBridge(self, network)
        self.endpoints[network.network_id] = endpoint
        return endpoint

    def endpoint(self, network_id: int) -> 'LocalBridge':
        endpoint = self.endpoints.get(network_id)
        if endpoint is None:
            raise InvalidNetwork(network_id)
        return endpoint

    def register_token(self, origin: Token, wrapped: list[Token] | None = None) -> None:
        # bridged amounts are not rescaled, so every copy must share the origin decimals
        for token in wrapped or []:
            if token.decimals != origin.decimals:
                raise InvalidDecimals(origin.decimals, token.decimals)
        key = (origin.network.network_id, origin.address)
        mapping = self._tokens.setdefault(key, {origin.network.network_id: origin})
        self._origins[key] = key
        for token in wrapped or []:
            network_id = token.network.network_id
            mapping[network_id] = token
            self._origins[(network_id, token.address)] = key
            token.add_minter(self.address)
        LOGGER.info(
            'token route registered origin_network=%s token=%s wrapped_networks=%s',
            origin.network.network_id,
            origin.symbol,
            sorted(network_id for network_id in mapping if network_id != key[0])
        )

    def token_origin(self, network_id: int, token_address: str) -> tuple[int, str]:
        address = normalize_address(token_address)
        return self._origins.get((network_id, address), (network_id, address))

    def token_on(self, origin: tuple[int, str], network_id: int) -> Token:
        token = self._tokens.get(origin, {}).get(network_id)
        if token is None:
            raise InvalidAddress(origin[1])
        return token

    def deposit(self, origin_network: int, deposit_count: int) -> BridgeDeposit:
        outbox = self.endpoint(origin_network).state.outbox
        if deposit_count < 0 or deposit_count >= len(outbox):
            raise UnknownDeposit(origin_network, deposit_count)
        return outbox[deposit_count]

    def pending_for(self, network_id: int) -> list[BridgeDeposit]:
        claimed = self.endpoint(network_id).state.claimed
        pending: list[BridgeDeposit] = []
        for origin_network in sorted(self.endpoints):
            if origin_network == network_id:
                continue
            for deposit in self.endpoints[origin_network].state.outbox:
                if deposit.destination_network != network_id:
                    continue
                if (deposit.origin_network, deposit.deposit_count) in claimed:
                    continue
                pending.append(deposit)
        return pending

    def claim_all(self, network_id: int) -> list[BridgeDeposit]:
        return self.endpoint(network_id).claim_all()


class LocalBridge:
    """Bridge endpoint deployed on one network, at the same address everywhere."""

    def __init__(self, fabric: LocalBridgeFabric, network: Network) -> None:
        self.fabric = fabric
        self.network = network
        self.address = fabric.address
        self.state = LocalBridgeState()
        network.deploy(self)

    @property
    def network_id(self) -> int:
        return self.network.network_id

    def _check_destination(self, destination_network: int) -> None:
        if destination_network == self.network_id or destination_network not in self.fabric.endpoints:
            raise InvalidNetwork(destination_network)

    def _record(self, **values) -> BridgeDeposit:
        deposit = BridgeDeposit(deposit_count=len(self.state.outbox), origin_network=self.network_id, **values)
        self.state.outbox.append(deposit)
        self.network.emit(
            self.address,
            'BridgeEvent',
            leaf_type=deposit.leaf_type,
            deposit_count=deposit.deposit_count,
            origin_address=deposit.origin_address,
            destination_network=deposit.destination_network,
            destination_address=deposit.destination_address,
            amount=deposit.amount,
            metadata=deposit.metadata.hex()
        )
        return deposit

    @external
    def bridge_asset(
        self,
        caller: str,
        destination_network: int,
        destination_address: str,
        amount: int,
        token: str | None,
        force_update_root: bool,
        metadata: bytes = b''
    ) -> BridgeDeposit:
        caller = normalize_address(caller)
        destination_address = normalize_address(destination_address)
        self._check_destination(destination_network)
        require_amount(amount)

        if token is None or normalize_address(token) == ZERO_ADDRESS:
            origin = (self.fabric.native_origin_network, ZERO_ADDRESS)
            self.network.transfer_native(caller, self.address, amount)
            received = amount
        else:
            origin = self.fabric.token_origin(self.network_id, token)
            local_token = self.fabric.token_on(origin, self.network_id) if origin[0] != self.network_id else None
            if local_token is None:
                local_token = self.network.contract_at(token)
                before = local_token.balance_of(self.address)
                local_token.transfer_from(self.address, caller, self.address, amount)
                received = local_token.balance_of(self.address) - before
            else:
                local_token.burn(self.address, caller, amount)
                received = amount

        deposit = self._record(
            leaf_type=LEAF_TYPE_ASSET,
            origin_address=caller,
            destination_network=destination_network,
            destination_address=destination_address,
            amount=received,
            metadata=bytes(metadata),
            token_origin_network=origin[0],
            token_origin_address=origin[1],
            force_update_root=force_update_root
        )
        LOGGER.info(
            'asset bridged origin_network=%s destination_network=%s deposit_count=%s amount=%s',
            self.network_id,
            destination_network,
            deposit.deposit_count,
            received
        )
        return deposit

    @external
    def bridge_message(
        self,
        caller: str,
        destination_network: int,
        destination_address: str,
        force_update_root: bool,
        metadata: bytes
    ) -> BridgeDeposit:
        self._check_destination(destination_network)
        deposit = self._record(
            leaf_type=LEAF_TYPE_MESSAGE,
            origin_address=normalize_address(caller),
            destination_network=destination_network,
            destination_address=normalize_address(destination_address),
            amount=0,
            metadata=bytes(metadata),
            force_update_root=force_update_root
        )
        LOGGER.info(
            'message bridged origin_network=%s destination_network=%s deposit_count=%s',
            self.network_id,
            destination_network,
            deposit.deposit_count
        )
        return deposit

    def _take(self, origin_network: int, deposit_count: int, leaf_type: str) -> BridgeDeposit:
        deposit = self.fabric.deposit(origin_network, deposit_count)
        if deposit.leaf_type != leaf_type or deposit.destination_network != self.network_id:
            raise UnknownDeposit(origin_network, deposit_count)
        key = (origin_network, deposit_count)
        if key in self.state.claimed:
            raise AlreadyClaimed(origin_network, deposit_count)
        self.state.claimed.add(key)
        return deposit

    @external
    def claim_asset(self, origin_network: int, deposit_count: int) -> BridgeDeposit:
        deposit = self._take(origin_network, deposit_count, LEAF_TYPE_ASSET)
        receiver = deposit.destination_address
        if receiver == ZERO_ADDRESS:
            raise InvalidReceiver(receiver)

        if deposit.is_native:
            self.network.transfer_native(self.address, receiver, deposit.amount)
        else:
            origin = (deposit.token_origin_network, deposit.token_origin_address)
            token = self.fabric.token_on(origin, self.network_id)
            if origin[0] == self.network_id:
                token.transfer(self.address, receiver, deposit.amount)
            else:
                token.mint(self.address, receiver, deposit.amount)

        self.network.emit(
            self.address,
            'ClaimEvent',
            origin_network=origin_network,
            deposit_count=deposit_count,
            destination_address=receiver,
            amount=deposit.amount
        )
        LOGGER.info(
            'asset claimed network_id=%s origin_network=%s deposit_count=%s amount=%s',
            self.network_id,
            origin_network,
            deposit_count,
            deposit.amount
        )
        return deposit

    def claim_message(self, origin_network: int, deposit_count: int) -> BridgeDeposit:
        # the receiver may bridge again through this endpoint, so no re-entrancy flag here
        with self.network.transaction():
            return self._claim_message(origin_network, deposit_count)

    def _claim_message(self, origin_network: int, deposit_count: int) -> BridgeDeposit:
        deposit = self._take(origin_network, deposit_count, LEAF_TYPE_MESSAGE)
        receiver: MessageReceiver = self.network.contract_at(deposit.destination_address)  # type: ignore[assignment]
        receiver.on_message_received(
            caller=self.address,
            origin_address=deposit.origin_address,
            origin_network=origin_network,
            data=deposit.metadata
        )
        self.network.emit(
            self.address,
            'ClaimEvent',
            origin_network=origin_network,
            deposit_count=deposit_count,
            destination_address=deposit.destination_address,
            amount=0
        )
        LOGGER.info(
            'message claimed network_id=%s origin_network=%s deposit_count=%s',
            self.network_id,
            origin_network,
            deposit_count
        )
        return deposit

    def pending(self) -> list[BridgeDeposit]:
        return self.fabric.pending_for(self.network_id)

    def claim_all(self) -> list[BridgeDeposit]:
        """Claim every pending deposit, assets before messages, each in its own transaction."""
        pending = [deposit for deposit in self.pending() if deposit.destination_address != ZERO_ADDRESS]
        ordered = sorted(pending, key=lambda d: (d.origin_network, d.leaf_type != LEAF_TYPE_ASSET, d.deposit_count))
        claimed: list[BridgeDeposit] = []
        for deposit in ordered:
            if deposit.leaf_type == LEAF_TYPE_ASSET:
                claimed.append(self.claim_asset(deposit.origin_network, deposit.deposit_count))
            else:
                claimed.append(self.claim_message(deposit.origin_network, deposit.deposit_count))
        return claimed
