from __future__ import annotations

import copy
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Protocol

from web3 import Web3

from .errors import InsufficientBalance, InvalidAddress, InvalidAssets
from .fixed_point import MAX_UINT256

LOGGER = logging.getLogger('vaultbridge.network')

ZERO_ADDRESS = '0x0000000000000000000000000000000000000000'


def normalize_address(value: str) -> str:
    candidate = str(value or '').strip()
    if not Web3.is_address(candidate):
        raise InvalidAddress(candidate)
    return Web3.to_checksum_address(candidate)


def is_zero_address(value: str) -> bool:
    return normalize_address(value) == ZERO_ADDRESS


def derive_address(network_id: int, label: str) -> str:
    digest = Web3.keccak(text=f'{network_id}:{label}')
    return Web3.to_checksum_address(digest[-20:])


def require_amount(amount: int, error: Callable[[int], Exception] = InvalidAssets) -> int:
    if not isinstance(amount, int) or amount <= 0 or amount > MAX_UINT256:
        raise error(amount)
    return amount


class StatefulContract(Protocol):
    address: str
    state: Any


@dataclass
class Event:
    network_id: int
    emitter: str
    name: str
    args: dict[str, Any]
    index: int

    @property
    def event_id(self) -> str:
        return str(uuid.uuid5(uuid.NAMESPACE_URL, f'{self.network_id}:{self.emitter}:{self.index}:{self.name}'))

    def payload(self) -> dict[str, Any]:
        return {
            'event_id': self.event_id,
            'network_id': self.network_id,
            'emitter': self.emitter,
            'name': self.name,
            'index': self.index,
            'args': {key: str(value) if isinstance(value, int) and not isinstance(value, bool) else value
                     for key, value in self.args.items()}
        }


@dataclass
class _Snapshot:
    states: dict[str, Any]
    native_balances: dict[str, int]
    events_length: int


@dataclass
class Network:
    network_id: int
    name: str
    contracts: dict[str, StatefulContract] = field(default_factory=dict)
    native_balances: dict[str, int] = field(default_factory=dict)
    events: list[Event] = field(default_factory=list)
    _listeners: list[Callable[[Event], None]] = field(default_factory=list)
    _depth: int = 0
    _snapshot: _Snapshot | None = None

    def deploy(self, contract: StatefulContract) -> StatefulContract:
        address = normalize_address(contract.address)
        if address in self.contracts:
            raise InvalidAddress(address)
        self.contracts[address] = contract
        LOGGER.info('contract deployed network_id=%s address=%s kind=%s', self.network_id, address, type(contract).__name__)
        return contract

    def contract_at(self, address: str) -> StatefulContract:
        contract = self.contracts.get(normalize_address(address))
        if contract is None:
            raise InvalidAddress(address)
        return contract

    def new_address(self, label: str) -> str:
        return derive_address(self.network_id, label)

    def subscribe(self, listener: Callable[[Event], None]) -> None:
        self._listeners.append(listener)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        outermost = self._depth == 0
        if outermost:
            self._snapshot = _Snapshot(
                states={address: copy.deepcopy(contract.state) for address, contract in self.contracts.items()},
                native_balances=dict(self.native_balances),
                events_length=len(self.events)
            )
        self._depth += 1
        try:
            yield
        except BaseException:
            if outermost:
                self._rollback()
            raise
        finally:
            self._depth -= 1

        if outermost:
            committed = self.events[self._snapshot.events_length:] if self._snapshot else []
            self._snapshot = None
            self._notify(committed)

    def _notify(self, events: list[Event]) -> None:
        for event in events:
            for listener in self._listeners:
                listener(event)

    def _rollback(self) -> None:
        snapshot = self._snapshot
        self._snapshot = None
        if snapshot is None:
            return
        for address, state in snapshot.states.items():
            contract = self.contracts.get(address)
            if contract is not None:
                contract.state = state
        self.native_balances = snapshot.native_balances
        del self.events[snapshot.events_length:]
        LOGGER.debug('transaction rolled back network_id=%s', self.network_id)

    def emit(self, emitter: str, name: str, **args: Any) -> Event:
        event = Event(
            network_id=self.network_id,
            emitter=emitter,
            name=name,
            args=args,
            index=len(self.events)
        )
        self.events.append(event)
        # outside a transaction the event is final as soon as it is logged
        if self._depth == 0:
            self._notify([event])
        return event

    def events_named(self, name: str, emitter: str | None = None) -> list[Event]:
        return [
            event
            for event in self.events
            if event.name == name and (emitter is None or event.emitter == emitter)
        ]

    # native coin

    def native_balance(self, account: str) -> int:
        return self.native_balances.get(normalize_address(account), 0)

    def fund_native(self, account: str, amount: int) -> None:
        account = normalize_address(account)
        self.native_balances[account] = self.native_balances.get(account, 0) + require_amount(amount)

    def transfer_native(self, sender: str, recipient: str, amount: int) -> None:
        sender = normalize_address(sender)
        recipient = normalize_address(recipient)
        require_amount(amount)
        available = self.native_balances.get(sender, 0)
        if available < amount:
            raise InsufficientBalance(available, amount)
        self.native_balances[sender] = available - amount
        self.native_balances[recipient] = self.native_balances.get(recipient, 0) + amount
