from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import EnforcedPause, Unauthorized
from .network import Network, normalize_address

LOGGER = logging.getLogger('vaultbridge.access')


class Role(str, Enum):
    OWNER = 'OWNER'
    PAUSER = 'PAUSER'
    REBALANCER = 'REBALANCER'
    YIELD_COLLECTOR = 'YIELD_COLLECTOR'
    MIGRATOR = 'MIGRATOR'


@dataclass
class AccessState:
    members: dict[Role, set[str]] = field(default_factory=dict)
    paused: bool = False


class AccessControl:
    """Capability sets checked at the entry of every privileged operation."""

    def __init__(self, contract: Any, owner: str) -> None:
        self.contract = contract
        owner = normalize_address(owner)
        contract.state.access = AccessState(members={role: {owner} for role in Role})

    @property
    def state(self) -> AccessState:
        return self.contract.state.access

    @property
    def network(self) -> Network:
        return self.contract.network

    @property
    def emitter(self) -> str:
        return self.contract.address

    def has_role(self, role: Role, account: str) -> bool:
        return normalize_address(account) in self.state.members.get(role, set())

    def require(self, role: Role, caller: str) -> str:
        caller = normalize_address(caller)
        if caller not in self.state.members.get(role, set()):
            raise Unauthorized(caller, role.value)
        return caller

    def grant_role(self, caller: str, role: Role, account: str) -> None:
        self.require(Role.OWNER, caller)
        account = normalize_address(account)
        self.state.members.setdefault(role, set()).add(account)
        LOGGER.info('role granted emitter=%s role=%s account=%s', self.emitter, role.value, account)

    def revoke_role(self, caller: str, role: Role, account: str) -> None:
        self.require(Role.OWNER, caller)
        self.state.members.get(role, set()).discard(normalize_address(account))
        LOGGER.info('role revoked emitter=%s role=%s account=%s', self.emitter, role.value, account)

    @property
    def paused(self) -> bool:
        return self.state.paused

    def require_not_paused(self) -> None:
        if self.state.paused:
            raise EnforcedPause()

    def pause(self, caller: str) -> None:
        caller = self.require(Role.PAUSER, caller)
        self.state.paused = True
        self.network.emit(self.emitter, 'Paused', account=caller)
        LOGGER.warning('paused emitter=%s by=%s', self.emitter, caller)

    def unpause(self, caller: str) -> None:
        caller = self.require(Role.OWNER, caller)
        self.state.paused = False
        self.network.emit(self.emitter, 'Unpaused', account=caller)
        LOGGER.info('unpaused emitter=%s by=%s', self.emitter, caller)
