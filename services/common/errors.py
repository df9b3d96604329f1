from __future__ import annotations

from typing import Any


class VaultBridgeError(Exception):
    category = 'input'
    status_code = 422

    def __init__(self, detail: str | None = None, **context: Any) -> None:
        self.detail = detail or self.__class__.__name__
        self._context = context
        super().__init__(self.detail)

    def context(self) -> dict[str, Any]:
        return {key: str(value) if isinstance(value, int) else value for key, value in self._context.items()}

    def __getattr__(self, name: str) -> Any:
        context = self.__dict__.get('_context', {})
        if name in context:
            return context[name]
        raise AttributeError(name)


# input validation

class InvalidAssets(VaultBridgeError):
    def __init__(self, assets: int = 0) -> None:
        super().__init__(f'invalid assets amount: {assets}', assets=assets)


class InvalidShares(VaultBridgeError):
    def __init__(self, shares: int = 0) -> None:
        super().__init__(f'invalid shares amount: {shares}', shares=shares)


class InvalidReceiver(VaultBridgeError):
    def __init__(self, receiver: str) -> None:
        super().__init__(f'invalid receiver: {receiver}', receiver=receiver)


class InvalidOwner(VaultBridgeError):
    def __init__(self, owner: str) -> None:
        super().__init__(f'invalid owner: {owner}', owner=owner)


class InvalidAddress(VaultBridgeError):
    def __init__(self, address: str) -> None:
        super().__init__(f'invalid address: {address}', address=address)


class InvalidDecimals(VaultBridgeError):
    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f'decimals mismatch expected={expected} actual={actual}', expected=expected, actual=actual)


class InvalidPercentage(VaultBridgeError):
    def __init__(self, percentage: int) -> None:
        super().__init__(f'percentage out of range: {percentage}', percentage=percentage)


class InvalidNetwork(VaultBridgeError):
    def __init__(self, network_id: int) -> None:
        super().__init__(f'invalid network: {network_id}', network_id=network_id)


class InsufficientBalance(VaultBridgeError):
    def __init__(self, available: int, requested: int) -> None:
        super().__init__(
            f'insufficient balance available={available} requested={requested}',
            available=available,
            requested=requested
        )


class InsufficientAllowance(VaultBridgeError):
    def __init__(self, available: int, requested: int) -> None:
        super().__init__(
            f'insufficient allowance available={available} requested={requested}',
            available=available,
            requested=requested
        )


# liquidity

class LiquidityError(VaultBridgeError):
    category = 'liquidity'
    status_code = 409


class AssetsTooLarge(LiquidityError):
    def __init__(self, available: int, requested: int) -> None:
        super().__init__(
            f'assets too large available={available} requested={requested}',
            available=available,
            requested=requested
        )


class ExcessiveYieldVaultSharesBurned(LiquidityError):
    def __init__(self, burned: int, expected: int) -> None:
        super().__init__(
            f'yield vault burned too many shares burned={burned} expected={expected}',
            burned=burned,
            expected=expected
        )


class InsufficientYieldVaultSharesMinted(LiquidityError):
    def __init__(self, assets: int, value: int) -> None:
        super().__init__(
            f'yield vault deposit lost too much value assets={assets} value={value}',
            assets=assets,
            value=value
        )


class CannotCompleteMigration(LiquidityError):
    def __init__(self, shares: int, assets: int, available: int) -> None:
        super().__init__(
            f'cannot complete migration shares={shares} assets={assets} available={available}',
            shares=shares,
            assets=assets,
            available=available
        )


class NoYield(LiquidityError):
    def __init__(self) -> None:
        super().__init__('no yield to collect')


# authorization

class AuthorizationError(VaultBridgeError):
    category = 'authorization'
    status_code = 403


class Unauthorized(AuthorizationError):
    def __init__(self, caller: str, role: str) -> None:
        super().__init__(f'caller={caller} lacks role={role}', caller=caller, role=role)


class UnauthorizedBridge(AuthorizationError):
    def __init__(self, caller: str) -> None:
        super().__init__(f'caller={caller} is not the bridge', caller=caller)


class UnregisteredConverter(AuthorizationError):
    def __init__(self, network_id: int, address: str) -> None:
        super().__init__(
            f'no native converter registered network_id={network_id} address={address}',
            network_id=network_id,
            address=address
        )


class EnforcedPause(AuthorizationError):
    def __init__(self) -> None:
        super().__init__('operation not allowed while paused')


class ReentrantCall(AuthorizationError):
    def __init__(self, operation: str) -> None:
        super().__init__(f'reentrant call into {operation}', operation=operation)


# protocol

class ProtocolError(VaultBridgeError):
    category = 'protocol'
    status_code = 400


class UnknownInstruction(ProtocolError):
    def __init__(self, kind: int) -> None:
        super().__init__(f'unknown cross-network instruction kind={kind}', kind=kind)


class MalformedInstruction(ProtocolError):
    def __init__(self, reason: str) -> None:
        super().__init__(f'malformed cross-network instruction: {reason}', reason=reason)
