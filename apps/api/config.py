from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Literal

from services.common.fixed_point import ONE, to_fixed_point


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {'1', 'true', 'yes', 'y', 'on'}


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except (TypeError, ValueError):
        return default
    if value < minimum:
        return default
    return value


def _env_percentage(name: str, default: str) -> int:
    """Read a human percentage ('0.1' == 10%) into 1e18 fixed point."""
    raw = os.getenv(name, default)
    try:
        value = to_fixed_point(raw)
    except ValueError:
        value = to_fixed_point(default)
    if value < 0 or value > ONE:
        return to_fixed_point(default)
    return value


def _env_amount(name: str, default: str, decimals: int) -> int:
    raw = os.getenv(name, default)
    try:
        parsed = Decimal(str(raw).strip())
    except (InvalidOperation, TypeError):
        parsed = Decimal(default)
    if not parsed.is_finite() or parsed < 0:
        parsed = Decimal(default)
    return int(parsed * (Decimal(10) ** decimals))


def _parse_network_ids(raw: str, hub_network_id: int) -> tuple[int, ...]:
    network_ids: list[int] = []
    for chunk in raw.split(','):
        item = chunk.strip()
        if not item:
            continue
        try:
            value = int(item)
        except ValueError:
            continue
        if value <= 0 or value == hub_network_id or value in network_ids:
            continue
        network_ids.append(value)
    return tuple(network_ids)


@dataclass(frozen=True)
class Settings:
    app_name: str
    environment: Literal['dev', 'prod', 'test']
    cors_origins: str
    log_level: str
    kafka_bootstrap_servers: str
    vault_events_topic: str
    event_publishing_enabled: bool
    hub_network_id: int
    spoke_network_ids: tuple[int, ...]
    underlying_symbol: str
    underlying_decimals: int
    minimum_reserve_percentage: int
    yield_vault_maximum_slippage_percentage: int
    minimum_yield_vault_deposit: int
    non_migratable_backing_percentage: int
    minimum_backing_after_migration: int
    yield_vault_max_deposit: int | None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    environment = os.getenv('ENVIRONMENT', 'dev').strip().lower()
    if environment not in {'dev', 'prod', 'test'}:
        environment = 'dev'

    hub_network_id = _env_int('HUB_NETWORK_ID', 1, minimum=1)
    spoke_network_ids = _parse_network_ids(os.getenv('SPOKE_NETWORK_IDS', '2'), hub_network_id) or (hub_network_id + 1,)
    decimals = _env_int('UNDERLYING_DECIMALS', 18)
    if decimals > 36:
        decimals = 18

    max_deposit_raw = os.getenv('YIELD_VAULT_MAX_DEPOSIT', '').strip()
    yield_vault_max_deposit = _env_amount('YIELD_VAULT_MAX_DEPOSIT', '0', decimals) if max_deposit_raw else None

    return Settings(
        app_name=os.getenv('APP_NAME', 'vaultbridge-api'),
        environment=environment,  # type: ignore[arg-type]
        cors_origins=os.getenv('CORS_ORIGINS', 'http://localhost:3300'),
        log_level=os.getenv('LOG_LEVEL', 'INFO').strip().upper() or 'INFO',
        kafka_bootstrap_servers=os.getenv('KAFKA_BOOTSTRAP_SERVERS', 'redpanda:9092'),
        vault_events_topic=os.getenv('VAULT_EVENTS_TOPIC', 'vault_events'),
        event_publishing_enabled=_env_bool('EVENT_PUBLISHING_ENABLED', False),
        hub_network_id=hub_network_id,
        spoke_network_ids=spoke_network_ids,
        underlying_symbol=os.getenv('UNDERLYING_SYMBOL', 'USDC').strip() or 'USDC',
        underlying_decimals=decimals,
        minimum_reserve_percentage=_env_percentage('MINIMUM_RESERVE_PERCENTAGE', '0.1'),
        yield_vault_maximum_slippage_percentage=_env_percentage('YIELD_VAULT_MAXIMUM_SLIPPAGE_PERCENTAGE', '0.01'),
        minimum_yield_vault_deposit=_env_amount('MINIMUM_YIELD_VAULT_DEPOSIT', '0', decimals),
        non_migratable_backing_percentage=_env_percentage('NON_MIGRATABLE_BACKING_PERCENTAGE', '0.1'),
        minimum_backing_after_migration=_env_amount('MINIMUM_BACKING_AFTER_MIGRATION', '0', decimals),
        yield_vault_max_deposit=yield_vault_max_deposit
    )
