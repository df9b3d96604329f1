from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Literal

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from prometheus_client import Counter, make_asgi_app
from pydantic import BaseModel

from services.bridge.local_bridge import BridgeDeposit
from services.common.errors import InvalidAddress, VaultBridgeError
from services.common.events import KafkaEventPublisher
from services.common.network import normalize_address
from services.common.tokens import Token

from .config import get_settings
from .deployment import Deployment, build_deployment

settings = get_settings()
logger = logging.getLogger(__name__)

OPERATIONS_TOTAL = Counter(
    'vaultbridge_operations_total',
    'Accepted vault and converter operations',
    ['operation', 'network_id']
)
OPERATION_ERRORS_TOTAL = Counter(
    'vaultbridge_operation_errors_total',
    'Rejected operations by error',
    ['error', 'category']
)

app = FastAPI(title=settings.app_name, default_response_class=ORJSONResponse)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[x.strip() for x in settings.cors_origins.split(',') if x.strip()],
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*']
)
app.mount('/metrics', make_asgi_app())

_deployment: Deployment | None = None
_publisher: KafkaEventPublisher | None = None


def get_deployment() -> Deployment:
    global _deployment
    if _deployment is None:
        _deployment = build_deployment(settings)
    return _deployment


def reset_deployment() -> Deployment:
    global _deployment
    _deployment = build_deployment(settings)
    if _publisher is not None:
        for network in _deployment.networks():
            _publisher.attach(network)
    return _deployment


def _json_safe(value: Any) -> Any:
    # uint256 amounts do not fit JSON numbers
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(v) for v in value]
    return value


def _deposit_payload(deposit: BridgeDeposit) -> dict:
    return _json_safe(
        {
            'leaf_type': deposit.leaf_type,
            'deposit_count': deposit.deposit_count,
            'origin_network': deposit.origin_network,
            'origin_address': deposit.origin_address,
            'destination_network': deposit.destination_network,
            'destination_address': deposit.destination_address,
            'amount': deposit.amount,
            'metadata': deposit.metadata.hex()
        }
    )


def _accepted(operation: str, network_id: int, **result: Any) -> dict:
    OPERATIONS_TOTAL.labels(operation=operation, network_id=str(network_id)).inc()
    return {
        'status': 'accepted',
        'operation': operation,
        'network_id': network_id,
        'result': _json_safe(result),
        'processed_at': datetime.now(timezone.utc).isoformat()
    }


class FaucetRequest(BaseModel):
    network_id: int
    account: str
    amount: int


class ApproveRequest(BaseModel):
    caller: str
    token: str
    spender: str
    amount: int


class DepositRequest(BaseModel):
    caller: str
    assets: int
    receiver: str | None = None


class MintRequest(BaseModel):
    caller: str
    shares: int
    receiver: str | None = None


class WithdrawRequest(BaseModel):
    caller: str
    assets: int
    receiver: str | None = None
    owner: str | None = None


class RedeemRequest(BaseModel):
    caller: str
    shares: int
    receiver: str | None = None
    owner: str | None = None


class DonateRequest(BaseModel):
    caller: str
    assets: int
    purpose: Literal['migration', 'yield'] = 'migration'


class CallerRequest(BaseModel):
    caller: str


class ConvertRequest(BaseModel):
    caller: str
    assets: int
    receiver: str | None = None


class DeconvertRequest(BaseModel):
    caller: str
    shares: int
    receiver: str | None = None
    owner: str | None = None


class MigrateRequest(BaseModel):
    caller: str
    assets: int | None = None


@app.exception_handler(VaultBridgeError)
async def vault_bridge_error_handler(request: Request, exc: VaultBridgeError) -> ORJSONResponse:
    OPERATION_ERRORS_TOTAL.labels(error=type(exc).__name__, category=exc.category).inc()
    logger.info('operation rejected path=%s error=%s detail=%s', request.url.path, type(exc).__name__, exc.detail)
    return ORJSONResponse(
        status_code=exc.status_code,
        content={'error': type(exc).__name__, 'detail': exc.detail, 'context': exc.context()}
    )


@app.on_event('startup')
async def startup() -> None:
    global _publisher
    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s'
    )
    deployment = get_deployment()
    if settings.event_publishing_enabled and _publisher is None:
        _publisher = KafkaEventPublisher(
            settings.kafka_bootstrap_servers,
            settings.vault_events_topic,
            client_id=settings.app_name
        )
        for network in deployment.networks():
            _publisher.attach(network)


@app.on_event('shutdown')
async def shutdown() -> None:
    if _publisher is not None:
        remaining = _publisher.flush(5)
        if remaining:
            logger.warning('event publisher shutdown with undelivered messages=%s', remaining)


@app.get('/health')
async def health() -> dict[str, str]:
    return {'status': 'ok'}


@app.get('/hub')
async def hub_state() -> dict:
    deployment = get_deployment()
    vault = deployment.vault
    return _json_safe(
        {
            'network_id': deployment.hub.network_id,
            'vault': vault.address,
            'symbol': vault.symbol,
            'underlying': deployment.underlying.address,
            'yield_vault': deployment.yield_vault.address,
            'migration_coordinator': deployment.coordinator.address,
            'total_supply': vault.total_supply,
            'total_assets': vault.total_assets(),
            'reserved_assets': vault.reserved_assets,
            'staked_assets': vault.staked_assets(),
            'reserve_percentage': vault.reserve_percentage(),
            'pending_yield': vault.pending_yield(),
            'donated_buffer': vault.donated_buffer,
            'available_liquidity': vault.available_liquidity(),
            'state': vault.export_state()
        }
    )


@app.get('/spokes/{network_id}')
async def spoke_state(network_id: int) -> dict:
    spoke = get_deployment().spoke(network_id)
    converter = spoke.converter
    return _json_safe(
        {
            'network_id': network_id,
            'converter': converter.address,
            'custom_token': spoke.custom_token.address,
            'underlying': spoke.underlying.address,
            'custom_token_supply': spoke.custom_token.total_supply,
            'backing_on_layer_y': converter.backing_on_layer_y,
            'migratable_backing': converter.migratable_backing(),
            'state': converter.export_state()
        }
    )


@app.get('/networks/{network_id}/balances/{account}')
async def balances(network_id: int, account: str) -> dict:
    deployment = get_deployment()
    account = normalize_address(account)
    network = deployment.network(network_id)
    payload: dict[str, Any] = {
        'network_id': network_id,
        'account': account,
        'native': network.native_balance(account),
        'underlying': deployment.underlying_on(network_id).balance_of(account)
    }
    if network_id == deployment.hub.network_id:
        payload['shares'] = deployment.vault.balance_of(account)
    else:
        payload['shares'] = deployment.spoke(network_id).custom_token.balance_of(account)
    return _json_safe(payload)


@app.get('/networks/{network_id}/events')
async def events(network_id: int, name: str | None = None, limit: int = Query(default=100, ge=1, le=1000)) -> dict:
    network = get_deployment().network(network_id)
    selected = network.events_named(name) if name else list(network.events)
    return {'network_id': network_id, 'events': [event.payload() for event in selected[-limit:]]}


@app.post('/faucet')
async def faucet(req: FaucetRequest) -> dict:
    received = get_deployment().faucet(req.network_id, req.account, req.amount)
    return _accepted('faucet', req.network_id, account=normalize_address(req.account), amount=received)


@app.post('/networks/{network_id}/approve')
async def approve(network_id: int, req: ApproveRequest) -> dict:
    network = get_deployment().network(network_id)
    token = network.contract_at(req.token)
    if not isinstance(token, Token):
        raise InvalidAddress(req.token)
    with network.transaction():
        token.approve(req.caller, req.spender, req.amount)
    return _accepted('approve', network_id, token=token.address, spender=normalize_address(req.spender), amount=req.amount)


@app.post('/hub/deposit')
async def hub_deposit(req: DepositRequest) -> dict:
    deployment = get_deployment()
    vault = deployment.vault
    with deployment.hub.transaction():
        deployment.underlying.approve(req.caller, vault.address, req.assets)
        shares = vault.deposit(req.caller, req.assets, req.receiver or req.caller)
    return _accepted('deposit', deployment.hub.network_id, shares=shares)


@app.post('/hub/mint')
async def hub_mint(req: MintRequest) -> dict:
    deployment = get_deployment()
    vault = deployment.vault
    with deployment.hub.transaction():
        deployment.underlying.approve(req.caller, vault.address, vault.preview_mint(req.shares))
        assets = vault.mint(req.caller, req.shares, req.receiver or req.caller)
    return _accepted('mint', deployment.hub.network_id, assets=assets)


@app.post('/hub/withdraw')
async def hub_withdraw(req: WithdrawRequest) -> dict:
    deployment = get_deployment()
    shares = deployment.vault.withdraw(req.caller, req.assets, req.receiver or req.caller, req.owner or req.caller)
    return _accepted('withdraw', deployment.hub.network_id, shares=shares)


@app.post('/hub/redeem')
async def hub_redeem(req: RedeemRequest) -> dict:
    deployment = get_deployment()
    assets = deployment.vault.redeem(req.caller, req.shares, req.receiver or req.caller, req.owner or req.caller)
    return _accepted('redeem', deployment.hub.network_id, assets=assets)


@app.post('/hub/donate')
async def hub_donate(req: DonateRequest) -> dict:
    deployment = get_deployment()
    vault = deployment.vault
    with deployment.hub.transaction():
        deployment.underlying.approve(req.caller, vault.address, req.assets)
        if req.purpose == 'yield':
            received = vault.donate_as_yield(req.caller, req.assets)
        else:
            received = vault.donate_for_completing_migration(req.caller, req.assets)
    return _accepted(f'donate_{req.purpose}', deployment.hub.network_id, assets=received)


@app.post('/hub/rebalance')
async def hub_rebalance(req: CallerRequest) -> dict:
    deployment = get_deployment()
    changed = deployment.vault.rebalance_reserve(req.caller)
    return _accepted(
        'rebalance',
        deployment.hub.network_id,
        changed=changed,
        reserved_assets=deployment.vault.reserved_assets
    )


@app.post('/hub/collect-yield')
async def hub_collect_yield(req: CallerRequest) -> dict:
    deployment = get_deployment()
    collected = deployment.vault.collect_yield(req.caller)
    return _accepted('collect_yield', deployment.hub.network_id, assets=collected)


@app.post('/spokes/{network_id}/convert')
async def spoke_convert(network_id: int, req: ConvertRequest) -> dict:
    spoke = get_deployment().spoke(network_id)
    with spoke.network.transaction():
        spoke.underlying.approve(req.caller, spoke.converter.address, req.assets)
        shares = spoke.converter.convert(req.caller, req.assets, req.receiver or req.caller)
    return _accepted('convert', network_id, shares=shares)


@app.post('/spokes/{network_id}/deconvert')
async def spoke_deconvert(network_id: int, req: DeconvertRequest) -> dict:
    spoke = get_deployment().spoke(network_id)
    assets = spoke.converter.deconvert(req.caller, req.shares, req.receiver or req.caller, req.owner)
    return _accepted('deconvert', network_id, assets=assets)


@app.post('/spokes/{network_id}/migrate')
async def spoke_migrate(network_id: int, req: MigrateRequest) -> dict:
    spoke = get_deployment().spoke(network_id)
    transferred = spoke.converter.migrate_backing_to_hub(req.caller, req.assets)
    return _accepted('migrate', network_id, transferred=transferred)


@app.get('/bridge/{network_id}/pending')
async def bridge_pending(network_id: int) -> dict:
    deployment = get_deployment()
    deployment.network(network_id)
    pending = deployment.fabric.endpoint(network_id).pending()
    return {'network_id': network_id, 'pending': [_deposit_payload(deposit) for deposit in pending]}


@app.post('/bridge/{network_id}/claim-all')
async def bridge_claim_all(network_id: int) -> dict:
    deployment = get_deployment()
    deployment.network(network_id)
    claimed = deployment.fabric.claim_all(network_id)
    OPERATIONS_TOTAL.labels(operation='claim', network_id=str(network_id)).inc(len(claimed))
    return {'network_id': network_id, 'claimed': [_deposit_payload(deposit) for deposit in claimed]}


@app.get('/')
async def root() -> dict:
    return {'service': settings.app_name, 'status': 'ok'}
