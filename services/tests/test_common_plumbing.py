import json
import unittest
from dataclasses import dataclass, field
from decimal import Decimal
from unittest.mock import patch

from services.common.access import AccessControl, AccessState, Role
from services.common.errors import (
    EnforcedPause,
    InsufficientAllowance,
    InsufficientBalance,
    InvalidAddress,
    InvalidAssets,
    InvalidReceiver,
    Unauthorized
)
from services.common.events import KafkaEventPublisher
from services.common.fixed_point import (
    MAX_UINT256,
    ONE,
    Rounding,
    apply_percentage,
    from_fixed_point,
    mul_div,
    percentage_of,
    to_fixed_point
)
from services.common.network import ZERO_ADDRESS, Network, derive_address, normalize_address
from services.common.tokens import Token, WrappedNativeToken
from services.tests.sandbox import ALICE, BOB, OWNER


class FixedPointTests(unittest.TestCase):
    def test_mul_div_rounds_in_requested_direction(self) -> None:
        self.assertEqual(mul_div(10, 1, 3), 3)
        self.assertEqual(mul_div(10, 1, 3, Rounding.CEIL), 4)
        self.assertEqual(mul_div(9, 1, 3, Rounding.CEIL), 3)

    def test_percentages_are_fixed_point(self) -> None:
        self.assertEqual(to_fixed_point('0.1'), ONE // 10)
        self.assertEqual(apply_percentage(100, to_fixed_point('0.1')), 10)
        self.assertEqual(apply_percentage(99, to_fixed_point('0.1')), 9)
        self.assertEqual(percentage_of(10, 100), ONE // 10)
        self.assertEqual(percentage_of(10, 0), 0)
        self.assertEqual(from_fixed_point(ONE // 4), Decimal('0.25'))

    def test_rejects_unparseable_decimals(self) -> None:
        with self.assertRaises(ValueError):
            to_fixed_point('ten percent')
        with self.assertRaises(ValueError):
            to_fixed_point('NaN')


class NetworkTransactionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.network = Network(1, 'hub')
        self.token = Token(self.network, 'Test Token', 'TST', minters={OWNER})
        self.token.mint(OWNER, ALICE, 100)

    def test_addresses_are_deterministic_and_checksummed(self) -> None:
        address = derive_address(1, 'vault')
        self.assertEqual(address, derive_address(1, 'vault'))
        self.assertNotEqual(address, derive_address(2, 'vault'))
        self.assertEqual(normalize_address(address.lower()), address)
        with self.assertRaises(InvalidAddress):
            normalize_address('not-an-address')

    def test_failed_transaction_restores_every_contract(self) -> None:
        events_before = len(self.network.events)
        with self.assertRaises(InsufficientBalance):
            with self.network.transaction():
                self.token.transfer(ALICE, BOB, 40)
                self.token.transfer(ALICE, BOB, 100)

        self.assertEqual(self.token.balance_of(ALICE), 100)
        self.assertEqual(self.token.balance_of(BOB), 0)
        self.assertEqual(len(self.network.events), events_before)

    def test_listeners_only_see_committed_events(self) -> None:
        seen = []
        self.network.subscribe(seen.append)

        with self.assertRaises(InsufficientBalance):
            self.token.transfer(ALICE, BOB, 1000)
        self.assertEqual(seen, [])

        self.token.transfer(ALICE, BOB, 10)
        self.assertEqual([event.name for event in seen], ['Transfer'])
        self.assertEqual(seen[0].payload()['args']['value'], '10')

    def test_listeners_see_events_logged_outside_transactions(self) -> None:
        seen = []
        self.network.subscribe(seen.append)

        self.token.mint(OWNER, BOB, 5)
        self.token.approve(BOB, ALICE, 5)
        self.token.transfer_from(ALICE, BOB, ALICE, 5)

        self.assertEqual([event.name for event in seen], ['Transfer', 'Approval', 'Transfer'])
        self.assertEqual(seen, self.network.events[1:])

    def test_native_balances_roll_back(self) -> None:
        self.network.fund_native(ALICE, 50)
        with self.assertRaises(InsufficientBalance):
            with self.network.transaction():
                self.network.transfer_native(ALICE, BOB, 20)
                self.network.transfer_native(ALICE, BOB, 40)
        self.assertEqual(self.network.native_balance(ALICE), 50)
        self.assertEqual(self.network.native_balance(BOB), 0)


class TokenTests(unittest.TestCase):
    def setUp(self) -> None:
        self.network = Network(1, 'hub')
        self.token = Token(self.network, 'Test Token', 'TST', minters={OWNER})
        self.token.mint(OWNER, ALICE, 100)

    def test_transfer_fee_is_burned(self) -> None:
        self.token.set_transfer_fee_percentage(to_fixed_point('0.1'))
        self.token.transfer(ALICE, BOB, 50)

        self.assertEqual(self.token.balance_of(ALICE), 50)
        self.assertEqual(self.token.balance_of(BOB), 45)
        self.assertEqual(self.token.total_supply, 95)

    def test_transfer_from_requires_allowance(self) -> None:
        with self.assertRaises(InsufficientAllowance) as ctx:
            self.token.transfer_from(BOB, ALICE, BOB, 10)
        self.assertEqual(ctx.exception.available, 0)
        self.assertEqual(ctx.exception.requested, 10)

        self.token.approve(ALICE, BOB, 30)
        self.token.transfer_from(BOB, ALICE, BOB, 10)
        self.assertEqual(self.token.allowance(ALICE, BOB), 20)

    def test_infinite_allowance_is_not_spent(self) -> None:
        self.token.approve(ALICE, BOB, MAX_UINT256)
        self.token.transfer_from(BOB, ALICE, BOB, 10)
        self.assertEqual(self.token.allowance(ALICE, BOB), MAX_UINT256)

    def test_mint_requires_minter_and_valid_receiver(self) -> None:
        with self.assertRaises(Unauthorized):
            self.token.mint(ALICE, ALICE, 1)
        with self.assertRaises(InvalidReceiver):
            self.token.mint(OWNER, ZERO_ADDRESS, 1)
        with self.assertRaises(InvalidAssets):
            self.token.mint(OWNER, ALICE, 0)

    def test_wrapped_native_token_round_trip(self) -> None:
        weth = WrappedNativeToken(self.network, 'Wrapped Ether', 'WETH')
        self.network.fund_native(ALICE, 5)

        weth.deposit(ALICE, 5)
        self.assertEqual(weth.balance_of(ALICE), 5)
        self.assertEqual(self.network.native_balance(ALICE), 0)

        weth.withdraw(ALICE, 2)
        self.assertEqual(weth.balance_of(ALICE), 3)
        self.assertEqual(self.network.native_balance(ALICE), 2)


@dataclass
class _GuardedState:
    access: AccessState = field(default_factory=AccessState)


class _Guarded:
    def __init__(self, network: Network) -> None:
        self.network = network
        self.address = network.new_address('guarded')
        self.state = _GuardedState()
        self.access = AccessControl(self, OWNER)
        network.deploy(self)


class AccessControlTests(unittest.TestCase):
    def setUp(self) -> None:
        self.network = Network(1, 'hub')
        self.contract = _Guarded(self.network)
        self.access = self.contract.access

    def test_owner_holds_every_role_at_deployment(self) -> None:
        for role in Role:
            self.assertTrue(self.access.has_role(role, OWNER))
        self.assertFalse(self.access.has_role(Role.PAUSER, ALICE))

    def test_role_changes_are_owner_gated(self) -> None:
        with self.assertRaises(Unauthorized) as ctx:
            self.access.grant_role(ALICE, Role.PAUSER, ALICE)
        self.assertEqual(ctx.exception.role, 'OWNER')

        self.access.grant_role(OWNER, Role.PAUSER, ALICE)
        self.access.pause(ALICE)
        with self.assertRaises(EnforcedPause):
            self.access.require_not_paused()

        with self.assertRaises(Unauthorized):
            self.access.unpause(ALICE)
        self.access.unpause(OWNER)
        self.access.require_not_paused()

    def test_access_state_rolls_back_with_the_contract(self) -> None:
        with self.assertRaises(RuntimeError):
            with self.network.transaction():
                self.access.grant_role(OWNER, Role.MIGRATOR, ALICE)
                raise RuntimeError('abort')
        self.assertFalse(self.access.has_role(Role.MIGRATOR, ALICE))


class KafkaEventPublisherTests(unittest.TestCase):
    def setUp(self) -> None:
        self.network = Network(1, 'hub')
        self.token = Token(self.network, 'Test Token', 'TST', minters={OWNER})
        self.token.mint(OWNER, ALICE, 100)

    @patch('services.common.events.Producer')
    def test_publishes_committed_events_as_json(self, producer_cls) -> None:
        producer = producer_cls.return_value
        publisher = KafkaEventPublisher('kafka:9092', 'vault_events')
        publisher.attach(self.network)

        self.token.transfer(ALICE, BOB, 10)

        producer_cls.assert_called_once_with({'bootstrap.servers': 'kafka:9092', 'client.id': 'vaultbridge-events'})
        producer.produce.assert_called_once()
        kwargs = producer.produce.call_args.kwargs
        payload = json.loads(kwargs['value'])
        self.assertEqual(kwargs['topic'], 'vault_events')
        self.assertEqual(kwargs['key'], payload['event_id'])
        self.assertIn('correlation_id', kwargs['headers'])
        self.assertEqual(payload['name'], 'Transfer')
        self.assertEqual(payload['args']['value'], '10')
        producer.poll.assert_called_with(0)

    @patch('services.common.events.Producer')
    def test_rolled_back_events_are_not_published(self, producer_cls) -> None:
        producer = producer_cls.return_value
        KafkaEventPublisher('kafka:9092', 'vault_events').attach(self.network)

        with self.assertRaises(InsufficientBalance):
            self.token.transfer(ALICE, BOB, 1000)

        producer.produce.assert_not_called()

    @patch('services.common.events.Producer')
    def test_mints_and_approvals_are_published(self, producer_cls) -> None:
        producer = producer_cls.return_value
        KafkaEventPublisher('kafka:9092', 'vault_events').attach(self.network)

        self.token.mint(OWNER, BOB, 7)
        self.token.approve(BOB, ALICE, 7)

        names = [json.loads(call.kwargs['value'])['name'] for call in producer.produce.call_args_list]
        self.assertEqual(names, ['Transfer', 'Approval'])
