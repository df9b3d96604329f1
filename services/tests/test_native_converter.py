import unittest

from services.common.access import Role
from services.common.errors import (
    AssetsTooLarge,
    EnforcedPause,
    InsufficientAllowance,
    InvalidAssets,
    InvalidDecimals,
    InvalidNetwork,
    InvalidPercentage,
    InvalidReceiver,
    InvalidShares,
    Unauthorized
)
from services.common.fixed_point import ONE
from services.common.network import ZERO_ADDRESS
from services.common.tokens import Token
from services.spoke.native_converter import SCHEMA_VERSION, NativeConverter, upgrade_converter_state
from services.tests.sandbox import ALICE, BOB, HUB_ID, OWNER, SPOKE_ID, build_sandbox, pct


class ConvertTests(unittest.TestCase):
    def setUp(self) -> None:
        self.sandbox = build_sandbox()
        self.converter = self.sandbox.converter
        self.sandbox.fund_spoke(ALICE, 100)

    def test_convert_mints_custom_token_against_backing(self) -> None:
        shares = self.sandbox.convert(ALICE, 100)

        self.assertEqual(shares, 100)
        self.assertEqual(self.sandbox.custom_token.balance_of(ALICE), 100)
        self.assertEqual(self.converter.backing_on_layer_y, 100)
        self.assertEqual(self.sandbox.spoke_underlying.balance_of(self.converter.address), 100)
        event = self.sandbox.spoke.events_named('Converted', self.converter.address)[-1]
        self.assertEqual(event.args['shares'], 100)

    def test_convert_rejects_zero_and_bad_receivers(self) -> None:
        with self.assertRaises(InvalidAssets):
            self.sandbox.convert(ALICE, 0)
        with self.assertRaises(InvalidReceiver):
            self.converter.convert(ALICE, 10, ZERO_ADDRESS)
        self.assertEqual(self.converter.backing_on_layer_y, 0)

    def test_deconvert_releases_backing(self) -> None:
        self.sandbox.convert(ALICE, 100)

        assets = self.converter.deconvert(ALICE, 30, BOB)

        self.assertEqual(assets, 30)
        self.assertEqual(self.sandbox.spoke_underlying.balance_of(BOB), 30)
        self.assertEqual(self.sandbox.custom_token.balance_of(ALICE), 70)
        self.assertEqual(self.converter.backing_on_layer_y, 70)

    def test_deconvert_on_behalf_needs_allowance(self) -> None:
        self.sandbox.convert(ALICE, 100)
        with self.assertRaises(InsufficientAllowance):
            self.converter.deconvert(BOB, 5, BOB, ALICE)

        self.sandbox.custom_token.approve(ALICE, BOB, 5)
        self.converter.deconvert(BOB, 5, BOB, ALICE)

        self.assertEqual(self.sandbox.spoke_underlying.balance_of(BOB), 5)
        self.assertEqual(self.sandbox.custom_token.allowance(ALICE, BOB), 0)

    def test_deconvert_is_limited_by_local_backing(self) -> None:
        self.sandbox.convert(ALICE, 100)
        self.converter.migrate_backing_to_hub(OWNER)

        with self.assertRaises(AssetsTooLarge) as ctx:
            self.converter.deconvert(ALICE, 11, ALICE)
        self.assertEqual(ctx.exception.available, 10)
        self.assertEqual(ctx.exception.requested, 11)
        self.assertEqual(self.converter.max_deconvert(ALICE), 10)

        self.converter.deconvert(ALICE, 10, ALICE)
        self.assertEqual(self.converter.backing_on_layer_y, 0)

    def test_deconvert_and_bridge_delivers_on_hub(self) -> None:
        self.sandbox.convert(ALICE, 100)

        self.converter.deconvert_and_bridge(ALICE, 20, ALICE, HUB_ID)
        self.sandbox.hub_bridge.claim_all()

        self.assertEqual(self.sandbox.underlying.balance_of(ALICE), 20)
        self.assertEqual(self.converter.backing_on_layer_y, 80)
        with self.assertRaises(InvalidNetwork):
            self.converter.deconvert_and_bridge(ALICE, 20, ALICE, SPOKE_ID)

    def test_pause_blocks_conversion(self) -> None:
        self.sandbox.convert(ALICE, 50)
        self.converter.pause(OWNER)

        self.assertEqual(self.converter.max_deconvert(ALICE), 0)
        with self.assertRaises(EnforcedPause):
            self.sandbox.convert(ALICE, 10)
        with self.assertRaises(EnforcedPause):
            self.converter.deconvert(ALICE, 10, ALICE)

        self.converter.unpause(OWNER)
        self.assertEqual(self.converter.deconvert(ALICE, 10, ALICE), 10)


class DecimalsOffsetTests(unittest.TestCase):
    def setUp(self) -> None:
        self.sandbox = build_sandbox(spoke_underlying_decimals=6)
        self.converter = self.sandbox.converter
        self.sandbox.fund_spoke(ALICE, 5)

    def test_shares_scale_by_decimals_difference(self) -> None:
        self.assertEqual(self.converter.preview_convert(1), 10**12)

        shares = self.sandbox.convert(ALICE, 5)

        self.assertEqual(shares, 5 * 10**12)
        self.assertEqual(self.converter.backing_on_layer_y, 5)
        self.assertEqual(self.converter.preview_deconvert(10**12 + 1), 1)

    def test_sub_unit_shares_are_rejected(self) -> None:
        self.sandbox.convert(ALICE, 5)

        with self.assertRaises(InvalidShares):
            self.converter.deconvert(ALICE, 10**12 - 1, ALICE)
        self.assertEqual(self.converter.deconvert(ALICE, 10**12, ALICE), 1)

    def test_custom_token_needs_at_least_underlying_decimals(self) -> None:
        custom = Token(self.sandbox.spoke, 'Short Token', 'SHT', 2)
        with self.assertRaises(InvalidDecimals):
            NativeConverter(
                self.sandbox.spoke,
                custom_token=custom,
                underlying=self.sandbox.spoke_underlying,
                bridge=self.sandbox.spoke_bridge,
                hub_network_id=HUB_ID,
                migration_manager=self.sandbox.coordinator.address,
                owner=OWNER,
                non_migratable_backing_percentage=0
            )

    def test_custom_token_must_match_hub_vault_decimals(self) -> None:
        with self.assertRaises(InvalidDecimals) as ctx:
            build_sandbox(underlying_decimals=6)
        self.assertEqual(ctx.exception.expected, 6)
        self.assertEqual(ctx.exception.actual, 18)

        sandbox = self.sandbox
        stray = Token(sandbox.spoke, 'Stray Token', 'STR', 6)
        with self.assertRaises(InvalidDecimals):
            sandbox.fabric.register_token(sandbox.vault, wrapped=[stray])
        self.assertNotIn(sandbox.fabric.address, stray.state.minters)


class MigrationLimitTests(unittest.TestCase):
    def setUp(self) -> None:
        self.sandbox = build_sandbox()
        self.converter = self.sandbox.converter
        self.sandbox.fund_spoke(ALICE, 100)
        self.sandbox.convert(ALICE, 100)

    def test_migratable_backing_respects_floor(self) -> None:
        self.assertEqual(self.converter.non_migratable_backing(), 10)
        self.assertEqual(self.converter.migratable_backing(), 90)

        self.converter.set_minimum_backing_after_migration(OWNER, 50)

        self.assertEqual(self.converter.migratable_backing(), 50)
        self.assertEqual(self.converter.migrate_backing_to_hub(BOB), 50)
        self.assertEqual(self.converter.backing_on_layer_y, 50)

    def test_explicit_amount_above_floor_needs_migrator_role(self) -> None:
        with self.assertRaises(AssetsTooLarge) as ctx:
            self.converter.migrate_backing_to_hub(BOB, 95)
        self.assertEqual(ctx.exception.available, 90)
        self.assertEqual(ctx.exception.requested, 95)

        self.assertEqual(self.converter.migrate_backing_to_hub(OWNER, 95), 95)
        self.assertEqual(self.converter.backing_on_layer_y, 5)

    def test_migrator_is_capped_by_backing(self) -> None:
        self.converter.access.grant_role(OWNER, Role.MIGRATOR, BOB)

        with self.assertRaises(AssetsTooLarge):
            self.converter.migrate_backing_to_hub(BOB, 101)
        self.assertEqual(self.converter.migrate_backing_to_hub(BOB, 100), 100)

    def test_nothing_to_migrate(self) -> None:
        self.converter.set_non_migratable_backing_percentage(OWNER, ONE)

        with self.assertRaises(InvalidAssets):
            self.converter.migrate_backing_to_hub(BOB)
        self.assertEqual(len(self.sandbox.spoke_bridge.state.outbox), 0)

    def test_setters_are_owner_only_and_validated(self) -> None:
        with self.assertRaises(Unauthorized):
            self.converter.set_non_migratable_backing_percentage(BOB, pct('0.2'))
        with self.assertRaises(Unauthorized):
            self.converter.set_minimum_backing_after_migration(BOB, 1)
        with self.assertRaises(InvalidPercentage):
            self.converter.set_non_migratable_backing_percentage(OWNER, ONE + 1)

    def test_counters_reconcile_with_backing(self) -> None:
        self.converter.deconvert(ALICE, 5, ALICE)
        migrated = self.converter.migrate_backing_to_hub(BOB)

        state = self.converter.state
        self.assertEqual(migrated, 85)
        self.assertEqual(state.total_converted, 100)
        self.assertEqual(state.total_deconverted, 5)
        self.assertEqual(state.total_migrated, 85)
        self.assertEqual(
            state.total_converted - state.total_deconverted - state.total_migrated,
            self.converter.backing_on_layer_y
        )


class ConverterStateTests(unittest.TestCase):
    def test_upgrades_v1_payload(self) -> None:
        upgraded = upgrade_converter_state({'schema_version': 1, 'backing_on_layer_y': 40})

        self.assertEqual(upgraded['schema_version'], SCHEMA_VERSION)
        self.assertEqual(upgraded['total_converted'], 40)
        self.assertEqual(upgraded['total_migrated'], 0)
        with self.assertRaises(ValueError):
            upgrade_converter_state({'schema_version': SCHEMA_VERSION + 1})

    def test_restore_keeps_roles(self) -> None:
        sandbox = build_sandbox()
        sandbox.fund_spoke(ALICE, 100)
        sandbox.convert(ALICE, 100)
        exported = sandbox.converter.export_state()
        sandbox.converter.deconvert(ALICE, 10, ALICE)

        with self.assertRaises(Unauthorized):
            sandbox.converter.restore_state(ALICE, exported)
        sandbox.converter.restore_state(OWNER, {**exported, 'schema_version': 1})

        self.assertEqual(sandbox.converter.backing_on_layer_y, 100)
        self.assertEqual(sandbox.converter.state.total_deconverted, 0)
        self.assertTrue(sandbox.converter.access.has_role(Role.MIGRATOR, OWNER))
