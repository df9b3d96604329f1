import random
import unittest

from services.bridge.local_bridge import LEAF_TYPE_MESSAGE
from services.common.errors import VaultBridgeError
from services.common.fixed_point import MAX_UINT256, ONE
from services.common.instructions import decode_instruction
from services.tests.sandbox import ALICE, BOB, CAROL, OWNER, build_sandbox

STEPS = 120
SEEDS = (1, 7, 42, 2024, 90210)
HOLDERS = (ALICE, BOB)


class RandomSequenceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.sandbox = build_sandbox()
        for holder in (ALICE, BOB, CAROL):
            self.sandbox.underlying.approve(holder, self.sandbox.vault.address, MAX_UINT256)
            self.sandbox.spoke_underlying.approve(holder, self.sandbox.converter.address, MAX_UINT256)

    def in_flight_shares(self) -> int:
        return sum(
            decode_instruction(deposit.metadata).shares
            for deposit in self.sandbox.hub_bridge.pending()
            if deposit.leaf_type == LEAF_TYPE_MESSAGE
        )

    def assert_invariants(self, rng: random.Random) -> None:
        sandbox = self.sandbox
        converter = sandbox.converter
        vault = sandbox.vault
        state = converter.state

        self.assertEqual(
            state.total_converted - state.total_deconverted - state.total_migrated,
            converter.backing_on_layer_y
        )
        self.assertEqual(sandbox.spoke_underlying.balance_of(converter.address), converter.backing_on_layer_y)
        self.assertEqual(
            sandbox.custom_token.total_supply,
            sandbox.locked_shares() + converter.backing_on_layer_y + self.in_flight_shares()
        )
        self.assertGreaterEqual(vault.total_assets(), vault.total_supply)
        self.assertGreaterEqual(vault.backing_surplus(), 0)

        x = rng.randint(1, 10**30)
        self.assertEqual(vault.convert_to_shares(x), x)
        self.assertEqual(vault.convert_to_assets(x), x)

    # actions

    def _convert(self, rng: random.Random) -> None:
        holder = rng.choice(HOLDERS)
        amount = rng.randint(1, 500)
        self.sandbox.fund_spoke(holder, amount)
        self.sandbox.converter.convert(holder, rng.randint(1, amount), holder)

    def _deconvert(self, rng: random.Random) -> None:
        holder = rng.choice(HOLDERS)
        balance = self.sandbox.custom_token.balance_of(holder)
        if balance:
            self.sandbox.converter.deconvert(holder, rng.randint(1, balance), holder)

    def _migrate(self, rng: random.Random) -> None:
        self.sandbox.converter.migrate_backing_to_hub(CAROL)
        self.sandbox.hub_bridge.claim_all()

    def _deposit(self, rng: random.Random) -> None:
        holder = rng.choice(HOLDERS)
        amount = rng.randint(1, 500)
        self.sandbox.fund_hub(holder, amount)
        self.sandbox.vault.deposit(holder, amount, holder)

    def _withdraw(self, rng: random.Random) -> None:
        holder = rng.choice(HOLDERS)
        balance = self.sandbox.vault.balance_of(holder)
        if balance:
            self.sandbox.vault.withdraw(holder, rng.randint(1, balance), holder, holder)

    def _accrue(self, rng: random.Random) -> None:
        amount = rng.randint(1, 300)
        self.sandbox.fund_hub(CAROL, amount)
        self.sandbox.yield_vault.accrue(CAROL, amount)

    def _collect(self, rng: random.Random) -> None:
        self.sandbox.vault.collect_yield(OWNER)

    def _rebalance(self, rng: random.Random) -> None:
        self.sandbox.vault.rebalance_reserve(OWNER)

    def _donate(self, rng: random.Random) -> None:
        amount = rng.randint(1, 50)
        self.sandbox.fund_hub(CAROL, amount)
        if rng.random() < 0.5:
            self.sandbox.vault.donate_for_completing_migration(CAROL, amount)
        else:
            self.sandbox.vault.donate_as_yield(CAROL, amount)

    def test_invariants_hold_across_seeded_sequences(self) -> None:
        actions = [
            self._convert,
            self._convert,
            self._deconvert,
            self._migrate,
            self._deposit,
            self._deposit,
            self._withdraw,
            self._accrue,
            self._collect,
            self._rebalance,
            self._donate
        ]
        for seed in SEEDS:
            with self.subTest(seed=seed):
                self.setUp()
                rng = random.Random(seed)
                rejected = 0
                for _ in range(STEPS):
                    try:
                        rng.choice(actions)(rng)
                    except VaultBridgeError:
                        rejected += 1
                    self.assert_invariants(rng)

                self.assertLess(rejected, STEPS)
                self.assertGreater(self.sandbox.converter.state.total_converted, 0)

    def test_share_rate_ignores_yield_vault_performance(self) -> None:
        sandbox = self.sandbox
        vault = sandbox.vault
        sandbox.fund_hub(ALICE, 1000)
        vault.deposit(ALICE, 1000, ALICE)
        samples = [1, 2, 3, 9, 10, 999, 10**6 + 1, 10**18 - 1, 10**18, 3 * 10**24 + 7, MAX_UINT256 // ONE]

        for accrued in (0, 1, 17, 5000, 10**9):
            if accrued:
                sandbox.fund_hub(CAROL, accrued)
                sandbox.yield_vault.accrue(CAROL, accrued)
            for x in samples:
                with self.subTest(accrued=accrued, x=x):
                    self.assertEqual(vault.convert_to_shares(x), x)
                    self.assertEqual(vault.convert_to_assets(x), x)
                    self.assertEqual(vault.preview_deposit(x), x)
                    self.assertEqual(vault.preview_mint(x), x)
                    self.assertEqual(vault.preview_withdraw(x), x)
                    self.assertEqual(vault.preview_redeem(x), x)

        sandbox.fund_hub(ALICE, 10)
        self.assertEqual(vault.deposit(ALICE, 10, ALICE), 10)
        self.assertGreaterEqual(vault.total_assets(), vault.total_supply)
