"""Tests for BLSApkRegistry mutations and historical queries."""

import random

import pytest

from apk_registry import config
from apk_registry.bn254 import (
    IDENTITY, GENERATOR, add, multiply, points_equal, sum_points, hash_g1_point
)
from apk_registry.errors import (
    Unauthorized, InvalidContribution, OwnershipMismatch,
    NoHistoryBeforeBlock, IndexTooRecent, StaleIndex, HistoryIndexOutOfRange,
)
from apk_registry.registry import (
    BLSApkRegistry, RegistryHooks, QuorumMembershipEvent,
    OPERATOR_ADDED_TO_QUORUMS, OPERATOR_REMOVED_FROM_QUORUMS,
)
from apk_registry.access import CoordinatorGate

from tests.conftest import COORDINATOR, make_operator, register_in_compendium


class TestScenario:
    """Quorum 3 walk-through: register P1 @100, register P2 @150, deregister P1 @200."""

    def test_register_register_deregister(self, registry, clock, operators):
        p1, p2 = operators[0], operators[1]

        assert registry.get_apk_history_length(3) == 0

        clock.set_block(100)
        registry.register_operator(COORDINATOR, p1.address, [3], p1.pubkey)
        assert points_equal(registry.get_apk(3), p1.pubkey)
        assert registry.get_apk_history_length(3) == 1
        first = registry.get_apk_update_at_index(3, 0)
        assert first.from_block == 100
        assert first.until_block is None

        clock.set_block(150)
        registry.register_operator(COORDINATOR, p2.address, [3], p2.pubkey)
        assert registry.get_apk_update_at_index(3, 0).until_block == 150
        second = registry.get_apk_update_at_index(3, 1)
        assert second.from_block == 150
        assert second.until_block is None
        assert points_equal(registry.get_apk(3), add(p1.pubkey, p2.pubkey))

        assert registry.get_apk_hash_at_block_number_and_index(3, 120, 0) == p1.pubkey_hash
        with pytest.raises(IndexTooRecent):
            registry.get_apk_hash_at_block_number_and_index(3, 120, 1)

        clock.set_block(200)
        registry.deregister_operator(COORDINATOR, p1.address, [3], p1.pubkey)
        assert points_equal(registry.get_apk(3), p2.pubkey)
        assert registry.get_apk_history_length(3) == 3
        assert registry.get_apk_update_at_index(3, 2).apk_hash == p2.pubkey_hash


class TestRegisterOperator:

    def test_returns_pubkey_hash(self, registry, operators):
        op = operators[0]
        assert registry.register_operator(COORDINATOR, op.address, [0], op.pubkey) == op.pubkey_hash

    def test_multiple_quorums_updated_independently(self, registry, clock, operators):
        a, b = operators[0], operators[1]
        clock.set_block(10)
        registry.register_operator(COORDINATOR, a.address, [0, 1], a.pubkey)
        clock.set_block(20)
        registry.register_operator(COORDINATOR, b.address, [1, 2], b.pubkey)

        assert points_equal(registry.get_apk(0), a.pubkey)
        assert points_equal(registry.get_apk(1), add(a.pubkey, b.pubkey))
        assert points_equal(registry.get_apk(2), b.pubkey)
        assert registry.get_apk_history_length(0) == 1
        assert registry.get_apk_history_length(1) == 2
        assert registry.get_apk_history_length(2) == 1
        assert registry.get_quorum_numbers() == [0, 1, 2]

    def test_unauthorized_caller(self, registry, operators):
        op = operators[0]
        with pytest.raises(Unauthorized):
            registry.register_operator(op.address, op.address, [0], op.pubkey)
        assert registry.get_apk_history_length(0) == 0

    def test_coordinator_check_ignores_case(self, registry, operators):
        op = operators[0]
        registry.register_operator(COORDINATOR.upper().replace("0X", "0x"), op.address, [0], op.pubkey)
        assert registry.get_apk_history_length(0) == 1

    def test_zero_pubkey_rejected(self, registry, operators):
        with pytest.raises(InvalidContribution):
            registry.register_operator(COORDINATOR, operators[0].address, [0, 1, 2], IDENTITY)
        assert registry.get_quorum_numbers() == []

    def test_zero_pubkey_rejected_on_deregister(self, registry, operators):
        with pytest.raises(InvalidContribution):
            registry.deregister_operator(COORDINATOR, operators[0].address, [0], IDENTITY)

    def test_unregistered_pubkey_rejected(self, registry, operators):
        stranger_pubkey = multiply(GENERATOR, 999)
        with pytest.raises(OwnershipMismatch):
            registry.register_operator(COORDINATOR, operators[0].address, [0], stranger_pubkey)

    def test_someone_elses_pubkey_rejected(self, registry, operators):
        a, b = operators[0], operators[1]
        with pytest.raises(OwnershipMismatch):
            registry.register_operator(COORDINATOR, a.address, [0], b.pubkey)
        assert registry.get_apk_history_length(0) == 0

    def test_quorum_number_out_of_range(self, registry, operators):
        op = operators[0]
        with pytest.raises(ValueError):
            registry.register_operator(COORDINATOR, op.address, [0, config.MAX_QUORUM_COUNT], op.pubkey)
        assert registry.get_quorum_numbers() == []

    def test_any_quorum_number_accepted(self, registry, operators):
        op = operators[0]
        registry.register_operator(COORDINATOR, op.address, [0, 128, 255], op.pubkey)
        assert registry.get_quorum_numbers() == [0, 128, 255]

    def test_uses_clock_block(self, registry, clock, operators):
        op = operators[0]
        clock.set_block(777)
        registry.register_operator(COORDINATOR, op.address, [5], op.pubkey)
        assert registry.get_apk_update_at_index(5, 0).from_block == 777


class TestDeregisterOperator:

    def test_cancels_exactly(self, registry, clock, operators):
        op = operators[0]
        clock.set_block(1)
        registry.register_operator(COORDINATOR, op.address, [0], op.pubkey)
        clock.set_block(2)
        registry.deregister_operator(COORDINATOR, op.address, [0], op.pubkey)

        assert registry.get_apk(0) is IDENTITY
        assert registry.get_apk_update_at_index(0, 1).apk_hash == config.ZERO_PK_HASH

    def test_deregister_checks_ownership(self, registry, operators):
        a, b = operators[0], operators[1]
        registry.register_operator(COORDINATOR, a.address, [0], a.pubkey)
        with pytest.raises(OwnershipMismatch):
            registry.deregister_operator(COORDINATOR, b.address, [0], a.pubkey)
        assert points_equal(registry.get_apk(0), a.pubkey)

    def test_deregister_unauthorized(self, registry, operators):
        op = operators[0]
        registry.register_operator(COORDINATOR, op.address, [0], op.pubkey)
        with pytest.raises(Unauthorized):
            registry.deregister_operator("0x" + "00" * 20, op.address, [0], op.pubkey)

    def test_deregister_from_subset_of_quorums(self, registry, clock, operators):
        op = operators[0]
        registry.register_operator(COORDINATOR, op.address, [0, 1], op.pubkey)
        clock.advance()
        registry.deregister_operator(COORDINATOR, op.address, [1], op.pubkey)
        assert points_equal(registry.get_apk(0), op.pubkey)
        assert registry.get_apk(1) is IDENTITY


class TestAdditiveCorrectness:

    def test_random_sequence_matches_sum_of_active_pubkeys(self, compendium, registry, clock):
        rng = random.Random(7)
        pool = [make_operator(secret) for secret in (3, 5, 8, 13, 21)]
        for op in pool:
            register_in_compendium(compendium, op)

        active = {q: set() for q in (0, 1)}
        for _ in range(25):
            clock.advance(rng.randint(0, 3))
            op = rng.choice(pool)
            quorum = rng.choice((0, 1))
            if op.address in active[quorum]:
                registry.deregister_operator(COORDINATOR, op.address, [quorum], op.pubkey)
                active[quorum].discard(op.address)
            else:
                registry.register_operator(COORDINATOR, op.address, [quorum], op.pubkey)
                active[quorum].add(op.address)

            for q in (0, 1):
                expected = sum_points(o.pubkey for o in pool if o.address in active[q])
                assert points_equal(registry.get_apk(q), expected)

        assert registry.check_invariants() == []


class TestEvents:

    def test_one_event_per_call(self, registry, clock, operators):
        events = []
        registry.subscribe(events.append)
        op = operators[0]
        clock.set_block(42)

        registry.register_operator(COORDINATOR, op.address, [0, 1, 2], op.pubkey)
        registry.deregister_operator(COORDINATOR, op.address, [1], op.pubkey)

        assert events == [
            QuorumMembershipEvent(OPERATOR_ADDED_TO_QUORUMS, op.address, [0, 1, 2], 42),
            QuorumMembershipEvent(OPERATOR_REMOVED_FROM_QUORUMS, op.address, [1], 42),
        ]
        assert events[0].to_dict()['name'] == "OperatorAddedToQuorums"

    def test_no_event_on_failure(self, registry, operators):
        events = []
        registry.subscribe(events.append)
        with pytest.raises(OwnershipMismatch):
            registry.register_operator(COORDINATOR, operators[0].address, [0], operators[1].pubkey)
        assert events == []

    def test_subscribe_requires_callable(self, registry):
        with pytest.raises(TypeError):
            registry.subscribe("not callable")

    def test_unsubscribe(self, registry, operators):
        events = []
        registry.subscribe(events.append)
        registry.unsubscribe(events.append)
        op = operators[0]
        registry.register_operator(COORDINATOR, op.address, [0], op.pubkey)
        assert events == []


class RecordingHooks(RegistryHooks):

    def __init__(self):
        self.calls = []

    def before_register_operator(self, operator, quorum_numbers):
        self.calls.append(("before_register", operator, list(quorum_numbers)))

    def after_register_operator(self, operator, quorum_numbers):
        self.calls.append(("after_register", operator, list(quorum_numbers)))

    def before_deregister_operator(self, operator, quorum_numbers):
        self.calls.append(("before_deregister", operator, list(quorum_numbers)))

    def after_deregister_operator(self, operator, quorum_numbers):
        self.calls.append(("after_deregister", operator, list(quorum_numbers)))


class FailingAfterHooks(RegistryHooks):

    def after_register_operator(self, operator, quorum_numbers):
        raise RuntimeError("policy rejected registration")


class TestHooks:

    def test_hooks_wrap_mutations(self, compendium, clock, operators):
        hooks = RecordingHooks()
        registry = BLSApkRegistry(CoordinatorGate(COORDINATOR), compendium, clock, hooks=hooks)
        op = operators[0]

        registry.register_operator(COORDINATOR, op.address, [0, 4], op.pubkey)
        registry.deregister_operator(COORDINATOR, op.address, [4], op.pubkey)

        assert hooks.calls == [
            ("before_register", op.address, [0, 4]),
            ("after_register", op.address, [0, 4]),
            ("before_deregister", op.address, [4]),
            ("after_deregister", op.address, [4]),
        ]

    def test_default_hooks_are_noops(self, registry, operators):
        op = operators[0]
        registry.register_operator(COORDINATOR, op.address, [0], op.pubkey)
        assert registry.get_apk_history_length(0) == 1


class TestAtomicity:

    def test_failing_hook_rolls_back_every_quorum(self, compendium, clock, operators):
        registry = BLSApkRegistry(CoordinatorGate(COORDINATOR), compendium, clock)
        a, b = operators[0], operators[1]
        clock.set_block(10)
        registry.register_operator(COORDINATOR, a.address, [1], a.pubkey)

        registry.hooks = FailingAfterHooks()
        clock.set_block(20)
        with pytest.raises(RuntimeError):
            registry.register_operator(COORDINATOR, b.address, [1, 2], b.pubkey)

        assert registry.get_quorum_numbers() == [1]
        assert registry.get_apk_history_length(1) == 1
        assert registry.get_apk_update_at_index(1, 0).is_open
        assert points_equal(registry.get_apk(1), a.pubkey)
        assert registry.check_invariants() == []

    def test_rolled_back_call_is_never_observed(self, compendium, clock, operators):
        registry = BLSApkRegistry(
            CoordinatorGate(COORDINATOR), compendium, clock, hooks=FailingAfterHooks()
        )
        events = []
        registry.subscribe(events.append)
        op = operators[0]

        with pytest.raises(RuntimeError):
            registry.register_operator(COORDINATOR, op.address, [0, 1], op.pubkey)

        assert events == []
        assert registry.get_quorum_numbers() == []

    def test_failing_observer_does_not_undo_call(self, registry, operators, capsys):
        """Observers run after commit; one failing does not hide the event from the others."""
        op = operators[0]
        before, after = [], []

        def broken_observer(event):
            raise RuntimeError("observer down")

        registry.subscribe(before.append)
        registry.subscribe(broken_observer)
        registry.subscribe(after.append)

        registry.register_operator(COORDINATOR, op.address, [0], op.pubkey)

        assert registry.get_apk_history_length(0) == 1
        assert points_equal(registry.get_apk(0), op.pubkey)
        assert [e.quorum_numbers for e in before] == [[0]]
        assert before == after
        assert "observer down" in capsys.readouterr().out


class TestHistoricalQueries:

    @pytest.fixture
    def populated(self, registry, clock, operators):
        a, b, c = operators
        clock.set_block(100)
        registry.register_operator(COORDINATOR, a.address, [0, 1], a.pubkey)
        clock.set_block(150)
        registry.register_operator(COORDINATOR, b.address, [0], b.pubkey)
        clock.set_block(150)
        registry.register_operator(COORDINATOR, c.address, [0], c.pubkey)
        clock.set_block(300)
        registry.deregister_operator(COORDINATOR, a.address, [0, 1], a.pubkey)
        return registry

    def test_index_lookup(self, populated):
        assert populated.get_apk_index_at_block_number(0, 100) == 0
        assert populated.get_apk_index_at_block_number(0, 149) == 0
        assert populated.get_apk_index_at_block_number(0, 150) == 2
        assert populated.get_apk_index_at_block_number(0, 299) == 2
        assert populated.get_apk_index_at_block_number(0, 300) == 3
        assert populated.get_apk_index_at_block_number(1, 200) == 0

    def test_indices_for_several_quorums(self, populated):
        assert populated.get_apk_indices_at_block_number([0, 1], 160) == [2, 0]
        assert populated.get_apk_indices_at_block_number([0, 1], 300) == [3, 1]

    def test_no_history_before_first_update(self, populated):
        with pytest.raises(NoHistoryBeforeBlock):
            populated.get_apk_index_at_block_number(0, 99)

    def test_no_history_for_untouched_quorum(self, populated):
        with pytest.raises(NoHistoryBeforeBlock):
            populated.get_apk_index_at_block_number(9, 1000)
        with pytest.raises(NoHistoryBeforeBlock):
            populated.get_apk_indices_at_block_number([0, 9], 1000)

    def test_negative_block(self, populated):
        with pytest.raises(NoHistoryBeforeBlock):
            populated.get_apk_index_at_block_number(0, -1)

    def test_window_soundness(self, populated):
        """Exactly one index passes the O(1) check and it matches the scan."""
        for block in range(100, 320, 5):
            expected_index = populated.get_apk_index_at_block_number(0, block)
            for index in range(populated.get_apk_history_length(0)):
                if index == expected_index:
                    apk_hash = populated.get_apk_hash_at_block_number_and_index(0, block, index)
                    assert apk_hash == populated.get_apk_update_at_index(0, index).apk_hash
                else:
                    with pytest.raises((IndexTooRecent, StaleIndex)):
                        populated.get_apk_hash_at_block_number_and_index(0, block, index)

    def test_historical_hash_matches_aggregate(self, populated, operators):
        a, b, c = operators
        assert populated.get_apk_hash_at_block_number_and_index(0, 120, 0) == hash_g1_point(a.pubkey)
        assert populated.get_apk_hash_at_block_number_and_index(0, 200, 2) == \
            hash_g1_point(sum_points([a.pubkey, b.pubkey, c.pubkey]))
        assert populated.get_apk_hash_at_block_number_and_index(0, 300, 3) == \
            hash_g1_point(add(b.pubkey, c.pubkey))

    def test_stale_index(self, populated):
        with pytest.raises(StaleIndex):
            populated.get_apk_hash_at_block_number_and_index(0, 300, 2)

    def test_index_out_of_range(self, populated):
        with pytest.raises(HistoryIndexOutOfRange):
            populated.get_apk_hash_at_block_number_and_index(0, 300, 4)
        with pytest.raises(HistoryIndexOutOfRange):
            populated.get_apk_update_at_index(7, 0)

    def test_queries_have_no_side_effects(self, populated):
        before = populated.get_quorum_numbers()
        populated.get_apk(50)
        populated.get_apk_history_length(51)
        with pytest.raises(NoHistoryBeforeBlock):
            populated.get_apk_index_at_block_number(52, 10)
        assert populated.get_quorum_numbers() == before

    def test_pubkey_owner_passthrough(self, populated, operators):
        a = operators[0]
        assert populated.get_operator_from_pubkey_hash(a.pubkey_hash) == a.address

    def test_history_monotonic(self, populated):
        for quorum in populated.get_quorum_numbers():
            updates = populated.get_apk_history(quorum)
            blocks = [u.from_block for u in updates]
            assert blocks == sorted(blocks)
            assert sum(1 for u in updates if u.is_open) == 1


class TestVerboseOutput:

    def test_prints_mutation_when_verbose(self, compendium, clock, operators, capsys):
        registry = BLSApkRegistry(CoordinatorGate(COORDINATOR), compendium, clock, verbose=True)
        op = operators[0]
        registry.register_operator(COORDINATOR, op.address, [0], op.pubkey)
        assert "added to quorums [0]" in capsys.readouterr().out

    def test_silent_by_default(self, registry, operators, capsys):
        op = operators[0]
        registry.register_operator(COORDINATOR, op.address, [0], op.pubkey)
        assert capsys.readouterr().out == ""
