"""
BLS APK REGISTRY

Maintains, per quorum, the aggregate BN254 G1 public key (apk) of the operators
registered in that quorum, plus the apk history needed to answer
"which apk was in force for quorum Q at block B?".

MUTATIONS (registry coordinator only):
- register_operator:   apk[q] += pubkey     for each q in quorum_numbers
- deregister_operator: apk[q] += -pubkey    for each q in quorum_numbers

Each per-quorum change closes the quorum's open ApkUpdate at the current block
and appends a new open one. A call is all-or-nothing: if any step fails, every
quorum touched by the call is rolled back and no event is delivered.
Events go out only after the call commits.

ASSUMED PRECONDITIONS (checked by the coordinator, not here):
- quorum_numbers is non-empty, sorted ascending, without duplicates
- register: operator is not yet in those quorums
- deregister: pubkey is the one used at registration

QUERIES (side-effect free):
- get_apk, get_apk_history_length, get_apk_update_at_index
- get_apk_index_at_block_number / get_apk_indices_at_block_number (scan)
- get_apk_hash_at_block_number_and_index (O(1) check of a caller-supplied index)
"""

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from apk_registry import config
from apk_registry.access import CoordinatorGate
from apk_registry.apk_history import ApkUpdate, QuorumApkHistory
from apk_registry.bn254 import G1Point, IDENTITY, add, negate, hash_g1_point
from apk_registry.errors import (
    Unauthorized, InvalidContribution, OwnershipMismatch, NoHistoryBeforeBlock
)

OPERATOR_ADDED_TO_QUORUMS = "OperatorAddedToQuorums"
OPERATOR_REMOVED_FROM_QUORUMS = "OperatorRemovedFromQuorums"


@dataclass
class QuorumMembershipEvent:
    """Notification for offline observers; emitted once per successful call"""
    name: str
    operator: str
    quorum_numbers: List[int]
    block_number: int

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'operator': self.operator,
            'quorum_numbers': list(self.quorum_numbers),
            'block_number': self.block_number
        }


class RegistryHooks:
    """
    Injection points around registry mutations.

    All methods are no-ops; subclass and override to add bookkeeping or extra
    checks. Raising from a hook aborts the whole call.
    """

    def before_register_operator(self, operator: str, quorum_numbers: Sequence[int]):
        pass

    def after_register_operator(self, operator: str, quorum_numbers: Sequence[int]):
        pass

    def before_deregister_operator(self, operator: str, quorum_numbers: Sequence[int]):
        pass

    def after_deregister_operator(self, operator: str, quorum_numbers: Sequence[int]):
        pass


def validate_quorum_number(quorum_number: int) -> int:
    if isinstance(quorum_number, bool) or not isinstance(quorum_number, int):
        raise ValueError(f"Quorum number must be an integer, got {quorum_number!r}")
    if not 0 <= quorum_number < config.MAX_QUORUM_COUNT:
        raise ValueError(
            f"Quorum number {quorum_number} outside 0..{config.MAX_QUORUM_COUNT - 1}"
        )
    return quorum_number


class BLSApkRegistry:
    """
    Per-quorum aggregate public keys with block-indexed history.

    Collaborators:
        gate: authorizes mutating calls (is_authorized)
        compendium: ownership oracle (get_operator_from_pubkey_hash)
        clock: source of the current block number (current_block)
        hooks: RegistryHooks (no-op by default)
    """

    def __init__(self, gate: CoordinatorGate, compendium, clock,
                 hooks: Optional[RegistryHooks] = None,
                 verbose: bool = config.VERBOSE_LOGGING):
        self.gate = gate
        self.compendium = compendium
        self.clock = clock
        self.hooks = hooks or RegistryHooks()
        self.verbose = verbose

        # {quorum_number: QuorumApkHistory}
        self.quorum_apks: Dict[int, QuorumApkHistory] = {}

        self._observers: List[Callable[[QuorumMembershipEvent], None]] = []

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, callback: Callable[[QuorumMembershipEvent], None]):
        """Register a callback invoked with every QuorumMembershipEvent"""
        if not callable(callback):
            raise TypeError("Callback must be callable")
        self._observers.append(callback)

    def unsubscribe(self, callback: Callable[[QuorumMembershipEvent], None]):
        self._observers.remove(callback)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def register_operator(self, caller: str, operator: str,
                          quorum_numbers: Sequence[int], pubkey: G1Point) -> str:
        """
        Add operator's pubkey to the apk of each quorum in quorum_numbers.

        Args:
            caller: Address making the call (must be the coordinator)
            operator: Operator being registered
            quorum_numbers: Quorums to join (ascending, no duplicates)
            pubkey: Operator's BN254 G1 public key

        Returns:
            str: Hash of the operator's pubkey
        """
        return self._process_operator_update(
            caller, operator, quorum_numbers, pubkey, removing=False
        )

    def deregister_operator(self, caller: str, operator: str,
                            quorum_numbers: Sequence[int], pubkey: G1Point) -> str:
        """
        Subtract operator's pubkey from the apk of each quorum in quorum_numbers.

        The pubkey is trusted to be the one used at registration; only its
        ownership is checked.
        """
        return self._process_operator_update(
            caller, operator, quorum_numbers, pubkey, removing=True
        )

    def _process_operator_update(self, caller: str, operator: str,
                                 quorum_numbers: Sequence[int], pubkey: G1Point,
                                 removing: bool) -> str:
        if not self.gate.is_authorized(caller):
            raise Unauthorized(f"Caller {caller} is not the registry coordinator")

        quorum_numbers = [validate_quorum_number(q) for q in quorum_numbers]
        pubkey_hash = self._check_pubkey_ownership(operator, pubkey)
        block_number = self.clock.current_block()

        if removing:
            before, after = self.hooks.before_deregister_operator, self.hooks.after_deregister_operator
            delta = negate(pubkey)
            event_name = OPERATOR_REMOVED_FROM_QUORUMS
        else:
            before, after = self.hooks.before_register_operator, self.hooks.after_register_operator
            delta = pubkey
            event_name = OPERATOR_ADDED_TO_QUORUMS

        with self._atomic() as journal:
            before(operator, quorum_numbers)

            for quorum_number in quorum_numbers:
                history = journal.touch(quorum_number)
                history.record_update(add(history.apk, delta), block_number)

            event = QuorumMembershipEvent(
                name=event_name,
                operator=operator,
                quorum_numbers=list(quorum_numbers),
                block_number=block_number
            )

            after(operator, quorum_numbers)

        self._deliver(event)

        if self.verbose:
            action = "removed from" if removing else "added to"
            print(f"✅ Operator {operator} {action} quorums {quorum_numbers} at block {block_number}")

        return pubkey_hash

    def _deliver(self, event: QuorumMembershipEvent):
        """Notify observers of a committed call; a failing observer does not undo it"""
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception as e:
                print(f"⚠️ Observer {observer!r} failed on {event.name} at block {event.block_number}: {e}")

    def _check_pubkey_ownership(self, operator: str, pubkey: G1Point) -> str:
        pubkey_hash = hash_g1_point(pubkey)
        if pubkey_hash == config.ZERO_PK_HASH:
            raise InvalidContribution("Cannot register or deregister the zero pubkey")

        owner = self.compendium.get_operator_from_pubkey_hash(pubkey_hash)
        if owner is None or owner.lower() != operator.lower():
            raise OwnershipMismatch(
                f"Pubkey {pubkey_hash} is not registered to operator {operator}"
            )
        return pubkey_hash

    @contextmanager
    def _atomic(self):
        """Roll back every quorum touched inside the block if it raises"""
        journal = _QuorumJournal(self)
        try:
            yield journal
        except BaseException:
            journal.rollback()
            raise

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _history(self, quorum_number: int) -> QuorumApkHistory:
        validate_quorum_number(quorum_number)
        history = self.quorum_apks.get(quorum_number)
        if history is None:
            return QuorumApkHistory(quorum_number=quorum_number)
        return history

    def get_apk(self, quorum_number: int) -> G1Point:
        """Current aggregate pubkey for the quorum (identity if never touched)"""
        return self._history(quorum_number).apk

    def get_apk_history_length(self, quorum_number: int) -> int:
        return len(self._history(quorum_number))

    def get_apk_update_at_index(self, quorum_number: int, index: int) -> ApkUpdate:
        return self._history(quorum_number).get_update(index)

    def get_apk_history(self, quorum_number: int) -> List[ApkUpdate]:
        return list(self._history(quorum_number).updates)

    def get_apk_index_at_block_number(self, quorum_number: int, block_number: int) -> int:
        """
        Index of the apk update in force for quorum_number at block_number.

        Worst case O(history length); verifiers should compute this offline and
        use get_apk_hash_at_block_number_and_index.
        """
        if block_number < 0:
            raise NoHistoryBeforeBlock(f"Block number {block_number} is negative")
        return self._history(quorum_number).index_at_block(block_number)

    def get_apk_indices_at_block_number(self, quorum_numbers: Sequence[int],
                                        block_number: int) -> List[int]:
        """One apk history index per quorum, in the order given"""
        return [self.get_apk_index_at_block_number(q, block_number) for q in quorum_numbers]

    def get_apk_hash_at_block_number_and_index(self, quorum_number: int,
                                               block_number: int, index: int) -> str:
        """
        Apk hash in force for quorum_number at block_number, using a caller-supplied index.

        Raises IndexTooRecent / StaleIndex when the update at index was not the
        one in force at block_number.
        """
        return self._history(quorum_number).hash_at_block_and_index(block_number, index)

    def get_operator_from_pubkey_hash(self, pubkey_hash: str) -> Optional[str]:
        return self.compendium.get_operator_from_pubkey_hash(pubkey_hash)

    def get_quorum_numbers(self) -> List[int]:
        """Quorums that have at least one apk update"""
        return sorted(self.quorum_apks)

    # ------------------------------------------------------------------
    # Storage support
    # ------------------------------------------------------------------

    def restore_quorum(self, history: QuorumApkHistory):
        """Install a quorum history loaded from storage"""
        validate_quorum_number(history.quorum_number)
        self.quorum_apks[history.quorum_number] = history

    def check_invariants(self) -> List[str]:
        errors = []
        for quorum_number in self.get_quorum_numbers():
            errors.extend(self.quorum_apks[quorum_number].check_invariants())
        return errors


class _QuorumJournal:
    """Undo log for one mutating call"""

    def __init__(self, registry: BLSApkRegistry):
        self.registry = registry
        # {quorum_number: snapshot or None if the quorum was created by this call}
        self.snapshots: Dict[int, Optional[tuple]] = {}

    def touch(self, quorum_number: int) -> QuorumApkHistory:
        history = self.registry.quorum_apks.get(quorum_number)
        if quorum_number not in self.snapshots:
            self.snapshots[quorum_number] = history.snapshot() if history is not None else None
        if history is None:
            history = QuorumApkHistory(quorum_number=quorum_number, apk=IDENTITY)
            self.registry.quorum_apks[quorum_number] = history
        return history

    def rollback(self):
        for quorum_number, snapshot in self.snapshots.items():
            if snapshot is None:
                self.registry.quorum_apks.pop(quorum_number, None)
            else:
                self.registry.quorum_apks[quorum_number].rollback(snapshot)
