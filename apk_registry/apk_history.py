"""
QUORUM APK HISTORY

Append-only log of aggregate public key (apk) updates for a single quorum.

Each mutation of a quorum's apk appends one ApkUpdate holding the hash of the
apk AFTER the mutation and the block window during which it was in force:

    [from_block, until_block)     until_block = None while still in force

RECORD LIFECYCLE:
- Appended OPEN (until_block = None) by a mutation on the quorum
- CLOSED exactly once, by the next mutation on the same quorum, with
  until_block = from_block of the new record
- Never reopened, never removed

HISTORICAL LOOKUP:
Verifiers that need the apk in force at block B either
1. scan for the index (index_at_block, O(history length)), or
2. supply an index computed offline and have it checked in O(1)
   (hash_at_block_and_index). The window fields exist so that this check
   never depends on the history length.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from apk_registry.bn254 import G1Point, IDENTITY, hash_g1_point, g1_to_dict, g1_from_dict
from apk_registry.errors import (
    NoHistoryBeforeBlock, IndexTooRecent, StaleIndex, HistoryIndexOutOfRange
)


@dataclass
class ApkUpdate:
    """
    One entry in a quorum's apk history.

    apk_hash is the hash of the aggregate after this update. from_block is when
    it became effective; until_block is when it was superseded (None = open).
    """
    apk_hash: str
    from_block: int
    until_block: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.until_block is None

    def is_effective_at(self, block_number: int) -> bool:
        if block_number < self.from_block:
            return False
        return self.until_block is None or block_number < self.until_block

    def close(self, block_number: int):
        """Mark this update superseded at block_number (allowed once)"""
        if self.until_block is not None:
            raise RuntimeError(
                f"Apk update {self.apk_hash} already closed at block {self.until_block}"
            )
        if block_number < self.from_block:
            raise ValueError(
                f"Cannot close update from block {self.from_block} at earlier block {block_number}"
            )
        self.until_block = block_number

    def to_dict(self) -> dict:
        return {
            'apk_hash': self.apk_hash,
            'from_block': self.from_block,
            'until_block': self.until_block
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ApkUpdate':
        return cls(
            apk_hash=data['apk_hash'],
            from_block=data['from_block'],
            until_block=data.get('until_block')
        )


@dataclass
class QuorumApkHistory:
    """
    Current apk and full update history for one quorum.

    Only BLSApkRegistry mutates instances of this class.
    """
    quorum_number: int
    apk: G1Point = IDENTITY
    updates: List[ApkUpdate] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.updates)

    @property
    def latest(self) -> Optional[ApkUpdate]:
        return self.updates[-1] if self.updates else None

    def record_update(self, new_apk: G1Point, block_number: int) -> ApkUpdate:
        """
        Close the open update (if any) and append the update for new_apk.

        Returns:
            The newly appended (open) ApkUpdate
        """
        latest = self.latest
        if latest is not None:
            if block_number < latest.from_block:
                raise ValueError(
                    f"Quorum {self.quorum_number}: block {block_number} precedes "
                    f"latest update at block {latest.from_block}"
                )
            latest.close(block_number)

        self.apk = new_apk
        update = ApkUpdate(apk_hash=hash_g1_point(new_apk), from_block=block_number)
        self.updates.append(update)
        return update

    def get_update(self, index: int) -> ApkUpdate:
        if not 0 <= index < len(self.updates):
            raise HistoryIndexOutOfRange(
                f"Quorum {self.quorum_number}: index {index} outside history of length {len(self.updates)}"
            )
        return self.updates[index]

    def index_at_block(self, block_number: int) -> int:
        """
        Index of the update in force at block_number.

        Scans backwards from the latest update and returns the first one with
        from_block <= block_number.
        """
        for index in range(len(self.updates) - 1, -1, -1):
            if self.updates[index].from_block <= block_number:
                return index

        if not self.updates:
            raise NoHistoryBeforeBlock(f"Quorum {self.quorum_number} has no apk history")
        raise NoHistoryBeforeBlock(
            f"Quorum {self.quorum_number}: block {block_number} is before the first "
            f"apk update at block {self.updates[0].from_block}"
        )

    def hash_at_block_and_index(self, block_number: int, index: int) -> str:
        """
        Apk hash at block_number, using a caller-supplied index.

        O(1): only the update at index is inspected. Raises IndexTooRecent if it
        became effective after block_number and StaleIndex if it had already
        been superseded at block_number.
        """
        update = self.get_update(index)

        if block_number < update.from_block:
            raise IndexTooRecent(
                f"Quorum {self.quorum_number}: update {index} effective from block "
                f"{update.from_block}, after block {block_number}"
            )
        if update.until_block is not None and block_number >= update.until_block:
            raise StaleIndex(
                f"Quorum {self.quorum_number}: update {index} superseded at block "
                f"{update.until_block}, not after block {block_number}"
            )
        return update.apk_hash

    def snapshot(self) -> tuple:
        """Capture the state needed to undo appends made after this point"""
        latest = self.latest
        return self.apk, len(self.updates), latest.until_block if latest else None

    def rollback(self, snapshot: tuple):
        apk, length, latest_until = snapshot
        self.apk = apk
        del self.updates[length:]
        if self.updates:
            self.updates[-1].until_block = latest_until

    def check_invariants(self) -> List[str]:
        """Return a list of violated history invariants (empty when consistent)"""
        errors = []
        open_count = sum(1 for u in self.updates if u.is_open)
        if self.updates and open_count != 1:
            errors.append(f"Quorum {self.quorum_number}: {open_count} open updates, expected 1")
        if self.updates and not self.updates[-1].is_open:
            errors.append(f"Quorum {self.quorum_number}: latest update is closed")
        for i in range(len(self.updates) - 1):
            current, nxt = self.updates[i], self.updates[i + 1]
            if nxt.from_block < current.from_block:
                errors.append(f"Quorum {self.quorum_number}: update {i + 1} starts before update {i}")
            if current.until_block != nxt.from_block:
                errors.append(
                    f"Quorum {self.quorum_number}: update {i} closes at {current.until_block}, "
                    f"next starts at {nxt.from_block}"
                )
        if self.updates and self.updates[-1].apk_hash != hash_g1_point(self.apk):
            errors.append(f"Quorum {self.quorum_number}: latest apk hash does not match current apk")
        return errors

    def to_dict(self) -> dict:
        return {
            'quorum_number': self.quorum_number,
            'apk': g1_to_dict(self.apk),
            'updates': [u.to_dict() for u in self.updates]
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'QuorumApkHistory':
        return cls(
            quorum_number=data['quorum_number'],
            apk=g1_from_dict(data['apk']),
            updates=[ApkUpdate.from_dict(u) for u in data.get('updates', [])]
        )
