"""
BLOCK CLOCKS

The registry stamps every apk update with the current block number. It reads
that number from an injected clock instead of a global chain so the same
registry can run inside a node, in replay, or in tests.

- ManualBlockClock: block number is set explicitly (replay, tests)
- SlotBlockClock: one block per BLOCK_TIME slot since genesis
"""

import time
from typing import Callable, Optional

from apk_registry import config


class ManualBlockClock:
    """Block number that only moves when told to"""

    def __init__(self, block_number: int = 0):
        if block_number < 0:
            raise ValueError("Block number cannot be negative")
        self.block_number = block_number

    def current_block(self) -> int:
        return self.block_number

    def set_block(self, block_number: int):
        if block_number < self.block_number:
            raise ValueError(
                f"Block number cannot go backwards ({self.block_number} -> {block_number})"
            )
        self.block_number = block_number

    def advance(self, blocks: int = 1) -> int:
        self.set_block(self.block_number + blocks)
        return self.block_number


class SlotBlockClock:
    """
    Block number derived from wall-clock time.

    Slot = floor((now - genesis_timestamp) / block_time); one block per slot.
    """

    def __init__(self, genesis_timestamp: float, block_time: float = config.BLOCK_TIME,
                 time_source: Optional[Callable[[], float]] = None):
        if block_time <= 0:
            raise ValueError("Block time must be positive")
        self.genesis_timestamp = genesis_timestamp
        self.block_time = block_time
        self._time = time_source or time.time

    def slot_start_time(self, block_number: int) -> float:
        return self.genesis_timestamp + block_number * self.block_time

    def current_block(self) -> int:
        elapsed = self._time() - self.genesis_timestamp
        if elapsed < 0:
            return 0
        return int(elapsed // self.block_time)
