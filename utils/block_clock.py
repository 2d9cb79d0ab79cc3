"""
Logical time utilities for the Predictive Yield Allocator.

Core principle: the engine never reads wall-clock time. "Now" is a block
height (monotonically increasing integer) read once per operation from a clock
object. Convert to hours only at boundaries (reports, CLI).
"""

from config import settings


def to_block_height(value) -> int:
    """
    Validate a block height.
    FAILS LOUDLY if input is not a non-negative integer.

    Args:
        value: Candidate block height

    Returns:
        The block height as int

    Raises:
        TypeError: If value is not an int (bools rejected too)
        ValueError: If value is negative
    """
    if value is None:
        raise ValueError("Cannot use None as block height - height is required")

    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(
            f"block height must be int, got {type(value).__name__}"
        )

    if value < 0:
        raise ValueError(f"block height must be non-negative, got {value}")

    return value


def hours_to_blocks(hours: int) -> int:
    """Convert hours to logical-time units"""
    return hours * settings.BLOCKS_PER_HOUR


def blocks_to_hours(blocks: int) -> float:
    """Convert logical-time units to hours (for display only)"""
    return blocks / settings.BLOCKS_PER_HOUR


class BlockClock:
    """
    Monotonic logical clock.

    The engine calls the clock (clock()) to read the current height. Hosts that
    follow a real ledger can pass any zero-argument callable returning an int
    instead of this class.
    """

    def __init__(self, start_height: int = 0):
        self._height = to_block_height(start_height)

    def __call__(self) -> int:
        return self._height

    @property
    def height(self) -> int:
        return self._height

    def advance(self, blocks: int = 1) -> int:
        """
        Move the clock forward.

        Raises:
            ValueError: If blocks is negative (time never goes backwards)
        """
        if blocks < 0:
            raise ValueError(f"Cannot move clock backwards by {blocks} blocks")
        self._height += blocks
        return self._height

    def advance_hours(self, hours: int) -> int:
        return self.advance(hours_to_blocks(hours))
