"""
Engine tunables bundled into a single value object.

Defaults come from config/settings.py so a bare EngineConfig() behaves exactly
like the deployed engine. Tests and the CLI override individual fields.
"""

from dataclasses import dataclass

from config import settings

TRIGGER_MODES = ('pool_size', 'allocation_drift')


@dataclass(frozen=True)
class EngineConfig:
    """Tunable parameters for YieldAllocationEngine"""

    max_allocation_per_protocol: int = settings.MAX_ALLOCATION_PER_PROTOCOL
    max_slippage_bps: int = settings.MAX_SLIPPAGE
    min_liquidity_threshold: int = settings.MIN_LIQUIDITY_THRESHOLD
    rebalance_threshold: int = settings.REBALANCE_THRESHOLD
    rebalance_interval_blocks: int = settings.REBALANCE_INTERVAL_BLOCKS
    prediction_confidence_min: int = settings.PREDICTION_CONFIDENCE_MIN
    emergency_reserve_ratio: int = settings.EMERGENCY_RESERVE_RATIO
    emergency_reserve_override: int = settings.EMERGENCY_RESERVE_OVERRIDE
    allocation_score_threshold: int = settings.ALLOCATION_SCORE_THRESHOLD
    accuracy_smoothing_weight: int = settings.ACCURACY_SMOOTHING_WEIGHT
    accumulate_deposits: bool = settings.ACCUMULATE_DEPOSITS
    trigger_mode: str = settings.REBALANCE_TRIGGER_MODE
    rebalance_requires_admin: bool = settings.REBALANCE_REQUIRES_ADMIN

    def __post_init__(self):
        if self.trigger_mode not in TRIGGER_MODES:
            raise ValueError(
                f"Unknown trigger_mode: '{self.trigger_mode}'. "
                f"Available modes: {', '.join(TRIGGER_MODES)}"
            )
        if not 0 <= self.accuracy_smoothing_weight <= 100:
            raise ValueError(
                f"accuracy_smoothing_weight must be within 0..100, got {self.accuracy_smoothing_weight}"
            )
        if not 0 <= self.emergency_reserve_ratio <= 100 or not 0 <= self.emergency_reserve_override <= 100:
            raise ValueError("Reserve ratios must be percentages within 0..100")

    def reserve_ratio(self, emergency_mode: bool) -> int:
        """Share of capital that must stay unallocated"""
        return self.emergency_reserve_override if emergency_mode else self.emergency_reserve_ratio

    @classmethod
    def from_settings(cls) -> 'EngineConfig':
        return cls()
