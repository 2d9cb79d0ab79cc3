"""
Allocation scoring and rebalance decision functions.

Pure integer functions, no store or clock access:
1. Score a (yield, risk) pair into a bounded target allocation
2. Validate a trade outcome against the slippage tolerance
3. Track prediction accuracy as a smoothed percentage
4. Decide whether a rebalance is due
5. Fit committed allocations inside the reserve budget

All arithmetic is integer arithmetic with floor division. Inputs are
non-negative, so floor division and truncation toward zero agree.
"""

import logging
from typing import Dict, Iterable, Optional

from config import settings
from allocation.errors import InvalidParameter
from allocation.models import EngineState, ProtocolRecord

logger = logging.getLogger(__name__)


def _require_int(name: str, value) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidParameter(f"{name} must be int, got {type(value).__name__}")
    return value


def _require_percentage(name: str, value, upper: int = 100) -> int:
    _require_int(name, value)
    if not 0 <= value <= upper:
        raise InvalidParameter(f"{name} must be within 0..{upper}, got {value}")
    return value


# ==================== Allocation Scoring ====================

def calculate_risk_adjusted_yield(yield_bps: int, risk_score: int) -> int:
    """
    Discount yield for high-risk protocols.

    Risk strictly above HIGH_RISK_SCORE (50) keeps 80% of the yield;
    risk at or below 50 uses the yield unchanged.
    """
    _require_int('yield_bps', yield_bps)
    if yield_bps < 0:
        raise InvalidParameter(f"yield_bps must be non-negative, got {yield_bps}")
    _require_percentage('risk_score', risk_score, upper=99)

    if risk_score > settings.HIGH_RISK_SCORE:
        return yield_bps * settings.HIGH_RISK_YIELD_DISCOUNT // 100
    return yield_bps


def calculate_allocation_score(yield_bps: int, risk_score: int) -> int:
    """
    Formula: score = risk_adjusted_yield * 100 / (risk_score + 1)

    The +1 keeps a zero risk score from dividing by zero.
    """
    risk_adjusted_yield = calculate_risk_adjusted_yield(yield_bps, risk_score)
    return risk_adjusted_yield * 100 // (risk_score + 1)


def calculate_optimal_allocation(
    yield_bps: int,
    risk_score: int,
    score_threshold: int = settings.ALLOCATION_SCORE_THRESHOLD,
    max_allocation: int = settings.MAX_ALLOCATION_PER_PROTOCOL
) -> int:
    """
    Turn a forecast yield and risk score into a target allocation percentage.

    Step function: a score at or below the threshold gets 0, anything above
    it gets min(score, max_allocation). There is no smoothing between the two,
    so a protocol scoring 75 gets nothing while one scoring 76 gets the cap.

    Args:
        yield_bps: Forecast yield in basis points (>= 0)
        risk_score: Protocol risk score (0-99)
        score_threshold: Cliff below which the protocol is excluded
        max_allocation: Per-protocol cap in percent

    Returns:
        Target allocation percentage within 0..max_allocation

    Raises:
        InvalidParameter: If yield is negative or risk is outside 0..99
    """
    allocation_score = calculate_allocation_score(yield_bps, risk_score)

    if allocation_score > score_threshold:
        allocation = min(allocation_score, max_allocation)
    else:
        allocation = 0

    logger.debug(
        f"[Scoring] yield={yield_bps}bps risk={risk_score} "
        f"score={allocation_score} -> allocation={allocation}%"
    )
    return allocation


# ==================== Slippage Validation ====================

def calculate_slippage_bps(expected: int, actual: int) -> int:
    """
    Slippage of a trade outcome in basis points (0 if actual >= expected).

    Raises:
        InvalidParameter: If expected is zero or either amount is negative
    """
    _require_int('expected', expected)
    _require_int('actual', actual)
    if expected < 0 or actual < 0:
        raise InvalidParameter(
            f"Trade amounts must be non-negative, got expected={expected}, actual={actual}"
        )
    if expected == 0:
        raise InvalidParameter("Expected trade output must be positive to measure slippage")

    if actual >= expected:
        return 0
    return (expected - actual) * 10000 // expected


def validate_slippage(expected: int, actual: int, max_slippage_bps: int = settings.MAX_SLIPPAGE) -> bool:
    """
    Accept a trade outcome only if slippage is strictly below max_slippage_bps.

    Exactly 200 bps with the default tolerance is rejected.
    """
    slippage = calculate_slippage_bps(expected, actual)
    accepted = slippage < max_slippage_bps
    if not accepted:
        logger.warning(
            f"[Slippage] Rejected trade: expected={expected} actual={actual} "
            f"slippage={slippage}bps (limit {max_slippage_bps}bps)"
        )
    return accepted


# ==================== Prediction Accuracy ====================

def calculate_prediction_accuracy(predicted: int, actual: int) -> int:
    """
    One-shot accuracy: min(predicted, actual) * 100 / max(predicted, actual)

    Symmetric in its arguments, 100 when they are equal.
    """
    _require_int('predicted', predicted)
    _require_int('actual', actual)
    if predicted <= 0 or actual <= 0:
        raise InvalidParameter(
            f"Predicted and realized values must be positive, got {predicted} and {actual}"
        )
    return min(predicted, actual) * 100 // max(predicted, actual)


def update_prediction_accuracy(
    current_accuracy: int,
    sample_accuracy: int,
    weight: int = settings.ACCURACY_SMOOTHING_WEIGHT
) -> int:
    """
    Fold a new accuracy sample into the running accuracy.

    new = (current * (100 - weight) + sample * weight) / 100

    At the default weight of 50 this is exactly (current + sample) / 2.
    """
    _require_percentage('current_accuracy', current_accuracy)
    _require_percentage('sample_accuracy', sample_accuracy)
    _require_percentage('weight', weight)
    return (current_accuracy * (100 - weight) + sample_accuracy * weight) // 100


# ==================== Rebalance Trigger ====================

def pool_size_threshold(
    min_liquidity_threshold: int = settings.MIN_LIQUIDITY_THRESHOLD,
    rebalance_threshold: int = settings.REBALANCE_THRESHOLD
) -> int:
    """Absolute pool size above which a rebalance is always due"""
    return min_liquidity_threshold * (100 + rebalance_threshold) // 100


def allocation_drift_exceeded(
    protocols: Iterable[ProtocolRecord],
    rebalance_threshold: int = settings.REBALANCE_THRESHOLD
) -> bool:
    """True if any protocol's current allocation drifted past the threshold from its target"""
    return any(
        abs(p.current_allocation - p.target_allocation) > rebalance_threshold
        for p in protocols
    )


def should_rebalance(
    state: EngineState,
    now: int,
    interval_blocks: int = settings.REBALANCE_INTERVAL_BLOCKS,
    min_liquidity_threshold: int = settings.MIN_LIQUIDITY_THRESHOLD,
    rebalance_threshold: int = settings.REBALANCE_THRESHOLD,
    mode: str = 'pool_size',
    protocols: Optional[Iterable[ProtocolRecord]] = None
) -> bool:
    """
    Decide whether a rebalance is due.

    Always due once more than interval_blocks have elapsed since the last
    rebalance. Otherwise:
    - 'pool_size': due when total managed assets exceed the absolute pool
      threshold (MIN_LIQUIDITY_THRESHOLD grown by REBALANCE_THRESHOLD percent)
    - 'allocation_drift': due when any protocol drifted from its target by
      more than REBALANCE_THRESHOLD points

    Args:
        state: Current engine state
        now: Current block height
        interval_blocks: Elapsed blocks that force a rebalance
        min_liquidity_threshold: Base of the pool-size threshold
        rebalance_threshold: Percent growth / drift allowance
        mode: 'pool_size' or 'allocation_drift'
        protocols: Required for 'allocation_drift'

    Returns:
        True if a rebalance should run
    """
    elapsed = now - state.last_rebalance_time
    if elapsed > interval_blocks:
        return True

    if mode == 'pool_size':
        return state.total_managed_assets > pool_size_threshold(
            min_liquidity_threshold, rebalance_threshold
        )
    elif mode == 'allocation_drift':
        if protocols is None:
            raise ValueError("protocols are required for allocation_drift trigger mode")
        return allocation_drift_exceeded(protocols, rebalance_threshold)
    else:
        raise ValueError(f"Unknown trigger mode: '{mode}'")


# ==================== Reserve Budget ====================

def apply_reserve_budget(targets: Dict[str, int], reserve_ratio: int) -> Dict[str, int]:
    """
    Fit target allocations inside the capital left after the reserve.

    Greedy in the order given: each protocol receives min(target, remaining)
    where remaining starts at 100 - reserve_ratio. The sum of the result never
    exceeds 100 - reserve_ratio.

    Args:
        targets: Protocol id -> target allocation percent (ordered)
        reserve_ratio: Percent of capital that must stay unallocated

    Returns:
        Protocol id -> committed allocation percent
    """
    _require_percentage('reserve_ratio', reserve_ratio)
    remaining = 100 - reserve_ratio
    committed = {}

    for protocol_id, target in targets.items():
        amount = min(target, remaining)
        committed[protocol_id] = amount
        remaining -= amount

    if any(committed[p] < targets[p] for p in targets):
        logger.info(
            f"[Reserve] Targets trimmed to keep {reserve_ratio}% unallocated: "
            f"{targets} -> {committed}"
        )
    return committed
