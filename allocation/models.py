"""
Records held by the engine's persistent store.

All numeric fields are integers: percentages (0-100), basis points, token
amounts in base units and block heights. Records are frozen; every update
produces a replacement via dataclasses.replace().
"""

from dataclasses import dataclass, asdict
from typing import Dict, Any

from config import settings


@dataclass(frozen=True)
class ProtocolRecord:
    """Per-protocol allocation state, keyed by protocol_id"""

    protocol_id: str
    current_allocation: int = 0
    target_allocation: int = 0
    yield_prediction: int = 0  # basis points
    risk_score: int = 0  # 0-99, higher = more conservative scoring
    liquidity_depth: int = 0
    last_update: int = 0  # block height

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AssetPrediction:
    """
    Forecast for one asset, keyed by symbol.

    Only ever written whole: an authorized update replaces every field, unset
    fields fall back to neutral defaults.
    """

    asset: str
    predicted_yield: int  # basis points
    volatility_forecast: int
    confidence_score: int
    liquidity_trend: int = settings.DEFAULT_LIQUIDITY_TREND
    market_sentiment: int = settings.DEFAULT_MARKET_SENTIMENT
    correlation_index: int = settings.DEFAULT_CORRELATION_INDEX
    last_update: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class UserPosition:
    """Deposit position, keyed by user identity"""

    user: str
    total_deposited: int = 0
    allocated_assets: int = 0
    earned_yield: int = 0
    risk_preference: int = 50
    auto_rebalance: bool = True
    last_update: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class EngineState:
    """
    Global engine counters.

    Passed into and returned from operations explicitly; the store is the only
    place it lives between operations.
    """

    total_managed_assets: int = 0
    last_rebalance_time: int = 0
    prediction_accuracy: int = settings.INITIAL_PREDICTION_ACCURACY
    emergency_mode: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
