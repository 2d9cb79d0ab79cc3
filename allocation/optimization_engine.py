"""
Predictive Yield Optimization Engine - advisory multi-factor allocation

This module turns stored protocol and prediction data into a recommended
allocation set:
1. Assemble yield, correlation and sentiment matrices (one row per protocol)
2. Derive an allocation strategy from the aggressiveness parameter
3. Recommend a target per protocol, with a tighter cap for the
   higher-volatility class unless aggressiveness is high
4. Raise risk-management flags
5. Package everything in a report whose feature sections are None when
   their toggle is off
6. Fold the forecast confidence into prediction accuracy

Nothing here writes protocol records. Committing targets is the job of the
rebalance path in yield_engine.py.
"""

import logging
from dataclasses import dataclass, field, asdict, replace
from typing import Dict, List, Optional, Tuple, Any

import numpy as np
import pandas as pd

from config import settings
from config.engine_config import EngineConfig
from allocation.errors import InvalidParameter
from allocation.models import ProtocolRecord, AssetPrediction, EngineState
from allocation import scoring
from utils.block_clock import hours_to_blocks

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AllocationStrategy:
    """Strategy knobs derived from aggressiveness"""

    aggressive_allocation: int
    conservative_allocation: int
    diversification_weight: int
    risk_adjusted_allocation: int
    emergency_reserve: int
    rebalance_frequency_hours: int
    slippage_tolerance_bps: int


@dataclass(frozen=True)
class YieldForecastSection:
    forecasts_bps: Dict[str, int]
    average_confidence: int
    market_regime_stability: int


@dataclass(frozen=True)
class CorrelationSection:
    matrix: Dict[str, Dict[str, int]]
    max_pairwise_correlation: int
    breached_pairs: List[Tuple[str, str]]


@dataclass(frozen=True)
class SentimentSection:
    sentiment: Dict[str, int]
    average_sentiment: int
    migration_risk: Dict[str, int]
    max_migration_risk: int


@dataclass(frozen=True)
class RiskFlags:
    """None means the feature feeding the flag was disabled"""

    correlation_limit_breach: Optional[bool]
    sentiment_risk: Optional[bool]
    liquidity_migration_warning: Optional[bool]
    rebalance_due: bool


@dataclass(frozen=True)
class OptimizationReport:
    block_height: int
    aggressiveness: int
    strategy: AllocationStrategy
    recommended_allocations: Dict[str, int]
    risk_flags: RiskFlags
    market_regime_stability: int
    prediction_accuracy_before: int
    prediction_accuracy_after: int
    yield_forecast: Optional[YieldForecastSection] = None
    correlation: Optional[CorrelationSection] = None
    sentiment: Optional[SentimentSection] = None

    def to_dict(self) -> Dict[str, Any]:
        report = asdict(self)
        if self.correlation is not None:
            report['correlation']['breached_pairs'] = [list(p) for p in self.correlation.breached_pairs]
        return report


@dataclass(frozen=True)
class OptimizationSummary:
    completed: bool
    projected_apy_improvement_bps: int
    risk_adjusted_score: int
    next_optimization_due: int
    system_confidence: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class OptimizationResult:
    report: OptimizationReport
    summary: OptimizationSummary
    state: EngineState
    yield_matrix: pd.DataFrame = field(repr=False)


def _clamp_percentage(value: int) -> int:
    return max(0, min(100, value))


def _floor_mean(series: pd.Series, default: int) -> int:
    if series.empty:
        return default
    return int(series.sum()) // len(series)


class PredictiveYieldOptimizer:
    """
    Multi-factor allocation recommender.

    Protocol rows are matched to asset predictions by identifier: a prediction
    stored under a protocol's id overrides the protocol's own yield forecast
    and supplies volatility, confidence, sentiment, liquidity trend and
    correlation for that row. Protocols without a prediction fall back to
    their stored yield, their risk score as volatility, the engine's running
    accuracy as confidence and the neutral prediction defaults.
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()

    # ==================== Matrices ====================

    def build_yield_matrix(
        self,
        protocols: List[ProtocolRecord],
        predictions: Dict[str, AssetPrediction],
        prediction_accuracy: int
    ) -> pd.DataFrame:
        """
        Per-protocol yield forecast matrix.

        Returns:
            DataFrame indexed by protocol_id with columns:
            forecast_yield_bps, forecast_yield_pct, volatility, confidence,
            current_allocation, risk_score
        """
        rows = []
        for protocol in protocols:
            prediction = predictions.get(protocol.protocol_id)
            if prediction is not None:
                forecast = prediction.predicted_yield
                volatility = prediction.volatility_forecast
                confidence = prediction.confidence_score
            else:
                forecast = protocol.yield_prediction
                volatility = protocol.risk_score
                confidence = prediction_accuracy

            rows.append({
                'protocol_id': protocol.protocol_id,
                'forecast_yield_bps': forecast,
                'forecast_yield_pct': forecast // 100,
                'volatility': volatility,
                'confidence': confidence,
                'current_allocation': protocol.current_allocation,
                'risk_score': protocol.risk_score,
            })

        columns = ['protocol_id', 'forecast_yield_bps', 'forecast_yield_pct', 'volatility',
                   'confidence', 'current_allocation', 'risk_score']
        return pd.DataFrame(rows, columns=columns).set_index('protocol_id')

    def build_correlation_matrix(
        self,
        protocols: List[ProtocolRecord],
        predictions: Dict[str, AssetPrediction]
    ) -> pd.DataFrame:
        """
        Pairwise correlation (percent) between protocols.

        Off-diagonal entries are the floor mean of the two protocols'
        correlation indices, the diagonal is 100.
        """
        ids = [p.protocol_id for p in protocols]
        indices = np.array([
            predictions[pid].correlation_index if pid in predictions else settings.DEFAULT_CORRELATION_INDEX
            for pid in ids
        ], dtype=np.int64)

        matrix = (indices[:, None] + indices[None, :]) // 2
        if len(ids):
            np.fill_diagonal(matrix, 100)
        return pd.DataFrame(matrix, index=ids, columns=ids)

    def build_sentiment_matrix(
        self,
        protocols: List[ProtocolRecord],
        predictions: Dict[str, AssetPrediction]
    ) -> pd.DataFrame:
        """
        Per-protocol sentiment and liquidity behaviour.

        migration_risk = 100 - liquidity_trend (floored at 0): a neutral trend
        of 100 means no capital is leaving.
        """
        rows = []
        for protocol in protocols:
            prediction = predictions.get(protocol.protocol_id)
            sentiment = prediction.market_sentiment if prediction else settings.DEFAULT_MARKET_SENTIMENT
            trend = prediction.liquidity_trend if prediction else settings.DEFAULT_LIQUIDITY_TREND
            rows.append({
                'protocol_id': protocol.protocol_id,
                'sentiment': sentiment,
                'liquidity_trend': trend,
                'migration_risk': max(0, 100 - trend),
            })

        columns = ['protocol_id', 'sentiment', 'liquidity_trend', 'migration_risk']
        return pd.DataFrame(rows, columns=columns).set_index('protocol_id')

    # ==================== Strategy ====================

    def derive_strategy(self, aggressiveness: int, emergency_mode: bool) -> AllocationStrategy:
        return AllocationStrategy(
            aggressive_allocation=40 if aggressiveness > 75 else 25,
            conservative_allocation=45 if aggressiveness < 40 else 30,
            diversification_weight=100 - aggressiveness,
            risk_adjusted_allocation=aggressiveness * 60 // 100,
            emergency_reserve=self.config.reserve_ratio(emergency_mode),
            rebalance_frequency_hours=6 if aggressiveness > 60 else 24,
            slippage_tolerance_bps=self.config.max_slippage_bps * aggressiveness // 100,
        )

    def recommend_allocations(self, yield_matrix: pd.DataFrame, aggressiveness: int) -> Dict[str, int]:
        """
        Recommended target per protocol: min(forecast yield %, cap).

        The cap is MAX_ALLOCATION_PER_PROTOCOL, except for the higher-volatility
        class (volatility above HIGH_VOLATILITY_THRESHOLD), which is held to
        HIGH_VOLATILITY_CAP unless aggressiveness exceeds HIGH_VOLATILITY_AGGRESSIVENESS.
        """
        max_allocation = self.config.max_allocation_per_protocol
        recommendations = {}

        for protocol_id, row in yield_matrix.iterrows():
            cap = max_allocation
            if row['volatility'] > settings.HIGH_VOLATILITY_THRESHOLD \
                    and aggressiveness <= settings.HIGH_VOLATILITY_AGGRESSIVENESS:
                cap = min(settings.HIGH_VOLATILITY_CAP, max_allocation)
            recommendations[protocol_id] = int(min(row['forecast_yield_pct'], cap))

        return recommendations

    @staticmethod
    def projected_apy_improvement(yield_matrix: pd.DataFrame, recommendations: Dict[str, int]) -> int:
        """Portfolio yield (bps) under the recommendation minus under current allocations"""
        if yield_matrix.empty:
            return 0
        recommended = pd.Series(recommendations).reindex(yield_matrix.index).fillna(0).astype(np.int64)
        forecast = yield_matrix['forecast_yield_bps'].astype(np.int64)
        projected = int((recommended * forecast).sum()) // 100
        current = int((yield_matrix['current_allocation'].astype(np.int64) * forecast).sum()) // 100
        return projected - current

    # ==================== Orchestration ====================

    def run(
        self,
        protocols: List[ProtocolRecord],
        predictions: Dict[str, AssetPrediction],
        state: EngineState,
        now: int,
        enable_predictions: bool,
        enable_correlation: bool,
        enable_sentiment: bool,
        aggressiveness: int
    ) -> OptimizationResult:
        """
        Produce a recommendation and the engine state after the accuracy fold.

        Args:
            protocols: Registered protocols in registration order
            predictions: Asset predictions keyed by symbol
            state: Current engine state (not mutated)
            now: Current block height
            enable_predictions: Include the yield forecast section and fold confidence
            enable_correlation: Include the correlation section and breach flag
            enable_sentiment: Include the sentiment section and its flags
            aggressiveness: 0-100

        Returns:
            OptimizationResult with report, summary and next state

        Raises:
            InvalidParameter: If aggressiveness is outside 0..100
        """
        if isinstance(aggressiveness, bool) or not isinstance(aggressiveness, int) \
                or not 0 <= aggressiveness <= 100:
            raise InvalidParameter(f"aggressiveness must be an int within 0..100, got {aggressiveness!r}")

        cfg = self.config

        # 1. Matrices
        yield_matrix = self.build_yield_matrix(protocols, predictions, state.prediction_accuracy)
        average_confidence = _floor_mean(yield_matrix['confidence'], state.prediction_accuracy)
        mean_volatility = _floor_mean(yield_matrix['volatility'], 0)
        market_regime_stability = _clamp_percentage(100 - mean_volatility)

        # 2. Strategy
        strategy = self.derive_strategy(aggressiveness, state.emergency_mode)

        # 3. Recommendations
        recommendations = self.recommend_allocations(yield_matrix, aggressiveness)

        # 4. Risk flags and gated sections
        yield_section = None
        if enable_predictions:
            yield_section = YieldForecastSection(
                forecasts_bps={pid: int(v) for pid, v in yield_matrix['forecast_yield_bps'].items()},
                average_confidence=average_confidence,
                market_regime_stability=market_regime_stability,
            )

        correlation_section = None
        correlation_breach = None
        if enable_correlation:
            corr = self.build_correlation_matrix(protocols, predictions)
            ids = list(corr.index)
            breached = [
                (ids[i], ids[j])
                for i in range(len(ids))
                for j in range(i + 1, len(ids))
                if corr.iat[i, j] > settings.CORRELATION_LIMIT
            ]
            off_diagonal = [int(corr.iat[i, j]) for i in range(len(ids)) for j in range(len(ids)) if i != j]
            correlation_section = CorrelationSection(
                matrix={row: {col: int(v) for col, v in corr.loc[row].items()} for row in ids},
                max_pairwise_correlation=max(off_diagonal) if off_diagonal else 0,
                breached_pairs=breached,
            )
            correlation_breach = bool(breached)

        sentiment_section = None
        sentiment_risk = None
        migration_warning = None
        if enable_sentiment:
            sent = self.build_sentiment_matrix(protocols, predictions)
            average_sentiment = _floor_mean(sent['sentiment'], settings.DEFAULT_MARKET_SENTIMENT)
            max_migration = int(sent['migration_risk'].max()) if not sent.empty else 0
            sentiment_section = SentimentSection(
                sentiment={pid: int(v) for pid, v in sent['sentiment'].items()},
                average_sentiment=average_sentiment,
                migration_risk={pid: int(v) for pid, v in sent['migration_risk'].items()},
                max_migration_risk=max_migration,
            )
            sentiment_risk = average_sentiment < settings.SENTIMENT_RISK_FLOOR
            migration_warning = max_migration > settings.MIGRATION_RISK_LIMIT

        rebalance_due = scoring.should_rebalance(
            state, now,
            interval_blocks=cfg.rebalance_interval_blocks,
            min_liquidity_threshold=cfg.min_liquidity_threshold,
            rebalance_threshold=cfg.rebalance_threshold,
            mode=cfg.trigger_mode,
            protocols=protocols,
        )

        risk_flags = RiskFlags(
            correlation_limit_breach=correlation_breach,
            sentiment_risk=sentiment_risk,
            liquidity_migration_warning=migration_warning,
            rebalance_due=rebalance_due,
        )

        # 6. Accuracy fold
        next_state = state
        if enable_predictions and not yield_matrix.empty:
            next_state = replace(
                state,
                prediction_accuracy=scoring.update_prediction_accuracy(
                    state.prediction_accuracy, average_confidence, cfg.accuracy_smoothing_weight
                )
            )

        report = OptimizationReport(
            block_height=now,
            aggressiveness=aggressiveness,
            strategy=strategy,
            recommended_allocations=recommendations,
            risk_flags=risk_flags,
            market_regime_stability=market_regime_stability,
            prediction_accuracy_before=state.prediction_accuracy,
            prediction_accuracy_after=next_state.prediction_accuracy,
            yield_forecast=yield_section,
            correlation=correlation_section,
            sentiment=sentiment_section,
        )

        # 7. Summary
        summary = OptimizationSummary(
            completed=True,
            projected_apy_improvement_bps=self.projected_apy_improvement(yield_matrix, recommendations),
            risk_adjusted_score=(aggressiveness + market_regime_stability) // 2,
            next_optimization_due=now + hours_to_blocks(strategy.rebalance_frequency_hours),
            system_confidence=next_state.prediction_accuracy,
        )

        logger.info(
            f"[Optimizer] aggressiveness={aggressiveness} protocols={len(yield_matrix)} "
            f"recommended={recommendations} confidence={summary.system_confidence} "
            f"rebalance_due={rebalance_due}"
        )

        return OptimizationResult(report=report, summary=summary, state=next_state, yield_matrix=yield_matrix)
