"""
Test script for the predictive yield optimizer

Fixture market:
- alpha: 650bps stored, prediction 700bps / vol 20 / confidence 80 / correlation 75
- beta:  580bps stored, no prediction (risk 25 stands in for volatility)
- gamma: 1200bps stored, prediction 1500bps / vol 70 / confidence 90,
         sentiment 30, liquidity trend 50, correlation 90
"""

import pytest

from config import settings
from config.engine_config import EngineConfig
from allocation.errors import InvalidParameter
from allocation.models import ProtocolRecord, AssetPrediction, EngineState
from allocation.optimization_engine import PredictiveYieldOptimizer

NOW = 5000


@pytest.fixture
def protocols():
    return [
        ProtocolRecord('alpha', yield_prediction=650, risk_score=30),
        ProtocolRecord('beta', yield_prediction=580, risk_score=25),
        ProtocolRecord('gamma', yield_prediction=1200, risk_score=60),
    ]


@pytest.fixture
def predictions():
    return {
        'alpha': AssetPrediction('alpha', 700, 20, 80, correlation_index=75),
        'gamma': AssetPrediction('gamma', 1500, 70, 90, liquidity_trend=50,
                                 market_sentiment=30, correlation_index=90),
    }


@pytest.fixture
def state():
    return EngineState(last_rebalance_time=4900, prediction_accuracy=50)


@pytest.fixture
def optimizer():
    return PredictiveYieldOptimizer(EngineConfig(trigger_mode='pool_size'))


def run(optimizer, protocols, predictions, state, aggressiveness=50,
        predictions_on=True, correlation_on=True, sentiment_on=True):
    return optimizer.run(protocols, predictions, state, NOW,
                         predictions_on, correlation_on, sentiment_on, aggressiveness)


def test_yield_matrix_prefers_predictions(optimizer, protocols, predictions, state):
    matrix = optimizer.build_yield_matrix(protocols, predictions, state.prediction_accuracy)

    assert list(matrix.index) == ['alpha', 'beta', 'gamma']
    assert matrix.loc['alpha', 'forecast_yield_bps'] == 700
    assert matrix.loc['beta', 'forecast_yield_bps'] == 580
    assert matrix.loc['gamma', 'forecast_yield_pct'] == 15
    assert matrix.loc['beta', 'volatility'] == 25
    assert matrix.loc['beta', 'confidence'] == 50


def test_correlation_matrix(optimizer, protocols, predictions):
    corr = optimizer.build_correlation_matrix(protocols, predictions)

    assert corr.loc['alpha', 'alpha'] == 100
    assert corr.loc['alpha', 'beta'] == 52
    assert corr.loc['alpha', 'gamma'] == 82
    assert corr.loc['beta', 'gamma'] == 60
    assert (corr.values == corr.values.T).all()


@pytest.mark.parametrize("aggressiveness, expected", [
    (30, dict(aggressive_allocation=25, conservative_allocation=45, diversification_weight=70,
              risk_adjusted_allocation=18, rebalance_frequency_hours=24, slippage_tolerance_bps=60)),
    (50, dict(aggressive_allocation=25, conservative_allocation=30, diversification_weight=50,
              risk_adjusted_allocation=30, rebalance_frequency_hours=24, slippage_tolerance_bps=100)),
    (80, dict(aggressive_allocation=40, conservative_allocation=30, diversification_weight=20,
              risk_adjusted_allocation=48, rebalance_frequency_hours=6, slippage_tolerance_bps=160)),
])
def test_strategy_from_aggressiveness(optimizer, aggressiveness, expected):
    strategy = optimizer.derive_strategy(aggressiveness, emergency_mode=False)
    for field_name, value in expected.items():
        assert getattr(strategy, field_name) == value
    assert strategy.emergency_reserve == settings.EMERGENCY_RESERVE_RATIO


def test_strategy_boundaries(optimizer):
    assert optimizer.derive_strategy(75, False).aggressive_allocation == 25
    assert optimizer.derive_strategy(76, False).aggressive_allocation == 40
    assert optimizer.derive_strategy(40, False).conservative_allocation == 30
    assert optimizer.derive_strategy(39, False).conservative_allocation == 45
    assert optimizer.derive_strategy(60, False).rebalance_frequency_hours == 24
    assert optimizer.derive_strategy(61, False).rebalance_frequency_hours == 6


def test_emergency_mode_raises_reserve(optimizer):
    assert optimizer.derive_strategy(50, emergency_mode=True).emergency_reserve == 20


def test_high_volatility_cap_depends_on_aggressiveness(optimizer, protocols, predictions, state):
    calm = run(optimizer, protocols, predictions, state, aggressiveness=50)
    bold = run(optimizer, protocols, predictions, state, aggressiveness=80)

    assert calm.report.recommended_allocations == {'alpha': 7, 'beta': 5, 'gamma': 10}
    assert bold.report.recommended_allocations == {'alpha': 7, 'beta': 5, 'gamma': 15}


def test_recommendation_never_exceeds_cap(optimizer, state):
    protocols = [ProtocolRecord('whale', yield_prediction=5000, risk_score=10)]
    result = run(optimizer, protocols, {}, state)
    assert result.report.recommended_allocations == {'whale': settings.MAX_ALLOCATION_PER_PROTOCOL}


def test_full_run(optimizer, protocols, predictions, state):
    result = run(optimizer, protocols, predictions, state, aggressiveness=50)
    report = result.report
    summary = result.summary

    # Confidence (80 + 50 + 90) / 3 = 73 folded into 50
    assert report.yield_forecast.average_confidence == 73
    assert report.prediction_accuracy_before == 50
    assert report.prediction_accuracy_after == 61
    assert result.state.prediction_accuracy == 61

    # Volatility (20 + 25 + 70) / 3 = 38 -> stability 62
    assert report.market_regime_stability == 62

    assert report.correlation.max_pairwise_correlation == 82
    assert report.correlation.breached_pairs == [('alpha', 'gamma')]
    assert report.sentiment.average_sentiment == 43
    assert report.sentiment.max_migration_risk == 50

    assert report.risk_flags.correlation_limit_breach is True
    assert report.risk_flags.sentiment_risk is False
    assert report.risk_flags.liquidity_migration_warning is True
    assert report.risk_flags.rebalance_due is False

    assert summary.completed is True
    assert summary.projected_apy_improvement_bps == 228
    assert summary.risk_adjusted_score == 56
    assert summary.next_optimization_due == NOW + 24 * settings.BLOCKS_PER_HOUR
    assert summary.system_confidence == 61


def test_disabled_sections_are_absent(optimizer, protocols, predictions, state):
    result = run(optimizer, protocols, predictions, state,
                 predictions_on=False, correlation_on=False, sentiment_on=False)
    report = result.report

    assert report.yield_forecast is None
    assert report.correlation is None
    assert report.sentiment is None
    assert report.risk_flags.correlation_limit_breach is None
    assert report.risk_flags.sentiment_risk is None
    assert report.risk_flags.liquidity_migration_warning is None
    assert report.risk_flags.rebalance_due is False

    # No accuracy fold without predictions
    assert result.state == state
    assert result.summary.system_confidence == 50

    as_dict = report.to_dict()
    assert as_dict['correlation'] is None
    assert as_dict['sentiment'] is None


def test_run_reports_rebalance_due(optimizer, protocols, predictions):
    overdue = EngineState(last_rebalance_time=0)
    result = run(optimizer, protocols, predictions, overdue)
    assert result.report.risk_flags.rebalance_due is True


def test_run_with_no_protocols(optimizer, state):
    result = run(optimizer, [], {}, state, aggressiveness=80)

    assert result.report.recommended_allocations == {}
    assert result.report.correlation.breached_pairs == []
    assert result.state.prediction_accuracy == 50
    assert result.summary.projected_apy_improvement_bps == 0
    assert result.summary.risk_adjusted_score == (80 + 100) // 2


def test_run_does_not_touch_protocol_records(optimizer, protocols, predictions, state):
    before = list(protocols)
    run(optimizer, protocols, predictions, state)
    assert protocols == before
    assert all(p.target_allocation == 0 for p in protocols)


@pytest.mark.parametrize("aggressiveness", [-1, 101, 50.5, True])
def test_invalid_aggressiveness(optimizer, protocols, predictions, state, aggressiveness):
    with pytest.raises(InvalidParameter, match="aggressiveness"):
        run(optimizer, protocols, predictions, state, aggressiveness=aggressiveness)
