"""
Yield Allocation Engine - public operations over the engine store

Key principles:
- Every operation reads "now" once from the logical clock
- All preconditions are checked before anything is written
- Writes for one operation land in a single store transaction (all-or-nothing)
- Operations are serialised by a lock, so one fully completes before the next begins
- Events are appended to the store's event log inside the same transaction;
  Slack forwarding happens only after commit
"""

import logging
import threading
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Tuple, Any

from config import settings
from config.engine_config import EngineConfig
from allocation import scoring
from allocation.errors import (
    EngineError,
    Unauthorized,
    InsufficientAmount,
    InvalidParameter,
    NotDue,
    SlippageExceeded,
    NotFound,
)
from allocation.models import ProtocolRecord, AssetPrediction, UserPosition, EngineState
from allocation.optimization_engine import PredictiveYieldOptimizer, OptimizationSummary, OptimizationReport
from data.engine_store import EngineStore
from utils.block_clock import to_block_height

logger = logging.getLogger(__name__)


def _validate_identifier(name: str, value, max_length: int) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidParameter(f"{name} must be a non-empty string, got {value!r}")
    if len(value) > max_length:
        raise InvalidParameter(f"{name} must be at most {max_length} characters, got {len(value)}")
    return value


def _validate_int_range(name: str, value, lower: int, upper: Optional[int] = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidParameter(f"{name} must be int, got {type(value).__name__}")
    if value < lower or (upper is not None and value > upper):
        bound = f"{lower}..{upper}" if upper is not None else f">= {lower}"
        raise InvalidParameter(f"{name} must be {bound}, got {value}")
    return value


class YieldAllocationEngine:
    """
    Allocates pooled deposits across registered yield protocols.

    Administrator-only: register_protocol, update_asset_prediction,
    record_realized_yield, set_emergency_mode (and execute_rebalancing when
    EngineConfig.rebalance_requires_admin is set).
    Any caller: deposit_and_allocate, execute_rebalancing,
    execute_predictive_yield_optimization_engine.
    """

    def __init__(self,
                 store: EngineStore,
                 clock: Callable[[], int],
                 admin: str = settings.ADMIN_PRINCIPAL,
                 config: Optional[EngineConfig] = None,
                 notifier=None):
        """
        Args:
            store: EngineStore with schema in place
            clock: Zero-argument callable returning the current block height
            admin: Identity allowed to call administrator operations
            config: Engine tunables (defaults from config/settings.py)
            notifier: Optional SlackNotifier for forwarding events
        """
        self.store = store
        self.clock = clock
        self.admin = admin
        self.config = config or EngineConfig()
        self.notifier = notifier
        self.optimizer = PredictiveYieldOptimizer(self.config)
        self.last_report: Optional[OptimizationReport] = None
        self._lock = threading.RLock()

    # ==================== Internals ====================

    def _now(self) -> int:
        return to_block_height(self.clock())

    def _reject(self, error: EngineError, operation: str, caller: Optional[str]) -> EngineError:
        logger.warning(f"[Engine] {operation} rejected for {caller!r}: {error.kind} - {error.message}")
        return error

    def _require_admin(self, caller: str, operation: str):
        if caller != self.admin:
            raise self._reject(
                Unauthorized(f"{operation} requires the administrator, caller is {caller!r}"),
                operation, caller
            )

    def _emit(self, event_name: str, now: int, payload: Dict[str, Any], caller: Optional[str]):
        """Append an event; must run inside a store transaction"""
        seq = self.store.append_event(event_name, now, payload, caller=caller)
        logger.info(f"[Event #{seq}] {event_name} @ block {now}")

    def _notify(self, alert: str, *args):
        """Forward to the notifier after commit; a failed alert never fails the operation"""
        if self.notifier is None:
            return
        try:
            getattr(self.notifier, alert)(*args)
        except Exception as e:
            logger.error(f"[Engine] {alert} failed after commit, continuing: {e}")

    # ==================== Protocol Registration ====================

    def register_protocol(self, caller: str, protocol_id: str, initial_yield: int,
                          risk_score: int, liquidity_depth: int = 0) -> ProtocolRecord:
        """
        Register a protocol with zeroed allocations.

        Raises:
            Unauthorized: Caller is not the administrator
            InvalidParameter: Bad id, negative yield/liquidity, risk >= 100,
                              or protocol already registered
        """
        operation = 'register_protocol'
        with self._lock:
            now = self._now()
            self._require_admin(caller, operation)
            try:
                _validate_identifier('protocol_id', protocol_id, settings.MAX_PROTOCOL_ID_LENGTH)
                _validate_int_range('initial_yield', initial_yield, 0)
                _validate_int_range('risk_score', risk_score, 0, 99)
                _validate_int_range('liquidity_depth', liquidity_depth, 0)
                if self.store.get_protocol(protocol_id) is not None:
                    raise InvalidParameter(f"Protocol '{protocol_id}' is already registered")
            except InvalidParameter as e:
                raise self._reject(e, operation, caller)

            record = ProtocolRecord(
                protocol_id=protocol_id,
                current_allocation=0,
                target_allocation=0,
                yield_prediction=initial_yield,
                risk_score=risk_score,
                liquidity_depth=liquidity_depth,
                last_update=now,
            )

            with self.store.transaction():
                self.store.save_protocol(record)
                self._emit('protocol_registered', now, record.to_dict(), caller)

            logger.info(f"[Engine] Registered {protocol_id}: yield={initial_yield}bps risk={risk_score}")
            return record

    # ==================== Predictions ====================

    def update_asset_prediction(self, caller: str, asset: str, predicted_yield: int,
                                volatility: int, confidence: int,
                                liquidity_trend: int = settings.DEFAULT_LIQUIDITY_TREND,
                                market_sentiment: int = settings.DEFAULT_MARKET_SENTIMENT,
                                correlation_index: int = settings.DEFAULT_CORRELATION_INDEX) -> AssetPrediction:
        """
        Fully replace an asset's prediction.

        Unsupplied fields take neutral defaults (liquidity trend 100,
        sentiment 50, correlation 30); nothing from the previous record survives.

        Args:
            liquidity_trend: Liquidity outlook 0-100 (below 100 signals outflow)
            market_sentiment: Sentiment 0-100
            correlation_index: Correlation with the rest of the market 0-100

        Raises:
            Unauthorized: Caller is not the administrator
            InvalidParameter: confidence below PREDICTION_CONFIDENCE_MIN or above 100,
                              negative yield, volatility or a market signal outside 0..100
        """
        operation = 'update_asset_prediction'
        with self._lock:
            now = self._now()
            self._require_admin(caller, operation)
            try:
                _validate_identifier('asset', asset, settings.MAX_ASSET_SYMBOL_LENGTH)
                _validate_int_range('predicted_yield', predicted_yield, 0)
                _validate_int_range('volatility', volatility, 0, 100)
                _validate_int_range('confidence', confidence, self.config.prediction_confidence_min, 100)
                _validate_int_range('liquidity_trend', liquidity_trend, 0, 100)
                _validate_int_range('market_sentiment', market_sentiment, 0, 100)
                _validate_int_range('correlation_index', correlation_index, 0, 100)
            except InvalidParameter as e:
                raise self._reject(e, operation, caller)

            prediction = AssetPrediction(
                asset=asset,
                predicted_yield=predicted_yield,
                volatility_forecast=volatility,
                confidence_score=confidence,
                liquidity_trend=liquidity_trend,
                market_sentiment=market_sentiment,
                correlation_index=correlation_index,
                last_update=now,
            )

            with self.store.transaction():
                self.store.save_prediction(prediction)
                self._emit('asset_prediction_updated', now, prediction.to_dict(), caller)

            return prediction

    def record_realized_yield(self, caller: str, asset: str, realized_yield: int) -> int:
        """
        Compare a stored prediction with the realized yield and fold the
        accuracy into the running prediction accuracy.

        Returns:
            Updated prediction accuracy

        Raises:
            Unauthorized: Caller is not the administrator
            NotFound: No prediction stored for asset
            InvalidParameter: Non-positive predicted or realized yield
        """
        operation = 'record_realized_yield'
        with self._lock:
            now = self._now()
            self._require_admin(caller, operation)

            prediction = self.store.get_prediction(asset)
            if prediction is None:
                raise self._reject(NotFound(f"No prediction stored for asset '{asset}'"), operation, caller)

            try:
                sample = scoring.calculate_prediction_accuracy(prediction.predicted_yield, realized_yield)
            except InvalidParameter as e:
                raise self._reject(e, operation, caller)

            state = self.store.load_state()
            new_state = replace(
                state,
                prediction_accuracy=scoring.update_prediction_accuracy(
                    state.prediction_accuracy, sample, self.config.accuracy_smoothing_weight
                )
            )

            with self.store.transaction():
                self.store.save_state(new_state)
                self._emit('prediction_outcome_recorded', now, {
                    'asset': asset,
                    'predicted_yield': prediction.predicted_yield,
                    'realized_yield': realized_yield,
                    'sample_accuracy': sample,
                    'prediction_accuracy': new_state.prediction_accuracy,
                }, caller)

            logger.info(
                f"[Engine] Accuracy {state.prediction_accuracy} -> {new_state.prediction_accuracy} "
                f"({asset}: predicted {prediction.predicted_yield}, realized {realized_yield})"
            )
            return new_state.prediction_accuracy

    # ==================== Deposits ====================

    def deposit_and_allocate(self, caller: str, amount: int, risk_preference: int) -> Dict[str, Any]:
        """
        Deposit into the managed pool.

        With accumulate_deposits (default) the amount is added to the caller's
        existing position and earned yield is kept. With it off, the position
        is replaced by the new deposit.

        Returns:
            Dict with deposited amount, allocation_pending flag and the
            position's total_deposited

        Raises:
            InsufficientAmount: amount not strictly above MIN_LIQUIDITY_THRESHOLD
            InvalidParameter: risk_preference outside 0..100
        """
        operation = 'deposit_and_allocate'
        with self._lock:
            now = self._now()
            try:
                _validate_identifier('caller', caller, 128)
                if isinstance(amount, bool) or not isinstance(amount, int):
                    raise InvalidParameter(f"amount must be int, got {type(amount).__name__}")
            except InvalidParameter as e:
                raise self._reject(e, operation, caller)
            if amount <= self.config.min_liquidity_threshold:
                raise self._reject(
                    InsufficientAmount(
                        f"Deposit of {amount} must exceed {self.config.min_liquidity_threshold}"
                    ),
                    operation, caller
                )
            try:
                _validate_int_range('risk_preference', risk_preference, 0, 100)
            except InvalidParameter as e:
                raise self._reject(e, operation, caller)

            existing = self.store.get_position(caller)
            if existing is not None and self.config.accumulate_deposits:
                position = replace(
                    existing,
                    total_deposited=existing.total_deposited + amount,
                    risk_preference=risk_preference,
                    last_update=now,
                )
            else:
                position = UserPosition(
                    user=caller,
                    total_deposited=amount,
                    allocated_assets=0,
                    earned_yield=0,
                    risk_preference=risk_preference,
                    auto_rebalance=True,
                    last_update=now,
                )

            state = self.store.load_state()
            new_state = replace(state, total_managed_assets=state.total_managed_assets + amount)

            with self.store.transaction():
                self.store.save_position(position)
                self.store.save_state(new_state)
                self._emit('deposit', now, {
                    'amount': amount,
                    'risk_preference': risk_preference,
                    'total_deposited': position.total_deposited,
                    'total_managed_assets': new_state.total_managed_assets,
                }, caller)

            return {
                'deposited': amount,
                'allocation_pending': True,
                'total_deposited': position.total_deposited,
            }

    # ==================== Rebalancing ====================

    def validate_trade_outcome(self, expected: int, actual: int) -> int:
        """
        Gate an externally reported trade result.

        Returns:
            Slippage in basis points

        Raises:
            SlippageExceeded: Slippage at or above the tolerance
            InvalidParameter: Zero expected output or negative amounts
        """
        slippage = scoring.calculate_slippage_bps(expected, actual)
        if not scoring.validate_slippage(expected, actual, self.config.max_slippage_bps):
            raise SlippageExceeded(
                f"Slippage {slippage}bps exceeds tolerance of {self.config.max_slippage_bps}bps "
                f"(expected {expected}, actual {actual})"
            )
        return slippage

    def is_rebalance_due(self) -> bool:
        with self._lock:
            return self._rebalance_due(self.store.load_state(), self._now(), self.store.list_protocols())

    def _rebalance_due(self, state: EngineState, now: int, protocols: List[ProtocolRecord]) -> bool:
        cfg = self.config
        return scoring.should_rebalance(
            state, now,
            interval_blocks=cfg.rebalance_interval_blocks,
            min_liquidity_threshold=cfg.min_liquidity_threshold,
            rebalance_threshold=cfg.rebalance_threshold,
            mode=cfg.trigger_mode,
            protocols=protocols,
        )

    def execute_rebalancing(self, caller: str,
                            trade_results: Optional[Dict[str, Tuple[int, int]]] = None) -> Dict[str, Any]:
        """
        Commit new target allocations for every registered protocol.

        Each protocol's forecast is its stored asset prediction when one exists
        under the protocol's id, otherwise its own yield_prediction. Targets are
        the scoring output; committed current allocations are the targets fitted
        inside the reserve budget (greedy, registration order).

        Args:
            caller: Invoking identity
            trade_results: Optional protocol id -> (expected, actual) trade outputs
                           to validate before anything is committed

        Returns:
            Dict with rebalanced flag, timestamp, targets and committed allocations

        Raises:
            Unauthorized: Admin gate enabled and caller is not the administrator
            NotDue: Trigger condition does not hold
            SlippageExceeded: A reported trade slipped past the tolerance
            InvalidParameter: A reported trade has zero expected output
        """
        operation = 'execute_rebalancing'
        with self._lock:
            now = self._now()
            if self.config.rebalance_requires_admin:
                self._require_admin(caller, operation)

            state = self.store.load_state()
            protocols = self.store.list_protocols()

            if not self._rebalance_due(state, now, protocols):
                raise self._reject(
                    NotDue(
                        f"Rebalance not due at block {now} "
                        f"(last rebalance {state.last_rebalance_time}, "
                        f"managed assets {state.total_managed_assets})"
                    ),
                    operation, caller
                )

            slippage_bps = {}
            for protocol_id, (expected, actual) in (trade_results or {}).items():
                try:
                    slippage_bps[protocol_id] = self.validate_trade_outcome(expected, actual)
                except (SlippageExceeded, InvalidParameter) as e:
                    raise self._reject(e, operation, caller)

            predictions = self.store.list_predictions()
            targets = {}
            forecasts = {}
            for protocol in protocols:
                prediction = predictions.get(protocol.protocol_id)
                forecast = prediction.predicted_yield if prediction else protocol.yield_prediction
                forecasts[protocol.protocol_id] = forecast
                targets[protocol.protocol_id] = scoring.calculate_optimal_allocation(
                    forecast,
                    protocol.risk_score,
                    score_threshold=self.config.allocation_score_threshold,
                    max_allocation=self.config.max_allocation_per_protocol,
                )

            reserve_ratio = self.config.reserve_ratio(state.emergency_mode)
            committed = scoring.apply_reserve_budget(targets, reserve_ratio)

            updated = [
                replace(
                    protocol,
                    target_allocation=targets[protocol.protocol_id],
                    current_allocation=committed[protocol.protocol_id],
                    yield_prediction=forecasts[protocol.protocol_id],
                    last_update=now,
                )
                for protocol in protocols
            ]
            new_state = replace(state, last_rebalance_time=now)

            with self.store.transaction():
                for record in updated:
                    self.store.save_protocol(record)
                self.store.save_state(new_state)
                self._emit('rebalanced', now, {
                    'targets': targets,
                    'allocations': committed,
                    'reserve_ratio': reserve_ratio,
                    'slippage_bps': slippage_bps,
                }, caller)

            logger.info(f"[Engine] Rebalanced @ block {now}: targets={targets} committed={committed}")

            self._notify('alert_rebalanced', now, targets, committed, new_state.total_managed_assets)

            return {
                'rebalanced': True,
                'timestamp': now,
                'targets': targets,
                'allocations': committed,
            }

    # ==================== Optimization ====================

    def execute_predictive_yield_optimization_engine(self, caller: str,
                                                     enable_predictions: bool,
                                                     enable_correlation: bool,
                                                     enable_sentiment: bool,
                                                     aggressiveness: int) -> OptimizationSummary:
        """
        Run the advisory optimizer and emit its report.

        Protocol records are not touched; only prediction accuracy may change.

        Raises:
            InvalidParameter: aggressiveness outside 0..100
        """
        operation = 'execute_predictive_yield_optimization_engine'
        with self._lock:
            now = self._now()
            state = self.store.load_state()

            try:
                result = self.optimizer.run(
                    protocols=self.store.list_protocols(),
                    predictions=self.store.list_predictions(),
                    state=state,
                    now=now,
                    enable_predictions=bool(enable_predictions),
                    enable_correlation=bool(enable_correlation),
                    enable_sentiment=bool(enable_sentiment),
                    aggressiveness=aggressiveness,
                )
            except InvalidParameter as e:
                raise self._reject(e, operation, caller)

            report = result.report.to_dict()
            summary = result.summary.to_dict()

            with self.store.transaction():
                if result.state != state:
                    self.store.save_state(result.state)
                self._emit('optimization_report', now, {'report': report, 'summary': summary}, caller)

            self.last_report = result.report

            self._notify('alert_optimization_report', report, summary)

            return result.summary

    # ==================== Emergency Mode ====================

    def set_emergency_mode(self, caller: str, enabled: bool) -> EngineState:
        """
        Toggle emergency mode (raises the unallocated reserve).

        Raises:
            Unauthorized: Caller is not the administrator
        """
        operation = 'set_emergency_mode'
        with self._lock:
            now = self._now()
            self._require_admin(caller, operation)

            state = self.store.load_state()
            new_state = replace(state, emergency_mode=bool(enabled))

            with self.store.transaction():
                self.store.save_state(new_state)
                self._emit('emergency_mode_changed', now, {'emergency_mode': new_state.emergency_mode}, caller)

            logger.warning(f"[Engine] Emergency mode {'ENABLED' if enabled else 'disabled'} @ block {now}")

            self._notify('alert_emergency_mode', now, new_state.emergency_mode)

            return new_state

    # ==================== Read Views ====================

    def get_protocol(self, protocol_id: str) -> Optional[ProtocolRecord]:
        with self._lock:
            return self.store.get_protocol(protocol_id)

    def list_protocols(self) -> List[ProtocolRecord]:
        with self._lock:
            return self.store.list_protocols()

    def get_asset_prediction(self, asset: str) -> Optional[AssetPrediction]:
        with self._lock:
            return self.store.get_prediction(asset)

    def get_user_position(self, user: str) -> Optional[UserPosition]:
        with self._lock:
            return self.store.get_position(user)

    def get_engine_state(self) -> EngineState:
        with self._lock:
            return self.store.load_state()
