"""
Configuration settings for the Predictive Yield Allocator
"""

import os

from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


# Database Configuration
USE_CLOUD_DB = _env_flag('USE_CLOUD_DB', False)
SUPABASE_URL = os.getenv('SUPABASE_URL')
SQLITE_PATH = os.getenv('SQLITE_PATH', 'data/yield_allocator.db')

# Identity
ADMIN_PRINCIPAL = os.getenv('ADMIN_PRINCIPAL', 'admin')

# Allocation Limits
MAX_ALLOCATION_PER_PROTOCOL = 40  # percent of managed capital
MAX_SLIPPAGE = 200  # basis points (2%)
MIN_LIQUIDITY_THRESHOLD = 1_000_000  # deposits must be strictly greater
REBALANCE_THRESHOLD = 5  # percent
PREDICTION_CONFIDENCE_MIN = 70
EMERGENCY_RESERVE_RATIO = 10  # percent kept unallocated
EMERGENCY_RESERVE_OVERRIDE = 20  # reserve while emergency mode is on

# Scoring
ALLOCATION_SCORE_THRESHOLD = 75  # hard cliff, scores at or below get nothing
HIGH_RISK_SCORE = 50  # risk above this discounts yield by 20%
HIGH_RISK_YIELD_DISCOUNT = 80  # percent of yield kept for high-risk protocols

# Logical Time
REBALANCE_INTERVAL_BLOCKS = 144  # ~24 hours
BLOCKS_PER_HOUR = 6

# Prediction Accuracy
INITIAL_PREDICTION_ACCURACY = 50
ACCURACY_SMOOTHING_WEIGHT = 50  # percent weight of newest sample; 50 == two-point average

# Prediction defaults for fields not supplied on ingest
DEFAULT_LIQUIDITY_TREND = 100
DEFAULT_MARKET_SENTIMENT = 50
DEFAULT_CORRELATION_INDEX = 30

# Risk Management
CORRELATION_LIMIT = 80
SENTIMENT_RISK_FLOOR = 40
MIGRATION_RISK_LIMIT = 40
HIGH_VOLATILITY_THRESHOLD = 50
HIGH_VOLATILITY_AGGRESSIVENESS = 70
HIGH_VOLATILITY_CAP = 10

# Identifier limits
MAX_PROTOCOL_ID_LENGTH = 32
MAX_ASSET_SYMBOL_LENGTH = 32  # predictions may be keyed by protocol id

# Legacy behaviour switches
ACCUMULATE_DEPOSITS = _env_flag('ACCUMULATE_DEPOSITS', True)
REBALANCE_TRIGGER_MODE = os.getenv('REBALANCE_TRIGGER_MODE', 'pool_size')  # or 'allocation_drift'
REBALANCE_REQUIRES_ADMIN = _env_flag('REBALANCE_REQUIRES_ADMIN', False)

# Alert Configuration
SLACK_WEBHOOK_URL = os.getenv('SLACK_WEBHOOK_URL', '')
SLACK_TIMEOUT_SECONDS = 10
