"""
Engine Store - keyed tables and scalar counters for the allocation engine

Supports both SQLite (local) and PostgreSQL (Supabase).

Durable state boundary:
- protocols          (keyed by protocol id)
- asset_predictions  (keyed by asset symbol)
- user_positions     (keyed by user identity)
- engine_state       (single row: total managed assets, last rebalance time,
                      prediction accuracy, emergency mode)
- engine_events      (append-only event log)

Writes never commit on their own. Callers group them inside transaction() so
an operation either lands completely or not at all.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, List, Optional, Any

import numpy as np
import pandas as pd

# PostgreSQL support
try:
    import psycopg2
    import psycopg2.extensions
except ImportError:
    psycopg2 = None

from config import settings
from allocation.models import ProtocolRecord, AssetPrediction, UserPosition, EngineState
from data.init_db import load_schema_sql

logger = logging.getLogger(__name__)

STATE_ROW_ID = 1

TABLES = ('protocols', 'asset_predictions', 'user_positions', 'engine_state', 'engine_events')


def _to_native_type(value):
    """
    Convert numpy types to native Python types for database insertion and JSON.

    PostgreSQL and json.dumps both fail on numpy scalars.
    """
    if isinstance(value, (np.integer, np.floating, np.bool_)):
        return value.item()
    elif isinstance(value, np.ndarray):
        return value.tolist()
    elif isinstance(value, pd.DataFrame):
        return value.to_dict(orient='index')
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def get_db_connection():
    """Get database connection (SQLite or PostgreSQL based on settings)"""
    if settings.USE_CLOUD_DB:
        if psycopg2 is None:
            raise ImportError("psycopg2 is required for PostgreSQL support. Install with: pip install psycopg2-binary")
        if not settings.SUPABASE_URL:
            raise ValueError("SUPABASE_URL must be set when USE_CLOUD_DB is enabled")
        return psycopg2.connect(settings.SUPABASE_URL)
    Path(settings.SQLITE_PATH).parent.mkdir(parents=True, exist_ok=True)
    # Engine operations are serialised by its lock, so the connection may cross threads
    return sqlite3.connect(settings.SQLITE_PATH, check_same_thread=False)


class EngineStore:
    """Persistent keyed storage for engine records"""

    def __init__(self, conn):
        """
        Initialize store with database connection.

        Args:
            conn: Database connection (psycopg2 or sqlite3)
        """
        self.conn = conn
        self.db_type = self._detect_database_type()
        self._in_transaction = False

    def _detect_database_type(self) -> str:
        if psycopg2 and isinstance(self.conn, psycopg2.extensions.connection):
            return 'postgresql'
        if isinstance(self.conn, sqlite3.Connection):
            return 'sqlite'
        raise TypeError(
            f"Unsupported connection type: {type(self.conn).__name__}. "
            f"Expected sqlite3.Connection or psycopg2 connection."
        )

    def _get_placeholder(self) -> str:
        return '%s' if self.db_type == 'postgresql' else '?'

    def ensure_schema(self):
        """Create tables if they don't exist yet"""
        schema_sql = load_schema_sql()
        if self.db_type == 'sqlite':
            self.conn.executescript(schema_sql)
        else:
            cursor = self.conn.cursor()
            cursor.execute(schema_sql)
        self.conn.commit()
        logger.info(f"[DB] Schema ready ({self.db_type})")

    # ==================== Transactions ====================

    @contextmanager
    def transaction(self):
        """
        All-or-nothing unit of work.

        Commits when the block exits normally, rolls back and re-raises on any
        exception. Not re-entrant: nesting is a programming error.
        """
        if self._in_transaction:
            raise RuntimeError("EngineStore.transaction() is not re-entrant")

        self._in_transaction = True
        try:
            yield self
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            logger.warning("[DB] Transaction rolled back")
            raise
        finally:
            self._in_transaction = False

    # ==================== Helpers ====================

    def _fetch_rows(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute(query, params)
        columns = [col[0] for col in cursor.description]
        return [dict(zip(columns, row)) for row in cursor.fetchall()]

    def _fetch_one(self, query: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
        rows = self._fetch_rows(query, params)
        return rows[0] if rows else None

    def _upsert(self, table: str, key_column: str, row: Dict[str, Any]):
        """Insert or fully replace a row keyed by key_column"""
        placeholder = self._get_placeholder()
        columns = list(row.keys())
        values = tuple(row[c] for c in columns)
        column_sql = ', '.join(columns)
        value_sql = ', '.join([placeholder] * len(columns))

        if self.db_type == 'postgresql':
            updates = ', '.join(f"{c} = EXCLUDED.{c}" for c in columns if c != key_column)
            query = f"""
                INSERT INTO {table} ({column_sql}) VALUES ({value_sql})
                ON CONFLICT ({key_column}) DO UPDATE SET {updates}
            """
        else:  # SQLite
            query = f"INSERT OR REPLACE INTO {table} ({column_sql}) VALUES ({value_sql})"

        cursor = self.conn.cursor()
        cursor.execute(query, values)

    # ==================== Protocols ====================

    def get_protocol(self, protocol_id: str) -> Optional[ProtocolRecord]:
        placeholder = self._get_placeholder()
        row = self._fetch_one(
            f"SELECT * FROM protocols WHERE protocol_id = {placeholder}", (protocol_id,)
        )
        if row is None:
            return None
        row.pop('registration_order')
        return ProtocolRecord(**row)

    def list_protocols(self) -> List[ProtocolRecord]:
        """All protocols in registration order"""
        rows = self._fetch_rows("SELECT * FROM protocols ORDER BY registration_order")
        records = []
        for row in rows:
            row.pop('registration_order')
            records.append(ProtocolRecord(**row))
        return records

    def save_protocol(self, record: ProtocolRecord):
        placeholder = self._get_placeholder()
        existing = self._fetch_one(
            f"SELECT registration_order FROM protocols WHERE protocol_id = {placeholder}",
            (record.protocol_id,)
        )
        if existing is not None:
            order = existing['registration_order']
        else:
            max_row = self._fetch_one("SELECT MAX(registration_order) AS max_order FROM protocols")
            order = (max_row['max_order'] or 0) + 1

        row = record.to_dict()
        row['registration_order'] = order
        self._upsert('protocols', 'protocol_id', row)

    # ==================== Asset Predictions ====================

    def get_prediction(self, asset: str) -> Optional[AssetPrediction]:
        placeholder = self._get_placeholder()
        row = self._fetch_one(
            f"SELECT * FROM asset_predictions WHERE asset = {placeholder}", (asset,)
        )
        return AssetPrediction(**row) if row is not None else None

    def list_predictions(self) -> Dict[str, AssetPrediction]:
        rows = self._fetch_rows("SELECT * FROM asset_predictions ORDER BY asset")
        return {row['asset']: AssetPrediction(**row) for row in rows}

    def save_prediction(self, prediction: AssetPrediction):
        self._upsert('asset_predictions', 'asset', prediction.to_dict())

    # ==================== User Positions ====================

    def get_position(self, user: str) -> Optional[UserPosition]:
        placeholder = self._get_placeholder()
        row = self._fetch_one(
            f"SELECT * FROM user_positions WHERE user_id = {placeholder}", (user,)
        )
        if row is None:
            return None
        row['user'] = row.pop('user_id')
        row['auto_rebalance'] = bool(row['auto_rebalance'])
        return UserPosition(**row)

    def save_position(self, position: UserPosition):
        row = position.to_dict()
        row['user_id'] = row.pop('user')
        row['auto_rebalance'] = int(row['auto_rebalance'])
        self._upsert('user_positions', 'user_id', row)

    # ==================== Engine State ====================

    def load_state(self) -> EngineState:
        """Current counters, or the genesis state if nothing was saved yet"""
        placeholder = self._get_placeholder()
        row = self._fetch_one(
            f"SELECT * FROM engine_state WHERE state_id = {placeholder}", (STATE_ROW_ID,)
        )
        if row is None:
            return EngineState()
        row.pop('state_id')
        row['emergency_mode'] = bool(row['emergency_mode'])
        return EngineState(**row)

    def save_state(self, state: EngineState):
        row = {'state_id': STATE_ROW_ID}
        row.update(state.to_dict())
        row['emergency_mode'] = int(row['emergency_mode'])
        self._upsert('engine_state', 'state_id', row)

    # ==================== Events ====================

    def append_event(self, event_name: str, block_height: int, payload: Dict[str, Any],
                     caller: Optional[str] = None) -> int:
        """
        Append an event to the log.

        Returns:
            Sequence number of the new event
        """
        max_row = self._fetch_one("SELECT MAX(event_seq) AS max_seq FROM engine_events")
        seq = (max_row['max_seq'] or 0) + 1
        payload_json = json.dumps(payload, default=_to_native_type, sort_keys=True)

        placeholder = self._get_placeholder()
        cursor = self.conn.cursor()
        cursor.execute(
            f"""
            INSERT INTO engine_events (event_seq, event_name, block_height, caller, payload_json)
            VALUES ({placeholder}, {placeholder}, {placeholder}, {placeholder}, {placeholder})
            """,
            (seq, event_name, block_height, caller, payload_json)
        )
        return seq

    def get_events(self, event_name: Optional[str] = None) -> List[Dict[str, Any]]:
        """Events in append order, payloads decoded"""
        if event_name is None:
            rows = self._fetch_rows("SELECT * FROM engine_events ORDER BY event_seq")
        else:
            placeholder = self._get_placeholder()
            rows = self._fetch_rows(
                f"SELECT * FROM engine_events WHERE event_name = {placeholder} ORDER BY event_seq",
                (event_name,)
            )
        for row in rows:
            row['payload'] = json.loads(row.pop('payload_json'))
        return rows

    # ==================== Export ====================

    def table_frame(self, table: str) -> pd.DataFrame:
        """Read a whole table into a DataFrame (CLI / inspection)"""
        if table not in TABLES:
            raise ValueError(f"Unknown table: '{table}'. Available tables: {', '.join(TABLES)}")
        rows = self._fetch_rows(f"SELECT * FROM {table}")
        if not rows:
            return pd.DataFrame()
        return pd.DataFrame(rows)
