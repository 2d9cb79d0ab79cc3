"""
Test script for EngineStore and the block clock

Tests:
1. Schema creation on a fresh database
2. Record round trips for each keyed table
3. Registration order is preserved across updates
4. Transactions commit or roll back as a unit
5. Event log is append-only and ordered
"""

import sqlite3

import numpy as np
import pytest

from allocation.models import ProtocolRecord, AssetPrediction, UserPosition, EngineState
from data.engine_store import EngineStore
from utils.block_clock import BlockClock, to_block_height, hours_to_blocks, blocks_to_hours


@pytest.fixture
def store():
    conn = sqlite3.connect(':memory:')
    store = EngineStore(conn)
    store.ensure_schema()
    yield store
    conn.close()


def test_schema_creates_all_tables(store):
    cursor = store.conn.cursor()
    cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
    tables = {row[0] for row in cursor.fetchall()}
    assert {'protocols', 'asset_predictions', 'user_positions', 'engine_state', 'engine_events'} <= tables


def test_ensure_schema_is_idempotent(store):
    store.ensure_schema()
    assert store.list_protocols() == []


def test_unsupported_connection_type():
    with pytest.raises(TypeError, match="Unsupported connection type"):
        EngineStore(object())


def test_genesis_state(store):
    state = store.load_state()
    assert state == EngineState()
    assert state.prediction_accuracy == 50
    assert state.emergency_mode is False


def test_state_round_trip(store):
    state = EngineState(total_managed_assets=5_000_000, last_rebalance_time=1234,
                        prediction_accuracy=67, emergency_mode=True)
    with store.transaction():
        store.save_state(state)
    assert store.load_state() == state


def test_protocols_keep_registration_order(store):
    with store.transaction():
        store.save_protocol(ProtocolRecord('zeta', yield_prediction=500, risk_score=10))
        store.save_protocol(ProtocolRecord('alpha', yield_prediction=650, risk_score=30))

    with store.transaction():
        store.save_protocol(ProtocolRecord('zeta', target_allocation=40, yield_prediction=510, risk_score=10))

    protocols = store.list_protocols()
    assert [p.protocol_id for p in protocols] == ['zeta', 'alpha']
    assert store.get_protocol('zeta').target_allocation == 40
    assert store.get_protocol('missing') is None


def test_prediction_and_position_round_trip(store):
    prediction = AssetPrediction('STX', 800, 20, 90, last_update=7)
    position = UserPosition('alice', total_deposited=2_000_000, risk_preference=40, auto_rebalance=False)

    with store.transaction():
        store.save_prediction(prediction)
        store.save_position(position)

    assert store.get_prediction('STX') == prediction
    assert store.list_predictions() == {'STX': prediction}
    assert store.get_position('alice') == position


def test_transaction_rolls_back_on_error(store):
    with pytest.raises(ValueError):
        with store.transaction():
            store.save_protocol(ProtocolRecord('alpha', yield_prediction=650, risk_score=30))
            store.save_state(EngineState(total_managed_assets=99))
            raise ValueError("abort")

    assert store.list_protocols() == []
    assert store.load_state() == EngineState()


def test_transaction_is_not_reentrant(store):
    with pytest.raises(RuntimeError, match="not re-entrant"):
        with store.transaction():
            with store.transaction():
                pass


def test_events_are_appended_in_order(store):
    with store.transaction():
        first = store.append_event('deposit', 10, {'amount': np.int64(2_000_000)}, caller='alice')
        second = store.append_event('rebalanced', 12, {'targets': {'alpha': 40}})

    assert (first, second) == (1, 2)

    events = store.get_events()
    assert [e['event_name'] for e in events] == ['deposit', 'rebalanced']
    assert events[0]['payload'] == {'amount': 2_000_000}
    assert events[0]['caller'] == 'alice'
    assert store.get_events('rebalanced')[0]['block_height'] == 12


def test_table_frame(store):
    with store.transaction():
        store.save_protocol(ProtocolRecord('alpha', yield_prediction=650, risk_score=30))

    frame = store.table_frame('protocols')
    assert list(frame['protocol_id']) == ['alpha']
    assert store.table_frame('engine_events').empty

    with pytest.raises(ValueError, match="Unknown table"):
        store.table_frame('sqlite_master')


# ==================== Block Clock ====================

def test_block_clock_advances():
    clock = BlockClock(100)
    assert clock() == 100
    assert clock.advance(5) == 105
    assert clock.advance_hours(2) == 105 + hours_to_blocks(2)
    assert clock.height == 117

    with pytest.raises(ValueError, match="backwards"):
        clock.advance(-1)


def test_block_height_validation():
    assert to_block_height(0) == 0
    with pytest.raises(TypeError):
        to_block_height(1.5)
    with pytest.raises(TypeError):
        to_block_height(True)
    with pytest.raises(ValueError):
        to_block_height(-1)
    with pytest.raises(ValueError):
        to_block_height(None)


def test_block_hour_conversion():
    assert hours_to_blocks(24) == 144
    assert blocks_to_hours(36) == 6.0
