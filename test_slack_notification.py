"""
Test script for Slack notifications

The HTTP session is replaced with a mock, nothing leaves the machine.
"""

import json
from unittest import mock

import pytest
import requests

from config import settings
from alerts.slack_notifier import (
    SlackNotifier,
    format_amount_abbreviated,
    format_flag,
    format_allocation_line,
)

CLASSIC_URL = 'https://hooks.slack.com/services/T000/B000/XXXX'
WORKFLOW_URL = 'https://hooks.slack.com/triggers/T000/123/abc'


def make_notifier(url, status_code=200, side_effect=None):
    session = mock.Mock()
    if side_effect is not None:
        session.post.side_effect = side_effect
    else:
        session.post.return_value = mock.Mock(status_code=status_code, text='ok')
    return SlackNotifier(webhook_url=url, session_factory=lambda: session), session


def sample_report():
    report = {
        'block_height': 1000,
        'aggressiveness': 65,
        'recommended_allocations': {'alpha': 7, 'beta': 5},
        'risk_flags': {
            'correlation_limit_breach': None,
            'sentiment_risk': False,
            'liquidity_migration_warning': True,
            'rebalance_due': False,
        },
    }
    summary = {
        'completed': True,
        'projected_apy_improvement_bps': 78,
        'risk_adjusted_score': 58,
        'next_optimization_due': 1036,
        'system_confidence': 60,
    }
    return report, summary


def test_formatters():
    assert format_amount_abbreviated(2_500_000) == "2.50M"
    assert format_amount_abbreviated(4_500) == "4.5K"
    assert format_amount_abbreviated(12) == "12"
    assert format_amount_abbreviated(None) == "N/A"
    assert format_flag(None) == "⚪ n/a"
    assert format_flag(True) == "🔴 yes"
    assert format_allocation_line({'alpha': 40, 'beta': 10}) == "alpha 40% | beta 10%"
    assert format_allocation_line({}) == "no protocols registered"


def test_classic_webhook_sends_blocks():
    notifier, session = make_notifier(CLASSIC_URL)
    report, summary = sample_report()

    assert notifier.alert_optimization_report(report, summary) is True

    payload = json.loads(session.post.call_args.kwargs['data'])
    assert 'blocks' in payload
    assert 'alpha 7%' in payload['text']
    assert session.post.call_args.kwargs['timeout'] == settings.SLACK_TIMEOUT_SECONDS
    session.close.assert_called_once()


def test_workflow_webhook_sends_variables():
    notifier, session = make_notifier(WORKFLOW_URL)

    assert notifier.alert_rebalanced(1000, {'alpha': 40}, {'alpha': 40}, 2_000_000) is True

    payload = json.loads(session.post.call_args.kwargs['data'])
    assert payload['committed'] == "alpha 40%"
    assert payload['total_managed_assets'] == "2.00M"


def test_workflow_webhook_without_variables_is_skipped():
    notifier, session = make_notifier(WORKFLOW_URL)
    assert notifier.send_message("plain text") is False
    session.post.assert_not_called()


def test_unconfigured_webhook(monkeypatch):
    monkeypatch.setattr(settings, 'SLACK_WEBHOOK_URL', '')
    notifier = SlackNotifier()
    assert notifier.alert_emergency_mode(1000, True) is False


def test_http_error_returns_false():
    notifier, _ = make_notifier(CLASSIC_URL, status_code=500)
    assert notifier.alert_emergency_mode(1000, True) is False


@pytest.mark.parametrize("error", [
    requests.exceptions.Timeout("slow"),
    requests.exceptions.ConnectionError("down"),
])
def test_network_errors_return_false(error):
    notifier, session = make_notifier(CLASSIC_URL, side_effect=error)
    assert notifier.alert_emergency_mode(1000, False) is False
    session.close.assert_called_once()
