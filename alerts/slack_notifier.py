"""
Slack notification sink for engine events
"""

import json
import logging
import time
from typing import Dict, List, Optional, Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from config import settings

logger = logging.getLogger(__name__)


def format_amount_abbreviated(value: Optional[int]) -> str:
    """Format a base-unit amount abbreviated (e.g., 1.23M, 456.0K)"""
    if value is None:
        return "N/A"
    if value >= 1_000_000:
        return f"{value/1_000_000:.2f}M"
    elif value >= 1_000:
        return f"{value/1_000:.1f}K"
    else:
        return f"{value}"


def format_flag(value: Optional[bool]) -> str:
    """Render a risk flag; None means the feature was disabled"""
    if value is None:
        return "⚪ n/a"
    return "🔴 yes" if value else "🟢 no"


def format_allocation_line(allocations: Dict[str, int]) -> str:
    """
    Format allocations as a summary line

    Format: PROTOCOL_A 40% | PROTOCOL_B 25%
    """
    if not allocations:
        return "no protocols registered"
    return " | ".join(f"{pid} {pct}%" for pid, pct in allocations.items())


class SlackNotifier:
    """Send engine events to Slack"""

    def __init__(self, webhook_url: str = None, session_factory=requests.Session):
        """
        Initialize Slack notifier

        Args:
            webhook_url: Slack webhook URL (default from settings)
            session_factory: Callable returning a requests.Session (swappable in tests)
        """
        self.webhook_url = webhook_url or settings.SLACK_WEBHOOK_URL
        self.session_factory = session_factory

    @property
    def is_workflow(self) -> bool:
        """Slack Workflow webhooks take flat variables instead of blocks"""
        return '/workflows/' in self.webhook_url or '/triggers/' in self.webhook_url

    def send_message(self, message: str, blocks: List[Dict] = None, variables: Dict = None) -> bool:
        """
        Send a message to Slack with retry logic and timeout

        Args:
            message: Plain text message (fallback)
            blocks: Slack blocks for rich formatting (for classic webhooks)
            variables: Dictionary of variables for Slack Workflows

        Returns:
            True if successful, False otherwise
        """
        if not self.webhook_url:
            logger.warning("Slack webhook not configured. Set SLACK_WEBHOOK_URL in the environment")
            return False

        if self.is_workflow:
            if not variables:
                logger.error("Workflow webhook detected but no variables supplied - notification skipped")
                return False
            payload = variables
        else:
            payload = {"text": message}
            if blocks:
                payload["blocks"] = blocks

        payload_str = json.dumps(payload)

        # Configure retry strategy for transient failures
        retry_strategy = Retry(
            total=3,  # Max 3 retries
            backoff_factor=1,  # Wait 1s, 2s, 4s between retries
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["POST"],
            raise_on_status=False
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        session = self.session_factory()
        session.mount("https://", adapter)
        session.mount("http://", adapter)

        try:
            start_time = time.time()
            response = session.post(
                self.webhook_url,
                data=payload_str,
                headers={'Content-Type': 'application/json'},
                timeout=settings.SLACK_TIMEOUT_SECONDS
            )
            elapsed = (time.time() - start_time) * 1000
            logger.debug(f"Slack response in {elapsed:.0f}ms: {response.status_code}")

            if response.status_code == 200:
                logger.info("Slack notification sent")
                return True
            logger.error(f"Slack notification failed: {response.status_code} - {response.text}")
            return False

        except requests.exceptions.Timeout as e:
            logger.error(f"Slack notification timeout after {settings.SLACK_TIMEOUT_SECONDS}s: {e}")
            return False
        except requests.exceptions.ConnectionError as e:
            logger.error(f"Slack connection error: {e}")
            return False
        except requests.exceptions.RequestException as e:
            logger.error(f"Slack request failed: {e}")
            return False
        finally:
            session.close()

    def alert_optimization_report(self, report: Dict[str, Any], summary: Dict[str, Any]) -> bool:
        """
        Send the optimizer's report

        Args:
            report: OptimizationReport.to_dict()
            summary: OptimizationSummary.to_dict()

        Returns:
            True if successful
        """
        flags = report['risk_flags']
        allocations = format_allocation_line(report['recommended_allocations'])
        message = f"📈 Yield optimization @ block {report['block_height']}: {allocations}"

        variables = {
            "block_height": str(report['block_height']),
            "aggressiveness": str(report['aggressiveness']),
            "recommended_allocations": allocations,
            "projected_apy_improvement_bps": str(summary['projected_apy_improvement_bps']),
            "risk_adjusted_score": str(summary['risk_adjusted_score']),
            "system_confidence": str(summary['system_confidence']),
            "next_optimization_due": str(summary['next_optimization_due']),
            "correlation_limit_breach": format_flag(flags['correlation_limit_breach']),
            "sentiment_risk": format_flag(flags['sentiment_risk']),
            "liquidity_migration_warning": format_flag(flags['liquidity_migration_warning']),
            "rebalance_due": format_flag(flags['rebalance_due']),
        }

        blocks = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": "📈 Yield Optimization Report", "emoji": True}
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Recommended:*\n{allocations}"},
                    {"type": "mrkdwn", "text": f"*Aggressiveness:*\n{report['aggressiveness']}"},
                    {"type": "mrkdwn", "text": f"*APY Improvement:*\n{summary['projected_apy_improvement_bps']} bps"},
                    {"type": "mrkdwn", "text": f"*Confidence:*\n{summary['system_confidence']}%"},
                ]
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Correlation Breach:*\n{variables['correlation_limit_breach']}"},
                    {"type": "mrkdwn", "text": f"*Sentiment Risk:*\n{variables['sentiment_risk']}"},
                    {"type": "mrkdwn", "text": f"*Liquidity Migration:*\n{variables['liquidity_migration_warning']}"},
                    {"type": "mrkdwn", "text": f"*Rebalance Due:*\n{variables['rebalance_due']}"},
                ]
            },
        ]

        return self.send_message(message, blocks, variables)

    def alert_rebalanced(self, block_height: int, targets: Dict[str, int],
                         committed: Dict[str, int], total_managed_assets: int) -> bool:
        """Alert after a rebalance commits new targets"""
        message = f"🔄 Rebalanced @ block {block_height}: {format_allocation_line(committed)}"

        variables = {
            "block_height": str(block_height),
            "targets": format_allocation_line(targets),
            "committed": format_allocation_line(committed),
            "total_managed_assets": format_amount_abbreviated(total_managed_assets),
        }

        blocks = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": "🔄 Allocation Rebalanced", "emoji": True}
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Targets:*\n{variables['targets']}"},
                    {"type": "mrkdwn", "text": f"*Committed:*\n{variables['committed']}"},
                    {"type": "mrkdwn", "text": f"*Managed Assets:*\n{variables['total_managed_assets']}"},
                ]
            },
        ]

        return self.send_message(message, blocks, variables)

    def alert_emergency_mode(self, block_height: int, enabled: bool) -> bool:
        """Alert when the administrator toggles emergency mode"""
        state = "ENABLED" if enabled else "disabled"
        message = f"🚨 Emergency mode {state} @ block {block_height}"
        variables = {"block_height": str(block_height), "emergency_mode": state}
        blocks = [
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*{message}*"}
            }
        ]
        return self.send_message(message, blocks, variables)
