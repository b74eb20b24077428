import logging
from collections import deque
from datetime import datetime, timezone

import requests

from utils import build_retry_session

logger = logging.getLogger(__name__)

LEVELS = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


class AlertNotifier:
    """
    Operator alerts: always logged, and posted to a webhook when one is configured.

    The last ``recent_limit`` payloads stay in ``recent``, newest last;
    /healthz/jobs shows them so an operator without the webhook still sees
    what fired.
    """

    def __init__(self, webhook_url=None, timeout=10, session=None, source="fincore", recent_limit=100):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.source = source
        self._session = session
        self.recent = deque(maxlen=recent_limit)

    @property
    def session(self):
        if self._session is None:
            self._session = build_retry_session()
        return self._session

    def send(self, level, title, details=None):
        details = details or {}
        logger.log(LEVELS.get(level, logging.INFO), f"[ALERT:{level}] {title} {details}")
        payload = {
            "source": self.source,
            "level": level,
            "title": title,
            "details": details,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        self.recent.append(payload)

        if not self.webhook_url:
            return False
        try:
            response = self.session.post(self.webhook_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            return True
        except requests.RequestException as e:
            logger.error(f"Alert delivery failed for '{title}': {e}")
            return False

    # ------------------------------------------------------------------
    # Typed alerts
    # ------------------------------------------------------------------
    def job_errors(self, job, result):
        return self.send("error", f"Job {job} finished with {result['errors']} errors", {
            "job": job,
            "processed": result["processed"],
            "errors": result["errors"],
            "sample": result.get("error_samples", [])[:5],
        })

    def job_crashed(self, job, error):
        return self.send("critical", f"Job {job} crashed", {"job": job, "error": str(error)})

    def job_summary(self, job, result):
        return self.send("info", f"Job {job} moved {result['total_amount']}", {
            "job": job,
            "processed": result["processed"],
            "total_amount": str(result["total_amount"]),
            "duration_ms": result["duration_ms"],
        })

    def benefit_days_exhausted(self, exhausted):
        return self.send("critical", f"{len(exhausted)} benefit days exhausted their retries", {
            "days": exhausted[:20],
        })

    def pool_low(self, stats):
        return self.send("warning", f"Wallet pool availability at {stats['availability']:.0%}", stats)

    def invariant_violations(self, issues):
        return self.send("critical", f"{len(issues)} ledger invariant violations", {"issues": issues[:20]})
