"""
Utilities for monitoring repricing cycles and raising alerts.
"""

import logging
from collections import defaultdict
from datetime import datetime

import numpy as np

from models.pricing import CycleReport

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLDS: dict[str, tuple[float, float]] = {
    "failure_rate_percent": (0.0, 20.0),
    "failed_users": (0.0, 0.0),
}


class RepricingMonitor:
    """Tracks per-cycle metrics of the repricing worker and detects issues."""

    def __init__(
        self,
        worker_id: str = "price-dumping",
        metric_thresholds: dict[str, tuple[float, float]] | None = None,
        drift_window: int = 12,
        drift_threshold_percent: float = 50.0,
    ):
        """
        Args:
            worker_id: Name used in alert messages.
            metric_thresholds: Metric name -> (min_value, max_value) acceptable range.
            drift_window: Number of cycles per comparison window for drift detection.
            drift_threshold_percent: Relative change between windows considered drift.
        """
        self.worker_id = worker_id
        self.metric_thresholds = (
            dict(DEFAULT_THRESHOLDS) if metric_thresholds is None else metric_thresholds
        )
        self.drift_window = drift_window
        self.drift_threshold_percent = drift_threshold_percent
        self.metrics_history: dict[str, list[tuple[datetime, float]]] = defaultdict(list)
        self.alerts: list[str] = []

    def record_cycle(self, report: CycleReport) -> dict[str, float]:
        """Derive metrics from a finished cycle and record them."""
        processed = report.processed
        metrics = {
            "processed": float(processed),
            "updated": float(report.updated),
            "skipped": float(report.skipped),
            "failed": float(report.failed),
            "failed_users": float(report.failed_users),
            "failure_rate_percent": (report.failed / processed * 100) if processed else 0.0,
            "duration_seconds": report.duration_seconds,
        }
        if report.aborted:
            self.trigger_alert(f"cycle aborted: {report.error}")
        self.record_metrics(metrics, report.finished_at)
        return metrics

    def record_metrics(self, metrics_dict: dict[str, float], timestamp: datetime | None = None):
        """Record a set of metrics at a specific time."""
        ts = timestamp or datetime.now()
        for metric, value in metrics_dict.items():
            if not isinstance(value, int | float):
                logger.warning(f"Metric '{metric}' has non-numeric value: {value}. Skipping.")
                continue
            self.metrics_history[metric].append((ts, value))

            if metric in self.metric_thresholds:
                min_val, max_val = self.metric_thresholds[metric]
                if not (min_val <= value <= max_val):
                    self.trigger_alert(
                        f"metric '{metric}' value {value:.2f} outside acceptable range "
                        f"[{min_val:.2f}, {max_val:.2f}]"
                    )

            if self.detect_drift(metric):
                logger.warning(f"Drift detected for metric '{metric}' in {self.worker_id}")

    def detect_drift(self, metric: str) -> bool:
        """Compare the mean of the latest window with the window before it."""
        history = self.metrics_history.get(metric, [])
        window = self.drift_window
        if len(history) < window * 2:
            return False

        recent_avg = np.mean([v for _, v in history[-window:]])
        previous_avg = np.mean([v for _, v in history[-window * 2 : -window]])
        if previous_avg == 0:
            return bool(recent_avg != 0)
        percent_change = abs((recent_avg - previous_avg) / previous_avg) * 100
        return bool(percent_change > self.drift_threshold_percent)

    def trigger_alert(self, detail: str) -> None:
        message = f"ALERT [{self.worker_id}] - {detail}"
        self.alerts.append(message)
        logger.warning(message)
