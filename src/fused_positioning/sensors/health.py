"""
Health tracking for positioning sources.

Each source records whether its latest reading was usable. Rejected readings
(poor accuracy, implausible jumps, degenerate geometry) count as failures and
erode the reliability score; accepted readings restore it.

Mathematical Model:
    on failure:  reliability = max(0, 1 - min(0.9, decay · consecutive_failures))
    on success:  reliability = min(1, reliability + recovery_rate)

A source is reported as degraded once consecutive_failures reaches the
failure threshold, and recovers as soon as reliability climbs back above 0.5.
"""

import time
from typing import Optional


class SensorHealth:
    """
    Reliability bookkeeping for one positioning source.

    Attributes:
        is_operational: False after failure_threshold consecutive bad readings
        reliability: Score in [0.0, 1.0]
        failure_count: Total rejected readings
        recovery_count: Total accepted readings
        consecutive_failures: Current streak of rejected readings
        last_success_time: Timestamp of the last accepted reading
    """

    def __init__(self, failure_threshold: int = 5, reliability_decay: float = 0.15,
                 recovery_rate: float = 0.05):
        if failure_threshold <= 0:
            raise ValueError(f"failure_threshold must be positive, got {failure_threshold}")
        self._failure_threshold = failure_threshold
        self._reliability_decay = reliability_decay
        self._recovery_rate = recovery_rate
        self.reset_health()

    def record_failure(self, reason: Optional[str] = None) -> None:
        """
        Record a rejected reading.

        Args:
            reason: Short tag such as 'accuracy' or 'jump', counted per reason
        """
        self.failure_count += 1
        self.consecutive_failures += 1
        if reason:
            self.failure_reasons[reason] = self.failure_reasons.get(reason, 0) + 1

        penalty = min(0.9, self._reliability_decay * self.consecutive_failures)
        self.reliability = max(0.0, 1.0 - penalty)

        if self.consecutive_failures >= self._failure_threshold:
            self.is_operational = False

    def record_success(self, timestamp: Optional[float] = None) -> None:
        """Record an accepted reading; resets the consecutive failure streak."""
        self.recovery_count += 1
        self.consecutive_failures = 0
        self.last_success_time = time.time() if timestamp is None else timestamp

        self.reliability = min(1.0, self.reliability + self._recovery_rate)
        if not self.is_operational and self.reliability > 0.5:
            self.is_operational = True

    def get_failure_rate(self) -> float:
        total = self.failure_count + self.recovery_count
        if total == 0:
            return 0.0
        return self.failure_count / total

    def time_since_last_success(self, now: Optional[float] = None) -> Optional[float]:
        if self.last_success_time is None:
            return None
        now = time.time() if now is None else now
        return now - self.last_success_time

    def reset_health(self) -> None:
        self.is_operational = True
        self.reliability = 1.0
        self.failure_count = 0
        self.recovery_count = 0
        self.consecutive_failures = 0
        self.failure_reasons = {}
        self.last_success_time: Optional[float] = None

    def get_health_summary(self, now: Optional[float] = None) -> dict:
        return {
            'operational': self.is_operational,
            'reliability': self.reliability,
            'failure_count': self.failure_count,
            'recovery_count': self.recovery_count,
            'consecutive_failures': self.consecutive_failures,
            'failure_reasons': dict(self.failure_reasons),
            'failure_rate': self.get_failure_rate(),
            'time_since_success': self.time_since_last_success(now),
        }
