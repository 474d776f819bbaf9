# pricewatch/services/metrics_service.py

"""Thread-safe call/failure/latency counters per scraper platform."""

import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime

logger = logging.getLogger("pricewatch.metrics")


@dataclass(frozen=True)
class MetricsSnapshot:
    """Point-in-time copy of every counter."""

    timestamp: datetime
    scraper_calls: dict[str, int] = field(
        default_factory=lambda: dict[str, int]()
    )
    scraper_failures: dict[str, int] = field(
        default_factory=lambda: dict[str, int]()
    )
    scraper_avg_latency_ms: dict[str, float] = field(
        default_factory=lambda: dict[str, float]()
    )
    recommendations: int = 0
    recommendation_avg_latency_ms: float = 0.0

    def to_dict(self) -> dict[str, object]:
        """Serialise for JSON output."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "scraper_calls": dict(self.scraper_calls),
            "scraper_failures": dict(self.scraper_failures),
            "scraper_avg_latency_ms": dict(self.scraper_avg_latency_ms),
            "recommendations": self.recommendations,
            "recommendation_avg_latency_ms": (
                self.recommendation_avg_latency_ms
            ),
        }


class MetricsService:
    """Observational counters; never blocks or fails the ranking path."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._calls: dict[str, int] = {}
        self._failures: dict[str, int] = {}
        self._avg_latency: dict[str, float] = {}
        self._recommendations = 0
        self._recommendation_avg = 0.0

    def record_scraper_call(
        self,
        platform: str,
        success: bool,
        elapsed_ms: float,
    ) -> None:
        """Count one scraper call and fold its latency into the mean."""
        try:
            with self._lock:
                count = self._calls.get(platform, 0) + 1
                self._calls[platform] = count
                if not success:
                    self._failures[platform] = (
                        self._failures.get(platform, 0) + 1
                    )
                avg = self._avg_latency.get(platform, 0.0)
                self._avg_latency[platform] = (
                    avg + (elapsed_ms - avg) / count
                )
        except Exception:
            logger.error(
                "Failed to record scraper metrics for %s",
                platform,
                exc_info=True,
            )
            return
        logger.debug(
            "Scraper call: %s success=%s duration=%.0fms",
            platform,
            success,
            elapsed_ms,
        )

    def record_recommendation(self, elapsed_ms: float) -> None:
        """Count one recommendation request and its latency."""
        try:
            with self._lock:
                self._recommendations += 1
                self._recommendation_avg += (
                    elapsed_ms - self._recommendation_avg
                ) / self._recommendations
        except Exception:
            logger.error(
                "Failed to record recommendation metrics", exc_info=True
            )

    def snapshot(self) -> MetricsSnapshot:
        """Return a consistent copy of all counters."""
        with self._lock:
            return MetricsSnapshot(
                timestamp=datetime.now(UTC),
                scraper_calls=dict(self._calls),
                scraper_failures={
                    p: self._failures.get(p, 0) for p in self._calls
                },
                scraper_avg_latency_ms=dict(self._avg_latency),
                recommendations=self._recommendations,
                recommendation_avg_latency_ms=self._recommendation_avg,
            )
