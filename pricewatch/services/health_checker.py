# pricewatch/services/health_checker.py

"""Marketplace connectivity health checker."""

import asyncio
import logging
import time
from dataclasses import dataclass

from pricewatch.scrapers.base_scraper import BaseScraper

logger = logging.getLogger("pricewatch.health")

_HEALTH_TIMEOUT = 10  # seconds per source
_SLOW_THRESHOLD_MS = 5000


@dataclass
class HealthResult:
    """Result of a single source health check."""

    source_id: str
    status: str  # "ok", "slow", "down"
    latency_ms: float
    message: str


async def probe_scraper(scraper: BaseScraper) -> HealthResult:
    """GET the scraper's homepage and classify the response."""
    source_id = scraper.platform
    start = time.monotonic()
    try:
        resp = await scraper.session.get(
            scraper.homepage,
            headers=scraper._headers(),
            timeout=_HEALTH_TIMEOUT,
        )
    except Exception as exc:
        elapsed_ms = (time.monotonic() - start) * 1000
        return HealthResult(
            source_id=source_id,
            status="down",
            latency_ms=elapsed_ms,
            message=str(exc)[:80],
        )
    elapsed_ms = (time.monotonic() - start) * 1000

    if resp.status_code != 200:
        return HealthResult(
            source_id=source_id,
            status="down",
            latency_ms=elapsed_ms,
            message=f"HTTP {resp.status_code}",
        )
    if elapsed_ms > _SLOW_THRESHOLD_MS:
        return HealthResult(
            source_id=source_id,
            status="slow",
            latency_ms=elapsed_ms,
            message="High latency",
        )
    return HealthResult(
        source_id=source_id,
        status="ok",
        latency_ms=elapsed_ms,
        message="",
    )


class HealthChecker:
    """Runs concurrent health probes against every scraper."""

    def __init__(self, scrapers: list[BaseScraper]) -> None:
        self.scrapers = list(scrapers)

    async def check_all(self) -> list[HealthResult]:
        """Probe every registered source concurrently."""
        results: list[HealthResult] = list(
            await asyncio.gather(
                *(probe_scraper(s) for s in self.scrapers)
            )
        )
        for r in results:
            logger.info(
                "Health check %s: %s (%.0fms) %s",
                r.source_id,
                r.status,
                r.latency_ms,
                r.message,
            )
        return results
