# pricewatch/services/recommendation_service.py

"""Cross-platform ranking engine: gather, filter, score, order, label."""

import asyncio
import dataclasses
import functools
import logging
import time
from collections.abc import Awaitable, Callable, Iterable

from pricewatch.config.settings import RecommendationOptions
from pricewatch.filters.candidate_scorer import CandidateScorer
from pricewatch.filters.outlier_filter import OutlierFilter
from pricewatch.models.product import (
    ProductCandidate,
    ProductQuery,
    ScrapeResult,
)
from pricewatch.scrapers.base_scraper import BaseScraper
from pricewatch.services.metrics_service import MetricsService

logger = logging.getLogger("pricewatch.recommendation")

Branch = tuple[str, Callable[[], Awaitable[ScrapeResult]]]


def _detach(candidate: ProductCandidate) -> ProductCandidate:
    """Copy a scraped candidate with the ranking fields cleared."""
    return dataclasses.replace(
        candidate, match_score=None, fit_reason=None, labels=[]
    )


class RecommendationService:
    """Fans a query out to the scrapers and ranks what comes back.

    Every scraper branch runs concurrently and fails independently; an
    empty list is a valid answer.  Only invalid options raise.
    """

    def __init__(
        self,
        scrapers: Iterable[BaseScraper],
        options: RecommendationOptions | None = None,
        metrics: MetricsService | None = None,
    ) -> None:
        self.scrapers = list(scrapers)
        self.options = options or RecommendationOptions()
        self.scorer = CandidateScorer(self.options)
        self.metrics = metrics

    def _scraper_for(self, platform: str) -> BaseScraper | None:
        platform = platform.lower()
        for scraper in self.scrapers:
            if scraper.platform == platform:
                return scraper
        return None

    # ── Gather ───────────────────────────────────────────

    def _plan(self, query: ProductQuery) -> tuple[list[Branch], bool]:
        """Return the branches to run and whether they target one URL."""
        target = None
        if query.canonical_url and query.platform:
            target = self._scraper_for(query.platform)
        if target is not None:
            return [
                (
                    f"{target.platform}.search",
                    functools.partial(target.search_by_query, query),
                ),
                (
                    f"{target.platform}.fetch",
                    functools.partial(target.get_by_url, query),
                ),
            ], True
        return self._fan_out(query), False

    def _fan_out(self, query: ProductQuery) -> list[Branch]:
        return [
            (
                f"{scraper.platform}.search",
                functools.partial(scraper.search_by_query, query),
            )
            for scraper in self.scrapers
        ]

    def _branch_budget(self, deadline: float | None) -> float | None:
        """Seconds a branch may run: the tighter of deadline and branch cap."""
        budgets: list[float] = []
        if deadline is not None:
            budgets.append(deadline - time.monotonic())
        if self.options.branch_timeout is not None:
            budgets.append(self.options.branch_timeout)
        return min(budgets) if budgets else None

    async def _run_branch(
        self,
        name: str,
        call: Callable[[], Awaitable[ScrapeResult]],
        budget: float | None,
    ) -> list[ProductCandidate]:
        """Run one scraper call; every failure becomes an empty list."""
        if budget is not None and budget <= 0:
            logger.warning("Branch %s skipped: no time left", name)
            return []
        try:
            if budget is None:
                result = await call()
            else:
                result = await asyncio.wait_for(call(), timeout=budget)
        except TimeoutError:
            logger.warning("Branch %s timed out after %.2fs", name, budget)
            return []
        except Exception:
            logger.error("Branch %s raised unexpectedly", name, exc_info=True)
            return []
        if not result.ok:
            logger.info("Branch %s degraded: %s", name, result.error)
        return [_detach(c) for c in result.candidates]

    async def _gather(
        self,
        branches: list[Branch],
        deadline: float | None,
    ) -> list[ProductCandidate]:
        budget = self._branch_budget(deadline)
        batches = await asyncio.gather(
            *(self._run_branch(name, call, budget) for name, call in branches)
        )
        merged: list[ProductCandidate] = []
        for batch in batches:
            merged.extend(batch)
        return merged

    async def gather(
        self,
        query: ProductQuery,
        timeout: float | None = None,
    ) -> list[ProductCandidate]:
        """Collect raw candidates for *query*.

        A URL-specific lookup that finds nothing is retried once as a
        cross-platform search on the title hint.
        """
        deadline = time.monotonic() + timeout if timeout is not None else None
        branches, url_specific = self._plan(query)
        candidates = await self._gather(branches, deadline)
        if candidates or not url_specific:
            return candidates

        hint = query.title_hint.strip()
        if not hint:
            return candidates
        logger.info(
            "No candidates for %s; retrying cross-platform with '%s'",
            query.canonical_url,
            hint,
        )
        fallback = ProductQuery(title_hint=hint, metadata=dict(query.metadata))
        return await self._gather(self._fan_out(fallback), deadline)

    # ── Rank ─────────────────────────────────────────────

    def rank(
        self,
        candidates: list[ProductCandidate],
        title_hint: str = "",
    ) -> list[ProductCandidate]:
        """Filter, score, order and label *candidates* (no truncation)."""
        if not candidates:
            return []
        kept, tier = OutlierFilter.apply(candidates)
        logger.debug(
            "Ranking %d of %d candidates (filter tier: %s)",
            len(kept),
            len(candidates),
            tier,
        )
        scored = self.scorer.score(kept, title_hint)
        ordered = self.scorer.order(scored)
        self.scorer.label(ordered)
        return ordered

    async def recommend(
        self,
        query: ProductQuery,
        top_n: int = 3,
        timeout: float | None = None,
    ) -> list[ProductCandidate]:
        """Return at most *top_n* candidates, cheapest total cost first.

        *timeout* bounds every scraper call at once; cancelling the
        calling task cancels all in-flight calls.
        """
        start = time.monotonic()
        candidates = await self.gather(query, timeout)
        if not candidates:
            logger.warning(
                "No candidates gathered for platform=%r hint=%r",
                query.platform,
                query.title_hint,
            )
            ranked: list[ProductCandidate] = []
        else:
            ranked = self.rank(candidates, query.title_hint)

        elapsed_ms = (time.monotonic() - start) * 1000
        if self.metrics is not None:
            self.metrics.record_recommendation(elapsed_ms)
        logger.info(
            "Recommendation returned %d of %d candidates in %.0fms",
            min(len(ranked), max(top_n, 0)),
            len(candidates),
            elapsed_ms,
        )
        return ranked[: max(top_n, 0)]
