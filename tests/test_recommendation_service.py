# tests/test_recommendation_service.py

"""Tests for the gather / rank / recommend pipeline."""

import asyncio
import time
import unittest
from decimal import Decimal
from unittest.mock import AsyncMock

from pricewatch.config.settings import RecommendationOptions
from pricewatch.models.product import (
    LABEL_BEST_DEAL,
    ProductCandidate,
    ProductQuery,
    ScrapeResult,
)
from pricewatch.services.metrics_service import MetricsService
from pricewatch.services.recommendation_service import RecommendationService


def _make(
    price: int,
    rating: float = 4.5,
    platform: str = "shopee",
    title: str = "",
) -> ProductCandidate:
    return ProductCandidate(
        platform=platform,
        title=title or f"{platform} {price}",
        price=Decimal(price),
        shop_rating=rating,
    )


class FakeScraper:
    """Scraper double exposing the two contract calls as AsyncMocks."""

    def __init__(
        self,
        platform: str,
        search: list[ProductCandidate] | None = None,
        fetch: list[ProductCandidate] | None = None,
    ) -> None:
        self.platform = platform
        self.search_by_query = AsyncMock(
            return_value=ScrapeResult(platform, list(search or []))
        )
        self.get_by_url = AsyncMock(
            return_value=ScrapeResult(platform, list(fetch or []))
        )


def _service(*scrapers: FakeScraper, **kwargs) -> RecommendationService:
    return RecommendationService(scrapers, **kwargs)  # type: ignore[arg-type]


class TestGather(unittest.IsolatedAsyncioTestCase):

    async def test_keyword_query_fans_out_to_every_scraper(self) -> None:
        shopee = FakeScraper("shopee", [_make(1000)])
        lazada = FakeScraper("lazada", [_make(2000, platform="lazada")])
        tiki = FakeScraper("tiki")
        gathered = await _service(shopee, lazada, tiki).gather(
            ProductQuery(title_hint="quạt điện")
        )
        self.assertEqual(len(gathered), 2)
        for scraper in (shopee, lazada, tiki):
            scraper.search_by_query.assert_awaited_once()
            scraper.get_by_url.assert_not_awaited()

    async def test_url_query_runs_search_and_fetch_on_one_scraper(self) -> None:
        shopee = FakeScraper(
            "shopee", [_make(1000)], fetch=[_make(900, title="exact")]
        )
        tiki = FakeScraper("tiki", [_make(800, platform="tiki")])
        query = ProductQuery(
            platform="shopee",
            product_id="i.1.2",
            canonical_url="https://shopee.vn/product/1/2",
            title_hint="quạt",
        )
        gathered = await _service(shopee, tiki).gather(query)
        self.assertEqual(
            sorted(c.title for c in gathered), ["exact", "shopee 1000"]
        )
        tiki.search_by_query.assert_not_awaited()

    async def test_url_query_falls_back_to_cross_platform(self) -> None:
        shopee = FakeScraper("shopee")
        lazada = FakeScraper("lazada", [_make(1500, platform="lazada")])
        tiki = FakeScraper("tiki", [_make(1600, platform="tiki")])
        query = ProductQuery(
            platform="shopee",
            canonical_url="https://shopee.vn/product/1/2",
            title_hint="tai nghe",
            metadata={"limit": "5"},
        )
        gathered = await _service(shopee, lazada, tiki).gather(query)
        self.assertEqual(len(gathered), 2)
        for scraper in (lazada, tiki):
            scraper.search_by_query.assert_awaited_once()
            fallback = scraper.search_by_query.await_args.args[0]
            self.assertEqual(fallback.platform, "")
            self.assertEqual(fallback.canonical_url, "")
            self.assertEqual(fallback.title_hint, "tai nghe")
            self.assertEqual(fallback.metadata, {"limit": "5"})

    async def test_no_fallback_without_title_hint(self) -> None:
        shopee = FakeScraper("shopee")
        tiki = FakeScraper("tiki", [_make(1600, platform="tiki")])
        query = ProductQuery(
            platform="shopee", canonical_url="https://shopee.vn/product/1/2"
        )
        self.assertEqual(await _service(shopee, tiki).gather(query), [])
        tiki.search_by_query.assert_not_awaited()

    async def test_unknown_platform_fans_out(self) -> None:
        tiki = FakeScraper("tiki", [_make(1600, platform="tiki")])
        query = ProductQuery(
            platform="sendo", canonical_url="https://sendo.vn/x", title_hint="x"
        )
        gathered = await _service(tiki).gather(query)
        self.assertEqual(len(gathered), 1)

    async def test_one_branch_raising_does_not_block_others(self) -> None:
        broken = FakeScraper("shopee")
        broken.search_by_query.side_effect = RuntimeError("boom")
        healthy = FakeScraper("tiki", [_make(1000, platform="tiki")])
        with self.assertLogs("pricewatch.recommendation", "ERROR"):
            gathered = await _service(broken, healthy).gather(
                ProductQuery(title_hint="x")
            )
        self.assertEqual([c.platform for c in gathered], ["tiki"])

    async def test_timeout_abandons_slow_branch(self) -> None:
        async def slow(_query: ProductQuery) -> ScrapeResult:
            await asyncio.sleep(5)
            return ScrapeResult("shopee", [_make(1)])

        slow_scraper = FakeScraper("shopee")
        slow_scraper.search_by_query.side_effect = slow
        fast = FakeScraper("tiki", [_make(1000, platform="tiki")])
        start = time.monotonic()
        gathered = await _service(slow_scraper, fast).gather(
            ProductQuery(title_hint="x"), timeout=0.1
        )
        self.assertLess(time.monotonic() - start, 2)
        self.assertEqual([c.platform for c in gathered], ["tiki"])

    async def test_branch_timeout_option(self) -> None:
        async def slow(_query: ProductQuery) -> ScrapeResult:
            await asyncio.sleep(5)
            return ScrapeResult("shopee", [])

        slow_scraper = FakeScraper("shopee")
        slow_scraper.search_by_query.side_effect = slow
        service = _service(
            slow_scraper,
            options=RecommendationOptions(branch_timeout=0.05),
        )
        self.assertEqual(await service.gather(ProductQuery(title_hint="x")), [])

    async def test_gathered_candidates_are_copies(self) -> None:
        original = _make(1000)
        original.add_label(LABEL_BEST_DEAL)
        original.match_score = 0.5
        shopee = FakeScraper("shopee", [original])
        gathered = await _service(shopee).gather(ProductQuery(title_hint="x"))
        self.assertIsNot(gathered[0], original)
        self.assertEqual(gathered[0].labels, [])
        self.assertIsNone(gathered[0].match_score)


class TestRecommend(unittest.IsolatedAsyncioTestCase):

    async def test_all_scrapers_failing_gives_empty(self) -> None:
        shopee = FakeScraper("shopee")
        shopee.search_by_query.return_value = ScrapeResult(
            "shopee", error="HTTP 403"
        )
        tiki = FakeScraper("tiki")
        tiki.search_by_query.side_effect = RuntimeError("boom")
        result = await _service(shopee, tiki).recommend(
            ProductQuery(title_hint="x")
        )
        self.assertEqual(result, [])

    async def test_cheap_unrated_outlier_is_dropped(self) -> None:
        shopee = FakeScraper(
            "shopee",
            [_make(10, rating=0), _make(1000, rating=4.5), _make(1100, 4.8)],
        )
        result = await _service(shopee).recommend(ProductQuery(title_hint="x"))
        self.assertEqual(
            [c.price for c in result], [Decimal(1000), Decimal(1100)]
        )
        self.assertIn(LABEL_BEST_DEAL, result[0].labels)
        self.assertNotIn(LABEL_BEST_DEAL, result[1].labels)
        for candidate in result:
            self.assertIsNotNone(candidate.match_score)
            self.assertIsNotNone(candidate.fit_reason)

    async def test_orders_by_total_cost_across_platforms(self) -> None:
        shopee = FakeScraper("shopee", [_make(30_000), _make(10_000)])
        tiki = FakeScraper("tiki", [_make(20_000, platform="tiki")])
        result = await _service(shopee, tiki).recommend(
            ProductQuery(title_hint="x"), top_n=10
        )
        self.assertEqual(
            [c.price for c in result],
            [Decimal(10_000), Decimal(20_000), Decimal(30_000)],
        )

    async def test_top_n(self) -> None:
        shopee = FakeScraper(
            "shopee", [_make(p) for p in (1000, 2000, 3000, 4000)]
        )
        service = _service(shopee)
        query = ProductQuery(title_hint="x")
        self.assertEqual(len(await service.recommend(query)), 3)
        self.assertEqual(len(await service.recommend(query, top_n=2)), 2)
        self.assertEqual(await service.recommend(query, top_n=0), [])
        self.assertEqual(await service.recommend(query, top_n=-1), [])

    async def test_repeated_calls_are_idempotent(self) -> None:
        shopee = FakeScraper(
            "shopee", [_make(1000, 4.9), _make(1500, 4.2), _make(900, 3.0)]
        )
        service = _service(shopee)
        query = ProductQuery(title_hint="shopee")
        first = await service.recommend(query)
        second = await service.recommend(query)
        self.assertEqual(
            [(c.title, c.match_score, c.labels) for c in first],
            [(c.title, c.match_score, c.labels) for c in second],
        )

    async def test_records_metrics(self) -> None:
        metrics = MetricsService()
        shopee = FakeScraper("shopee", [_make(1000)])
        await _service(shopee, metrics=metrics).recommend(
            ProductQuery(title_hint="x")
        )
        self.assertEqual(metrics.snapshot().recommendations, 1)


class TestCancellation(unittest.IsolatedAsyncioTestCase):

    async def test_cancelling_recommend_cancels_every_branch(self) -> None:
        platforms = ("shopee", "lazada", "tiki")
        started: list[str] = []
        cancelled: list[str] = []
        all_started = asyncio.Event()

        def _blocking(platform: str):
            async def call(_query: ProductQuery) -> ScrapeResult:
                started.append(platform)
                if len(started) == len(platforms):
                    all_started.set()
                try:
                    await asyncio.sleep(30)
                except asyncio.CancelledError:
                    cancelled.append(platform)
                    raise
                return ScrapeResult(platform, [])
            return call

        scrapers = [FakeScraper(p) for p in platforms]
        for scraper in scrapers:
            scraper.search_by_query.side_effect = _blocking(scraper.platform)
        task = asyncio.create_task(
            _service(*scrapers).recommend(ProductQuery(title_hint="quạt"))
        )
        await asyncio.wait_for(all_started.wait(), timeout=1)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertCountEqual(cancelled, platforms)


class TestRank(unittest.TestCase):

    def test_empty(self) -> None:
        self.assertEqual(_service().rank([]), [])

    def test_labels_assigned_before_truncation(self) -> None:
        candidates = [_make(1000), _make(2000), _make(3000)]
        ranked = _service().rank(candidates)
        self.assertEqual(len(ranked), 3)
        best = [c for c in ranked if LABEL_BEST_DEAL in c.labels]
        self.assertEqual(len(best), 1)
        self.assertIs(best[0], ranked[0])


if __name__ == "__main__":
    unittest.main()
