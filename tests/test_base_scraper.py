# tests/test_base_scraper.py

"""Tests for BaseScraper contract, resilience and metadata fallback."""

import asyncio
import json
import time
import unittest
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

from bs4 import BeautifulSoup

from pricewatch.config.settings import Settings
from pricewatch.models.product import ProductCandidate, ProductQuery
from pricewatch.scrapers.base_scraper import (
    BaseScraper,
    DisallowedByRobots,
    UpstreamError,
)
from pricewatch.services.metrics_service import MetricsService


def _response(status: int = 200, text: str = "{}") -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.text = text
    return resp


def _session(*responses: MagicMock) -> MagicMock:
    session = MagicMock()
    if len(responses) == 1:
        session.get = AsyncMock(return_value=responses[0])
    else:
        session.get = AsyncMock(side_effect=list(responses))
    return session


class _StubScraper(BaseScraper):
    """Concrete scraper with scriptable hooks."""

    platform = "stub"
    homepage = "https://example.com/"

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.search_impl: AsyncMock = AsyncMock(return_value=[])
        self.fetch_impl: AsyncMock = AsyncMock(return_value=None)

    async def _search(
        self, keyword: str, limit: int,
    ) -> list[ProductCandidate]:
        result: list[ProductCandidate] = await self.search_impl(
            keyword, limit
        )
        return result

    async def _fetch_product(
        self, query: ProductQuery,
    ) -> ProductCandidate | None:
        result: ProductCandidate | None = await self.fetch_impl(query)
        return result

    # --- Public accessors for protected members ---

    @property
    def circuit_open(self) -> bool:
        return self._circuit_open

    @property
    def current_delay(self) -> float:
        return self._current_delay

    async def fetch_get(self, url: str) -> Any:
        return await self._fetch_get(url, self._headers())

    async def get_json(self, url: str) -> Any:
        return await self._get_json(url)

    async def get_page(self, url: str) -> BeautifulSoup:
        return await self._get_page(url)

    def candidate_from_page(self, html: str, url: str) -> Any:
        return self._candidate_from_page(BeautifulSoup(html, "lxml"), url)


def _candidate(title: str = "Bàn phím cơ", price: int = 890_000) -> Any:
    return ProductCandidate(platform="stub", title=title, price=Decimal(price))


class TestBuildKeyword(unittest.TestCase):

    def test_prefers_title_hint(self) -> None:
        query = ProductQuery(title_hint=" tai nghe ", product_id="123")
        self.assertEqual(BaseScraper.build_keyword(query), "tai nghe")

    def test_cleans_product_id(self) -> None:
        query = ProductQuery(product_id="i.123.456")
        self.assertEqual(BaseScraper.build_keyword(query), "i 123 456")


class TestSearchContract(unittest.IsolatedAsyncioTestCase):
    """search_by_query never raises for upstream conditions."""

    async def test_returns_candidates_and_records_metrics(self) -> None:
        metrics = MetricsService()
        scraper = _StubScraper(metrics=metrics)
        scraper.search_impl.return_value = [_candidate()]
        result = await scraper.search_by_query(
            ProductQuery(title_hint="bàn phím")
        )
        self.assertTrue(result.ok)
        self.assertEqual(len(result.candidates), 1)
        snap = metrics.snapshot()
        self.assertEqual(snap.scraper_calls["stub"], 1)
        self.assertEqual(snap.scraper_failures["stub"], 0)

    async def test_empty_keyword_skips_upstream(self) -> None:
        scraper = _StubScraper()
        result = await scraper.search_by_query(ProductQuery())
        self.assertEqual(result.candidates, [])
        self.assertIsNone(result.error)
        scraper.search_impl.assert_not_awaited()

    async def test_upstream_error_sets_error(self) -> None:
        metrics = MetricsService()
        scraper = _StubScraper(metrics=metrics)
        scraper.search_impl.side_effect = UpstreamError("HTTP 503")
        result = await scraper.search_by_query(ProductQuery(title_hint="x"))
        self.assertFalse(result.ok)
        self.assertEqual(result.error, "HTTP 503")
        self.assertEqual(result.candidates, [])
        self.assertEqual(metrics.snapshot().scraper_failures["stub"], 1)

    async def test_robots_refusal_is_silent_empty(self) -> None:
        scraper = _StubScraper()
        scraper.search_impl.side_effect = DisallowedByRobots("nope")
        result = await scraper.search_by_query(ProductQuery(title_hint="x"))
        self.assertTrue(result.ok)
        self.assertEqual(result.candidates, [])

    async def test_repeated_keyword_served_from_cache(self) -> None:
        scraper = _StubScraper()
        scraper.search_impl.return_value = [_candidate()]
        await scraper.search_by_query(ProductQuery(title_hint="Bàn Phím"))
        second = await scraper.search_by_query(
            ProductQuery(title_hint="bàn  phím")
        )
        self.assertTrue(second.from_cache)
        self.assertEqual(len(second.candidates), 1)
        self.assertEqual(scraper.search_impl.await_count, 1)

    async def test_failed_search_not_cached(self) -> None:
        scraper = _StubScraper()
        scraper.search_impl.side_effect = [UpstreamError("down"), []]
        await scraper.search_by_query(ProductQuery(title_hint="x"))
        await scraper.search_by_query(ProductQuery(title_hint="x"))
        self.assertEqual(scraper.search_impl.await_count, 2)

    async def test_limit_metadata_caps_results(self) -> None:
        scraper = _StubScraper()
        scraper.search_impl.return_value = [
            _candidate(f"item {i}") for i in range(10)
        ]
        result = await scraper.search_by_query(
            ProductQuery(title_hint="item", metadata={"limit": "4"})
        )
        self.assertEqual(len(result.candidates), 4)
        # Full upstream page is requested so the cache can serve any limit
        scraper.search_impl.assert_awaited_once_with(
            "item", Settings.MAX_SEARCH_RESULTS
        )

    async def test_concurrent_searches_are_bounded(self) -> None:
        in_flight = 0
        peak = 0

        async def slow_get(*_args: Any, **_kwargs: Any) -> MagicMock:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return _response(text="[]")

        session = MagicMock()
        session.get = AsyncMock(side_effect=slow_get)
        scraper = _StubScraper(session=session)

        async def search(keyword: str, _limit: int) -> list[ProductCandidate]:
            await scraper.get_json(f"https://example.com/s?q={keyword}")
            return []

        scraper.search_impl.side_effect = search
        results = await asyncio.gather(
            *(
                scraper.search_by_query(ProductQuery(title_hint=f"kw {i}"))
                for i in range(12)
            )
        )
        self.assertTrue(all(r.ok for r in results))
        self.assertEqual(session.get.await_count, 12)
        self.assertEqual(peak, Settings.SCRAPER_CONCURRENCY)


class TestGetByUrlContract(unittest.IsolatedAsyncioTestCase):

    async def test_platform_mismatch_returns_empty(self) -> None:
        scraper = _StubScraper()
        result = await scraper.get_by_url(
            ProductQuery(platform="tiki", canonical_url="https://tiki.vn/x")
        )
        self.assertEqual(result.candidates, [])
        scraper.fetch_impl.assert_not_awaited()

    async def test_missing_url_and_id_returns_empty(self) -> None:
        scraper = _StubScraper()
        result = await scraper.get_by_url(ProductQuery(platform="stub"))
        self.assertEqual(result.candidates, [])
        scraper.fetch_impl.assert_not_awaited()

    async def test_at_most_one_candidate(self) -> None:
        scraper = _StubScraper()
        scraper.fetch_impl.return_value = _candidate()
        result = await scraper.get_by_url(
            ProductQuery(platform="STUB", product_id="42")
        )
        self.assertEqual(len(result.candidates), 1)

    async def test_not_found_is_empty_success(self) -> None:
        scraper = _StubScraper()
        result = await scraper.get_by_url(
            ProductQuery(platform="stub", product_id="42")
        )
        self.assertTrue(result.ok)
        self.assertIsNone(result.first)


class TestFetchResilience(unittest.IsolatedAsyncioTestCase):
    """Retries, circuit breaker, CAPTCHA detection."""

    async def test_success_returns_response(self) -> None:
        scraper = _StubScraper(session=_session(_response(200, '{"a": 1}')))
        resp = await scraper.fetch_get("https://example.com/api")
        self.assertIsNotNone(resp)

    async def test_retries_then_gives_up(self) -> None:
        session = _session(_response(500))
        scraper = _StubScraper(session=session)
        resp = await scraper.fetch_get("https://example.com/api")
        self.assertIsNone(resp)
        self.assertEqual(session.get.await_count, Settings.MAX_RETRIES)

    async def test_404_is_not_retried(self) -> None:
        session = _session(_response(404))
        scraper = _StubScraper(session=session)
        self.assertIsNone(await scraper.fetch_get("https://example.com/x"))
        self.assertEqual(session.get.await_count, 1)

    async def test_network_exception_is_retried(self) -> None:
        session = MagicMock()
        session.get = AsyncMock(
            side_effect=[ConnectionError("reset"), _response(200, "{}")]
        )
        scraper = _StubScraper(session=session)
        self.assertIsNotNone(await scraper.fetch_get("https://example.com/"))

    async def test_circuit_opens_after_threshold(self) -> None:
        session = _session(_response(500))
        scraper = _StubScraper(session=session)
        for _ in range(Settings.CIRCUIT_BREAKER_THRESHOLD):
            await scraper.fetch_get("https://example.com/api")
        self.assertTrue(scraper.circuit_open)
        calls_before = session.get.await_count
        self.assertIsNone(await scraper.fetch_get("https://example.com/api"))
        self.assertEqual(session.get.await_count, calls_before)

    async def test_circuit_half_opens_after_cooldown(self) -> None:
        session = _session(_response(500))
        scraper = _StubScraper(session=session)
        for _ in range(Settings.CIRCUIT_BREAKER_THRESHOLD):
            await scraper.fetch_get("https://example.com/api")
        session.get = AsyncMock(return_value=_response(200, "{}"))
        with patch(
            "pricewatch.scrapers.base_scraper.time.time",
            return_value=time.time() + Settings.CIRCUIT_BREAKER_COOLDOWN + 1,
        ):
            resp = await scraper.fetch_get("https://example.com/api")
        self.assertIsNotNone(resp)
        self.assertFalse(scraper.circuit_open)

    async def test_captcha_page_rejected(self) -> None:
        captcha = _response(200, "<html>Please complete the captcha</html>")
        session = _session(captcha)
        scraper = _StubScraper(session=session)
        self.assertIsNone(await scraper.fetch_get("https://example.com/p"))
        self.assertEqual(session.get.await_count, Settings.MAX_RETRIES)

    async def test_cloudflare_challenge_rejected(self) -> None:
        page = _response(
            200, "<html><title>Just a moment...</title></html>"
        )
        scraper = _StubScraper(session=_session(page))
        self.assertIsNone(await scraper.fetch_get("https://example.com/p"))

    async def test_rate_limit_escalates_delay(self) -> None:
        sleep = AsyncMock()
        with (
            patch.object(Settings, "REQUEST_DELAY", 0.01),
            patch("pricewatch.scrapers.base_scraper.asyncio.sleep", sleep),
        ):
            scraper = _StubScraper(
                session=_session(_response(429), _response(200, "{}"))
            )
            await scraper.fetch_get("https://example.com/api")
            sleep.assert_awaited_once_with(0.02)
            # Reset by the later success
            self.assertAlmostEqual(scraper.current_delay, 0.01)


class TestJsonAndPages(unittest.IsolatedAsyncioTestCase):

    async def test_get_json_decodes(self) -> None:
        scraper = _StubScraper(
            session=_session(_response(200, json.dumps({"ok": True})))
        )
        self.assertEqual(
            await scraper.get_json("https://example.com/api"), {"ok": True}
        )

    async def test_get_json_malformed_raises_upstream(self) -> None:
        scraper = _StubScraper(session=_session(_response(200, "{oops")))
        with self.assertRaises(UpstreamError):
            await scraper.get_json("https://example.com/api")

    async def test_get_json_no_response_raises_upstream(self) -> None:
        scraper = _StubScraper(session=_session(_response(503)))
        with self.assertRaises(UpstreamError):
            await scraper.get_json("https://example.com/api")

    async def test_get_page_falls_back_to_cloudscraper(self) -> None:
        scraper = _StubScraper(session=_session(_response(403)))
        html = "<html><body><h1>ok</h1></body></html>"
        with patch.object(
            scraper, "_cloudscraper_get", return_value=html
        ) as fallback:
            soup = await scraper.get_page("https://example.com/p")
        fallback.assert_called_once()
        self.assertEqual(soup.h1.get_text(), "ok")

    async def test_get_page_raises_when_fallback_fails(self) -> None:
        scraper = _StubScraper(session=_session(_response(403)))
        with (
            patch.object(scraper, "_cloudscraper_get", return_value=None),
            self.assertRaises(UpstreamError),
        ):
            await scraper.get_page("https://example.com/p")


class TestRobots(unittest.IsolatedAsyncioTestCase):

    async def test_disallowed_path_raises_and_skips_request(self) -> None:
        robots = _response(200, "User-agent: *\nDisallow: /private\n")
        session = _session(robots)
        with patch.object(Settings, "RESPECT_ROBOTS_TXT", True):
            scraper = _StubScraper(session=session)
            with self.assertRaises(DisallowedByRobots):
                await scraper.fetch_get("https://example.com/private/1")
        # Only robots.txt itself was fetched
        self.assertEqual(session.get.await_count, 1)
        self.assertEqual(
            session.get.await_args.args[0], "https://example.com/robots.txt"
        )

    async def test_robots_fetched_once(self) -> None:
        session = _session(
            _response(200, "User-agent: *\nDisallow: /private\n"),
            _response(200, "{}"),
            _response(200, "{}"),
        )
        with patch.object(Settings, "RESPECT_ROBOTS_TXT", True):
            scraper = _StubScraper(session=session)
            await scraper.fetch_get("https://example.com/a")
            await scraper.fetch_get("https://example.com/b")
        self.assertEqual(session.get.await_count, 3)

    async def test_missing_robots_allows_all(self) -> None:
        session = _session(_response(404), _response(200, "{}"))
        with patch.object(Settings, "RESPECT_ROBOTS_TXT", True):
            scraper = _StubScraper(session=session)
            resp = await scraper.fetch_get("https://example.com/private")
        self.assertIsNotNone(resp)


class TestStructuredDataFallback(unittest.TestCase):

    def test_json_ld_product(self) -> None:
        html = """
        <html><head><script type="application/ld+json">
        {"@context": "https://schema.org", "@graph": [
          {"@type": "BreadcrumbList"},
          {"@type": "Product", "name": "Nồi chiên không dầu",
           "image": ["https://img/1.jpg"],
           "aggregateRating": {"ratingValue": "4.7", "reviewCount": 210},
           "offers": {"@type": "Offer", "price": "1590000",
                      "availability": "https://schema.org/InStock",
                      "seller": {"name": "Philips Official"}}}
        ]}
        </script></head><body></body></html>
        """
        c = _StubScraper().candidate_from_page(html, "https://example.com/p")
        self.assertIsNotNone(c)
        self.assertEqual(c.title, "Nồi chiên không dầu")
        self.assertEqual(c.price, Decimal(1_590_000))
        self.assertEqual(c.shop_name, "Philips Official")
        self.assertAlmostEqual(c.shop_rating, 4.7)
        self.assertEqual(c.sold_count, 210)
        self.assertFalse(c.is_out_of_stock)
        self.assertEqual(c.thumbnail_url, "https://img/1.jpg")

    def test_meta_tags_when_no_json_ld(self) -> None:
        html = """
        <html><head>
        <meta property="og:title" content="Sạc dự phòng 10000mAh">
        <meta property="product:price:amount" content="350000">
        <meta property="og:image" content="https://img/2.jpg">
        </head></html>
        """
        c = _StubScraper().candidate_from_page(html, "https://example.com/q")
        self.assertIsNotNone(c)
        self.assertEqual(c.price, Decimal(350_000))
        self.assertEqual(c.product_url, "https://example.com/q")

    def test_nothing_usable_returns_none(self) -> None:
        html = "<html><head><title>Trang chủ</title></head></html>"
        self.assertIsNone(
            _StubScraper().candidate_from_page(html, "https://example.com/")
        )


if __name__ == "__main__":
    unittest.main()
