# pricewatch/config/settings.py

"""Central configuration for the pricewatch engine."""

import os
from dataclasses import dataclass
from pathlib import Path

from curl_cffi.requests import BrowserTypeLiteral
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    """Central configuration for the pricewatch engine."""

    # --- Scraping ---
    REQUEST_DELAY: float = 0.5          # Seconds between retries
    REQUEST_TIMEOUT: int = 15           # Seconds before a request times out
    MAX_RETRIES: int = 3                # Retry count on transient failures
    MAX_SEARCH_RESULTS: int = 20        # Cap on candidates per search call
    SCRAPER_CONCURRENCY: int = 5        # Simultaneous requests per scraper
    RESULT_CACHE_TTL: float = 120.0     # Keyword cache lifetime (secs)

    # --- Resilience ---
    CIRCUIT_BREAKER_THRESHOLD: int = 3  # Consecutive failures to trip
    CIRCUIT_BREAKER_COOLDOWN: float = 60.0
    MAX_DELAY_MULTIPLIER: int = 8       # Cap for adaptive backoff
    CAPTCHA_KEYWORDS: list[str] = [
        "captcha",
        "verify you are human",
        "unusual traffic",
        "automated requests",
    ]
    RESPECT_ROBOTS_TXT: bool = _env_bool(
        "PRICEWATCH_RESPECT_ROBOTS", True
    )
    ROBOTS_USER_AGENT: str = "*"

    # --- Browser Impersonation ---
    IMPERSONATE_BROWSER: BrowserTypeLiteral = "chrome131"
    DEFAULT_HEADERS: dict[str, str] = {
        "Accept": (
            "text/html,application/xhtml+xml,"
            "application/xml;q=0.9,image/avif,"
            "image/webp,image/apng,*/*;q=0.8"
        ),
        "Accept-Language": "vi-VN,vi;q=0.9,en-US;q=0.8,en;q=0.7",
        "sec-ch-ua": (
            '"Google Chrome";v="131", '
            '"Chromium";v="131", '
            '"Not_A Brand";v="24"'
        ),
        "sec-ch-ua-mobile": "?0",
        "sec-ch-ua-platform": '"Windows"',
        "Upgrade-Insecure-Requests": "1",
    }

    # --- Paths ---
    BASE_DIR: Path = Path(__file__).resolve().parent.parent.parent
    LOGS_DIR: Path = BASE_DIR / "logs"

    # --- Sources (registry consumed by pricewatch.scrapers.registry) ---
    AVAILABLE_SOURCES: list[dict[str, str]] = [
        {
            "id": "shopee",
            "label": "Shopee",
            "scraper": "pricewatch.scrapers.shopee_scraper.ShopeeScraper",
            "homepage": "https://shopee.vn/",
        },
        {
            "id": "lazada",
            "label": "Lazada",
            "scraper": "pricewatch.scrapers.lazada_scraper.LazadaScraper",
            "homepage": "https://www.lazada.vn/",
        },
        {
            "id": "tiki",
            "label": "Tiki",
            "scraper": "pricewatch.scrapers.tiki_scraper.TikiScraper",
            "homepage": "https://tiki.vn/",
        },
    ]


@dataclass
class RecommendationOptions:
    """Weights and thresholds consumed by the ranking stage.

    The weights are used as given and need not sum to 1.0.
    """

    weight_price: float = 0.7
    weight_rating: float = 0.2
    weight_shipping: float = 0.1
    weight_title_similarity: float = 0.2
    trusted_shop_sales_threshold: int = 50
    branch_timeout: float | None = None  # Seconds per scraper call

    def validate(self) -> None:
        """Raise ``ValueError`` when a knob is missing or negative."""
        for name in (
            "weight_price",
            "weight_rating",
            "weight_shipping",
            "weight_title_similarity",
            "trusted_shop_sales_threshold",
        ):
            value = getattr(self, name)
            if value is None:
                msg = f"Recommendation option '{name}' is not set"
                raise ValueError(msg)
            if value < 0:
                msg = (
                    f"Recommendation option '{name}' must be "
                    f"non-negative, got {value}"
                )
                raise ValueError(msg)
        if self.branch_timeout is not None and self.branch_timeout <= 0:
            msg = "branch_timeout must be positive when set"
            raise ValueError(msg)

    @classmethod
    def from_env(cls) -> "RecommendationOptions":
        """Build options from ``PRICEWATCH_*`` environment variables."""
        defaults = cls()
        branch_raw = os.getenv("PRICEWATCH_BRANCH_TIMEOUT")
        return cls(
            weight_price=float(
                os.getenv("PRICEWATCH_WEIGHT_PRICE", defaults.weight_price)
            ),
            weight_rating=float(
                os.getenv("PRICEWATCH_WEIGHT_RATING", defaults.weight_rating)
            ),
            weight_shipping=float(
                os.getenv(
                    "PRICEWATCH_WEIGHT_SHIPPING", defaults.weight_shipping
                )
            ),
            weight_title_similarity=float(
                os.getenv(
                    "PRICEWATCH_WEIGHT_TITLE_SIMILARITY",
                    defaults.weight_title_similarity,
                )
            ),
            trusted_shop_sales_threshold=int(
                os.getenv(
                    "PRICEWATCH_TRUSTED_SHOP_SALES_THRESHOLD",
                    defaults.trusted_shop_sales_threshold,
                )
            ),
            branch_timeout=float(branch_raw) if branch_raw else None,
        )
