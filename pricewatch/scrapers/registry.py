# pricewatch/scrapers/registry.py

"""Builds scraper instances from the configured source list."""

import importlib
import logging
from typing import Any

from pricewatch.config.settings import Settings
from pricewatch.scrapers.base_scraper import BaseScraper
from pricewatch.services.metrics_service import MetricsService

logger = logging.getLogger("pricewatch.registry")


def _load_scraper_class(dotted_path: str) -> type[Any]:
    """Dynamically import a scraper class from its dotted module path."""
    module_path, class_name = dotted_path.rsplit(".", 1)
    module = importlib.import_module(module_path)
    cls: type[Any] = getattr(module, class_name)
    return cls


def resolve_sources(
    source_ids: list[str] | None = None,
) -> list[dict[str, str]]:
    """Return the configured sources, optionally restricted to *source_ids*.

    Raises ``ValueError`` for an id that is not configured.
    """
    sources = Settings.AVAILABLE_SOURCES
    if not source_ids:
        return list(sources)
    by_id = {src["id"]: src for src in sources}
    unknown = [sid for sid in source_ids if sid not in by_id]
    if unknown:
        msg = (
            f"Unknown source(s): {', '.join(unknown)}. "
            f"Available: {', '.join(by_id)}"
        )
        raise ValueError(msg)
    return [by_id[sid] for sid in source_ids]


def build_scrapers(
    metrics: MetricsService | None = None,
    source_ids: list[str] | None = None,
) -> list[BaseScraper]:
    """Instantiate one scraper per selected source, sharing *metrics*."""
    scrapers: list[BaseScraper] = []
    for src in resolve_sources(source_ids):
        scraper_cls = _load_scraper_class(src["scraper"])
        scrapers.append(scraper_cls(metrics=metrics))
        logger.debug("Registered scraper %s", src["id"])
    return scrapers
