# pricewatch/cli/runner.py

"""Headless CLI runner for recommendation, search, compare and health."""

import json
import logging
import sys
from typing import Any

from rich.console import Console
from rich.table import Table

from pricewatch.config.settings import RecommendationOptions
from pricewatch.models.product import ProductCandidate, ProductQuery
from pricewatch.scrapers.base_scraper import BaseScraper
from pricewatch.scrapers.registry import build_scrapers
from pricewatch.services.compare_service import (
    CompareResult,
    CompareService,
    ComparisonError,
)
from pricewatch.services.link_processor import (
    LinkProcessingError,
    LinkProcessor,
)
from pricewatch.services.metrics_service import MetricsService
from pricewatch.services.multi_platform_search import (
    MultiPlatformSearchRequest,
    MultiPlatformSearchService,
)
from pricewatch.services.recommendation_service import (
    RecommendationService,
)

logger = logging.getLogger("pricewatch.cli")

EXIT_OK = 0
EXIT_EMPTY = 1
EXIT_REJECTED = 2

# Stderr console for status messages so stdout stays clean for JSON
_err = Console(stderr=True)


def parse_source_ids(source_csv: str | None) -> list[str] | None:
    """Split a comma-separated source list; ``None`` means all."""
    if source_csv is None:
        return None
    return [s.strip() for s in source_csv.split(",") if s.strip()] or None


def _build(
    source_csv: str | None, metrics: MetricsService,
) -> list[BaseScraper]:
    """Build scrapers, exiting with the rejected-input code on bad ids."""
    try:
        return build_scrapers(metrics, parse_source_ids(source_csv))
    except ValueError as exc:
        _err.print(f"[red]{exc}[/red]")
        raise SystemExit(EXIT_REJECTED) from exc


async def _close_all(scrapers: list[BaseScraper]) -> None:
    for scraper in scrapers:
        try:
            await scraper.aclose()
        except Exception:
            logger.debug(
                "Failed to close %s session", scraper.platform, exc_info=True
            )


def is_url(text: str) -> bool:
    return text.strip().lower().startswith(("http://", "https://"))


def candidate_to_dict(c: ProductCandidate) -> dict[str, Any]:
    """Serialise a candidate for JSON output (decimals as strings)."""
    return {
        "platform": c.platform,
        "title": c.title,
        "price": str(c.price),
        "shipping_cost": str(c.shipping_cost),
        "total_cost": str(c.total_cost),
        "shop_name": c.shop_name,
        "shop_rating": c.shop_rating,
        "sold_count": c.sold_count,
        "product_url": c.product_url,
        "thumbnail_url": c.thumbnail_url,
        "original_price": (
            str(c.original_price) if c.original_price is not None else None
        ),
        "discount_percent": c.discount_percent,
        "is_out_of_stock": c.is_out_of_stock,
        "is_free_ship": c.is_free_ship,
        "seller_type": c.seller_type,
        "match_score": c.match_score,
        "fit_reason": c.fit_reason,
        "labels": list(c.labels),
    }


def _compare_to_dict(result: CompareResult) -> dict[str, Any]:
    return {
        "source": candidate_to_dict(result.source),
        "source_url": result.source_url,
        "best": (
            {
                "platform": result.best.candidate.platform,
                "url": result.best.candidate.product_url,
                "total_cost": str(result.best.total_cost),
                "confidence": result.best.similarity,
            }
            if result.best
            else None
        ),
        "candidates": [
            {
                **candidate_to_dict(c.candidate),
                "similarity": c.similarity,
                "reasons": c.reasons,
            }
            for c in result.candidates
        ],
        "warnings": result.warnings,
    }


def _write_json(payload: object) -> None:
    json.dump(payload, sys.stdout, ensure_ascii=False, indent=2)
    sys.stdout.write("\n")


def _print_table(candidates: list[ProductCandidate], title: str) -> None:
    """Render a Rich table of candidates to stdout."""
    table = Table(title=title, show_lines=True, title_style="bold cyan")
    table.add_column("#", style="dim", width=4)
    table.add_column("Title", max_width=50)
    table.add_column("Total", justify="right", style="green")
    table.add_column("Rating", justify="center")
    table.add_column("Shop")
    table.add_column("Platform", style="magenta")
    table.add_column("Labels", style="yellow")
    table.add_column("URL", overflow="fold", style="dim")

    for idx, c in enumerate(candidates, 1):
        table.add_row(
            str(idx),
            c.title[:50],
            f"{c.total_cost:,.0f} ₫",
            f"{c.shop_rating:.1f}" if c.shop_rating else "—",
            c.shop_name or "—",
            c.platform,
            ", ".join(c.labels) or (c.fit_reason or ""),
            c.product_url,
        )
    Console().print(table)


def _print_metrics(metrics: MetricsService) -> None:
    _err.print_json(data=metrics.snapshot().to_dict())


async def cli_recommend(
    target: str,
    source_csv: str | None,
    top_n: int,
    timeout: float | None,
    output_format: str,
    show_metrics: bool = False,
) -> int:
    """Rank offers for a product URL or keyword; return an exit code."""
    if is_url(target):
        try:
            query = LinkProcessor.process_url(target)
        except LinkProcessingError as exc:
            _err.print(f"[red]Rejected URL: {exc}[/red]")
            return EXIT_REJECTED
    else:
        query = ProductQuery(title_hint=target.strip())
    if not (query.canonical_url or query.title_hint):
        _err.print("[red]Nothing to search for.[/red]")
        return EXIT_REJECTED

    metrics = MetricsService()
    scrapers = _build(source_csv, metrics)
    try:
        service = RecommendationService(
            scrapers, RecommendationOptions.from_env(), metrics
        )
        _err.print(
            f"[bold]Recommending:[/bold] {query.title_hint or target}  "
            f"[dim]platform={query.platform or 'all'}[/dim]"
        )
        candidates = await service.recommend(query, top_n, timeout)
    finally:
        await _close_all(scrapers)

    if show_metrics:
        _print_metrics(metrics)
    if not candidates:
        _err.print("[yellow]No recommendations found.[/yellow]")
        return EXIT_EMPTY

    if output_format == "table":
        _print_table(candidates, "Recommendations")
    else:
        _write_json([candidate_to_dict(c) for c in candidates])
    return EXIT_OK


async def cli_search(
    keyword: str,
    source_csv: str | None,
    limit: int,
    output_format: str,
    show_metrics: bool = False,
) -> int:
    """Run a multi-platform keyword search; return an exit code."""
    metrics = MetricsService()
    scrapers = _build(source_csv, metrics)
    try:
        service = MultiPlatformSearchService(scrapers)
        response = await service.search(
            MultiPlatformSearchRequest(keyword=keyword, limit=limit)
        )
    finally:
        await _close_all(scrapers)

    for platform, error in response.metadata.platform_errors.items():
        _err.print(f"[red]Error on {platform}: {error}[/red]")
    if show_metrics:
        _print_metrics(metrics)
    if not response.products:
        _err.print("[yellow]No products found.[/yellow]")
        return EXIT_EMPTY

    detail = (
        f" ({response.metadata.deduplicated_count} deduped)"
        if response.metadata.deduplicated_count
        else ""
    )
    _err.print(
        f"[green]✓ {len(response.products)} of "
        f"{response.total_results} products{detail}[/green]"
    )
    if output_format == "table":
        _print_table(response.products, "Search Results")
    else:
        _write_json([candidate_to_dict(c) for c in response.products])
    return EXIT_OK


async def cli_compare(
    url: str,
    source_csv: str | None,
    output_format: str,
) -> int:
    """Compare one product URL across marketplaces; return an exit code."""
    scrapers = _build(source_csv, MetricsService())
    try:
        result = await CompareService(scrapers).compare_by_url(url)
    except LinkProcessingError as exc:
        _err.print(f"[red]Rejected URL: {exc}[/red]")
        return EXIT_REJECTED
    except ComparisonError as exc:
        _err.print(f"[yellow]{exc}[/yellow]")
        return EXIT_EMPTY
    finally:
        await _close_all(scrapers)

    for warning in result.warnings:
        _err.print(f"[yellow]{warning}[/yellow]")
    if output_format == "table":
        ranked = sorted(
            result.candidates,
            key=lambda c: (-c.similarity, c.total_cost),
        )
        _print_table([c.candidate for c in ranked], result.source.title)
    else:
        _write_json(_compare_to_dict(result))
    return EXIT_OK if result.candidates else EXIT_EMPTY


async def run_health_check(source_csv: str | None = None) -> int:
    """Run connectivity health check on all sources."""
    from pricewatch.services.health_checker import HealthChecker

    _err.print("[bold]Running marketplace health check...[/bold]")
    scrapers = _build(source_csv, MetricsService())
    try:
        results = await HealthChecker(scrapers).check_all()
    finally:
        await _close_all(scrapers)

    table = Table(
        title="Source Health Check",
        show_lines=True,
        title_style="bold cyan",
    )
    table.add_column("Source", style="bold")
    table.add_column("Status", justify="center")
    table.add_column("Latency", justify="right")
    table.add_column("Notes", style="dim")

    any_down = False
    for r in results:
        if r.status == "ok":
            status = "[green]✅ OK[/green]"
        elif r.status == "slow":
            status = "[yellow]⚠️  SLOW[/yellow]"
        else:
            status = "[red]❌ DOWN[/red]"
            any_down = True
        latency = f"{r.latency_ms:.0f}ms" if r.latency_ms > 0 else "—"
        table.add_row(r.source_id, status, latency, r.message)

    Console().print(table)
    return EXIT_EMPTY if any_down else EXIT_OK
