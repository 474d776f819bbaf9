# main.py

"""Entry point for the pricewatch command-line interface."""

import argparse
import asyncio
import logging
import sys

from pricewatch.config.logging_config import setup_logging
from pricewatch.config.settings import Settings

logger = logging.getLogger("pricewatch.main")


def _positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        msg = f"must be a positive integer, got {value}"
        raise argparse.ArgumentTypeError(msg)
    return number


def _positive_float(value: str) -> float:
    number = float(value)
    if number <= 0:
        msg = f"must be positive, got {value}"
        raise argparse.ArgumentTypeError(msg)
    return number


def _build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the CLI."""
    valid_ids = ", ".join(s["id"] for s in Settings.AVAILABLE_SOURCES)

    parser = argparse.ArgumentParser(
        prog="pricewatch",
        description=(
            "Vietnamese marketplace price comparison and "
            "recommendation engine."
        ),
        epilog=f"Available sources: {valid_ids}",
    )
    parser.add_argument(
        "target",
        nargs="?",
        default=None,
        help="Product URL or search keyword.",
    )
    parser.add_argument(
        "-m",
        "--mode",
        choices=["recommend", "search", "compare"],
        default="recommend",
        help="What to do with the target (default: recommend).",
    )
    parser.add_argument(
        "-n",
        "--top",
        type=_positive_int,
        default=3,
        help="Number of results (default: 3; search uses it as limit).",
    )
    parser.add_argument(
        "-s",
        "--sources",
        default=None,
        help="Comma-separated source IDs (default: all).",
    )
    parser.add_argument(
        "-t",
        "--timeout",
        type=_positive_float,
        default=None,
        help="Overall time budget in seconds for scraper calls.",
    )
    parser.add_argument(
        "-f",
        "--format",
        choices=["json", "table"],
        default="json",
        dest="output_format",
        help="Output format (default: json).",
    )
    parser.add_argument(
        "--metrics",
        action="store_true",
        default=False,
        help="Print a scraper metrics snapshot to stderr.",
    )
    parser.add_argument(
        "--health",
        action="store_true",
        default=False,
        help="Run a connectivity health check on all sources.",
    )
    return parser


def _run(args: argparse.Namespace) -> int:
    from pricewatch.cli import runner

    if args.health:
        return asyncio.run(runner.run_health_check(args.sources))
    if args.mode == "search":
        return asyncio.run(
            runner.cli_search(
                keyword=args.target,
                source_csv=args.sources,
                limit=args.top,
                output_format=args.output_format,
                show_metrics=args.metrics,
            )
        )
    if args.mode == "compare":
        return asyncio.run(
            runner.cli_compare(
                url=args.target,
                source_csv=args.sources,
                output_format=args.output_format,
            )
        )
    return asyncio.run(
        runner.cli_recommend(
            target=args.target,
            source_csv=args.sources,
            top_n=args.top,
            timeout=args.timeout,
            output_format=args.output_format,
            show_metrics=args.metrics,
        )
    )


def main(argv: list[str] | None = None) -> None:
    """Parse arguments, route to the requested mode and exit."""
    log_file = setup_logging()
    logger.info("pricewatch starting, log file: %s", log_file)

    parser = _build_parser()
    args = parser.parse_args(argv)
    if not args.health and not args.target:
        parser.error("a product URL or keyword is required")

    try:
        exit_code = _run(args)
    except Exception:
        logger.critical("Fatal error during CLI run", exc_info=True)
        raise
    finally:
        logger.info("pricewatch shutting down")
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
