# pricewatch/filters/deduplicator.py

"""Candidate deduplication across marketplace result pages."""

import logging
import re

from pricewatch.models.product import ProductCandidate

logger = logging.getLogger("pricewatch.filters")

_STRIP_PARAMS_RE = re.compile(r"[?#].*$")
_NON_WORD_RE = re.compile(r"[^\w\s]")


class CandidateDeduplicator:
    """Drop repeated listings, keeping the cheapest total per group."""

    @staticmethod
    def normalise_url(url: str) -> str:
        """Strip query, fragment and trailing slash; lowercase."""
        if not url:
            return ""
        return _STRIP_PARAMS_RE.sub("", url).rstrip("/").lower()

    @staticmethod
    def normalise_title(title: str) -> str:
        """Lowercase, drop punctuation, collapse whitespace.

        ``\\w`` keeps Vietnamese letters, which ASCII-only cleaning would
        erase.
        """
        return " ".join(_NON_WORD_RE.sub(" ", title.lower()).split())

    @staticmethod
    def deduplicate(
        candidates: list[ProductCandidate],
    ) -> tuple[list[ProductCandidate], int]:
        """Remove duplicates by URL, then by same-platform title.

        Returns the kept list (first-seen order) and the removed count.
        """
        seen_urls: dict[str, int] = {}
        seen_titles: dict[str, int] = {}
        kept: list[ProductCandidate] = []
        removed = 0

        for candidate in candidates:
            url_key = CandidateDeduplicator.normalise_url(
                candidate.product_url
            )
            title_key = (
                f"{candidate.platform}:"
                f"{CandidateDeduplicator.normalise_title(candidate.title)}"
            )

            existing_idx = None
            if url_key and url_key in seen_urls:
                existing_idx = seen_urls[url_key]
            elif title_key in seen_titles:
                existing_idx = seen_titles[title_key]

            if existing_idx is not None:
                existing = kept[existing_idx]
                if 0 < candidate.total_cost < existing.total_cost:
                    kept[existing_idx] = candidate
                removed += 1
                continue

            idx = len(kept)
            if url_key:
                seen_urls[url_key] = idx
            seen_titles[title_key] = idx
            kept.append(candidate)

        if removed:
            logger.info(
                "Deduplication removed %d duplicate candidates", removed
            )
        return kept, removed
