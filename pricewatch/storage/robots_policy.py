# pricewatch/storage/robots_policy.py

"""Per-scraper robots.txt disallow list."""

import logging
from urllib import robotparser
from urllib.parse import urlparse

logger = logging.getLogger("pricewatch.robots")


class RobotsPolicy:
    """Holds the parsed robots.txt rules for a single marketplace host.

    Until :meth:`load` is called (or when loading failed) every path is
    allowed.  The owning scraper fetches the file once and feeds it here.
    """

    def __init__(self, user_agent: str = "*") -> None:
        self.user_agent = user_agent
        self._parser: robotparser.RobotFileParser | None = None
        self.loaded = False

    def load(self, text: str) -> None:
        """Parse the raw robots.txt body."""
        parser = robotparser.RobotFileParser()
        parser.parse(text.splitlines())
        self._parser = parser
        self.loaded = True

    def mark_unavailable(self) -> None:
        """Record that robots.txt could not be fetched (allow everything)."""
        self._parser = None
        self.loaded = True

    def is_allowed(self, url: str) -> bool:
        """Return False when the rules disallow *url*'s path."""
        if self._parser is None:
            return True
        parsed = urlparse(url)
        path = parsed.path or "/"
        if parsed.query:
            path = f"{path}?{parsed.query}"
        allowed = self._parser.can_fetch(self.user_agent, path)
        if not allowed:
            logger.info("robots.txt disallows %s", url)
        return allowed
