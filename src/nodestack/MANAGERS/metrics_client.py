"""
Passthrough reads of the node's Prometheus exposition endpoint.
"""
import http.client
import logging
from typing import Dict
from urllib.error import URLError
from urllib.request import Request, urlopen

from ..errors import MetricsUnavailable

logger = logging.getLogger(__name__)


def parse_exposition(text: str) -> Dict[str, str]:
    """
    Parses Prometheus text exposition into ``{sample: value}``.

    Comment and blank lines are skipped; the sample name (with any labels)
    is everything before the first space.
    """
    metrics = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        key, sep, value = line.partition(' ')
        if sep:
            metrics[key] = value.strip()
    return metrics


class MetricsClient:
    """
    Fetches the metrics a running node exposes.
    """
    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    def fetch_raw(self) -> str:
        """
        Returns the exposition text as served.

        :raises MetricsUnavailable: If the endpoint cannot be read.
        """
        logger.debug("Fetching metrics from %s", self.url)
        try:
            with urlopen(Request(self.url), timeout=self.timeout) as response:
                return response.read().decode("utf-8", errors="replace")
        except (URLError, OSError, http.client.HTTPException, ValueError) as e:
            raise MetricsUnavailable(f"Failed to get metrics from {self.url}: {e}") from e

    def fetch(self) -> Dict[str, str]:
        """Fetches and parses the current metrics."""
        return parse_exposition(self.fetch_raw())
