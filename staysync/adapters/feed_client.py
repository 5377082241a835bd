"""
HTTP client for fetching channel calendar feeds.
"""

import logging

import requests

from ..domain.exceptions import (
    FetchTimeoutError,
    MalformedResponseError,
    UnreachableError,
)
from ..domain.models import FeedSource

logger = logging.getLogger(__name__)


class IcalFeedClient:
    """
    Client for iCalendar export URLs published by booking channels.

    Each call is a single GET; retries happen on the next scheduled cycle,
    not here.
    """

    CALENDAR_MARKER = b"BEGIN:VCALENDAR"

    def __init__(self, timeout_seconds: float = 15.0, user_agent: str = "staysync/1.0"):
        """
        Initialize the feed client.

        Args:
            timeout_seconds: Connect and read timeout for each request
            user_agent: Value of the User-Agent header sent to channels
        """
        self.timeout_seconds = timeout_seconds
        self.headers = {
            "User-Agent": user_agent,
            "Accept": "text/calendar, text/plain;q=0.9, */*;q=0.1",
        }

    def fetch(self, feed: FeedSource) -> bytes:
        """
        Download the raw payload of a feed.

        Args:
            feed: The feed to download

        Returns:
            Raw response body

        Raises:
            UnreachableError: If the host cannot be contacted
            FetchTimeoutError: If the request times out
            MalformedResponseError: If the answer is not a calendar document
        """
        try:
            response = requests.get(
                feed.url,
                headers=self.headers,
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()

        except requests.exceptions.Timeout as e:
            raise FetchTimeoutError(f"Timed out fetching feed {feed}: {e}", url=feed.url) from e

        except requests.exceptions.HTTPError as e:
            raise MalformedResponseError(
                f"Feed {feed} answered with HTTP {e.response.status_code if e.response is not None else '?'}",
                url=feed.url,
            ) from e

        except requests.exceptions.RequestException as e:
            raise UnreachableError(f"Could not reach feed {feed}: {e}", url=feed.url) from e

        payload = response.content
        if not payload.lstrip(b"\xef\xbb\xbf \t\r\n").upper().startswith(self.CALENDAR_MARKER):
            raise MalformedResponseError(
                f"Feed {feed} did not return an iCalendar document",
                url=feed.url,
            )

        logger.debug("Fetched %d bytes from %s", len(payload), feed)
        return payload
