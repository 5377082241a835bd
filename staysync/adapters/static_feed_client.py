"""
Offline feed client serving payloads from memory or local files.
"""

from pathlib import Path
from typing import Dict, Optional, Tuple

from ..domain.exceptions import FetchError, UnreachableError
from ..domain.models import FeedSource


class StaticFeedClient:
    """
    Feed client that never touches the network.

    Payloads are keyed by ``(resource_id, source_id)``. A key can also be
    mapped to a ``FetchError`` instance, which is raised on fetch; this makes
    it easy to simulate a channel that is down.
    """

    def __init__(self, payloads: Optional[Dict[Tuple[str, str], object]] = None):
        self.payloads: Dict[Tuple[str, str], object] = dict(payloads or {})
        self.calls: list[FeedSource] = []

    @classmethod
    def from_directory(cls, directory: Path) -> "StaticFeedClient":
        """
        Load every ``<resource_id>__<source_id>.ics`` file of a directory.

        Raises:
            FileNotFoundError: If the directory doesn't exist
        """
        if not directory.is_dir():
            raise FileNotFoundError(f"Feed directory not found: {directory}")

        payloads: Dict[Tuple[str, str], object] = {}
        for path in sorted(directory.glob("*.ics")):
            resource_id, sep, source_id = path.stem.partition("__")
            if not sep:
                continue
            payloads[(resource_id, source_id)] = path.read_bytes()
        return cls(payloads)

    def set_payload(self, resource_id: str, source_id: str, payload) -> None:
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        self.payloads[(resource_id, source_id)] = payload

    def fetch(self, feed: FeedSource) -> bytes:
        self.calls.append(feed)
        payload = self.payloads.get((feed.resource_id, feed.source_id))

        if payload is None:
            raise UnreachableError(f"No offline payload for feed {feed}", url=feed.url)
        if isinstance(payload, FetchError):
            raise payload
        if isinstance(payload, str):
            return payload.encode("utf-8")
        return payload
