"""
HTTP clients for a remote space-monitor API.

Each client exposes the same methods as the in-process store it mirrors, so
a processor can be pointed at a service running in another process.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import requests


logger = logging.getLogger(__name__)


DEFAULT_BASE_URL = "http://127.0.0.1:3001"
DEFAULT_TIMEOUT = 10.0


class _HttpClient:
    """Shared session and URL handling."""

    service = ""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _url(self, *parts: str) -> str:
        encoded = "/".join(quote(str(part), safe="") for part in parts)
        return f"{self.base_url}/{self.service}/{encoded}"

    def status(self) -> bool:
        """Liveness probe; False on any transport error."""
        try:
            response = self.session.get(self._url("status"), timeout=self.timeout)
        except requests.RequestException as e:
            logger.debug(f"{self.service} service unreachable: {e}")
            return False
        return response.status_code == 200


class HttpQueueClient(_HttpClient):
    """Remote Priority Queue Store."""

    service = "queue"

    def enqueue(self, queue_name: str, item: Any) -> None:
        response = self.session.post(self._url("enqueue", queue_name), json=item, timeout=self.timeout)
        response.raise_for_status()

    def dequeue(self, queue_name: str) -> Optional[Any]:
        """Head of the queue, or None when it is empty (404)."""
        response = self.session.get(self._url("dequeue", queue_name), timeout=self.timeout)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    def size(self, queue_name: str) -> int:
        response = self.session.get(self._url("size", queue_name), timeout=self.timeout)
        response.raise_for_status()
        return int(response.json())

    def get_queue_stats(self) -> List[Dict[str, Any]]:
        response = self.session.get(self._url("stats"), timeout=self.timeout)
        response.raise_for_status()
        return response.json()


class HttpCacheClient(_HttpClient):
    """Remote Cache Store."""

    service = "cache"

    def put(self, key: str, value: Any) -> None:
        response = self.session.post(self._url("put", key), json=value, timeout=self.timeout)
        response.raise_for_status()

    def get(self, key: str) -> Optional[Any]:
        response = self.session.get(self._url("get", key), timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def delete(self, key: str) -> None:
        response = self.session.delete(self._url("delete", key), timeout=self.timeout)
        response.raise_for_status()


class HttpSearchClient(_HttpClient):
    """Remote search index."""

    service = "search"

    def add(self, key: str, document: Dict[str, Any]) -> bool:
        """False if the key is already indexed (409)."""
        response = self.session.post(self._url("add", key), json=document, timeout=self.timeout)
        if response.status_code == 409:
            return False
        response.raise_for_status()
        return True

    def remove(self, key: str) -> bool:
        """False if the key was not indexed (404)."""
        response = self.session.delete(self._url("remove", key), timeout=self.timeout)
        if response.status_code == 404:
            return False
        response.raise_for_status()
        return True

    def search(self, term: str) -> List[Tuple[str, Dict[str, Any]]]:
        response = self.session.get(
            f"{self.base_url}/{self.service}/search",
            params={"q": term},
            timeout=self.timeout
        )
        response.raise_for_status()
        return [(hit["key"], hit["document"]) for hit in response.json()]
