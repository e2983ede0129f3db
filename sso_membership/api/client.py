"""
JSON client and paginated fetcher on top of the API transport.
"""

import json
import logging
from typing import Dict, Any, List, Optional
from urllib.parse import urlsplit

from sso_membership.api.transport import APITransport, TransportError, REST_PREFIX

logger = logging.getLogger(__name__)


class FetchError(Exception):
    """Raised when a resource or collection needed to proceed cannot be retrieved."""
    pass


def next_page_path(next_link: Optional[str]) -> Optional[str]:
    """
    Turn a ``links.next`` value into an API path.

    Links are relative to the REST root. Absolute URLs are reduced to their
    path and query, and links that already carry the root are kept as is.

    Returns:
        Path of the next page, or None when there is none
    """
    if not next_link:
        return None

    if next_link.startswith(('http://', 'https://')):
        parts = urlsplit(next_link)
        next_link = parts.path + (f"?{parts.query}" if parts.query else '')

    if not next_link.startswith('/'):
        next_link = '/' + next_link

    if next_link == REST_PREFIX or next_link.startswith(REST_PREFIX + '/'):
        return next_link
    return REST_PREFIX + next_link


class DirectoryClient:
    """Thin JSON layer over APITransport."""

    def __init__(self, transport: APITransport):
        self.transport = transport

    def _decode(self, method: str, path: str, data: bytes) -> Dict[str, Any]:
        if not data:
            return {}
        try:
            return json.loads(data.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise TransportError(f"Invalid JSON response from {method} {path}: {e}")

    def request_json(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Send a request and decode the JSON response.

        A 204 or otherwise empty response decodes to an empty dict.
        """
        status, data = self.transport.send(method, path, body)
        if status == 204:
            return {}
        return self._decode(method, path, data)

    def get_json(self, path: str) -> Dict[str, Any]:
        return self.request_json('GET', path)

    def post_json(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return self.request_json('POST', path, body)

    def patch_json(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return self.request_json('PATCH', path, body)

    def delete(self, path: str) -> Dict[str, Any]:
        return self.request_json('DELETE', path)

    def fetch_all(self, initial_path: str) -> List[Dict[str, Any]]:
        """
        Retrieve every item of a paginated collection.

        Follows ``links.next`` until it is absent or empty, concatenating
        ``data`` in page order. Items are not deduplicated.

        Args:
            initial_path: Path of the first page

        Returns:
            All raw resources of the collection

        Raises:
            TransportError: On connection failure
            RemoteError: On an error status for any page
        """
        items = []
        path = initial_path
        pages = 0

        while path:
            document = self.get_json(path)
            pages += 1

            data = document.get('data') or []
            if not isinstance(data, list):
                raise TransportError(f"Expected a collection from GET {path}")
            items.extend(data)

            links = document.get('links') or {}
            path = next_page_path(links.get('next'))

        logger.debug(f"Fetched {len(items)} items in {pages} pages from {initial_path}")
        return items
