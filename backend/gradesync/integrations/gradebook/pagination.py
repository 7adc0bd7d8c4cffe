"""
Link header pagination helpers for the gradebook API.
"""

import re
from typing import Dict, Optional
from urllib.parse import quote


LINK_PATTERN = re.compile(r'<([^>]*)>\s*;\s*rel="?([^";,]+)"?')


def build_page_url(
    url: str,
    page_size: int,
    filter_field: Optional[str] = None,
    filter_value: Optional[str] = None
) -> str:
    """
    Build the first page URL for a collection.

    The filter expression is percent-encoded as one opaque value so that the
    URL is byte-identical between requests.

    Args:
        url: Collection URL
        page_size: Number of records per page
        filter_field: Field for an equality filter
        filter_value: Value for an equality filter

    Returns:
        Pre-encoded URL string
    """
    page_url = f"{url}?limit={page_size}&offset=0"
    if filter_field is not None and filter_value is not None:
        page_url += "&filter=" + quote(f"{filter_field}='{filter_value}'", safe="")
    return page_url


def parse_link_header(link_header: Optional[str]) -> Dict[str, str]:
    """Map each rel in a Link header to its URL."""
    if not link_header:
        return {}
    return {rel.strip(): link_url.strip() for link_url, rel in LINK_PATTERN.findall(link_header)}


class PageCursor:
    """
    Tracks link-based pagination state.

    Stops when a page carries no links or no next link, when the current page
    is the advertised last page, or when the next link was already fetched.
    """

    def __init__(self, start_url: str):
        self.current_url: Optional[str] = start_url
        self._visited = set()

    def advance(self, link_header: Optional[str]) -> Optional[str]:
        """Record the fetched page and return the next URL to fetch, if any."""
        fetched = self.current_url
        self._visited.add(fetched)

        links = parse_link_header(link_header)
        next_url = links.get("next")
        last_url = links.get("last")

        if next_url is None or fetched == last_url or next_url in self._visited:
            self.current_url = None
        else:
            self.current_url = next_url
        return self.current_url
