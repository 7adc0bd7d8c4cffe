from .client import GradebookClient
from .pagination import PageCursor, build_page_url, parse_link_header

__all__ = [
    "GradebookClient",
    "PageCursor",
    "build_page_url",
    "parse_link_header",
]
