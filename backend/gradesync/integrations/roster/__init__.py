from .base import BaseRosterSource
from .client import GraphRosterClient

__all__ = [
    "BaseRosterSource",
    "GraphRosterClient",
]
