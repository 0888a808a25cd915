"""
StubTap Common Utilities

Shared utilities and helpers used across StubTap modules.
"""

from .utils import ResourceLoader
from .url_utils import URLHelper, HOP_BY_HOP_HEADERS, filter_hop_by_hop

__all__ = [
    'ResourceLoader',
    'URLHelper',
    'HOP_BY_HOP_HEADERS',
    'filter_hop_by_hop',
]
