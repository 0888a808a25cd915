"""
StubTap URL Utilities

Shared URL splitting, joining, and header filtering used by the matcher
and the upstream forwarder.
"""

from urllib.parse import urlsplit, parse_qs
from typing import Dict, Iterable, List, Optional, Tuple


# RFC 7230 section 6.1 plus the proxy-specific ones browsers send
HOP_BY_HOP_HEADERS = frozenset({
    'connection',
    'keep-alive',
    'proxy-authenticate',
    'proxy-authorization',
    'proxy-connection',
    'te',
    'trailer',
    'trailers',
    'transfer-encoding',
    'upgrade',
})


class URLHelper:
    """URL helpers for request matching and forwarding."""

    @staticmethod
    def path_with_query(path: str, query: str = '') -> str:
        """
        Combine a path and a raw query string the way stubs see them.

        Args:
            path: Request path (defaults to '/')
            query: Raw query string without the leading '?'

        Returns:
            'path' or 'path?query'
        """
        path = path or '/'
        return f"{path}?{query}" if query else path

    @staticmethod
    def join_upstream(base_url: str, path_and_query: str) -> str:
        """
        Append an original path+query to an upstream base URL.

        The base URL may carry its own path prefix; a trailing slash on it
        is dropped so that 'http://h/api/' + '/x' gives 'http://h/api/x'.
        """
        base = base_url.rstrip('/')
        if not path_and_query.startswith('/'):
            path_and_query = '/' + path_and_query
        return base + path_and_query

    @staticmethod
    def is_absolute(target: str) -> bool:
        """Check whether a request target is in absolute form (proxy request)."""
        lowered = target.lower()
        return lowered.startswith('http://') or lowered.startswith('https://')

    @staticmethod
    def split_absolute(target: str) -> Tuple[str, str]:
        """
        Split an absolute-form target into origin and path+query.

        Example:
            split_absolute('http://example.test:8080/a/b?c=1')
            -> ('http://example.test:8080', '/a/b?c=1')
        """
        parts = urlsplit(target)
        origin = f"{parts.scheme}://{parts.netloc}"
        return origin, URLHelper.path_with_query(parts.path, parts.query)

    @staticmethod
    def query_params(query: str) -> Dict[str, List[str]]:
        """Parse a raw query string, keeping blank values."""
        return parse_qs(query or '', keep_blank_values=True)

    @staticmethod
    def split_host_port(authority: str, default_port: int = 443) -> Tuple[str, int]:
        """
        Split a CONNECT authority ('host:port', '[v6]:port') into its parts.

        Raises:
            ValueError: If the port is not a number
        """
        if authority.startswith('['):
            host, _, rest = authority[1:].partition(']')
            port = rest[1:] if rest.startswith(':') else ''
        else:
            host, sep, port = authority.rpartition(':')
            if not sep:
                host, port = authority, ''
        return host, int(port) if port else default_port


def filter_hop_by_hop(
    headers: Iterable[Tuple[str, str]],
    extra: Optional[Iterable[str]] = None
) -> List[Tuple[str, str]]:
    """
    Drop hop-by-hop headers (and any named in Connection) from a header list.

    Args:
        headers: (name, value) pairs, repeated names allowed
        extra: Additional lower-case header names to drop

    Returns:
        Filtered (name, value) pairs in original order
    """
    headers = list(headers)
    dropped = set(HOP_BY_HOP_HEADERS)
    if extra:
        dropped.update(h.lower() for h in extra)

    for name, value in headers:
        if name.lower() == 'connection':
            dropped.update(token.strip().lower() for token in value.split(',') if token.strip())

    return [(name, value) for name, value in headers if name.lower() not in dropped]
