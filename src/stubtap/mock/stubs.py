"""
StubTap Stub Rules

Immutable stub definitions and the fluent builder used to create them.

A stub rule pairs a request pattern (method, URL matcher, optional body,
header and query predicates) with a response template (status, headers,
body, delay) or a proxy target. Rules are plain frozen dataclasses and know
nothing about the HTTP framework that serves them.

Example:
    rule = (StubBuilder.get('/api/users/1')
            .with_status(200)
            .with_json_body({'id': 1, 'name': 'X'})
            .build())

    StubBuilder.post('/api/login') \\
        .with_request_body_containing('username') \\
        .with_json_body_from_file('responses/login-success.json', resource_dirs=['tests/resources']) \\
        .stub(server)
"""

import json
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from ..common import ResourceLoader, URLHelper
from ..errors import InvalidStubDefinition


ANY_METHOD = 'ANY'
DEFAULT_PRIORITY = 5

URL_EQUAL_TO = 'equal_to'
URL_PATH_EQUAL_TO = 'path_equal_to'
URL_MATCHING = 'matching'
URL_MODES = (URL_EQUAL_TO, URL_PATH_EQUAL_TO, URL_MATCHING)

Headers = Tuple[Tuple[str, str], ...]


@dataclass(frozen=True)
class IncomingRequest:
    """The parts of an HTTP request that stub predicates look at."""

    method: str
    path: str
    query: str = ''
    headers: Headers = ()
    body: bytes = b''

    @property
    def path_and_query(self) -> str:
        return URLHelper.path_with_query(self.path, self.query)

    @property
    def body_text(self) -> str:
        return self.body.decode('utf-8', errors='replace')

    def header_values(self, name: str) -> List[str]:
        """All values of a header; names compare case-insensitively."""
        wanted = name.lower()
        return [value for key, value in self.headers if key.lower() == wanted]

    def query_values(self, name: str) -> List[str]:
        return URLHelper.query_params(self.query).get(name, [])


@dataclass(frozen=True)
class UrlMatcher:
    """URL predicate: exact path+query, exact path, or regex search over path+query."""

    mode: str
    value: str
    _regex: Optional[re.Pattern] = field(default=None, init=False, repr=False, compare=False)
    _regex_error: Optional[str] = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self):
        if self.mode == URL_MATCHING and isinstance(self.value, str):
            try:
                object.__setattr__(self, '_regex', re.compile(self.value))
            except re.error as e:
                object.__setattr__(self, '_regex_error', str(e))

    @classmethod
    def equal_to(cls, url: str) -> 'UrlMatcher':
        return cls(URL_EQUAL_TO, url)

    @classmethod
    def path_equal_to(cls, path: str) -> 'UrlMatcher':
        return cls(URL_PATH_EQUAL_TO, path)

    @classmethod
    def matching(cls, pattern: str) -> 'UrlMatcher':
        return cls(URL_MATCHING, pattern)

    def problems(self) -> List[str]:
        found = []
        if self.mode not in URL_MODES:
            found.append(f"unknown URL match mode {self.mode!r}")
        if not isinstance(self.value, str) or not self.value:
            found.append("URL matcher value must be a non-empty string")
        if self._regex_error:
            found.append(f"invalid URL pattern {self.value!r}: {self._regex_error}")
        return found

    def matches(self, request: IncomingRequest) -> bool:
        if self.mode == URL_EQUAL_TO:
            return request.path_and_query == self.value
        if self.mode == URL_PATH_EQUAL_TO:
            return request.path == self.value
        if self._regex is None:
            return False
        return self._regex.search(request.path_and_query) is not None


@dataclass(frozen=True)
class RequestPattern:
    """Request side of a stub: every present predicate must accept."""

    method: str
    url: Optional[UrlMatcher]
    body_contains: Optional[str] = None
    headers: Headers = ()
    query_params: Headers = ()

    def __post_init__(self):
        if isinstance(self.method, str):
            object.__setattr__(self, 'method', self.method.upper())

    def problems(self) -> List[str]:
        found = []
        if not self.method or not isinstance(self.method, str):
            found.append("request method is missing")
        if self.url is None:
            found.append("URL matcher is missing")
        else:
            found.extend(self.url.problems())
        for name, _ in self.headers:
            if not name:
                found.append("header predicate has an empty name")
        for name, _ in self.query_params:
            if not name:
                found.append("query predicate has an empty name")
        return found

    def matches(self, request: IncomingRequest) -> bool:
        if self.method != ANY_METHOD and self.method != request.method.upper():
            return False
        if self.url is None or not self.url.matches(request):
            return False
        if self.body_contains is not None and self.body_contains not in request.body_text:
            return False
        for name, needle in self.headers:
            if not any(needle in value for value in request.header_values(name)):
                return False
        for name, needle in self.query_params:
            if not any(needle in value for value in request.query_values(name)):
                return False
        return True


@dataclass(frozen=True)
class ResponseTemplate:
    """Response side of a stub: a canned response or a proxy target."""

    status: int = 200
    headers: Headers = ()
    body: bytes = b''
    delay_ms: int = 0
    proxy_base_url: Optional[str] = None

    def problems(self) -> List[str]:
        found = []
        if not isinstance(self.status, int) or not 100 <= self.status <= 599:
            found.append(f"response status {self.status!r} is not in 100..599")
        if not isinstance(self.delay_ms, int) or self.delay_ms < 0:
            found.append(f"delay {self.delay_ms!r} must be a non-negative integer")
        if self.proxy_base_url is not None and not URLHelper.is_absolute(self.proxy_base_url):
            found.append(f"proxy target {self.proxy_base_url!r} is not an http(s) URL")
        return found


@dataclass(frozen=True)
class StubRule:
    """A registered stub: request pattern, response template and priority (1 = highest)."""

    request: RequestPattern
    response: ResponseTemplate = field(default_factory=ResponseTemplate)
    priority: int = DEFAULT_PRIORITY
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def is_proxy(self) -> bool:
        return self.response.proxy_base_url is not None

    def problems(self) -> List[str]:
        found = []
        if not isinstance(self.request, RequestPattern):
            return ["request pattern is missing"]
        found.extend(self.request.problems())
        if not isinstance(self.response, ResponseTemplate):
            found.append("response template is missing")
        else:
            found.extend(self.response.problems())
        if not isinstance(self.priority, int) or self.priority < 1:
            found.append(f"priority {self.priority!r} must be a positive integer")
        return found

    def validate(self) -> 'StubRule':
        """
        Check structural well-formedness.

        Returns:
            The rule itself, for chaining

        Raises:
            InvalidStubDefinition: If any problem is found
        """
        found = self.problems()
        if found:
            raise InvalidStubDefinition(f"Invalid stub definition: {'; '.join(found)}", problems=found)
        return self

    def describe(self) -> str:
        url = self.request.url.value if self.request.url else '?'
        target = f"proxy {self.response.proxy_base_url}" if self.is_proxy else str(self.response.status)
        return f"{self.request.method} {url} -> {target}"


def proxy_everything(target_base_url: str) -> StubRule:
    """Catch-all rule forwarding any method and path to an upstream base URL."""
    return StubRule(
        request=RequestPattern(method=ANY_METHOD, url=UrlMatcher.matching('.*')),
        response=ResponseTemplate(proxy_base_url=target_base_url)
    )


def _to_body_bytes(body: Union[str, bytes, None]) -> bytes:
    if body is None:
        return b''
    if isinstance(body, bytes):
        return body
    return body.encode('utf-8')


class StubBuilder:
    """
    Fluent builder for StubRule values.

    Each with_* call returns the builder; build() freezes and validates it.
    Body files are read immediately, so a missing file fails while the
    scenario is being set up rather than when the request arrives.
    """

    def __init__(self, method: str, url: Optional[UrlMatcher]):
        self._method = method.upper() if isinstance(method, str) else method
        self._url = url
        self._body_contains: Optional[str] = None
        self._request_headers: List[Tuple[str, str]] = []
        self._query_params: List[Tuple[str, str]] = []
        self._status = 200
        self._headers: List[Tuple[str, str]] = []
        self._body = b''
        self._delay_ms = 0
        self._proxy_base_url: Optional[str] = None
        self._priority = DEFAULT_PRIORITY

    # Entry points

    @classmethod
    def request(cls, method: str, url: str) -> 'StubBuilder':
        return cls(method, UrlMatcher.equal_to(url))

    @classmethod
    def request_matching(cls, method: str, pattern: str) -> 'StubBuilder':
        return cls(method, UrlMatcher.matching(pattern))

    @classmethod
    def get(cls, url: str) -> 'StubBuilder':
        return cls.request('GET', url)

    @classmethod
    def get_matching(cls, pattern: str) -> 'StubBuilder':
        return cls.request_matching('GET', pattern)

    @classmethod
    def post(cls, url: str) -> 'StubBuilder':
        return cls.request('POST', url)

    @classmethod
    def post_matching(cls, pattern: str) -> 'StubBuilder':
        return cls.request_matching('POST', pattern)

    @classmethod
    def put(cls, url: str) -> 'StubBuilder':
        return cls.request('PUT', url)

    @classmethod
    def delete(cls, url: str) -> 'StubBuilder':
        return cls.request('DELETE', url)

    @classmethod
    def patch(cls, url: str) -> 'StubBuilder':
        return cls.request('PATCH', url)

    @classmethod
    def any_method(cls, url: str) -> 'StubBuilder':
        return cls.request(ANY_METHOD, url)

    @classmethod
    def any_matching(cls, pattern: str) -> 'StubBuilder':
        return cls.request_matching(ANY_METHOD, pattern)

    # Request predicates

    def with_url_path(self, path: str) -> 'StubBuilder':
        """Match on the path alone, ignoring the query string."""
        self._url = UrlMatcher.path_equal_to(path)
        return self

    def with_request_body_containing(self, text: str) -> 'StubBuilder':
        self._body_contains = text
        return self

    def with_request_header_containing(self, name: str, text: str) -> 'StubBuilder':
        self._request_headers.append((name, text))
        return self

    def with_query_param_containing(self, name: str, text: str) -> 'StubBuilder':
        self._query_params.append((name, text))
        return self

    def with_priority(self, priority: int) -> 'StubBuilder':
        self._priority = priority
        return self

    # Response

    def with_status(self, status: int) -> 'StubBuilder':
        self._status = status
        return self

    def with_header(self, name: str, value: str) -> 'StubBuilder':
        self._headers.append((name, value))
        return self

    def with_content_type(self, content_type: str) -> 'StubBuilder':
        self._headers = [(k, v) for k, v in self._headers if k.lower() != 'content-type']
        self._headers.append(('Content-Type', content_type))
        return self

    def with_body(self, body: Union[str, bytes]) -> 'StubBuilder':
        self._body = _to_body_bytes(body)
        return self

    def with_json_body(self, body: Union[str, bytes, Dict[str, Any], List[Any]]) -> 'StubBuilder':
        if isinstance(body, (dict, list)):
            body = json.dumps(body)
        return self.with_content_type('application/json').with_body(body)

    def with_xml_body(self, body: Union[str, bytes]) -> 'StubBuilder':
        return self.with_content_type('application/xml').with_body(body)

    def with_body_from_file(
        self,
        path: str,
        content_type: str,
        resource_dirs: Optional[Sequence[str]] = None
    ) -> 'StubBuilder':
        """
        Use a file's contents as the response body.

        Raises:
            ResourceLoadError: If the file cannot be found or read
        """
        body = ResourceLoader(resource_dirs).read_bytes(path)
        return self.with_content_type(content_type).with_body(body)

    def with_json_body_from_file(self, path: str, resource_dirs: Optional[Sequence[str]] = None) -> 'StubBuilder':
        return self.with_body_from_file(path, 'application/json', resource_dirs=resource_dirs)

    def with_delay(self, delay_ms: int) -> 'StubBuilder':
        self._delay_ms = delay_ms
        return self

    def proxied_from(self, base_url: str) -> 'StubBuilder':
        """Forward matching requests to base_url + original path instead of answering."""
        self._proxy_base_url = base_url
        return self

    # Output

    def build(self) -> StubRule:
        """
        Freeze the builder into a validated StubRule.

        Raises:
            InvalidStubDefinition: If the rule is malformed
        """
        rule = StubRule(
            request=RequestPattern(
                method=self._method,
                url=self._url,
                body_contains=self._body_contains,
                headers=tuple(self._request_headers),
                query_params=tuple(self._query_params)
            ),
            response=ResponseTemplate(
                status=self._status,
                headers=tuple(self._headers),
                body=self._body,
                delay_ms=self._delay_ms,
                proxy_base_url=self._proxy_base_url
            ),
            priority=self._priority
        )
        return rule.validate()

    def stub(self, target: Any, key: Any = None) -> StubRule:
        """
        Build the rule and register it.

        Args:
            target: Anything with register(rule) (StubRegistry, ServerInstance),
                or an InstanceManager when key is given
            key: Instance key for InstanceManager targets

        Returns:
            The registered rule
        """
        rule = self.build()
        if key is not None:
            target.register(key, rule)
        else:
            target.register(rule)
        return rule
