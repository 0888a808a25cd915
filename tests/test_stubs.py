"""
Tests for StubTap Stub Rules

Tests stub definitions including:
- Fluent builder entry points and response helpers
- Structural validation
- Body files loaded from resource directories
- Request predicates (method, URL, body, headers, query)
"""

import json
from pathlib import Path

import pytest

from stubtap.errors import InvalidStubDefinition, ResourceLoadError
from stubtap.mock.stubs import (
    ANY_METHOD,
    DEFAULT_PRIORITY,
    URL_EQUAL_TO,
    URL_MATCHING,
    URL_PATH_EQUAL_TO,
    IncomingRequest,
    RequestPattern,
    ResponseTemplate,
    StubBuilder,
    StubRule,
    UrlMatcher,
    proxy_everything,
)


RESOURCES = Path(__file__).parent / 'resources'


class TestStubBuilder:
    """Test StubBuilder fluent API."""

    def test_get_with_json_body(self):
        """Test building a GET stub with a JSON body."""
        rule = StubBuilder.get('/api/users/1').with_status(200).with_json_body({'id': 1, 'name': 'X'}).build()

        assert rule.request.method == 'GET'
        assert rule.request.url.mode == URL_EQUAL_TO
        assert rule.request.url.value == '/api/users/1'
        assert rule.response.status == 200
        assert json.loads(rule.response.body) == {'id': 1, 'name': 'X'}
        assert ('Content-Type', 'application/json') in rule.response.headers
        assert rule.priority == DEFAULT_PRIORITY

    def test_json_body_list(self):
        """Test JSON body given as a list."""
        rule = StubBuilder.get('/api/items').with_json_body([1, 2, 3]).build()

        assert json.loads(rule.response.body) == [1, 2, 3]

    def test_json_body_string_kept_verbatim(self):
        """Test that a pre-serialized JSON string is not re-encoded."""
        rule = StubBuilder.get('/a').with_json_body('{"a": 1}').build()

        assert rule.response.body == b'{"a": 1}'

    def test_xml_body(self):
        """Test XML body sets content type."""
        rule = StubBuilder.get('/feed').with_xml_body('<feed/>').build()

        assert rule.response.body == b'<feed/>'
        assert ('Content-Type', 'application/xml') in rule.response.headers

    def test_content_type_replaced_not_duplicated(self):
        """Test that setting content type twice keeps only the last."""
        rule = (StubBuilder.get('/a')
                .with_header('content-type', 'text/plain')
                .with_content_type('text/html')
                .build())

        content_types = [v for k, v in rule.response.headers if k.lower() == 'content-type']
        assert content_types == ['text/html']

    def test_matching_entry_points(self):
        """Test regex entry points."""
        assert StubBuilder.get_matching('/api/.*').build().request.url.mode == URL_MATCHING
        assert StubBuilder.post_matching('/api/.*').build().request.method == 'POST'

        rule = StubBuilder.any_matching('.*').build()
        assert rule.request.method == ANY_METHOD

    def test_method_entry_points(self):
        """Test each method entry point sets the method."""
        assert StubBuilder.post('/a').build().request.method == 'POST'
        assert StubBuilder.put('/a').build().request.method == 'PUT'
        assert StubBuilder.delete('/a').build().request.method == 'DELETE'
        assert StubBuilder.patch('/a').build().request.method == 'PATCH'
        assert StubBuilder.any_method('/a').build().request.method == ANY_METHOD
        assert StubBuilder.request('options', '/a').build().request.method == 'OPTIONS'

    def test_url_path(self):
        """Test switching to path-only matching."""
        rule = StubBuilder.get('/ignored').with_url_path('/api/search').build()

        assert rule.request.url.mode == URL_PATH_EQUAL_TO
        assert rule.request.url.value == '/api/search'

    def test_request_predicates(self):
        """Test body, header and query predicates."""
        rule = (StubBuilder.post('/api/login')
                .with_request_body_containing('username')
                .with_request_header_containing('Authorization', 'Bearer')
                .with_query_param_containing('lang', 'en')
                .build())

        assert rule.request.body_contains == 'username'
        assert rule.request.headers == (('Authorization', 'Bearer'),)
        assert rule.request.query_params == (('lang', 'en'),)

    def test_delay_and_priority(self):
        """Test delay and priority settings."""
        rule = StubBuilder.get('/slow').with_delay(250).with_priority(1).build()

        assert rule.response.delay_ms == 250
        assert rule.priority == 1

    def test_proxied_from(self):
        """Test proxy stubs."""
        rule = StubBuilder.any_matching('/api/.*').proxied_from('https://real.test').build()

        assert rule.is_proxy
        assert rule.response.proxy_base_url == 'https://real.test'

    def test_build_gives_unique_ids(self):
        """Test that every built rule gets its own id."""
        builder = StubBuilder.get('/a')

        assert builder.build().id != builder.build().id

    def test_stub_registers_on_target(self):
        """Test stub() on a plain register(rule) target."""
        registered = []

        class Target:
            def register(self, rule):
                registered.append(rule)

        rule = StubBuilder.get('/a').stub(Target())

        assert registered == [rule]

    def test_stub_with_key(self):
        """Test stub() on a keyed target such as InstanceManager."""
        calls = []

        class Manager:
            def register(self, key, rule):
                calls.append((key, rule))

        rule = StubBuilder.get('/a').stub(Manager(), key='gw1')

        assert calls == [('gw1', rule)]


class TestBodyFromFile:
    """Test response bodies read from files."""

    def test_json_body_from_resource_dir(self):
        """Test reading a JSON body from a resource directory."""
        rule = (StubBuilder.post('/api/login')
                .with_json_body_from_file('responses/login-success.json', resource_dirs=[RESOURCES])
                .build())

        assert json.loads(rule.response.body)['token'] == 'abc123'
        assert ('Content-Type', 'application/json') in rule.response.headers

    def test_body_from_file_with_content_type(self):
        """Test reading a body with an explicit content type."""
        rule = (StubBuilder.get('/catalog')
                .with_body_from_file('responses/catalog.xml', 'application/xml', resource_dirs=[RESOURCES])
                .build())

        assert b'<catalog>' in rule.response.body
        assert ('Content-Type', 'application/xml') in rule.response.headers

    def test_absolute_path(self):
        """Test reading a body from an absolute path."""
        path = RESOURCES / 'responses' / 'catalog.xml'
        rule = StubBuilder.get('/catalog').with_body_from_file(str(path), 'application/xml').build()

        assert rule.response.body == path.read_bytes()

    def test_missing_file_fails_immediately(self):
        """Test that a missing body file raises while building."""
        with pytest.raises(ResourceLoadError) as exc_info:
            StubBuilder.get('/a').with_json_body_from_file('responses/missing.json', resource_dirs=[RESOURCES])

        assert exc_info.value.resource == 'responses/missing.json'
        assert exc_info.value.details['searched']


class TestValidation:
    """Test structural validation of stub rules."""

    def test_status_out_of_range(self):
        """Test status codes outside 100..599."""
        with pytest.raises(InvalidStubDefinition) as exc_info:
            StubBuilder.get('/a').with_status(700).build()

        assert any('700' in p for p in exc_info.value.problems)

    def test_negative_delay(self):
        """Test negative delays are rejected."""
        with pytest.raises(InvalidStubDefinition):
            StubBuilder.get('/a').with_delay(-1).build()

    def test_invalid_regex(self):
        """Test malformed URL patterns are rejected at build time."""
        with pytest.raises(InvalidStubDefinition) as exc_info:
            StubBuilder.get_matching('/api/(unclosed').build()

        assert any('invalid URL pattern' in p for p in exc_info.value.problems)

    def test_empty_url(self):
        """Test empty URL matcher values."""
        with pytest.raises(InvalidStubDefinition):
            StubBuilder.get('').build()

    def test_missing_url_matcher(self):
        """Test a rule without a URL matcher."""
        rule = StubRule(request=RequestPattern(method='GET', url=None))

        with pytest.raises(InvalidStubDefinition) as exc_info:
            rule.validate()

        assert 'URL matcher is missing' in exc_info.value.problems

    def test_missing_method(self):
        """Test a rule without a method."""
        rule = StubRule(request=RequestPattern(method='', url=UrlMatcher.equal_to('/a')))

        with pytest.raises(InvalidStubDefinition):
            rule.validate()

    def test_unknown_url_mode(self):
        """Test unknown URL match modes."""
        assert UrlMatcher('fuzzy', '/a').problems()

    def test_zero_priority(self):
        """Test priority must be positive."""
        with pytest.raises(InvalidStubDefinition):
            StubBuilder.get('/a').with_priority(0).build()

    def test_proxy_target_not_http(self):
        """Test proxy targets must be absolute http(s) URLs."""
        with pytest.raises(InvalidStubDefinition):
            StubBuilder.get('/a').proxied_from('ftp://files.test').build()

    def test_problems_collected_together(self):
        """Test every problem is reported, not only the first."""
        with pytest.raises(InvalidStubDefinition) as exc_info:
            StubBuilder.get_matching('(').with_status(42).with_delay(-5).build()

        assert len(exc_info.value.problems) == 3

    def test_proxy_everything(self):
        """Test the catch-all proxy rule."""
        rule = proxy_everything('https://example.test').validate()

        assert rule.request.method == ANY_METHOD
        assert rule.request.matches(IncomingRequest('DELETE', '/anything', 'x=1'))

    def test_describe(self):
        """Test short rule descriptions."""
        assert StubBuilder.get('/a').with_status(201).build().describe() == 'GET /a -> 201'
        assert 'proxy https://r.test' in StubBuilder.get('/a').proxied_from('https://r.test').build().describe()


class TestRequestPattern:
    """Test request predicates against incoming requests."""

    def test_method_case_insensitive(self):
        """Test the declared method is normalized to upper case."""
        pattern = RequestPattern(method='get', url=UrlMatcher.equal_to('/a'))

        assert pattern.method == 'GET'
        assert pattern.matches(IncomingRequest('GET', '/a'))
        assert not pattern.matches(IncomingRequest('POST', '/a'))

    def test_any_method(self):
        """Test ANY matches every method."""
        pattern = RequestPattern(method=ANY_METHOD, url=UrlMatcher.equal_to('/a'))

        for method in ('GET', 'POST', 'PUT', 'DELETE', 'PATCH', 'HEAD', 'OPTIONS'):
            assert pattern.matches(IncomingRequest(method, '/a'))

    def test_equal_to_includes_query(self):
        """Test exact URL matching compares path and query."""
        matcher = UrlMatcher.equal_to('/search?q=shoes')

        assert matcher.matches(IncomingRequest('GET', '/search', 'q=shoes'))
        assert not matcher.matches(IncomingRequest('GET', '/search', 'q=hats'))
        assert not matcher.matches(IncomingRequest('GET', '/search'))

    def test_path_equal_to_ignores_query(self):
        """Test path-only matching ignores the query string."""
        matcher = UrlMatcher.path_equal_to('/search')

        assert matcher.matches(IncomingRequest('GET', '/search', 'q=anything'))
        assert not matcher.matches(IncomingRequest('GET', '/search/more'))

    def test_url_case_sensitive(self):
        """Test URL comparison is case-sensitive."""
        matcher = UrlMatcher.equal_to('/API/Users')

        assert not matcher.matches(IncomingRequest('GET', '/api/users'))

    def test_pattern_search(self):
        """Test regex URL matching searches path and query."""
        matcher = UrlMatcher.matching(r'/api/users/\d+')

        assert matcher.matches(IncomingRequest('GET', '/api/users/42'))
        assert matcher.matches(IncomingRequest('GET', '/v2/api/users/42', 'x=1'))
        assert not matcher.matches(IncomingRequest('GET', '/api/users/abc'))

    def test_body_contains(self):
        """Test body substring predicate."""
        pattern = RequestPattern(method='POST', url=UrlMatcher.equal_to('/login'), body_contains='username')

        assert pattern.matches(IncomingRequest('POST', '/login', body=b'{"username": "x"}'))
        assert not pattern.matches(IncomingRequest('POST', '/login', body=b'{"user": "x"}'))
        assert not pattern.matches(IncomingRequest('POST', '/login', body=b'USERNAME'))

    def test_body_contains_non_utf8(self):
        """Test non-UTF-8 bodies are compared after lenient decoding."""
        pattern = RequestPattern(method='POST', url=UrlMatcher.equal_to('/a'), body_contains='token')

        assert pattern.matches(IncomingRequest('POST', '/a', body=b'\xff\xfe token'))

    def test_header_predicate(self):
        """Test header names are case-insensitive, values case-sensitive."""
        pattern = RequestPattern(
            method='GET',
            url=UrlMatcher.equal_to('/a'),
            headers=(('Authorization', 'Bearer'),)
        )

        assert pattern.matches(IncomingRequest('GET', '/a', headers=(('authorization', 'Bearer abc'),)))
        assert not pattern.matches(IncomingRequest('GET', '/a', headers=(('authorization', 'bearer abc'),)))
        assert not pattern.matches(IncomingRequest('GET', '/a'))

    def test_header_any_value(self):
        """Test a repeated header matches if any value contains the text."""
        pattern = RequestPattern(method='GET', url=UrlMatcher.equal_to('/a'), headers=(('Accept', 'json'),))
        request = IncomingRequest('GET', '/a', headers=(('Accept', 'text/html'), ('Accept', 'application/json')))

        assert pattern.matches(request)

    def test_query_predicate(self):
        """Test query parameter substring predicate."""
        pattern = RequestPattern(
            method='GET',
            url=UrlMatcher.path_equal_to('/products'),
            query_params=(('currency', 'EUR'),)
        )

        assert pattern.matches(IncomingRequest('GET', '/products', 'currency=EUR&page=2'))
        assert not pattern.matches(IncomingRequest('GET', '/products', 'currency=USD'))
        assert not pattern.matches(IncomingRequest('GET', '/products'))

    def test_response_template_defaults(self):
        """Test default response template."""
        template = ResponseTemplate()

        assert template.status == 200
        assert template.body == b''
        assert template.problems() == []
