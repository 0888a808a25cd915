"""
Tests for StubTap Stub Registry

Tests request matching including:
- Rule ordering (priority, last registered wins)
- Fallback proxy evaluated last
- Registration, removal and reset
- Concurrent registration and matching
"""

import threading

import pytest

from stubtap.errors import InvalidStubDefinition
from stubtap.mock.matcher import NO_MATCH, MatchResult, StubRegistry
from stubtap.mock.stubs import IncomingRequest, StubBuilder, StubRule, RequestPattern, UrlMatcher


@pytest.fixture
def registry():
    """Empty stub registry."""
    return StubRegistry()


class TestMatchResult:
    """Test MatchResult dataclass."""

    def test_no_match(self):
        """Test the shared no-match result."""
        assert NO_MATCH.matched is False
        assert NO_MATCH.rule is None
        assert NO_MATCH.to_dict()['rule_id'] is None

    def test_to_dict(self):
        """Test converting a match to a dictionary."""
        rule = StubBuilder.get('/a').build()
        data = MatchResult(matched=True, rule=rule).to_dict()

        assert data['matched'] is True
        assert data['rule_id'] == rule.id
        assert data['fallback'] is False
        assert data['rule'] == 'GET /a -> 200'


class TestOrdering:
    """Test which rule answers when several accept a request."""

    def test_single_match(self, registry):
        """Test a single matching rule."""
        rule = StubBuilder.get('/api/users/1').with_status(200).stub(registry)

        result = registry.match(IncomingRequest('GET', '/api/users/1'))

        assert result.matched
        assert result.rule is rule
        assert not result.is_fallback

    def test_no_match(self, registry):
        """Test an unmatched request with no fallback."""
        StubBuilder.get('/api/users/1').stub(registry)

        assert registry.match(IncomingRequest('GET', '/api/users/2')) is NO_MATCH

    def test_last_registered_wins(self, registry):
        """Test the most recent of two equal-priority rules answers."""
        StubBuilder.get('/a').with_status(200).stub(registry)
        second = StubBuilder.get('/a').with_status(503).stub(registry)

        assert registry.match(IncomingRequest('GET', '/a')).rule is second

    def test_priority_beats_recency(self, registry):
        """Test a higher-priority (lower number) rule wins over a newer one."""
        important = StubBuilder.get('/a').with_priority(1).stub(registry)
        StubBuilder.get('/a').with_status(500).stub(registry)

        assert registry.match(IncomingRequest('GET', '/a')).rule is important

    def test_specific_stub_registered_after_catch_all(self, registry):
        """Test a specific stub overrides an earlier broad one."""
        StubBuilder.any_matching('/api/.*').with_status(500).stub(registry)
        specific = StubBuilder.get('/api/health').with_status(200).stub(registry)

        assert registry.match(IncomingRequest('GET', '/api/health')).rule is specific
        assert registry.match(IncomingRequest('GET', '/api/other')).rule.response.status == 500

    def test_rules_in_match_order(self, registry):
        """Test rules() lists rules in evaluation order."""
        a = StubBuilder.get('/a').stub(registry)
        b = StubBuilder.get('/b').stub(registry)
        c = StubBuilder.get('/c').with_priority(1).stub(registry)

        assert registry.rules() == [c, b, a]
        assert len(registry) == 3


class TestFallback:
    """Test the fallback proxy slot."""

    def test_fallback_used_when_nothing_matches(self, registry):
        """Test unmatched requests hit the fallback."""
        StubBuilder.get('/a').stub(registry)
        registry.set_fallback('https://real.test')

        result = registry.match(IncomingRequest('POST', '/anything', 'x=1'))

        assert result.matched
        assert result.is_fallback
        assert result.rule.response.proxy_base_url == 'https://real.test'

    def test_fallback_evaluated_last(self, registry):
        """Test stubs registered before or after the fallback take precedence."""
        before = StubBuilder.get('/before').stub(registry)
        registry.set_fallback('https://real.test')
        after = StubBuilder.get('/after').stub(registry)

        assert registry.match(IncomingRequest('GET', '/before')).rule is before
        assert registry.match(IncomingRequest('GET', '/after')).rule is after

    def test_fallback_not_listed(self, registry):
        """Test the fallback is not part of rules()."""
        registry.set_fallback('https://real.test')

        assert registry.rules() == []
        assert registry.fallback is not None

    def test_fallback_replaced_and_cleared(self, registry):
        """Test setting a new fallback replaces the old one; None clears it."""
        registry.set_fallback('https://one.test')
        registry.set_fallback('https://two.test')

        assert registry.fallback.response.proxy_base_url == 'https://two.test'

        registry.set_fallback(None)
        assert registry.fallback is None
        assert registry.match(IncomingRequest('GET', '/x')) is NO_MATCH

    def test_invalid_fallback(self, registry):
        """Test a non-http fallback target is rejected."""
        with pytest.raises(InvalidStubDefinition):
            registry.set_fallback('not a url')


class TestRegistryMaintenance:
    """Test register, remove and reset."""

    def test_register_validates(self, registry):
        """Test invalid rules are rejected and not stored."""
        rule = StubRule(request=RequestPattern(method='GET', url=UrlMatcher.matching('(')))

        with pytest.raises(InvalidStubDefinition):
            registry.register(rule)

        assert len(registry) == 0

    def test_remove(self, registry):
        """Test removing a rule by id."""
        rule = StubBuilder.get('/a').stub(registry)

        assert registry.remove(rule.id) is True
        assert registry.remove(rule.id) is False
        assert registry.match(IncomingRequest('GET', '/a')) is NO_MATCH

    def test_reset_clears_rules_and_fallback(self, registry):
        """Test reset drops every rule and the fallback."""
        StubBuilder.get('/a').stub(registry)
        registry.set_fallback('https://real.test')

        registry.reset()

        assert len(registry) == 0
        assert registry.fallback is None
        assert registry.match(IncomingRequest('GET', '/a')) is NO_MATCH

    def test_reset_on_empty_registry(self, registry):
        """Test reset is a no-op on an empty registry."""
        registry.reset()

        assert len(registry) == 0

    def test_concurrent_registration(self, registry):
        """Test rules registered from many threads are all kept."""
        def register_many(prefix):
            for i in range(50):
                StubBuilder.get(f'/{prefix}/{i}').stub(registry)

        threads = [threading.Thread(target=register_many, args=(f't{n}',)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(registry) == 200
        assert registry.match(IncomingRequest('GET', '/t3/49')).matched

    def test_match_during_reset(self, registry):
        """Test matching while another thread resets and re-registers."""
        errors = []
        stop = threading.Event()

        def reset_loop():
            while not stop.is_set():
                registry.reset()
                StubBuilder.get('/a').with_body('a').stub(registry)
                StubBuilder.get('/b').with_body('b').stub(registry)

        def match_loop():
            for _ in range(2000):
                try:
                    result = registry.match(IncomingRequest('GET', '/a'))
                    if result.matched:
                        assert result.rule.request.url.value == '/a'
                    else:
                        assert result is NO_MATCH
                except Exception as e:
                    errors.append(e)

        writer = threading.Thread(target=reset_loop)
        readers = [threading.Thread(target=match_loop) for _ in range(4)]
        writer.start()
        for reader in readers:
            reader.start()
        for reader in readers:
            reader.join()
        stop.set()
        writer.join()

        assert errors == []
        assert len(registry) == 2
        assert registry.match(IncomingRequest('GET', '/b')).rule.response.body == b'b'
