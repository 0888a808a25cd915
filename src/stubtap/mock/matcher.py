"""
StubTap Stub Registry

Ordered stub storage and request matching for one server instance.

Ordering:
- Lower priority number wins (1 is highest, default 5)
- Among equal priorities the most recently registered rule wins
- The fallback proxy, if set, is tried after every other rule

Writes publish a fresh immutable tuple under a lock; reads grab the current
tuple without locking, so matching on the event loop never races with a
reset issued from the test thread.
"""

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .stubs import IncomingRequest, StubRule, proxy_everything


logger = logging.getLogger("stubtap.matcher")


@dataclass(frozen=True)
class MatchResult:
    """Result of matching a request against the registry."""

    matched: bool
    rule: Optional[StubRule] = None
    is_fallback: bool = False

    def to_dict(self):
        return {
            'matched': self.matched,
            'rule_id': self.rule.id if self.rule else None,
            'fallback': self.is_fallback,
            'rule': self.rule.describe() if self.rule else None
        }


NO_MATCH = MatchResult(matched=False)


class StubRegistry:
    """
    Ordered collection of stub rules with an optional fallback proxy.

    Example:
        registry = StubRegistry()
        registry.register(StubBuilder.get('/api/users/1').with_status(200).build())
        registry.set_fallback('https://example.test')

        result = registry.match(IncomingRequest('GET', '/api/users/1'))
        assert result.matched and not result.is_fallback
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._sequence = itertools.count()
        # (priority, -sequence, rule), kept sorted
        self._entries: Tuple[Tuple[int, int, StubRule], ...] = ()
        self._fallback: Optional[StubRule] = None

    def register(self, rule: StubRule) -> StubRule:
        """
        Add a rule.

        Raises:
            InvalidStubDefinition: If the rule is structurally invalid
        """
        rule.validate()
        with self._lock:
            entry = (rule.priority, -next(self._sequence), rule)
            self._entries = tuple(sorted(self._entries + (entry,), key=lambda e: (e[0], e[1])))
        logger.debug(f"Registered stub {rule.id}: {rule.describe()}")
        return rule

    def remove(self, rule_id: str) -> bool:
        """Remove a rule by id. Returns False if no such rule exists."""
        with self._lock:
            kept = tuple(e for e in self._entries if e[2].id != rule_id)
            removed = len(kept) != len(self._entries)
            self._entries = kept
        return removed

    def set_fallback(self, target_base_url: Optional[str]) -> Optional[StubRule]:
        """
        Forward every otherwise unmatched request to target_base_url.

        Passing None clears the fallback.

        Raises:
            InvalidStubDefinition: If the target is not an http(s) URL
        """
        rule = proxy_everything(target_base_url).validate() if target_base_url else None
        with self._lock:
            self._fallback = rule
        if rule:
            logger.debug(f"Fallback proxy set to {target_base_url}")
        return rule

    @property
    def fallback(self) -> Optional[StubRule]:
        return self._fallback

    def reset(self):
        """Drop every rule and the fallback."""
        with self._lock:
            self._entries = ()
            self._fallback = None
        logger.debug("Stub registry reset")

    def rules(self) -> List[StubRule]:
        """Registered rules in match order (fallback excluded)."""
        return [e[2] for e in self._entries]

    def __len__(self) -> int:
        return len(self._entries)

    def match(self, request: IncomingRequest) -> MatchResult:
        """
        Find the rule that answers a request.

        Args:
            request: Incoming request parts

        Returns:
            MatchResult for the first accepting rule, the fallback, or NO_MATCH
        """
        entries = self._entries
        fallback = self._fallback

        for _, _, rule in entries:
            if rule.request.matches(request):
                return MatchResult(matched=True, rule=rule)

        if fallback is not None:
            return MatchResult(matched=True, rule=fallback, is_fallback=True)

        return NO_MATCH
