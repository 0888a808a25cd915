"""
StubTap Instance Manager

Keyed registry of running stub servers, one per test execution context.

The key is whatever identifies the caller's worker: a pytest-xdist worker id,
a thread name, a behave/Cucumber runner index. It is passed explicitly to
every call instead of being read from thread-local state.

Example:
    manager = InstanceManager()
    base_url = manager.start('gw0')
    StubBuilder.get('/api/users/1').with_json_body({'id': 1}).stub(manager, key='gw0')
    ...
    manager.stop('gw0')
"""

import atexit
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Hashable, List, Optional

from ..errors import InstanceNotRunning
from .server import MockConfig, ServerInstance
from .stubs import StubRule


logger = logging.getLogger("stubtap.manager")


class InstanceManager:
    """
    Process-wide map from execution-context key to ServerInstance.

    start/stop for the same key are serialised by a per-key lock, so two
    racing start() calls can never leave two live servers behind. Different
    keys start and stop in parallel.
    """

    def __init__(self, config: Optional[MockConfig] = None):
        """
        Initialize manager.

        Args:
            config: MockConfig used for every instance this manager starts
        """
        self.config = config or MockConfig()
        self._instances: Dict[Hashable, ServerInstance] = {}
        # key -> [lock, callers holding or waiting on it]
        self._key_locks: Dict[Hashable, List] = {}
        self._guard = threading.Lock()

    @contextmanager
    def _locked(self, key: Hashable):
        """Hold the per-key lock; it is forgotten once unused while the key has no instance."""
        with self._guard:
            entry = self._key_locks.get(key)
            if entry is None:
                entry = self._key_locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0 and key not in self._instances:
                    del self._key_locks[key]

    def start(self, key: Hashable, proxy_mode: bool = False) -> str:
        """
        Start a fresh instance for key, stopping any previous one first.

        Args:
            key: Execution-context key
            proxy_mode: Accept CONNECT and browser proxy requests

        Returns:
            Base URL of the new instance

        Raises:
            PortUnavailable: If no port could be bound
            ServerStartError: If the server did not come up
        """
        with self._locked(key):
            self._stop_locked(key)

            instance = ServerInstance(self.config, proxy_mode=proxy_mode, name=f"stubtap[{key}]")
            base_url = instance.start()
            with self._guard:
                self._instances[key] = instance

            logger.info(f"Started stub server for {key!r}: {base_url}")
            return base_url

    def stop(self, key: Hashable):
        """Stop and forget the instance for key; no-op if there is none."""
        with self._locked(key):
            self._stop_locked(key)

    def _stop_locked(self, key: Hashable):
        with self._guard:
            instance = self._instances.pop(key, None)
        if instance is not None:
            instance.stop()
            logger.info(f"Stopped stub server for {key!r}")

    def stop_all(self):
        """Stop every instance (harness teardown)."""
        with self._guard:
            keys = list(self._instances)
        for key in keys:
            self.stop(key)

    def get(self, key: Hashable) -> Optional[ServerInstance]:
        with self._guard:
            return self._instances.get(key)

    def _require(self, key: Hashable) -> ServerInstance:
        instance = self.get(key)
        if instance is None or not instance.is_running:
            raise InstanceNotRunning(key)
        return instance

    def is_running(self, key: Hashable) -> bool:
        instance = self.get(key)
        return instance is not None and instance.is_running

    def get_base_url(self, key: Hashable) -> Optional[str]:
        instance = self.get(key)
        return instance.base_url if instance else None

    def get_port(self, key: Hashable) -> Optional[int]:
        instance = self.get(key)
        return instance.port if instance else None

    def register(self, key: Hashable, rule: StubRule) -> StubRule:
        """
        Register a stub on the instance for key.

        Raises:
            InstanceNotRunning: If no instance is running for key
            InvalidStubDefinition: If the rule is malformed
        """
        return self._require(key).register(rule)

    def set_fallback(self, key: Hashable, target_base_url: Optional[str]):
        """
        Forward unmatched requests on key's instance to target_base_url.

        Raises:
            InstanceNotRunning: If no instance is running for key
        """
        return self._require(key).set_fallback(target_base_url)

    def reset_stubs(self, key: Hashable):
        """Reset the stubs of key's instance; no-op if there is none."""
        instance = self.get(key)
        if instance is not None:
            instance.reset()
            logger.debug(f"Reset stubs for {key!r}")

    def keys(self) -> list:
        with self._guard:
            return list(self._instances)

    def __len__(self) -> int:
        with self._guard:
            return len(self._instances)


default_manager = InstanceManager()
atexit.register(default_manager.stop_all)
