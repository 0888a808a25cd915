"""
StubTap - HTTP stub and proxy servers for end-to-end tests
"""

from .errors import (
    StubTapError,
    PortUnavailable,
    InvalidStubDefinition,
    ResourceLoadError,
    ServerStartError,
    InstanceNotRunning,
)
from .mock import (
    StubBuilder,
    StubRule,
    StubRegistry,
    MockConfig,
    MockServer,
    ServerInstance,
    InstanceManager,
    default_manager,
    load_mappings,
)

__all__ = [
    'StubTapError',
    'PortUnavailable',
    'InvalidStubDefinition',
    'ResourceLoadError',
    'ServerStartError',
    'InstanceNotRunning',
    'StubBuilder',
    'StubRule',
    'StubRegistry',
    'MockConfig',
    'MockServer',
    'ServerInstance',
    'InstanceManager',
    'default_manager',
    'load_mappings',
]

__version__ = '1.0.0'
