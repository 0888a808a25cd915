"""
StubTap Mock Server Module

HTTP stub-and-proxy server functionality for end-to-end tests.

This module provides:
- Stub rules and a fluent builder
- Ordered stub registry with fallback proxy
- FastAPI-based server instances with browser proxy mode
- Keyed instance manager for parallel test workers
- YAML/JSON stub mapping files
"""

from .stubs import (
    ANY_METHOD,
    DEFAULT_PRIORITY,
    IncomingRequest,
    RequestPattern,
    ResponseTemplate,
    StubBuilder,
    StubRule,
    UrlMatcher,
)
from .matcher import MatchResult, StubRegistry
from .ports import allocate_port, bind_listener
from .proxy import UpstreamForwarder, TunnelFrontDoor
from .server import MockConfig, MockMetrics, MockServer, ServerInstance
from .manager import InstanceManager, default_manager
from .mappings import MappingSet, load_mappings, rule_from_dict, rule_to_dict

__all__ = [
    # Stubs
    'ANY_METHOD',
    'DEFAULT_PRIORITY',
    'IncomingRequest',
    'RequestPattern',
    'ResponseTemplate',
    'StubBuilder',
    'StubRule',
    'UrlMatcher',

    # Matcher
    'MatchResult',
    'StubRegistry',

    # Transport
    'allocate_port',
    'bind_listener',
    'UpstreamForwarder',
    'TunnelFrontDoor',

    # Server
    'MockConfig',
    'MockMetrics',
    'MockServer',
    'ServerInstance',
    'InstanceManager',
    'default_manager',

    # Mapping files
    'MappingSet',
    'load_mappings',
    'rule_from_dict',
    'rule_to_dict',
]
