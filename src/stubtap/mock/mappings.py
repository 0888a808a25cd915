"""
StubTap Mapping Files

Load stub definitions from YAML or JSON documents (WireMock-style field
names), and turn registered rules back into dictionaries for the admin API.

Document format:

    fallback: https://example.test          # optional
    stubs:                                  # 'mappings' is accepted too
      - priority: 1                         # optional, 1 = highest
        request:
          method: GET                       # or ANY
          url: /api/users/1                 # exact path+query
          # urlPattern: /api/users/[0-9]+   # regex search over path+query
          # urlPath: /api/search            # exact path, query ignored
          bodyContains: username
          headers:
            Authorization: {contains: Bearer}
          queryParameters:
            q: {contains: shoes}
        response:
          status: 200
          headers: {X-Trace: abc}
          jsonBody: {id: 1, name: X}        # or body / bodyFileName
          fixedDelayMilliseconds: 250
          # proxyBaseUrl: https://real.test
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import yaml

from ..common import ResourceLoader
from ..errors import InvalidStubDefinition, ResourceLoadError
from .stubs import (
    DEFAULT_PRIORITY,
    URL_EQUAL_TO,
    URL_MATCHING,
    URL_PATH_EQUAL_TO,
    RequestPattern,
    ResponseTemplate,
    StubRule,
    UrlMatcher,
    proxy_everything,
)


URL_KEYS = {
    'url': URL_EQUAL_TO,
    'urlPattern': URL_MATCHING,
    'urlPath': URL_PATH_EQUAL_TO,
}
URL_MODE_KEYS = {mode: key for key, mode in URL_KEYS.items()}


@dataclass
class MappingSet:
    """Rules and optional fallback read from one mapping document."""

    stubs: List[StubRule] = field(default_factory=list)
    fallback: Optional[str] = None
    source: Optional[str] = None

    def apply(self, target: Any):
        """Register every rule (and the fallback) on a registry or ServerInstance."""
        for rule in self.stubs:
            target.register(rule)
        if self.fallback:
            target.set_fallback(self.fallback)


def _contains_predicates(data: Any, section: str) -> tuple:
    """Read {name: {contains: text}} or {name: text} into (name, text) pairs."""
    if data is None:
        return ()
    if not isinstance(data, dict):
        raise InvalidStubDefinition(f"'{section}' must be a mapping of name to predicate")

    pairs = []
    for name, predicate in data.items():
        if isinstance(predicate, dict):
            if 'contains' not in predicate:
                raise InvalidStubDefinition(
                    f"Only 'contains' predicates are supported for {section}.{name}",
                    problems=[f"{section}.{name}: unsupported predicate {sorted(predicate)}"]
                )
            predicate = predicate['contains']
        pairs.append((str(name), str(predicate)))
    return tuple(pairs)


def _body_contains(request: Dict[str, Any]) -> Optional[str]:
    if 'bodyContains' in request:
        return str(request['bodyContains'])
    patterns = request.get('bodyPatterns')
    if not patterns:
        return None
    if not isinstance(patterns, list) or len(patterns) != 1 or not isinstance(patterns[0], dict) or 'contains' not in patterns[0]:
        raise InvalidStubDefinition("bodyPatterns supports a single {contains: ...} entry")
    return str(patterns[0]['contains'])


def _response_body(response: Dict[str, Any], headers: List[tuple], loader: ResourceLoader) -> bytes:
    has_header = {name.lower() for name, _ in headers}

    if 'jsonBody' in response:
        if 'content-type' not in has_header:
            headers.append(('Content-Type', 'application/json'))
        return json.dumps(response['jsonBody']).encode('utf-8')

    if 'bodyFileName' in response:
        return loader.read_bytes(str(response['bodyFileName']))

    body = response.get('body')
    if body is None:
        return b''
    if isinstance(body, (dict, list)):
        return json.dumps(body).encode('utf-8')
    return str(body).encode('utf-8')


def rule_from_dict(data: Dict[str, Any], resource_dirs: Optional[Sequence[str]] = None) -> StubRule:
    """
    Build a validated StubRule from one mapping entry.

    Args:
        data: Mapping entry with 'request', 'response' and optional 'priority'
        resource_dirs: Directories searched for bodyFileName

    Returns:
        Validated StubRule

    Raises:
        InvalidStubDefinition: If the entry is malformed
        ResourceLoadError: If bodyFileName cannot be read
    """
    if not isinstance(data, dict):
        raise InvalidStubDefinition("Stub mapping must be an object")

    request = data.get('request')
    if not isinstance(request, dict):
        raise InvalidStubDefinition("Stub mapping is missing its 'request' section")
    response = data.get('response') or {}
    if not isinstance(response, dict):
        raise InvalidStubDefinition("'response' must be an object")

    url_keys = [key for key in URL_KEYS if key in request]
    if len(url_keys) > 1:
        raise InvalidStubDefinition(f"Only one of url, urlPattern, urlPath may be given (got {url_keys})")
    url = UrlMatcher(URL_KEYS[url_keys[0]], request[url_keys[0]]) if url_keys else None

    response_headers = response.get('headers') or {}
    if not isinstance(response_headers, dict):
        raise InvalidStubDefinition("'response.headers' must be a mapping of name to value")
    headers = [(str(k), str(v)) for k, v in response_headers.items()]
    body = _response_body(response, headers, ResourceLoader(resource_dirs))

    try:
        status = int(response.get('status', 200))
        delay_ms = int(response.get('fixedDelayMilliseconds', 0))
        priority = int(data.get('priority', DEFAULT_PRIORITY))
    except (TypeError, ValueError) as e:
        raise InvalidStubDefinition(f"Numeric field has a non-numeric value: {e}") from e

    rule_kwargs = {}
    if data.get('id'):
        rule_kwargs['id'] = str(data['id'])

    rule = StubRule(
        request=RequestPattern(
            method=request.get('method'),
            url=url,
            body_contains=_body_contains(request),
            headers=_contains_predicates(request.get('headers'), 'headers'),
            query_params=_contains_predicates(request.get('queryParameters'), 'queryParameters')
        ),
        response=ResponseTemplate(
            status=status,
            headers=tuple(headers),
            body=body,
            delay_ms=delay_ms,
            proxy_base_url=response.get('proxyBaseUrl')
        ),
        priority=priority,
        **rule_kwargs
    )
    return rule.validate()


def rule_to_dict(rule: StubRule) -> Dict[str, Any]:
    """Describe a rule with the same field names rule_from_dict reads."""
    request: Dict[str, Any] = {'method': rule.request.method}
    if rule.request.url is not None:
        request[URL_MODE_KEYS.get(rule.request.url.mode, 'url')] = rule.request.url.value
    if rule.request.body_contains is not None:
        request['bodyContains'] = rule.request.body_contains
    if rule.request.headers:
        request['headers'] = {name: {'contains': text} for name, text in rule.request.headers}
    if rule.request.query_params:
        request['queryParameters'] = {name: {'contains': text} for name, text in rule.request.query_params}

    response: Dict[str, Any] = {'status': rule.response.status}
    if rule.response.headers:
        response['headers'] = dict(rule.response.headers)
    if rule.response.body:
        response['body'] = rule.response.body.decode('utf-8', errors='replace')
    if rule.response.delay_ms:
        response['fixedDelayMilliseconds'] = rule.response.delay_ms
    if rule.response.proxy_base_url:
        response['proxyBaseUrl'] = rule.response.proxy_base_url

    return {'id': rule.id, 'priority': rule.priority, 'request': request, 'response': response}


def load_mappings(path: Union[str, Path], resource_dirs: Optional[Sequence[str]] = None) -> MappingSet:
    """
    Load a YAML or JSON mapping document.

    Relative bodyFileName entries are looked up in resource_dirs, then next
    to the mapping file, then in the working directory.

    Raises:
        ResourceLoadError: If the document itself cannot be read
        InvalidStubDefinition: If it is malformed
    """
    path = Path(path)
    if not path.is_file():
        raise ResourceLoadError(f"Mapping file not found: {path}", resource=str(path))

    try:
        with open(path, 'r', encoding='utf-8') as f:
            if path.suffix.lower() == '.json':
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (OSError, UnicodeDecodeError) as e:
        raise ResourceLoadError(f"Could not read mapping file {path}: {e}", resource=str(path)) from e
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise InvalidStubDefinition(f"Mapping file {path} is not valid: {e}") from e

    if isinstance(data, list):
        data = {'stubs': data}
    if not isinstance(data, dict):
        raise InvalidStubDefinition(f"Mapping file {path} must contain a mapping or a list of stubs")

    entries = data.get('stubs', data.get('mappings', [])) or []
    if not isinstance(entries, list):
        raise InvalidStubDefinition(f"'stubs' in {path} must be a list")

    search = list(resource_dirs or []) + [str(path.parent)]
    stubs = []
    for index, entry in enumerate(entries):
        try:
            stubs.append(rule_from_dict(entry, search))
        except InvalidStubDefinition as e:
            raise InvalidStubDefinition(f"Stub #{index} in {path}: {e}", problems=e.problems) from e

    fallback = str(data['fallback']) if data.get('fallback') else None
    if fallback:
        proxy_everything(fallback).validate()
    return MappingSet(stubs=stubs, fallback=fallback, source=str(path))
