"""Shared fixtures: a scripted HTTP session and throwaway stores."""

import json
from typing import Any, Dict, List, Optional, Tuple

import pytest
import requests

from ratefeed.core.rate_limiter import RateLimitPolicy
from ratefeed.core.session_store import SessionStore
from ratefeed.core.storage import (
    CapMappingStore,
    MatchAuditLog,
    MatchStore,
    RateStore,
    ReferenceVehicleStore,
)


class FakeResponse:
    """Just enough of requests.Response for the provider clients."""

    def __init__(self, status_code: int = 200, text: str = "", url: str = "", json_data: Any = None):
        self.status_code = status_code
        self.url = url
        self._json = json_data
        self.text = text if json_data is None else json.dumps(json_data)

    def json(self):
        if self._json is None:
            return json.loads(self.text)
        return self._json


class FakeHttp:
    """
    Scripted stand-in for requests.Session.

    Routes are matched on (method, url substring) in registration order.
    A route with a list of responses pops one per call; the last one
    repeats.
    """

    def __init__(self):
        self.headers: Dict[str, str] = {}
        self.cookies = requests.cookies.RequestsCookieJar()
        self.calls: List[Dict[str, Any]] = []
        self._routes: List[Tuple[str, str, List[Any]]] = []
        self.closed = False

    def route(self, method: str, fragment: str, *responses):
        self._routes.append((method.upper(), fragment, list(responses)))
        return self

    def request(self, method: str, url: str, headers: Optional[Dict[str, str]] = None, **kwargs):
        self.calls.append({'method': method.upper(), 'url': url, 'headers': headers or {}, **kwargs})
        for route_method, fragment, responses in self._routes:
            if route_method == method.upper() and fragment in url:
                response = responses.pop(0) if len(responses) > 1 else responses[0]
                if isinstance(response, Exception):
                    raise response
                if not response.url:
                    response.url = url
                return response
        raise AssertionError(f"Unexpected request: {method} {url}")

    def paths(self) -> List[str]:
        return [f"{c['method']} {c['url']}" for c in self.calls]

    def close(self):
        self.closed = True


@pytest.fixture
def http():
    return FakeHttp()


@pytest.fixture
def policy():
    return RateLimitPolicy.immediate()


@pytest.fixture
def session_store(tmp_path):
    return SessionStore(tmp_path / "sessions.json")


@pytest.fixture
def rate_store(tmp_path):
    return RateStore(tmp_path / "rates")


@pytest.fixture
def reference_store(tmp_path):
    return ReferenceVehicleStore(tmp_path / "reference_vehicles.json")


@pytest.fixture
def match_store(tmp_path):
    return MatchStore(tmp_path / "matches.json")


@pytest.fixture
def mapping_store(tmp_path):
    return CapMappingStore(tmp_path / "cap_mappings.json")


@pytest.fixture
def audit_log(tmp_path):
    return MatchAuditLog(tmp_path / "match_audit.jsonl")
