"""Shared fakes for registry HTTP traffic."""

import json

import pytest
import requests


class FakeResponse:
    def __init__(self, payload=None, status_code=200, body=None):
        self._payload = payload
        self._body = body
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Client Error", response=self)

    def json(self):
        if self._body is not None:
            return json.loads(self._body)
        return self._payload


class FakeSession:
    """Stands in for requests.Session; routes are keyed by URL or (URL, page)."""

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []
        self.closed = False

    def get(self, url, timeout=None, headers=None, params=None):
        self.calls.append({'url': url, 'headers': headers, 'params': params, 'timeout': timeout})
        key = (url, params['page']) if params and 'page' in params else url
        if key not in self.routes:
            raise requests.ConnectionError(f"no route for {key}")
        response = self.routes[key]
        if isinstance(response, Exception):
            raise response
        if not isinstance(response, FakeResponse):
            response = FakeResponse(response)
        return response

    def close(self):
        self.closed = True


@pytest.fixture
def make_session():
    return FakeSession


@pytest.fixture
def make_response():
    return FakeResponse
