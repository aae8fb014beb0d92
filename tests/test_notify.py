"""Tests for run-summary notifications."""

import json

import pytest
import requests

import notify

RESULTS = [
    {'container': 'db', 'image': 'postgres:16.2', 'is_latest': 'no'},
    {'container': 'esphome', 'image': 'ghcr.io/esphome/esphome:2024.6', 'is_latest': 'unknown'},
    {'container': 'cache', 'image': 'redis:latest', 'is_latest': 'yes'},
]


class _Response:
    def __init__(self, status_code=200):
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")


@pytest.fixture
def captured(monkeypatch):
    calls = []

    def fake_post(url, data=None, headers=None, timeout=None):
        calls.append({'method': 'POST', 'url': url, 'data': data, 'headers': headers})
        return _Response()

    def fake_request(method, url, data=None, headers=None, timeout=None):
        calls.append({'method': method, 'url': url, 'data': data, 'headers': headers})
        return _Response()

    monkeypatch.setattr(notify.requests, 'post', fake_post)
    monkeypatch.setattr(notify.requests, 'request', fake_request)
    return calls


class TestPayload:

    def test_only_outdated_containers_listed(self):
        payload = notify._build_payload(RESULTS)
        assert payload['checked'] == 3
        assert payload['outdated'] == [RESULTS[0]]
        assert payload['unknown_count'] == 1


class TestSendNotifications:

    def test_nothing_configured(self, captured):
        notify.send_notifications(None, RESULTS)
        notify.send_notifications({}, RESULTS)
        assert captured == []

    def test_nothing_outdated(self, captured):
        notify.send_notifications({'ntfy': {'url': 'https://ntfy.sh/t'}}, RESULTS[1:])
        assert captured == []

    def test_ntfy_message(self, captured):
        notify.send_notifications({'ntfy': {'url': 'https://ntfy.sh/t', 'priority': 'bogus'}}, RESULTS)

        call = captured[0]
        assert call['url'] == 'https://ntfy.sh/t'
        assert call['headers']['Title'] == 'is-latest: 1 container(s) not on latest'
        assert call['headers']['Priority'] == 'default'
        body = call['data'].decode('utf-8')
        assert 'db (postgres:16.2)' in body
        assert '1 could not be checked' in body

    def test_webhook_raw_payload(self, captured):
        notify.send_notifications({'webhook': {'url': 'https://hooks.example/x', 'method': 'put'}}, RESULTS)

        call = captured[0]
        assert call['method'] == 'PUT'
        assert json.loads(call['data'])['outdated'][0]['container'] == 'db'

    def test_webhook_template(self, captured):
        cfg = {'webhook': {
            'url': 'https://hooks.example/x',
            'body_template': '{"text": "$outdated_count of $checked outdated: $containers"}',
        }}
        notify.send_notifications(cfg, RESULTS)

        assert json.loads(captured[0]['data']) == {'text': '1 of 3 outdated: db (postgres:16.2)'}

    def test_failures_are_swallowed(self, monkeypatch):
        def boom(*args, **kwargs):
            raise requests.ConnectionError("down")

        monkeypatch.setattr(notify.requests, 'post', boom)
        monkeypatch.setattr(notify.requests, 'request', boom)

        notify.send_notifications({
            'ntfy': {'url': 'https://ntfy.sh/t'},
            'webhook': {'url': 'https://hooks.example/x'},
        }, RESULTS)

    def test_sender_reports_http_error(self, monkeypatch):
        monkeypatch.setattr(notify.requests, 'post', lambda *a, **k: _Response(500))
        assert notify.send_ntfy({'url': 'https://ntfy.sh/t'}, notify._build_payload(RESULTS)) is False
