# tests/conftest.py
"""
Shared fixtures.

- finding_event loads the sample EventBridge event shipped in events/.
- FakePool stands in for urllib3.PoolManager and records every request.
"""

import copy
import json
import os

import pytest

import securityhub_findings_ms_teams_notifier as notifier

EVENT_FILE = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "events", "securityhub_finding.json")
WEBHOOK_URL = "https://example.webhook.office.com/webhookb2/abc@def/IncomingWebhook/123/456"


class FakeResponse:
    def __init__(self, status, reason, data=b""):
        self.status = status
        self.reason = reason
        self.data = data


class FakePool:
    """Records requests and answers with a canned response or raises an error."""

    def __init__(self, status=200, reason="OK", data=b"1", error=None):
        self.response = FakeResponse(status, reason, data)
        self.error = error
        self.requests = []

    def respond(self, status, reason, data=b""):
        self.response = FakeResponse(status, reason, data)

    def request(self, method, url, body=None, headers=None, **kwargs):
        self.requests.append({"method": method, "url": url, "body": body, "headers": headers, "kwargs": kwargs})
        if self.error is not None:
            raise self.error
        return self.response


with open(EVENT_FILE, "r", encoding="utf-8") as fh:
    _SAMPLE_EVENT = json.load(fh)


@pytest.fixture
def finding_event():
    return copy.deepcopy(_SAMPLE_EVENT)


@pytest.fixture
def make_event(finding_event):
    """Return the sample event with a different normalized severity."""
    def _make(normalized):
        finding_event["detail"]["findings"][0]["Severity"]["Normalized"] = normalized
        return finding_event
    return _make


@pytest.fixture
def webhook_config():
    return notifier.WebhookConfig(url=WEBHOOK_URL)


@pytest.fixture
def fake_pool(monkeypatch):
    """Swap the module-level PoolManager; set status/reason/error on the returned pool."""
    pool = FakePool()
    monkeypatch.setattr(notifier, "http", pool)
    return pool


@pytest.fixture
def configured_env(monkeypatch):
    monkeypatch.setenv(notifier.WEBHOOK_URL_ENV, WEBHOOK_URL)
    monkeypatch.delenv(notifier.WEBHOOK_URL_PARAM_ENV, raising=False)
    monkeypatch.setattr(notifier, "_config", None)
