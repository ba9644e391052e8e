"""
Shared fixtures for the market data client tests.

Run: python -m pytest tests/ -v
"""

import json
import os

# Console logging only while testing
os.environ.setdefault("LOG_TO_FILE", "false")

import pytest
import requests
from unittest.mock import MagicMock


def make_response(status=200, payload=None, headers=None, text=None):
    """Real requests.Response with a canned body"""
    response = requests.Response()
    response.status_code = status
    response.encoding = "utf-8"
    if text is not None:
        response._content = text.encode("utf-8")
    elif payload is not None:
        response._content = json.dumps(payload).encode("utf-8")
    else:
        response._content = b""
    response.headers.update(headers or {})
    return response


class FakeClock:
    """Manually advanced clock"""

    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session():
    """HTTP session double; set session.request.side_effect per test"""
    return MagicMock(spec=requests.Session)
