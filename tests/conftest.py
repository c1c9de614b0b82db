"""Test configuration: project root on sys.path and a scripted requests-style session.

If users invoke `pytest` without installing the project, the root modules still
import.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from urllib.parse import urlparse

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from jira_http import Credentials  # noqa: E402

DOMAIN = "https://acme.atlassian.net"


class FakeResponse:
    def __init__(self, status_code=200, json_data=None, text=None, content=None, headers=None, url=""):
        self.status_code = status_code
        self._json = json_data
        if text is None:
            text = json.dumps(json_data) if json_data is not None else ""
        self.text = text
        self.content = content if content is not None else text.encode("utf-8")
        self.headers = headers or {}
        self.url = url

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def json(self):
        if self._json is None:
            raise ValueError("No JSON body")
        return self._json


class FakeSession:
    """Records every call and answers through `handler(method, path, params, kwargs)`."""

    def __init__(self, handler):
        self.handler = handler
        self.calls = []
        self.auth = None
        self.headers = {}

    def request(self, method, url, params=None, **kwargs):
        parsed = urlparse(url)
        self.calls.append({"method": method, "url": url, "path": parsed.path, "params": params, **kwargs})
        response = self.handler(method, url, params or {}, kwargs)
        if not response.url:
            response.url = url
        return response

    def get(self, url, params=None, **kwargs):
        return self.request("GET", url, params=params, **kwargs)

    def put(self, url, **kwargs):
        return self.request("PUT", url, **kwargs)


def make_issue(key, summary="Summary", status="To Do", description=None, created="2024-01-01T10:00:00.000+0000"):
    return {
        "key": key,
        "fields": {
            "summary": summary,
            "description": description,
            "status": {"name": status},
            "created": created,
        },
    }


def jira_search_handler(issues, extra=None):
    """Handler serving /search from `issues`, delegating other paths to `extra`."""

    def handler(method, url, params, kwargs):
        path = urlparse(url).path
        if path.endswith("/rest/api/2/search"):
            if params.get("maxResults") == 0:
                return FakeResponse(json_data={"total": len(issues), "issues": []})
            start = params["startAt"]
            page = issues[start:start + params["maxResults"]]
            return FakeResponse(json_data={"total": len(issues), "startAt": start, "issues": page})
        if path.endswith("/rest/api/2/myself"):
            return FakeResponse(json_data={"emailAddress": "dev@acme.com"})
        if extra is not None:
            return extra(method, url, params, kwargs)
        return FakeResponse(404, json_data={"errorMessages": ["Not found"]})

    return handler


@pytest.fixture
def credentials():
    return Credentials(domain=DOMAIN + "/", email="dev@acme.com", token="secret")
