import pytest

import jira_http
from conftest import DOMAIN, FakeResponse, FakeSession
from export_errors import HttpError, MissingCredentials, RateLimitExceeded
from jira_http import Credentials, JiraClient, RateLimitGuard, error_message, parse_cooldown


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


def test_parse_cooldown_from_body():
    body = "Rate limit exceeded. Please retry after waiting time: 37 seconds."
    assert parse_cooldown(body) == 37


def test_parse_cooldown_is_case_insensitive():
    assert parse_cooldown("Waiting Time: 5 Seconds") == 5


def test_parse_cooldown_uses_retry_after_header():
    assert parse_cooldown("Too many requests", {"Retry-After": "12"}) == 12


def test_parse_cooldown_defaults_to_sixty():
    assert parse_cooldown("Too many requests") == 60
    assert parse_cooldown("", {"Retry-After": "soon"}) == 60


def test_error_message_prefers_error_messages():
    response = FakeResponse(400, json_data={"errorMessages": ["The value 'X' does not exist"], "errors": {}})
    assert error_message(response) == "The value 'X' does not exist"


def test_error_message_falls_back_to_errors_then_message():
    assert error_message(FakeResponse(400, json_data={"errors": {"jql": "Bad JQL"}})) == "Bad JQL"
    assert error_message(FakeResponse(422, json_data={"message": "Invalid request"})) == "Invalid request"
    assert error_message(FakeResponse(500, text="")) == "Unknown error"
    assert error_message(FakeResponse(502, text="Bad gateway")) == "Bad gateway"


def test_guard_state_machine():
    clock = FakeClock()
    notified = []
    guard = RateLimitGuard(on_limited=notified.append, clock=clock)
    assert guard.state == jira_http.RateLimitState(False, 0)

    guard.trip(30)
    assert notified == [30]
    assert guard.is_limited
    assert guard.state.reset_time == 30

    clock.now += 10
    assert guard.remaining() == 20

    clock.now += 20
    assert not guard.is_limited
    assert guard.state == jira_http.RateLimitState(False, 0)


def test_guard_manual_reset():
    guard = RateLimitGuard(on_limited=lambda s: None, clock=FakeClock())
    guard.trip(60)
    guard.reset()
    assert not guard.is_limited


def test_guard_countdown_ticks_once_per_second():
    clock = FakeClock()
    guard = RateLimitGuard(on_limited=lambda s: None, clock=clock)
    guard.trip(3)
    ticks = []
    guard.countdown(tick=ticks.append, sleep=clock.sleep)
    assert ticks == [3, 2, 1]
    assert not guard.is_limited


def test_client_attaches_basic_auth_and_json_headers(credentials):
    session = FakeSession(lambda *a: FakeResponse(json_data={"ok": True}))
    client = JiraClient(credentials, session=session)

    assert client.base_url == DOMAIN
    assert session.auth == ("dev@acme.com", "secret")
    assert session.headers["Content-Type"] == "application/json"

    assert client.api_get("search", {"jql": "x"}) == {"ok": True}
    assert session.calls[0]["url"] == DOMAIN + "/rest/api/2/search"


def test_client_passes_absolute_urls_through(credentials):
    session = FakeSession(lambda *a: FakeResponse(content=b"bin"))
    client = JiraClient(credentials, session=session)
    client.request("https://media.example.com/file/1")
    assert session.calls[0]["url"] == "https://media.example.com/file/1"


def test_client_429_trips_guard_and_raises(credentials):
    notified = []
    guard = RateLimitGuard(on_limited=notified.append, clock=FakeClock())
    session = FakeSession(lambda *a: FakeResponse(429, text="waiting time: 42 seconds"))
    client = JiraClient(credentials, guard=guard, session=session)

    with pytest.raises(RateLimitExceeded) as exc:
        client.api_get("search")

    assert exc.value.reset_time == 42
    assert guard.state.is_limited
    assert guard.state.reset_time == 42
    assert notified == [42]


def test_client_refuses_calls_while_limited(credentials):
    guard = RateLimitGuard(on_limited=lambda s: None, clock=FakeClock())
    guard.trip(10)
    session = FakeSession(lambda *a: FakeResponse(json_data={}))
    client = JiraClient(credentials, guard=guard, session=session)

    with pytest.raises(RateLimitExceeded):
        client.api_get("search")
    assert session.calls == []


def test_client_raises_http_error_with_server_message(credentials):
    session = FakeSession(lambda *a: FakeResponse(400, json_data={"errorMessages": ["Bad project"]}))
    client = JiraClient(credentials, session=session)

    with pytest.raises(HttpError) as exc:
        client.api_get("search")
    assert exc.value.status == 400
    assert exc.value.message == "Bad project"


def test_rate_limit_is_not_an_http_error():
    assert not issubclass(RateLimitExceeded, HttpError)


def test_validate_credentials(credentials):
    session = FakeSession(lambda *a: FakeResponse(json_data={"emailAddress": "dev@acme.com"}))
    assert JiraClient(credentials, session=session).validate_credentials()

    session = FakeSession(lambda *a: FakeResponse(json_data={"emailAddress": "other@acme.com"}))
    assert not JiraClient(credentials, session=session).validate_credentials()

    session = FakeSession(lambda *a: FakeResponse(401, text="Unauthorized"))
    assert not JiraClient(credentials, session=session).validate_credentials()


def test_credentials_from_env(monkeypatch):
    monkeypatch.setattr(jira_http, "load_dotenv", lambda: None)
    monkeypatch.setenv("JIRA_URL", "https://acme.atlassian.net//")
    monkeypatch.setenv("JIRA_EMAIL", "dev@acme.com")
    monkeypatch.setenv("JIRA_API_TOKEN", "secret")

    creds = Credentials.from_env()
    assert creds.domain == "https://acme.atlassian.net"


def test_credentials_from_env_names_missing_variables(monkeypatch):
    monkeypatch.setattr(jira_http, "load_dotenv", lambda: None)
    monkeypatch.setenv("JIRA_URL", "https://acme.atlassian.net")
    monkeypatch.delenv("JIRA_EMAIL", raising=False)
    monkeypatch.delenv("JIRA_API_TOKEN", raising=False)

    with pytest.raises(MissingCredentials) as exc:
        Credentials.from_env()
    assert "JIRA_EMAIL" in str(exc.value)
    assert "JIRA_API_TOKEN" in str(exc.value)
