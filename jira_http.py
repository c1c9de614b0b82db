"""
Authenticated access to the JIRA Cloud REST API (v2).

Every request goes through JiraClient.handle_response(), which turns a 429 into
RateLimitExceeded (after arming the RateLimitGuard) and any other non-2xx answer
into HttpError carrying the server's own error message.
"""

import logging
import math
import os
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import urljoin

import requests
from dotenv import load_dotenv

from export_errors import HttpError, MissingCredentials, RateLimitExceeded

logger = logging.getLogger(__name__)

API_PREFIX = "rest/api/2/"
REQUEST_TIMEOUT = 30
DEFAULT_COOLDOWN = 60

# JIRA Cloud puts the cooldown in the 429 body, e.g. "... waiting time: 37 seconds"
WAITING_TIME_RE = re.compile(r"waiting time:\s*(\d+)\s*seconds?", re.IGNORECASE)


@dataclass(frozen=True)
class Credentials:
    domain: str
    email: str
    token: str

    @property
    def base_url(self) -> str:
        return self.domain.rstrip("/")

    @classmethod
    def from_env(cls) -> "Credentials":
        """Read JIRA_URL, JIRA_EMAIL and JIRA_API_TOKEN (a .env file is honoured)."""
        load_dotenv()
        values = {
            "JIRA_URL": os.environ.get("JIRA_URL", ""),
            "JIRA_EMAIL": os.environ.get("JIRA_EMAIL", ""),
            "JIRA_API_TOKEN": os.environ.get("JIRA_API_TOKEN", ""),
        }
        missing = [name for name, value in values.items() if not value]
        if missing:
            raise MissingCredentials(
                "Missing required environment variables: " + ", ".join(missing)
            )
        return cls(
            domain=values["JIRA_URL"].rstrip("/"),
            email=values["JIRA_EMAIL"],
            token=values["JIRA_API_TOKEN"],
        )


@dataclass(frozen=True)
class RateLimitState:
    is_limited: bool
    reset_time: int


def _log_rate_limit(seconds: int) -> None:
    logger.warning("JIRA rate limit reached. Please wait %ss before trying again.", seconds)


class RateLimitGuard:
    """Idle -> Limited(reset_time) -> Idle.

    Entered through trip() when a 429 arrives. Leaves Limited when the cooldown
    has elapsed or when reset() is called. The guard never retries anything: the
    operator starts the export again once it is idle.
    """

    def __init__(
        self,
        on_limited: Callable[[int], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.on_limited = on_limited or _log_rate_limit
        self._clock = clock
        self._lock = threading.Lock()
        self._reset_time = 0
        self._deadline: float | None = None

    def trip(self, seconds: int) -> None:
        """Enter Limited for `seconds` and notify once."""
        with self._lock:
            self._reset_time = seconds
            self._deadline = self._clock() + seconds
        self.on_limited(seconds)

    def reset(self) -> None:
        with self._lock:
            self._deadline = None
            self._reset_time = 0

    def remaining(self) -> int:
        """Whole seconds left in the cooldown (0 when idle)."""
        with self._lock:
            if self._deadline is None:
                return 0
            left = self._deadline - self._clock()
            if left <= 0:
                self._deadline = None
                self._reset_time = 0
                return 0
            return math.ceil(left)

    @property
    def is_limited(self) -> bool:
        return self.remaining() > 0

    @property
    def state(self) -> RateLimitState:
        limited = self.is_limited
        return RateLimitState(is_limited=limited, reset_time=self._reset_time if limited else 0)

    def countdown(
        self,
        tick: Callable[[int], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Count the cooldown down once per second, then go back to Idle."""
        while True:
            left = self.remaining()
            if left <= 0:
                break
            if tick:
                tick(left)
            sleep(1)
        self.reset()


def parse_cooldown(body: str, headers: Any = None) -> int:
    """Cooldown in seconds for a 429 answer."""
    match = WAITING_TIME_RE.search(body or "")
    if match:
        return int(match.group(1))
    retry_after = (headers or {}).get("Retry-After")
    if retry_after and str(retry_after).strip().isdigit():
        return int(retry_after)
    return DEFAULT_COOLDOWN


def error_message(response: requests.Response) -> str:
    """Pull the human-readable message out of a JIRA (or GitHub) error body."""
    try:
        data = response.json()
    except ValueError:
        text = (response.text or "").strip()
        return text[:200] or "Unknown error"
    if isinstance(data, dict):
        messages = data.get("errorMessages") or []
        if messages:
            return str(messages[0])
        errors = data.get("errors")
        if isinstance(errors, dict) and errors:
            return str(next(iter(errors.values())))
        if data.get("message"):
            return str(data["message"])
    return "Unknown error"


class JiraClient:
    """Basic-auth (email:token) client bound to one JIRA site."""

    def __init__(
        self,
        credentials: Credentials,
        guard: RateLimitGuard | None = None,
        session: requests.Session | None = None,
        timeout: float = REQUEST_TIMEOUT,
    ):
        self.credentials = credentials
        self.base_url = credentials.base_url
        self.guard = guard or RateLimitGuard()
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.auth = (credentials.email, credentials.token)
        self.session.headers.update(
            {"Accept": "application/json", "Content-Type": "application/json"}
        )

    def url_for(self, path: str) -> str:
        # Attachment content links are absolute and are used as-is
        return urljoin(self.base_url + "/", path.lstrip("/"))

    def request(self, path: str, method: str = "GET", **kwargs) -> requests.Response:
        """Send one request; raises RateLimitExceeded or HttpError on failure."""
        if self.guard.is_limited:
            raise RateLimitExceeded(self.guard.remaining())
        url = self.url_for(path)
        kwargs.setdefault("timeout", self.timeout)
        logger.debug("%s %s params=%s", method, url, kwargs.get("params"))
        response = self.session.request(method, url, **kwargs)
        return self.handle_response(response)

    def handle_response(self, response: requests.Response) -> requests.Response:
        if response.status_code == 429:
            seconds = parse_cooldown(response.text, response.headers)
            self.guard.trip(seconds)
            raise RateLimitExceeded(seconds)
        if not response.ok:
            raise HttpError(response.status_code, error_message(response), response.url)
        return response

    def api_get(self, endpoint: str, params: dict | None = None) -> dict[str, Any]:
        """GET rest/api/2/<endpoint> and decode the JSON body."""
        return self.request(API_PREFIX + endpoint, params=params).json()

    def validate_credentials(self) -> bool:
        """True when /myself answers with the submitted email address."""
        try:
            user = self.api_get("myself")
        except HttpError as e:
            logger.warning("Credential check failed: %s", e)
            return False
        return user.get("emailAddress") == self.credentials.email
