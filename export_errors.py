"""Error types raised by the JIRA export pipeline."""


class ExportError(Exception):
    """Base class for every export failure."""


class MissingCredentials(ExportError):
    """No JIRA credentials are available for the session."""


class MissingProjectKey(ExportError):
    """The export configuration has no project key."""


class MissingGitHubToken(ExportError):
    """A GitHub export was requested without a token."""


class InvalidExportType(ExportError):
    """The export type is neither 'download' nor 'github'."""


class InvalidRepositoryURL(ExportError):
    """The GitHub repository URL has no owner or repository segment."""


class ExportCancelled(ExportError):
    """The run was stopped through its cancellation hook."""


class RateLimitExceeded(ExportError):
    """JIRA answered 429, or the cooldown from an earlier 429 is still running.

    Never retried or swallowed: every caller lets it through.
    """

    def __init__(self, reset_time: int):
        self.reset_time = reset_time
        super().__init__(f"JIRA rate limit exceeded, retry in {reset_time}s")


class HttpError(ExportError):
    """Non-2xx response with the server's error message when one was parsed."""

    def __init__(self, status: int, message: str, url: str = ""):
        self.status = status
        self.message = message
        self.url = url
        super().__init__(f"HTTP {status}: {message}")


class GitHubApiError(ExportError):
    """A GitHub content upload failed."""

    def __init__(self, message: str, status: int | None = None):
        self.message = message
        self.status = status
        super().__init__(f"GitHub API Error: {message}")
