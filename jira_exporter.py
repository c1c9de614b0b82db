#!/usr/bin/env python3
"""
JIRA Cloud Exporter - Export a project's issues (and attachments) to CSV/ZIP or GitHub

Usage:
    python jira_exporter.py --project PROJECT_KEY
    python jira_exporter.py --project PROJ --attachments --from 2024-01-01 --to 2024-06-30
    python jira_exporter.py --project PROJ --github-repo https://github.com/acme/exports

Environment variables (or use .env file):
    JIRA_URL: Your JIRA Cloud URL (e.g., https://yourcompany.atlassian.net)
    JIRA_EMAIL: Your Atlassian account email
    JIRA_API_TOKEN: Your JIRA API token
    GITHUB_TOKEN: Token used for --github-repo when --github-token is not given

To create an API token:
    1. Go to https://id.atlassian.com/manage-profile/security/api-tokens
    2. Click "Create API token"
    3. Copy the token and set it as JIRA_API_TOKEN
"""

import argparse
import logging
import os
import sys
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

import requests

from export_bundle import (
    AttachmentArchive,
    DownloadedAttachment,
    ExportArtifacts,
    to_delimited_text,
    to_records,
)
from export_errors import (
    ExportCancelled,
    ExportError,
    HttpError,
    InvalidExportType,
    InvalidRepositoryURL,
    MissingCredentials,
    MissingGitHubToken,
    MissingProjectKey,
    RateLimitExceeded,
)
from export_sinks import DirectorySaver, GitHubSink, LocalDownloadSink, SaveFile
from jira_http import Credentials, JiraClient, RateLimitGuard

logger = logging.getLogger(__name__)

PAGE_SIZE = 100
ISSUE_FIELDS = "summary,description,status,created,attachment"
EXPORT_TYPES = ("download", "github")


@dataclass(frozen=True)
class ExportConfiguration:
    project_key: str
    include_attachments: bool = False
    date_from: str = ""
    date_to: str = ""
    export_type: str = "download"
    github_repo: str | None = None
    github_branch: str | None = None
    github_token: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExportConfiguration":
        """Build from the export form payload (camelCase or snake_case keys)."""

        def pick(camel: str, snake: str, default=None):
            if camel in data:
                return data[camel]
            return data.get(snake, default)

        return cls(
            project_key=(pick("projectKey", "project_key", "") or "").strip(),
            include_attachments=bool(pick("includeAttachments", "include_attachments", False)),
            date_from=pick("dateFrom", "date_from", "") or "",
            date_to=pick("dateTo", "date_to", "") or "",
            export_type=pick("exportType", "export_type", "download") or "download",
            github_repo=pick("githubRepo", "github_repo"),
            github_branch=pick("githubBranch", "github_branch"),
            github_token=pick("githubToken", "github_token"),
        )

    def validate(self) -> None:
        if not self.project_key:
            raise MissingProjectKey("Project key is required")
        if self.export_type not in EXPORT_TYPES:
            raise InvalidExportType(f"Unknown export type: {self.export_type!r}")
        if self.export_type == "github":
            if not self.github_repo:
                raise InvalidRepositoryURL("A GitHub repository URL is required")
            if not self.github_token:
                raise MissingGitHubToken("A GitHub token is required")


@dataclass(frozen=True)
class ProgressSnapshot:
    current: int
    total: int
    status: str


ProgressSink = Callable[[ProgressSnapshot], None]


@dataclass
class ExportResult:
    project_key: str
    export_type: str
    issue_count: int
    attachment_count: int
    delivered: list[str] = field(default_factory=list)


def build_jql(project_key: str, date_from: str | None = None, date_to: str | None = None) -> str:
    """JQL for one project, optionally bounded by creation date.

    Only the bounds that were given end up in the query.
    """
    jql = f'project = "{project_key}"'
    if date_from:
        jql += f' AND created >= "{date_from}"'
    if date_to:
        jql += f' AND created <= "{date_to}"'
    return jql


def check_cancelled(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise ExportCancelled("Export cancelled")


class JiraExporter:
    """Runs one export at a time for a connected JIRA session."""

    def __init__(
        self,
        credentials: Credentials | None = None,
        guard: RateLimitGuard | None = None,
        progress: ProgressSink | None = None,
        session: requests.Session | None = None,
        github_session: requests.Session | None = None,
    ):
        self.guard = guard or RateLimitGuard()
        self.progress_sink = progress
        self.progress = ProgressSnapshot(0, 0, "")
        self._session = session
        self._github_session = github_session
        self._client: JiraClient | None = None
        if credentials is not None:
            self._client = JiraClient(credentials, guard=self.guard, session=session)

    @property
    def credentials(self) -> Credentials | None:
        return self._client.credentials if self._client else None

    @property
    def client(self) -> JiraClient:
        if self._client is None:
            raise MissingCredentials("No JIRA credentials provided")
        return self._client

    def connect(self, credentials: Credentials) -> bool:
        """Check the credentials against /myself and keep them when they are valid."""
        client = JiraClient(credentials, guard=self.guard, session=self._session)
        if not client.validate_credentials():
            return False
        self._client = client
        return True

    def disconnect(self) -> None:
        self._client = None

    def report(self, current: int, total: int, status: str) -> None:
        self.progress = ProgressSnapshot(current, total, status)
        logger.debug("[%s/%s] %s", current, total, status)
        if self.progress_sink:
            self.progress_sink(self.progress)

    def fetch_all_issues(
        self, config: ExportConfiguration, cancel: threading.Event | None = None
    ) -> list[dict]:
        """Count, then fetch every page of 100 in server order.

        Any failing page aborts the fetch; nothing partial is returned.
        """
        client = self.client
        if not config.project_key:
            raise MissingProjectKey("Project key is required")

        jql = build_jql(config.project_key, config.date_from, config.date_to)
        count = client.api_get("search", {"jql": jql, "maxResults": 0})
        total = int(count.get("total") or 0)
        logger.info("JQL %r matches %s issues", jql, total)

        all_issues: list[dict] = []
        for start_at in range(0, total, PAGE_SIZE):
            check_cancelled(cancel)
            data = client.api_get(
                "search",
                {
                    "jql": jql,
                    "maxResults": PAGE_SIZE,
                    "startAt": start_at,
                    "fields": ISSUE_FIELDS,
                },
            )
            all_issues.extend(data.get("issues", []))
            self.report(
                len(all_issues),
                total,
                f"Fetching issues {start_at + 1} to {min(start_at + PAGE_SIZE, total)} of {total}...",
            )

        return all_issues

    def list_attachments(self, issue_key: str) -> list[dict]:
        """Attachment metadata of one issue; [] when the issue cannot be read."""
        try:
            data = self.client.api_get(f"issue/{issue_key}", {"fields": "attachment"})
        except (HttpError, requests.RequestException) as e:
            logger.warning("Failed to fetch attachments for issue %s: %s", issue_key, e)
            return []
        return (data.get("fields") or {}).get("attachment") or []

    def download_attachment(self, attachment: dict) -> DownloadedAttachment | None:
        """Binary content of one attachment; None when the download fails."""
        filename = attachment.get("filename")
        url = attachment.get("content")
        if not filename or not url:
            logger.warning("Attachment without filename or content link: %s", attachment)
            return None
        try:
            response = self.client.request(url, headers={"Content-Type": None})
            content = response.content
        except (HttpError, requests.RequestException) as e:
            logger.warning("Error downloading attachment %s: %s", filename, e)
            return None

        return DownloadedAttachment(
            filename=filename,
            content=content,
            mime_type=attachment.get("mimeType"),
            size=attachment.get("size"),
            url=url,
        )

    def collect_attachments(
        self, issue_key: str, archive: AttachmentArchive
    ) -> list[DownloadedAttachment]:
        """Download an issue's attachments one at a time into the archive."""
        downloaded = []
        for attachment in self.list_attachments(issue_key):
            result = self.download_attachment(attachment)
            if result is None:
                continue
            archive.add(issue_key, result)
            downloaded.append(result)
        return downloaded

    def sink_for(self, config: ExportConfiguration, save: SaveFile | None):
        if config.export_type == "github":
            return GitHubSink(
                config.github_repo,
                config.github_token,
                branch=config.github_branch,
                session=self._github_session,
            )
        if save is None:
            save = DirectorySaver("jira_export")
        return LocalDownloadSink(save)

    def run_export(
        self,
        config: ExportConfiguration,
        save: SaveFile | None = None,
        cancel: threading.Event | None = None,
    ) -> ExportResult:
        """query -> issues -> attachments -> CSV/ZIP -> sink, strictly in that order."""
        if self._client is None:
            raise MissingCredentials("No JIRA credentials provided")
        config.validate()
        sink = self.sink_for(config, save)

        self.report(0, 0, "Fetching issues...")
        issues = self.fetch_all_issues(config, cancel)
        total = len(issues)
        self.report(0, total, "Starting export...")

        archive = AttachmentArchive() if config.include_attachments else None
        attachments_by_issue: dict[str, list[DownloadedAttachment]] = {}
        for i, issue in enumerate(issues):
            check_cancelled(cancel)
            issue_key = issue.get("key")
            if archive is not None:
                self.report(i + 1, total, f"Fetching attachments for {issue_key}...")
                attachments_by_issue[issue_key] = self.collect_attachments(issue_key, archive)
            self.report(i + 1, total, f"Processed {i + 1} of {total} issues...")

        records = to_records(issues, attachments_by_issue)
        artifacts = ExportArtifacts(
            project_key=config.project_key,
            csv_text=to_delimited_text(records),
            archive=archive.to_bytes() if archive is not None else None,
        )

        check_cancelled(cancel)
        if config.export_type == "github":
            self.report(total, total, "Preparing GitHub export...")
        else:
            self.report(total, total, "Saving export files...")
        delivered = sink.deliver(artifacts)
        self.report(total, total, "Export complete")

        return ExportResult(
            project_key=config.project_key,
            export_type=config.export_type,
            issue_count=total,
            attachment_count=len(archive) if archive is not None else 0,
            delivered=delivered,
        )


def format_seconds(seconds: int) -> str:
    minutes, secs = divmod(max(seconds, 0), 60)
    return f"{minutes}:{secs:02d}"


def print_progress(snapshot: ProgressSnapshot) -> None:
    print(f"  [{snapshot.current}/{snapshot.total}] {snapshot.status}")


def main():
    parser = argparse.ArgumentParser(
        description="Export JIRA issues to CSV/ZIP files or a GitHub repository",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    parser.add_argument(
        "--project",
        "-p",
        help="JIRA project key (e.g., PROJ)",
    )
    parser.add_argument(
        "--attachments",
        "-a",
        action="store_true",
        help="Also download attachments into a ZIP archive",
    )
    parser.add_argument(
        "--from",
        dest="date_from",
        default="",
        help="Only export issues created on or after this date (YYYY-MM-DD)",
    )
    parser.add_argument(
        "--to",
        dest="date_to",
        default="",
        help="Only export issues created on or before this date (YYYY-MM-DD)",
    )
    parser.add_argument(
        "--github-repo",
        help="Upload to this GitHub repository URL instead of saving locally",
    )
    parser.add_argument(
        "--github-branch",
        help="Target branch for --github-repo (default: main)",
    )
    parser.add_argument(
        "--github-token",
        help="GitHub token (default: $GITHUB_TOKEN)",
    )
    parser.add_argument(
        "--output",
        "-o",
        default="jira_export",
        help="Output directory for local exports (default: jira_export)",
    )
    parser.add_argument(
        "--quiet",
        "-q",
        action="store_true",
        help="Suppress progress output",
    )
    parser.add_argument(
        "--test",
        "-t",
        action="store_true",
        help="Test the JIRA credentials and exit",
    )
    parser.add_argument(
        "--wait",
        action="store_true",
        help="When rate limited, count the cooldown down before exiting",
    )

    args = parser.parse_args()
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s: %(message)s")

    try:
        credentials = Credentials.from_env()
    except MissingCredentials as e:
        print(f"ERROR: {e}")
        print("\nSet them in a .env file or as environment variables.")
        sys.exit(1)

    exporter = JiraExporter(progress=None if args.quiet else print_progress)

    if not args.test and not args.project:
        parser.error("--project is required")

    export_type = "github" if args.github_repo else "download"
    config = ExportConfiguration(
        project_key=args.project or "",
        include_attachments=args.attachments,
        date_from=args.date_from,
        date_to=args.date_to,
        export_type=export_type,
        github_repo=args.github_repo,
        github_branch=args.github_branch,
        github_token=args.github_token or os.environ.get("GITHUB_TOKEN"),
    )

    try:
        print(f"Connecting to {credentials.base_url} as {credentials.email}...")
        if not exporter.connect(credentials):
            print("ERROR: Authentication failed")
            print("Check your JIRA_EMAIL and JIRA_API_TOKEN")
            sys.exit(1)
        print("✓ Connected successfully!")
        if args.test:
            sys.exit(0)

        result = exporter.run_export(config, save=DirectorySaver(args.output))

    except RateLimitExceeded as e:
        print(f"\nRate limited by JIRA. Please wait {format_seconds(e.reset_time)} before trying again.")
        if args.wait:
            exporter.guard.countdown(
                tick=lambda left: print(f"  Cooldown: {format_seconds(left)} remaining", end="\r")
            )
            print("\nCooldown finished. Run the export again.")
        sys.exit(1)
    except ExportError as e:
        print(f"Export failed: {e}")
        sys.exit(1)
    except requests.RequestException as e:
        print(f"Export failed: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nExport cancelled")
        sys.exit(1)

    print(f"\n{'=' * 60}")
    print(f"COMPLETE: Exported {result.issue_count} issues from {result.project_key}")
    if config.include_attachments:
        print(f"Attachments archived: {result.attachment_count}")
    for name in result.delivered:
        if result.export_type == "github":
            print(f"  Uploaded: {name}")
        else:
            print(f"  Saved: {os.path.join(args.output, name)}")
    print("=" * 60)


if __name__ == "__main__":
    main()
