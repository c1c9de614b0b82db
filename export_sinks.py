"""
Delivery of export artifacts.

LocalDownloadSink hands each artifact to a save callback (a directory on disk for
the CLI, the download store of the HTTP service). GitHubSink commits the files to
a repository through the contents API, one PUT per file, all files in parallel.
"""

import base64
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable
from urllib.parse import urlparse

import requests

from export_bundle import ExportArtifacts
from export_errors import GitHubApiError, InvalidRepositoryURL
from jira_http import REQUEST_TIMEOUT, error_message

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
GITHUB_API_VERSION = "2022-11-28"
DEFAULT_BRANCH = "main"

SaveFile = Callable[[str, bytes], None]


class DirectorySaver:
    """Save callback writing artifacts into one output directory."""

    def __init__(self, output_dir: str | Path):
        self.output_dir = Path(output_dir)

    def __call__(self, filename: str, content: bytes) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        with open(self.output_dir / filename, "wb") as f:
            f.write(content)


class LocalDownloadSink:
    """Two independent saves: the CSV, then (when present) the attachment ZIP."""

    def __init__(self, save: SaveFile):
        self.save = save

    def deliver(self, artifacts: ExportArtifacts) -> list[str]:
        saved = [artifacts.csv_filename]
        self.save(artifacts.csv_filename, artifacts.csv_text.encode("utf-8"))
        if artifacts.archive is not None:
            self.save(artifacts.archive_filename, artifacts.archive)
            saved.append(artifacts.archive_filename)
        return saved


def parse_repository_url(repo_url: str) -> tuple[str, str]:
    """https://github.com/<owner>/<repo>[.git] -> (owner, repo)."""
    parsed = urlparse((repo_url or "").strip())
    if not parsed.scheme or not parsed.netloc:
        raise InvalidRepositoryURL(f"Invalid GitHub repository URL: {repo_url!r}")

    path = parsed.path.rstrip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")]
    segments = [segment for segment in path.split("/") if segment]
    owner = segments[0] if len(segments) > 0 else ""
    repo_name = segments[1] if len(segments) > 1 else ""
    if not owner or not repo_name:
        raise InvalidRepositoryURL(f"Invalid GitHub repository URL: {repo_url!r}")
    return owner, repo_name


class GitHubSink:
    """Create-or-update files in a GitHub repository.

    Uploads are not transactional: when one file fails the ones already written
    stay in the repository.
    """

    def __init__(
        self,
        repo_url: str,
        token: str,
        branch: str | None = None,
        session: requests.Session | None = None,
        max_workers: int = 4,
    ):
        self.owner, self.repo_name = parse_repository_url(repo_url)
        self.branch = branch or DEFAULT_BRANCH
        self.max_workers = max_workers
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github.v3+json",
                "X-GitHub-Api-Version": GITHUB_API_VERSION,
            }
        )

    def contents_url(self, path: str) -> str:
        return f"{GITHUB_API_URL}/repos/{self.owner}/{self.repo_name}/contents/{path}"

    @staticmethod
    def prepare_files(artifacts: ExportArtifacts) -> list[dict[str, str]]:
        """Repository paths with base64 content, CSV first."""
        base = f"exports/{artifacts.project_key}"
        files = [
            {
                "path": f"{base}/data.csv",
                "content": base64.b64encode(artifacts.csv_text.encode("utf-8")).decode("ascii"),
            }
        ]
        if artifacts.archive is not None:
            files.append(
                {
                    "path": f"{base}/attachments.zip",
                    "content": base64.b64encode(artifacts.archive).decode("ascii"),
                }
            )
        return files

    def existing_sha(self, path: str) -> str | None:
        """Blob sha of `path` on the target branch, None when it does not exist yet."""
        response = self.session.get(
            self.contents_url(path), params={"ref": self.branch}, timeout=REQUEST_TIMEOUT
        )
        if response.status_code == 404:
            return None
        if not response.ok:
            raise GitHubApiError(error_message(response), response.status_code)
        data = response.json()
        return data.get("sha") if isinstance(data, dict) else None

    def upload(self, path: str, content: str) -> dict:
        body = {
            "message": f"Add {path} from JIRA export",
            "content": content,
            "branch": self.branch,
        }
        sha = self.existing_sha(path)
        if sha:
            body["sha"] = sha

        response = self.session.put(self.contents_url(path), json=body, timeout=REQUEST_TIMEOUT)
        if not response.ok:
            raise GitHubApiError(error_message(response), response.status_code)
        logger.info("Uploaded %s to %s/%s@%s", path, self.owner, self.repo_name, self.branch)
        return response.json()

    def deliver(self, artifacts: ExportArtifacts) -> list[str]:
        files = self.prepare_files(artifacts)
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = {pool.submit(self.upload, f["path"], f["content"]): f["path"] for f in files}
            for future in as_completed(futures):
                try:
                    future.result()
                except requests.RequestException as e:
                    raise GitHubApiError(str(e)) from e
        return [f["path"] for f in files]
