"""Turns fetched JIRA issues into the export artifacts (CSV text and attachment ZIP)."""

import io
import json
import zipfile
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class DownloadedAttachment:
    filename: str
    content: bytes
    mime_type: str | None
    size: int | None
    url: str | None = None


@dataclass(frozen=True)
class ExportArtifacts:
    project_key: str
    csv_text: str
    archive: bytes | None = None

    @property
    def csv_filename(self) -> str:
        return f"jira-export-{self.project_key}.csv"

    @property
    def archive_filename(self) -> str:
        return f"jira-attachments-{self.project_key}.zip"


def attachment_entry(attachment: DownloadedAttachment) -> dict[str, Any]:
    return {
        "filename": attachment.filename,
        "size": attachment.size,
        "mimeType": attachment.mime_type,
        "url": attachment.url,
    }


def to_record(issue: dict, attachments: list[DownloadedAttachment] | None = None) -> dict[str, Any]:
    """Flatten one issue into the exported column set."""
    fields = issue.get("fields") or {}
    status = fields.get("status") or {}
    return {
        "key": issue.get("key"),
        "summary": fields.get("summary"),
        "description": fields.get("description"),
        "status": status.get("name"),
        "created": fields.get("created"),
        "attachments": [attachment_entry(a) for a in attachments or []],
    }


def to_records(
    issues: list[dict], attachments_by_issue: dict[str, list[DownloadedAttachment]] | None = None
) -> list[dict[str, Any]]:
    attachments_by_issue = attachments_by_issue or {}
    return [to_record(issue, attachments_by_issue.get(issue.get("key"))) for issue in issues]


def _encode_field(value: Any) -> str:
    # Compact JSON, then every '"' doubled
    return json.dumps(value, ensure_ascii=False, separators=(",", ":")).replace('"', '""')


def to_delimited_text(records: list[dict[str, Any]]) -> str:
    """Comma-separated text; the columns are the keys of the first record.

    Falsy values are written as an empty string. The attachments column holds
    only the list of filenames.
    """
    if not records:
        return ""

    headers = list(records[0].keys())
    rows = [",".join(headers)]
    for record in records:
        cells = []
        for header in headers:
            value = record.get(header)
            if header == "attachments" and isinstance(value, list):
                cells.append(_encode_field([a.get("filename") for a in value]))
            else:
                cells.append(_encode_field(value or ""))
        rows.append(",".join(cells))
    return "\n".join(rows)


class AttachmentArchive:
    """ZIP of downloaded attachments laid out as attachments/<issueKey>/<filename>."""

    def __init__(self):
        # Same path twice within an issue: last one wins
        self._entries: dict[str, bytes] = {}

    def __len__(self) -> int:
        return len(self._entries)

    @staticmethod
    def entry_path(issue_key: str, filename: str) -> str:
        return f"attachments/{issue_key}/{filename}"

    def add(self, issue_key: str, attachment: DownloadedAttachment) -> str:
        path = self.entry_path(issue_key, attachment.filename)
        self._entries[path] = attachment.content
        return path

    def names(self) -> list[str]:
        return list(self._entries)

    def to_bytes(self) -> bytes:
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for path, content in self._entries.items():
                zf.writestr(path, content)
        return buffer.getvalue()
