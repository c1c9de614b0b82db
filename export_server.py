#!/usr/bin/env python3
"""
JIRA Export Service - JSON API driving the exporter from a browser front end

Usage:
    python export_server.py [--host HOST] [--port PORT]

Endpoints:
    POST /api/connect              {domain, email, token}
    POST /api/disconnect
    POST /api/export               {projectKey, includeAttachments, dateFrom, dateTo,
                                    exportType, githubRepo, githubBranch, githubToken}
    POST /api/export/cancel
    GET  /api/progress
    GET  /api/rate-limit
    POST /api/rate-limit/reset
    GET  /api/downloads/<filename>
"""

import argparse
import io
import logging
import threading

from flask import Flask, jsonify, request, send_file

from export_errors import (
    ExportError,
    InvalidExportType,
    InvalidRepositoryURL,
    MissingGitHubToken,
    MissingProjectKey,
    RateLimitExceeded,
)
from jira_exporter import ExportConfiguration, JiraExporter
from jira_http import Credentials, RateLimitGuard

logger = logging.getLogger(__name__)

CONFIG_ERRORS = (MissingProjectKey, InvalidExportType, InvalidRepositoryURL, MissingGitHubToken)


class ExportSession:
    """Connected credentials, the running export and its finished downloads."""

    def __init__(self, jira_session=None, github_session=None):
        self.guard = RateLimitGuard()
        self.exporter = JiraExporter(
            guard=self.guard, session=jira_session, github_session=github_session
        )
        self.lock = threading.Lock()
        self.downloads: dict[str, bytes] = {}
        self.thread: threading.Thread | None = None
        self.cancel: threading.Event | None = None
        self.exporting = False
        self.error: str | None = None
        self.rate_limited = False
        self.result = None

    def save(self, filename: str, content: bytes) -> None:
        self.downloads[filename] = content

    def run(self, config: ExportConfiguration, cancel: threading.Event) -> None:
        """Body of one export run; the only writer of the progress snapshot."""
        try:
            self.result = self.exporter.run_export(config, save=self.save, cancel=cancel)
        except RateLimitExceeded as e:
            self.rate_limited = True
            self.error = str(e)
        except ExportError as e:
            self.error = str(e)
        except Exception as e:
            logger.exception("Export failed")
            self.error = f"Export failed: {e}"
        finally:
            with self.lock:
                self.exporting = False

    def start(self, config: ExportConfiguration, background: bool = True) -> None:
        cancel = threading.Event()
        self.cancel = cancel
        self.error = None
        self.rate_limited = False
        self.result = None
        self.downloads = {}
        if background:
            self.thread = threading.Thread(target=self.run, args=(config, cancel), daemon=True)
            self.thread.start()
        else:
            self.run(config, cancel)


def create_app(jira_session=None, github_session=None, background: bool = True) -> Flask:
    app = Flask(__name__)
    app.config["EXPORT_SESSION"] = ExportSession(jira_session, github_session)
    app.config["EXPORT_IN_BACKGROUND"] = background

    def current() -> ExportSession:
        return app.config["EXPORT_SESSION"]

    @app.errorhandler(RateLimitExceeded)
    def rate_limited(e):
        return jsonify({"error": str(e), "isLimited": True, "resetTime": e.reset_time}), 429

    @app.route("/api/connect", methods=["POST"])
    def connect():
        """Validate and keep the JIRA credentials."""
        data = request.get_json(silent=True) or {}
        domain = (data.get("domain") or "").strip()
        email = (data.get("email") or "").strip()
        token = data.get("token") or ""
        if not domain or not email or not token:
            return jsonify({"error": "Please fill in all fields"}), 400

        session = current()
        if not session.exporter.connect(Credentials(domain.rstrip("/"), email, token)):
            return jsonify({"error": "Failed to connect to JIRA. Check your credentials."}), 401
        return jsonify({"connected": True, "domain": domain.rstrip("/"), "email": email})

    @app.route("/api/disconnect", methods=["POST"])
    def disconnect():
        session = current()
        if session.cancel is not None:
            session.cancel.set()
        session.exporter.disconnect()
        session.downloads = {}
        return jsonify({"connected": False})

    @app.route("/api/export", methods=["POST"])
    def start_export():
        """Start one export run."""
        session = current()
        if session.exporter.credentials is None:
            return jsonify({"error": "No JIRA credentials provided"}), 401

        config = ExportConfiguration.from_dict(request.get_json(silent=True) or {})
        try:
            config.validate()
        except CONFIG_ERRORS as e:
            return jsonify({"error": str(e)}), 400

        with session.lock:
            if session.exporting:
                return jsonify({"error": "An export is already running"}), 409
            session.exporting = True
        session.start(config, background=app.config["EXPORT_IN_BACKGROUND"])
        return jsonify({"started": True, "projectKey": config.project_key}), 202

    @app.route("/api/export/cancel", methods=["POST"])
    def cancel_export():
        session = current()
        if session.cancel is None or not session.exporting:
            return jsonify({"cancelled": False})
        session.cancel.set()
        return jsonify({"cancelled": True})

    @app.route("/api/progress")
    def progress():
        session = current()
        snapshot = session.exporter.progress
        result = session.result
        return jsonify(
            {
                "current": snapshot.current,
                "total": snapshot.total,
                "status": snapshot.status,
                "exporting": session.exporting,
                "error": session.error,
                "rateLimited": session.rate_limited,
                "delivered": result.delivered if result else [],
                "downloads": sorted(session.downloads),
            }
        )

    @app.route("/api/rate-limit")
    def rate_limit():
        session = current()
        state = session.guard.state
        return jsonify(
            {
                "isLimited": state.is_limited,
                "resetTime": state.reset_time,
                "remaining": session.guard.remaining(),
            }
        )

    @app.route("/api/rate-limit/reset", methods=["POST"])
    def reset_rate_limit():
        current().guard.reset()
        return jsonify({"isLimited": False, "resetTime": 0})

    @app.route("/api/downloads/<filename>")
    def download(filename):
        """Send one artifact as a file download."""
        content = current().downloads.get(filename)
        if content is None:
            return jsonify({"error": "File not found"}), 404
        mimetype = "application/zip" if filename.endswith(".zip") else "text/csv"
        return send_file(
            io.BytesIO(content), mimetype=mimetype, as_attachment=True, download_name=filename
        )

    return app


def main():
    parser = argparse.ArgumentParser(description="JIRA export service")
    parser.add_argument("--port", type=int, default=5000, help="Port to run on")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app = create_app()

    print("Starting JIRA Export Service...")
    print(f"API available at http://{args.host}:{args.port}/api")
    print()

    app.run(host=args.host, port=args.port, debug=False, threaded=True)


if __name__ == "__main__":
    main()
