"""Development collector: a Flask app that accepts the agent's reports and beacons.

Useful for pointing ``error_url``/``usage_url``/``fault_url`` at a local
process and inspecting what would have been sent.
"""

import base64
import json
import logging
import threading

import jsonschema
from flask import Flask, Response, jsonify, request

logger = logging.getLogger(__name__)

# 1x1 transparent GIF answered to beacon requests.
PIXEL = base64.b64decode("R0lGODlhAQABAIAAAP///wAAACH5BAEAAAAALAAAAAABAAEAAAICRAEAOw==")

REPORT_SCHEMA = {
    "type": "object",
    "required": ["entry", "name", "message"],
    "properties": {
        "entry": {"enum": ["catch", "window", "promise", "ajax", "console", "direct"]},
        "name": {"type": "string"},
        "message": {"type": "string"},
        "stack": {"type": ["string", "null"]},
        "throttled": {"type": "integer", "minimum": 0},
        "console": {"type": "array"},
        "network": {"type": "array"},
        "nav": {"type": "array"},
        "visitor": {"type": "array"},
        "metadata": {"type": "array"},
        "customer": {"type": "object"},
        "environment": {"type": "object"},
    },
}


class ReportStore:
    """In-memory ring buffer of received reports and beacons."""

    def __init__(self, max_size: int = 100):
        self._max_size = max_size
        self._reports: list[dict] = []
        self._rejected = 0
        self._beacons: dict[str, int] = {"usage": 0, "fault": 0}
        self._faults: list[dict] = []
        self._lock = threading.Lock()

    def add(self, report: dict):
        """Store a report, evicting the oldest if at capacity."""
        with self._lock:
            self._reports.append(report)
            if len(self._reports) > self._max_size:
                self._reports.pop(0)

    def reject(self):
        with self._lock:
            self._rejected += 1

    def beacon(self, kind: str, params: dict):
        with self._lock:
            self._beacons[kind] = self._beacons.get(kind, 0) + 1
            if kind == "fault":
                self._faults.append(params)
                if len(self._faults) > self._max_size:
                    self._faults.pop(0)

    def get_recent(self, n: int = 10) -> list[dict]:
        """Return the N most recent reports."""
        with self._lock:
            return list(self._reports[-n:])

    def snapshot(self) -> dict:
        with self._lock:
            entries: dict[str, int] = {}
            for report in self._reports:
                entry = report.get("entry", "unknown")
                entries[entry] = entries.get(entry, 0) + 1
            return {
                "reports": len(self._reports),
                "rejected": self._rejected,
                "entries": entries,
                "beacons": dict(self._beacons),
                "recent_faults": list(self._faults[-10:]),
            }

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._reports)


def create_collector_app(store: ReportStore) -> Flask:
    app = Flask(__name__)
    validator = jsonschema.Draft202012Validator(REPORT_SCHEMA)

    @app.route("/capture", methods=["POST"])
    def capture():
        try:
            report = json.loads(request.get_data(as_text=True))
        except ValueError:
            store.reject()
            logger.warning("Rejected malformed report from %s", request.remote_addr)
            return jsonify(error="malformed report"), 400
        errors = [error.message for error in validator.iter_errors(report)]
        if errors:
            store.reject()
            logger.warning("Rejected invalid report: %s", "; ".join(errors))
            return jsonify(error="invalid report", details=errors), 400
        report["token"] = request.args.get("token", "")
        store.add(report)
        logger.info("Report %s/%s: %.80s", report.get("entry"), report.get("name"), report.get("message"))
        return "", 202

    @app.route("/usage.gif")
    def usage():
        store.beacon("usage", request.args.to_dict())
        return Response(PIXEL, mimetype="image/gif")

    @app.route("/fault.gif")
    def fault():
        store.beacon("fault", request.args.to_dict())
        logger.warning("Agent fault: %s", request.args.get("msg", ""))
        return Response(PIXEL, mimetype="image/gif")

    @app.route("/reports")
    def reports():
        limit = request.args.get("limit", default=10, type=int)
        return jsonify(store.get_recent(limit))

    @app.route("/stats")
    def stats():
        return jsonify(store.snapshot())

    @app.route("/health")
    def health():
        return jsonify(status="ok")

    return app


def run_collector(app: Flask, host: str, port: int):
    """Run the Flask app (intended for use in a daemon thread or as the main loop)."""
    app.run(host=host, port=port, use_reloader=False)
