"""
ephemtls.logger
~~~~~~~~~~~~~~~
JSON-lines event log with daily rotation.

The log file is a critical channel: its stream is wrapped in a
:class:`~ephemtls.guard.PanickingWriter`, so a write that fails escalates
instead of being reported by ``logging.Handler.handleError`` and dropped.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from .guard import PanickingWriter

_ISO = "%Y-%m-%dT%H:%M:%SZ"

def _now() -> str:  # RFC-3339 without microseconds
    return datetime.now(tz=timezone.utc).strftime(_ISO)


class _JSONFormatter(logging.Formatter):
    def format(self, record):  # type: ignore[override]
        if not isinstance(record.msg, dict):
            return json.dumps(
                {"event": "message", "ts": _now(), "msg": record.getMessage()},
                separators=(",", ":"),
            )
        return json.dumps(record.msg, separators=(",", ":"))


class GuardedRotatingFileHandler(logging.handlers.TimedRotatingFileHandler):
    """Rotating file handler whose stream escalates on write failure."""

    def _open(self):  # type: ignore[override]
        return PanickingWriter(self.baseFilename, super()._open())


class ServerLogger:
    def __init__(self, basename: str | Path, name: str = "ephemtls.access"):
        root = logging.getLogger(name)
        root.setLevel(logging.INFO)
        root.propagate = False  # keep access records out of the root logger

        basename = Path(basename).with_suffix("")  # server
        jsonl_file = basename.with_suffix(".jsonl")

        # json lines
        h = GuardedRotatingFileHandler(
            jsonl_file, when="midnight", backupCount=7, encoding="utf-8"
        )
        h.setFormatter(_JSONFormatter())
        root.addHandler(h)

        self.log = root
        self.handler = h
        self.path = jsonl_file

    def close(self) -> None:
        self.log.removeHandler(self.handler)
        self.handler.close()

    def listening(self, bind: str, host_name: str):
        self.log.info(
            {
                "event": "listening",
                "ts": _now(),
                "bind": bind,
                "host_name": host_name,
            }
        )

    def credential(self, serial: int, not_before: datetime, not_after: datetime):
        self.log.info(
            {
                "event": "credential",
                "ts": _now(),
                "serial": f"{serial:x}",
                "not_before": not_before.strftime(_ISO),
                "not_after": not_after.strftime(_ISO),
            }
        )

    def served(
        self,
        ip: str,
        method: str,
        path: str,
        status: int,
        duration_ms: int,
    ):
        self.log.info(
            {
                "event": "served",
                "ts": _now(),
                "ip": ip,
                "method": method,
                "path": path,
                "status": status,
                "ms": duration_ms,
            }
        )

    def rejected(self, ip: str, status: int, reason: str):
        self.log.warning(
            {
                "event": "rejected",
                "ts": _now(),
                "ip": ip,
                "status": status,
                "reason": reason,
            }
        )
