"""
geoproxy.logger
~~~~~~~~~~~~~~~
Human-readable *and* JSON logs with daily rotation.

Access events (start / end / block) go through :class:`ProxyLogger`.
Components log through :func:`get_logger`, which takes a context dict and
a message, so every record stays a JSON object.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

_ISO = "%Y-%m-%dT%H:%M:%SZ"
ROOT = "geoproxy"


def _now() -> str:  # RFC-3339 without microseconds
    return datetime.now(tz=timezone.utc).strftime(_ISO)


class _PlainFormatter(logging.Formatter):
    """ e.g. 2025-06-19T15:07:02Z 203.0.113.9 GET /health 200 327B 89 ms """

    def format(self, record):  # type: ignore[override]
        d: Dict[str, Any] = record.msg if isinstance(record.msg, dict) else {}
        if not d or record.levelno >= logging.ERROR:
            return super().format(record)

        event = d.get("event")
        if event == "log":
            extras = " ".join(
                f"{k}={v}" for k, v in d.items() if k not in ("event", "ts", "module", "msg")
            )
            line = f'{d.get("ts", _now())} {record.levelname} [{d.get("module", "-")}] {d.get("msg", "")}'
            return f"{line} {extras}" if extras else line

        parts = [
            d.get("ts", _now()),
            d.get("ip", "-"),
            d.get("method", "-"),
            d.get("url", "-"),
        ]
        if event == "block":
            parts.extend(["BLOCKED", d.get("reason", "")])
        elif event == "start":
            parts.append(d.get("ua", "") or "-")
        else:  # end
            parts.extend(
                [
                    str(d.get("status", "-")),
                    f'{d.get("bytes", 0):,}B',
                    f'{d.get("ms", 0)} ms',
                ]
            )
        return " ".join(str(p) for p in parts)


class _JSONFormatter(logging.Formatter):
    def format(self, record):  # type: ignore[override]
        if isinstance(record.msg, dict):
            return json.dumps(record.msg, separators=(",", ":"), default=_json_default)
        return json.dumps(
            {"event": "log", "ts": _now(), "module": record.name, "msg": record.getMessage()},
            separators=(",", ":"),
        )


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    return str(obj)


class ModuleLogger:
    """Leveled logger scoped to one module: ``log.warn({"ip": ip}, "...")``."""

    def __init__(self, module: str) -> None:
        self.module = module
        self.log = logging.getLogger(f"{ROOT}.{module}")

    def _emit(self, level: int, context: Optional[Mapping[str, Any]], message: str) -> None:
        if not self.log.isEnabledFor(level):
            return
        record = {"event": "log", "ts": _now(), "module": self.module, "msg": message}
        record.update(context or {})
        self.log.log(level, record)

    def debug(self, context: Optional[Mapping[str, Any]], message: str) -> None:
        self._emit(logging.DEBUG, context, message)

    def info(self, context: Optional[Mapping[str, Any]], message: str) -> None:
        self._emit(logging.INFO, context, message)

    def warning(self, context: Optional[Mapping[str, Any]], message: str) -> None:
        self._emit(logging.WARNING, context, message)

    warn = warning

    def error(self, context: Optional[Mapping[str, Any]], message: str) -> None:
        self._emit(logging.ERROR, context, message)


def get_logger(module: str) -> ModuleLogger:
    return ModuleLogger(module)


def _install_handlers(root: logging.Logger, jsonl_file: Path) -> None:
    """One console handler, and one json-lines file handler for *jsonl_file*.

    A file handler for a different path is closed and replaced.
    """
    keep_file = False
    has_console = False
    for h in list(root.handlers):
        if isinstance(h, logging.handlers.TimedRotatingFileHandler):
            if Path(h.baseFilename).resolve() == jsonl_file:
                keep_file = True
                continue
            root.removeHandler(h)
            h.close()
        elif getattr(h, "_geoproxy_console", False):
            has_console = True

    if not keep_file:
        # json lines
        h = logging.handlers.TimedRotatingFileHandler(
            jsonl_file, when="midnight", backupCount=7, encoding="utf-8"
        )
        h.setFormatter(_JSONFormatter())
        root.addHandler(h)

    if not has_console:
        console = logging.StreamHandler()
        console.setFormatter(_PlainFormatter())
        console._geoproxy_console = True  # type: ignore[attr-defined]
        root.addHandler(console)


class ProxyLogger:
    def __init__(self, basename: str | Path, level: str | int = logging.INFO):
        root = logging.getLogger(ROOT)
        root.setLevel(level)
        root.propagate = False  # don't spam the root logger

        basename = Path(basename).with_suffix("")  # proxy
        jsonl_file = basename.with_suffix(".jsonl")

        self.jsonl_file = jsonl_file.resolve()
        _install_handlers(root, self.jsonl_file)

        self.log = logging.getLogger(f"{ROOT}.access")

    def start(self, ip: str, method: str, url: str, ua: str):
        self.log.info(
            {
                "event": "start",
                "ts": _now(),
                "ip": ip,
                "method": method,
                "url": url,
                "ua": ua,
            }
        )

    def end(
        self,
        ip: str,
        method: str,
        url: str,
        status: int,
        total_bytes: int,
        duration_ms: int,
    ):
        self.log.info(
            {
                "event": "end",
                "ts": _now(),
                "ip": ip,
                "method": method,
                "url": url,
                "status": status,
                "bytes": total_bytes,
                "ms": duration_ms,
            }
        )

    def block(self, ip: str, method: str, url: str, reason: str, **extra: Any):
        record = {
            "event": "block",
            "ts": _now(),
            "ip": ip,
            "method": method,
            "url": url,
            "reason": reason,
        }
        record.update(extra)
        self.log.info(record)
