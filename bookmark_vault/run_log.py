from __future__ import annotations

import json
import traceback
import uuid
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Protocol, TextIO


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _truncate(text: str, *, limit: int) -> str:
    s = str(text or "")
    if limit <= 0:
        return ""
    if len(s) <= limit:
        return s
    return s[: max(0, limit - 1)] + "…"


def _error_payload(exc: BaseException) -> dict[str, str]:
    return {
        "type": type(exc).__name__,
        "message": _truncate(str(exc), limit=2000),
        "traceback": _truncate(
            "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            limit=12000,
        ),
    }


class EventLogger(Protocol):
    def debug(self, event: str, *, url: str | None = None, **data: Any) -> None: ...

    def info(self, event: str, *, url: str | None = None, **data: Any) -> None: ...

    def warning(self, event: str, *, url: str | None = None, **data: Any) -> None: ...

    def error(self, event: str, *, url: str | None = None, **data: Any) -> None: ...

    def exception(
        self, event: str, *, exc: BaseException, url: str | None = None, **data: Any
    ) -> None: ...


class NullRunLogger:
    """Drops every event; the default when a component is built without a logger."""

    def debug(self, event: str, *, url: str | None = None, **data: Any) -> None:
        return None

    def info(self, event: str, *, url: str | None = None, **data: Any) -> None:
        return None

    def warning(self, event: str, *, url: str | None = None, **data: Any) -> None:
        return None

    def error(self, event: str, *, url: str | None = None, **data: Any) -> None:
        return None

    def exception(
        self, event: str, *, exc: BaseException, url: str | None = None, **data: Any
    ) -> None:
        return None


_LEVEL_RANK: dict[str, int] = {"DEBUG": 0, "INFO": 1, "WARN": 2, "ERROR": 3}


def _encode_record(
    level: str,
    event: str,
    *,
    session_id: str,
    run_id: str | None,
    url: str | None,
    data: dict[str, Any],
) -> str:
    record: dict[str, Any] = {
        "ts": _utc_now_iso(),
        "level": level,
        "event": (event or "").strip() or "event",
        "session_id": session_id,
    }
    if run_id:
        record["run_id"] = run_id
    link = (url or "").strip()
    if link:
        record["url"] = link
    if data:
        record["data"] = data

    return json.dumps(
        record,
        ensure_ascii=False,
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )


class RunLogger:
    """
    JSONL event log for vault syncs.

    Each line is one JSON object with ts/level/event/session_id and optional
    run_id, url and data fields, so a run can be audited with plain `jq`.
    Lines are flushed as they are written; several CLI invocations may append
    to the same file, told apart by session_id.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        overwrite: bool = True,
        run_id: str | None = None,
        session_id: str | None = None,
        min_level: str = "DEBUG",
    ) -> None:
        self._path = Path(path)
        self._truncate_on_open = bool(overwrite)
        self._run_id = (run_id or "").strip() or None
        self._session_id = (session_id or "").strip() or uuid.uuid4().hex
        self._min_rank = _LEVEL_RANK.get((min_level or "").strip().upper(), 0)
        self._lock = Lock()
        self._fp: TextIO | None = None

    @classmethod
    def open(cls, path: str | Path, **kwargs: Any) -> "RunLogger":
        logger = cls(path, **kwargs)
        logger._handle()
        return logger

    @property
    def path(self) -> Path:
        return self._path

    def __enter__(self) -> "RunLogger":
        self._handle()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    def close(self) -> None:
        with self._lock:
            fp, self._fp = self._fp, None
        if fp is not None:
            try:
                fp.flush()
            finally:
                fp.close()

    def debug(self, event: str, *, url: str | None = None, **data: Any) -> None:
        self.log("DEBUG", event, url=url, **data)

    def info(self, event: str, *, url: str | None = None, **data: Any) -> None:
        self.log("INFO", event, url=url, **data)

    def warning(self, event: str, *, url: str | None = None, **data: Any) -> None:
        self.log("WARN", event, url=url, **data)

    def error(self, event: str, *, url: str | None = None, **data: Any) -> None:
        self.log("ERROR", event, url=url, **data)

    def exception(
        self, event: str, *, exc: BaseException, url: str | None = None, **data: Any
    ) -> None:
        self.log("ERROR", event, url=url, error=_error_payload(exc), **data)

    def log(self, level: str, event: str, *, url: str | None = None, **data: Any) -> None:
        lvl = (level or "").strip().upper() or "INFO"
        if _LEVEL_RANK.get(lvl, 1) < self._min_rank:
            return

        line = _encode_record(
            lvl,
            event,
            session_id=self._session_id,
            run_id=self._run_id,
            url=url,
            data=data,
        )
        with self._lock:
            fp = self._open_locked()
            fp.write(line + "\n")
            fp.flush()

    def _handle(self) -> TextIO:
        with self._lock:
            return self._open_locked()

    def _open_locked(self) -> TextIO:
        if self._fp is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            # Only the first open may truncate; a reopen after close() appends.
            mode = "w" if self._truncate_on_open else "a"
            self._truncate_on_open = False
            self._fp = self._path.open(mode, encoding="utf-8", newline="\n")
        return self._fp


def ensure_logger(logger: EventLogger | None) -> EventLogger:
    return logger if logger is not None else NullRunLogger()
