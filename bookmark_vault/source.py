from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Any, Mapping, Protocol, Sequence

from .config_schema import SourceConfig
from .errors import SourceError


def _as_items(data: Any) -> list[Any]:
    # A single top-level object is a one-item export.
    if isinstance(data, list):
        return data
    return [data]


def load_input_items(path: str | Path) -> list[Any]:
    p = Path(path)
    if not p.exists():
        raise SourceError(f"Input file not found: {p}")

    try:
        raw_text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise SourceError(f"Failed to read input file: {p}") from e

    try:
        data = json.loads(raw_text)
    except json.JSONDecodeError as e:
        raise SourceError(f"Input file is not valid JSON: {p}: {e}") from e

    return _as_items(data)


def source_item_id(item: Any) -> str | None:
    """Identifier of a raw item of either export shape, or None."""
    if not isinstance(item, Mapping):
        return None
    for key in ("id", "rest_id", "id_str"):
        val = item.get(key)
        if isinstance(val, bool):
            continue
        if isinstance(val, int):
            return str(val)
        if isinstance(val, str) and val.strip():
            return val.strip()
    return None


class BookmarkSource(Protocol):
    """Supplies raw bookmark items, newest first."""

    @property
    def name(self) -> str: ...

    def fetch(self) -> list[Any]: ...


class JsonFileSource:
    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def name(self) -> str:
        return f"file:{self._path}"

    def fetch(self) -> list[Any]:
        return load_input_items(self._path)


class CommandSource:
    """
    Runs an external exporter and reads its JSON from stdout.

    The command is responsible for authenticating against the platform; this
    class only checks that it exits cleanly and prints JSON.
    """

    def __init__(self, argv: Sequence[str], *, timeout_seconds: float = 120.0) -> None:
        args = [str(a) for a in argv if str(a).strip()]
        if not args:
            raise ValueError("argv must be non-empty")
        self._argv = args
        self._timeout = float(timeout_seconds)

    @property
    def name(self) -> str:
        return f"command:{self._argv[0]}"

    def fetch(self) -> list[Any]:
        try:
            proc = subprocess.run(
                self._argv,
                capture_output=True,
                text=True,
                timeout=self._timeout,
                check=False,
            )
        except FileNotFoundError as e:
            raise SourceError(f"Source command not found: {self._argv[0]}") from e
        except subprocess.TimeoutExpired as e:
            raise SourceError(
                f"Source command timed out after {self._timeout:g}s: {self._argv[0]}"
            ) from e

        if proc.returncode != 0:
            stderr = (proc.stderr or "").strip()[-2000:]
            raise SourceError(
                f"Source command exited with code {proc.returncode}: {stderr or '<no stderr>'}"
            )

        try:
            data = json.loads(proc.stdout or "")
        except json.JSONDecodeError as e:
            raise SourceError(f"Source command did not print valid JSON: {e}") from e

        return _as_items(data)


def source_from_config(cfg: SourceConfig, *, path: str | Path | None = None) -> BookmarkSource:
    if path is not None:
        return JsonFileSource(path)
    if cfg.kind == "command":
        return CommandSource(cfg.command, timeout_seconds=cfg.timeout_seconds)
    if not cfg.path:
        raise SourceError("source.path must be set when source.kind is 'file'")
    return JsonFileSource(cfg.path)
