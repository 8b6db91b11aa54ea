from __future__ import annotations

from .config import config_sha256, load_config, resolve_runtime_secrets
from .config_schema import AppConfig
from .errors import CheckpointMismatch, ConfigError, StorageError
from .post import Link, Post, SyncState
from .store import VaultStore, open_store
from .sync import SyncOrchestrator, SyncSummary

__all__ = [
    "AppConfig",
    "CheckpointMismatch",
    "ConfigError",
    "Link",
    "Post",
    "StorageError",
    "SyncOrchestrator",
    "SyncState",
    "SyncSummary",
    "VaultStore",
    "config_sha256",
    "load_config",
    "open_store",
    "resolve_runtime_secrets",
]
