from __future__ import annotations


class ConfigError(RuntimeError):
    """Raised when configuration is missing or invalid."""


class StorageError(RuntimeError):
    """Raised when reading or writing vault state fails."""


class ParseError(RuntimeError):
    """Raised when an input item matches none of the known shapes."""


class FetchError(RuntimeError):
    """Raised when a link's page metadata cannot be fetched."""


class EmbeddingError(RuntimeError):
    """Raised when an embedding request fails after all retries."""


class SourceError(RuntimeError):
    """Raised when the bookmark source cannot be read."""


class CheckpointMismatch(RuntimeError):
    """Raised when a strict incremental sync never sees its checkpoint id."""
