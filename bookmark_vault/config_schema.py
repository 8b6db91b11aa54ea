from __future__ import annotations

import re
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

DEFAULT_SKIP_DOMAINS = ["t.co", "pic.twitter.com", "twitter.com", "x.com", "pbs.twimg.com"]


def _validate_env_var_name(value: str) -> str:
    name = (value or "").strip()
    if not _ENV_NAME_RE.fullmatch(name):
        raise ValueError("must be a valid environment variable name")
    return name


def _normalize_domain_list(values: list[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()

    for item in values:
        domain = (item or "").strip().lower()
        if domain.startswith("www."):
            domain = domain[4:]
        if not domain or domain in seen:
            continue
        seen.add(domain)
        out.append(domain)
    return out


PositiveInt = Annotated[int, Field(ge=1)]
NonNegativeInt = Annotated[int, Field(ge=0)]
PositiveFloat = Annotated[float, Field(gt=0)]
NonNegativeFloat = Annotated[float, Field(ge=0)]


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    backend: Literal["sqlite", "memory"] = "sqlite"
    sqlite_path: str = "vault.sqlite3"
    upsert_chunk_size: PositiveInt = 100


class OpenAIConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    api_key_env: str = "OPENAI_API_KEY"
    base_url: str | None = None
    request_timeout_seconds: PositiveFloat = 60.0

    @field_validator("api_key_env")
    @classmethod
    def _api_key_env_must_be_valid(cls, v: str) -> str:
        return _validate_env_var_name(v)


class RetrySettings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    max_attempts: PositiveInt = 5
    base_delay_seconds: NonNegativeFloat = 0.5
    max_delay_seconds: NonNegativeFloat = 8.0
    jitter_seconds: NonNegativeFloat = 0.25
    retry_after_cap_seconds: NonNegativeFloat = 30.0

    @model_validator(mode="after")
    def _cap_must_cover_base(self) -> "RetrySettings":
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        return self


class EmbeddingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    model: str = "text-embedding-3-small"
    dimensions: PositiveInt | None = 1536
    batch_size: Annotated[int, Field(ge=1, le=2048)] = 100
    concurrency: PositiveInt = 3
    max_input_chars: PositiveInt = 8000
    query_limit: PositiveInt = 500
    max_rounds: PositiveInt = 20
    retry: RetrySettings = Field(default_factory=RetrySettings)


class FetcherConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    concurrency: PositiveInt = 5
    timeout_seconds: PositiveFloat = 10.0
    max_response_bytes: PositiveInt = 1024 * 1024
    batch_limit: PositiveInt = 200
    max_rounds: PositiveInt = 50
    user_agent: str = (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
    )
    max_title_chars: PositiveInt = 500
    max_description_chars: PositiveInt = 2000


class LinksConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    skip_domains: list[str] = Field(default_factory=lambda: list(DEFAULT_SKIP_DOMAINS))
    backfill_limit: PositiveInt = 500

    @field_validator("skip_domains")
    @classmethod
    def _normalize_skip_domains(cls, v: list[str]) -> list[str]:
        return _normalize_domain_list(v)


class SourceConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["file", "command"] = "file"
    path: str | None = None
    command: list[str] = Field(default_factory=list)
    timeout_seconds: PositiveFloat = 120.0

    @model_validator(mode="after")
    def _kind_needs_target(self) -> "SourceConfig":
        if self.kind == "command" and not [c for c in self.command if (c or "").strip()]:
            raise ValueError("command must be non-empty when kind is 'command'")
        return self


class SyncConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    strict_checkpoint: bool = False
    fetch_metadata: bool = True
    generate_embeddings: bool = True


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    storage: StorageConfig = Field(default_factory=StorageConfig)
    openai: OpenAIConfig = Field(default_factory=OpenAIConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    fetcher: FetcherConfig = Field(default_factory=FetcherConfig)
    links: LinksConfig = Field(default_factory=LinksConfig)
    source: SourceConfig = Field(default_factory=SourceConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
