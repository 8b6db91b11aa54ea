from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Awaitable, Callable, Sequence

from .config import config_sha256, load_config, resolve_runtime_secrets, retry_config_from_settings
from .config_schema import AppConfig
from .embeddings import EmbeddingClient, EmbeddingGenerator, OpenAIEmbeddingClient
from .errors import (
    CheckpointMismatch,
    ConfigError,
    EmbeddingError,
    FetchError,
    ParseError,
    SourceError,
    StorageError,
)
from .links import backfill_links
from .metadata import MetadataFetcher
from .run_log import RunLogger
from .source import load_input_items, source_from_config
from .store import VaultStore, open_store
from .sync import SyncOrchestrator, SyncSummary


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        required=True,
        help="Path to YAML config file.",
    )
    parser.add_argument(
        "--out",
        default="out",
        help="Output directory for the run log and a relative sqlite path (default: out).",
    )
    parser.add_argument(
        "--offline",
        action="store_true",
        help="Use an in-memory store with stub HTTP and embedding clients.",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bookmark_vault")

    subparsers = parser.add_subparsers(dest="command", required=True)

    imp = subparsers.add_parser(
        "import",
        help="Import a JSON export file, then fetch link metadata and embeddings.",
    )
    imp.add_argument("file", help="Path to a JSON export (array or single object).")
    _add_common(imp)
    imp.set_defaults(_handler=_cmd_import)

    sync = subparsers.add_parser(
        "sync",
        help="Incremental sync from the configured source, resuming at the last checkpoint.",
    )
    _add_common(sync)
    sync.add_argument(
        "--input",
        default=None,
        help="Read the newest-first window from this JSON file instead of the configured source.",
    )
    sync.add_argument(
        "--strict-checkpoint",
        action="store_true",
        help="Fail when the previous checkpoint is not in the fetched window.",
    )
    sync.add_argument(
        "--ignore-checkpoint",
        action="store_true",
        help="Process the whole fetched window (full backfill).",
    )
    sync.add_argument(
        "--scheduled",
        action="store_true",
        help="Record the run as scheduled rather than incremental.",
    )
    sync.set_defaults(_handler=_cmd_sync)

    process = subparsers.add_parser(
        "process",
        help="Fetch pending link metadata and generate pending embeddings.",
    )
    _add_common(process)
    process.set_defaults(_handler=_cmd_process)

    backfill = subparsers.add_parser(
        "backfill-links",
        help="Extract links for stored posts that were never scanned.",
    )
    _add_common(backfill)
    backfill.add_argument("--limit", type=int, default=None, help="Max posts to scan.")
    backfill.set_defaults(_handler=_cmd_backfill_links)

    stats = subparsers.add_parser("stats", help="Print vault totals.")
    _add_common(stats)
    stats.add_argument("--top", type=int, default=10, help="Number of top authors/domains.")
    stats.set_defaults(_handler=_cmd_stats)

    return parser


def _eprint(message: str) -> None:
    print(message, file=sys.stderr)


def _is_offline(args: argparse.Namespace) -> bool:
    return bool(getattr(args, "offline", False))


def _open_vault(cfg: AppConfig, args: argparse.Namespace, out_dir: Path) -> VaultStore:
    if _is_offline(args):
        return open_store(cfg.storage.model_copy(update={"backend": "memory"}))

    storage = cfg.storage
    db_path = Path(storage.sqlite_path)
    if storage.backend == "sqlite" and not db_path.is_absolute():
        storage = storage.model_copy(update={"sqlite_path": str(out_dir / db_path)})
    return open_store(storage)


def _embedding_client(cfg: AppConfig, *, offline: bool) -> EmbeddingClient:
    if offline:
        from .offline import OfflineEmbeddingClient

        return OfflineEmbeddingClient(dimensions=cfg.embedding.dimensions or 1536)

    secrets = resolve_runtime_secrets(cfg)
    return OpenAIEmbeddingClient(
        secrets.openai_api_key,
        model=cfg.embedding.model,
        dimensions=cfg.embedding.dimensions,
        base_url=cfg.openai.base_url,
        timeout_seconds=cfg.openai.request_timeout_seconds,
    )


async def _with_orchestrator(
    cfg: AppConfig,
    store: VaultStore,
    *,
    offline: bool,
    log: RunLogger,
    action: Callable[[SyncOrchestrator, AppConfig], Awaitable[SyncSummary]],
) -> SyncSummary:
    http_client = None
    fetcher: MetadataFetcher | None = None
    embedder: EmbeddingGenerator | None = None

    if cfg.sync.generate_embeddings:
        embedder = EmbeddingGenerator(
            store,
            _embedding_client(cfg, offline=offline),
            batch_size=cfg.embedding.batch_size,
            concurrency=cfg.embedding.concurrency,
            max_input_chars=cfg.embedding.max_input_chars,
            retry=retry_config_from_settings(cfg.embedding.retry),
            logger=log,
        )

    if cfg.sync.fetch_metadata:
        if offline:
            from .offline import offline_http_client

            http_client = offline_http_client()
        fetcher = MetadataFetcher.from_config(
            store,
            cfg.fetcher,
            skip_domains=frozenset(cfg.links.skip_domains),
            client=http_client,
            logger=log,
        )

    orchestrator = SyncOrchestrator(
        store,
        fetcher=fetcher,
        embedder=embedder,
        chunk_size=cfg.storage.upsert_chunk_size,
        skip_domains=frozenset(cfg.links.skip_domains),
        fetch_batch_limit=cfg.fetcher.batch_limit,
        fetch_max_rounds=cfg.fetcher.max_rounds,
        embed_query_limit=cfg.embedding.query_limit,
        embed_max_rounds=cfg.embedding.max_rounds,
        config_hash=config_sha256(cfg),
        logger=log,
    )
    try:
        return await action(orchestrator, cfg)
    finally:
        if fetcher is not None:
            await fetcher.aclose()
        if http_client is not None:
            await http_client.aclose()


def _print_summary(summary: SyncSummary) -> None:
    print(f"sync_type={summary.sync_type}")
    print(f"fetched={summary.fetched}")
    print(f"rejected={summary.rejected}")
    print(f"posts_added={summary.posts_added}")
    print(f"posts_skipped={summary.posts_skipped}")
    print(f"links_inserted={summary.links_inserted}")
    print(f"links_processed={summary.links_processed}")
    print(f"links_failed={summary.links_failed}")
    print(f"embeddings_generated={summary.embeddings_generated}")
    print(f"embeddings_failed={summary.embeddings_failed}")
    print(f"checkpoint={summary.checkpoint_id or ''}")
    print(f"checkpoint_hit={str(summary.checkpoint_hit).lower()}")
    print(f"sync_state_id={summary.sync_state_id}")


def _run_pipeline(
    args: argparse.Namespace,
    command: str,
    action: Callable[[SyncOrchestrator, AppConfig], Awaitable[SyncSummary]],
) -> int:
    out_dir = Path(args.out)
    out_dir.mkdir(parents=True, exist_ok=True)

    log_path = out_dir / "run.log"
    with RunLogger.open(log_path, overwrite=False, run_id=command) as log:
        log.info(
            "run_command_started",
            command=command,
            config_path=str(args.config),
            out_dir=str(out_dir),
            offline=_is_offline(args),
        )

        try:
            cfg = load_config(args.config)
            log.info(
                "config_loaded",
                config_path=str(args.config),
                backend=cfg.storage.backend,
                embedding_model=cfg.embedding.model,
                openai_api_key_env=cfg.openai.api_key_env,
            )

            with _open_vault(cfg, args, out_dir) as store:
                summary = asyncio.run(
                    _with_orchestrator(
                        cfg, store, offline=_is_offline(args), log=log, action=action
                    )
                )

            _print_summary(summary)
            print(f"run_log={log_path}")
            return 0
        except Exception as e:
            log.exception("run_command_failed", exc=e, command=command)
            raise


def _cmd_import(args: argparse.Namespace) -> int:
    items = load_input_items(args.file)
    return _run_pipeline(args, "import", lambda orch, cfg: orch.run_import(items))


def _cmd_sync(args: argparse.Namespace) -> int:
    if args.strict_checkpoint and args.ignore_checkpoint:
        raise ConfigError("--strict-checkpoint and --ignore-checkpoint are mutually exclusive")

    def _action(orch: SyncOrchestrator, cfg: AppConfig) -> Awaitable[SyncSummary]:
        if _is_offline(args) and args.input is None:
            from .offline import OfflineSource

            source = OfflineSource()
        else:
            source = source_from_config(cfg.source, path=args.input)
        return orch.run_incremental(
            source,
            strict_checkpoint=bool(args.strict_checkpoint or cfg.sync.strict_checkpoint),
            ignore_checkpoint=bool(args.ignore_checkpoint),
            scheduled=bool(args.scheduled),
        )

    return _run_pipeline(args, "sync", _action)


def _cmd_process(args: argparse.Namespace) -> int:
    return _run_pipeline(args, "process", lambda orch, cfg: orch.run_processing())


def _cmd_backfill_links(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    out_dir = Path(args.out)
    out_dir.mkdir(parents=True, exist_ok=True)

    with RunLogger.open(out_dir / "run.log", overwrite=False, run_id="backfill-links") as log:
        with _open_vault(cfg, args, out_dir) as store:
            result = backfill_links(
                store,
                limit=args.limit or cfg.links.backfill_limit,
                chunk_size=cfg.storage.upsert_chunk_size,
                skip_domains=frozenset(cfg.links.skip_domains),
                logger=log,
            )

    print(f"posts_scanned={result.posts_scanned}")
    print(f"links_inserted={result.inserted}")
    print(f"links_skipped={result.skipped}")
    return 0


def _cmd_stats(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    out_dir = Path(args.out)

    with _open_vault(cfg, args, out_dir) as store:
        stats = store.stats(top_n=max(0, int(args.top)))

    print(f"total_posts={stats.total_posts}")
    print(f"total_links={stats.total_links}")
    print(f"posts_with_embeddings={stats.posts_with_embeddings}")
    print(f"links_with_embeddings={stats.links_with_embeddings}")
    print(f"links_with_errors={stats.links_with_errors}")
    for author, n in stats.top_authors:
        print(f"top_author={author}:{n}")
    for domain, n in stats.top_domains:
        print(f"top_domain={domain}:{n}")
    if stats.last_sync is not None:
        print(f"last_sync_at={stats.last_sync.last_sync_at}")
        print(f"last_sync_type={stats.last_sync.sync_type}")
        print(f"checkpoint={stats.last_sync.checkpoint_id or ''}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        handler = getattr(args, "_handler")
        return int(handler(args))
    except ConfigError as e:
        _eprint(str(e))
        return 2
    except (
        CheckpointMismatch,
        SourceError,
        StorageError,
        FetchError,
        EmbeddingError,
        ParseError,
    ) as e:
        _eprint(str(e))
        return 3
    except KeyboardInterrupt:
        _eprint("Interrupted")
        return 130
    except Exception as e:
        _eprint(f"Unexpected error: {e}")
        return 1
