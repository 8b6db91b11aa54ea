from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from bookmark_vault.config import (
    config_sha256,
    load_config,
    resolve_runtime_secrets,
    retry_config_from_settings,
)
from bookmark_vault.errors import ConfigError


_VALID_YAML = """\
storage:
  backend: sqlite
  sqlite_path: vault.sqlite3
  upsert_chunk_size: 50

openai:
  api_key_env: OPENAI_API_KEY

embedding:
  model: text-embedding-3-small
  dimensions: 8
  batch_size: 10
  concurrency: 2
  max_input_chars: 1000
  retry:
    max_attempts: 4
    base_delay_seconds: 0.1
    max_delay_seconds: 1.0
    jitter_seconds: 0.0

fetcher:
  concurrency: 3
  timeout_seconds: 5

links:
  skip_domains:
    - t.co
    - WWW.X.com
    - x.com

sync:
  strict_checkpoint: true
"""


class TestConfig(unittest.TestCase):
    def _write(self, td: str, text: str) -> Path:
        path = Path(td) / "config.yaml"
        path.write_text(text, encoding="utf-8")
        return path

    def test_load_config_ok(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = load_config(self._write(td, _VALID_YAML))

            self.assertEqual(cfg.storage.upsert_chunk_size, 50)
            self.assertEqual(cfg.embedding.dimensions, 8)
            self.assertEqual(cfg.embedding.retry.max_attempts, 4)
            self.assertEqual(cfg.fetcher.timeout_seconds, 5.0)
            self.assertEqual(cfg.links.skip_domains, ["t.co", "x.com"])
            self.assertTrue(cfg.sync.strict_checkpoint)

    def test_empty_file_yields_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = load_config(self._write(td, ""))

            self.assertEqual(cfg.storage.backend, "sqlite")
            self.assertEqual(cfg.embedding.batch_size, 100)
            self.assertEqual(cfg.embedding.concurrency, 3)
            self.assertEqual(cfg.embedding.max_input_chars, 8000)
            self.assertEqual(cfg.fetcher.concurrency, 5)
            self.assertEqual(cfg.fetcher.timeout_seconds, 10.0)
            self.assertEqual(cfg.fetcher.max_response_bytes, 1024 * 1024)
            self.assertIn("pbs.twimg.com", cfg.links.skip_domains)

    def test_unknown_key_is_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = self._write(td, "storage:\n  engine: postgres\n")
            with self.assertRaises(ConfigError) as ctx:
                load_config(path)
            self.assertIn("storage.engine", str(ctx.exception))

    def test_retry_cap_must_cover_base(self) -> None:
        bad = "embedding:\n  retry:\n    base_delay_seconds: 2\n    max_delay_seconds: 1\n"
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(ConfigError):
                load_config(self._write(td, bad))

    def test_command_source_requires_argv(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(ConfigError):
                load_config(self._write(td, "source:\n  kind: command\n"))

    def test_top_level_list_is_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(ConfigError):
                load_config(self._write(td, "- a\n- b\n"))

    def test_missing_file(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(ConfigError):
                load_config(Path(td) / "nope.yaml")

    def test_resolve_runtime_secrets_requires_env(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = load_config(self._write(td, _VALID_YAML))

            with self.assertRaises(ConfigError):
                resolve_runtime_secrets(cfg, environ={})

            secrets = resolve_runtime_secrets(cfg, environ={"OPENAI_API_KEY": " sk-test "})
            self.assertEqual(secrets.openai_api_key, "sk-test")

    def test_config_hash_is_stable(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            a = load_config(self._write(td, _VALID_YAML))
            b = load_config(self._write(td, _VALID_YAML))
            c = load_config(self._write(td, ""))

            self.assertEqual(config_sha256(a), config_sha256(b))
            self.assertNotEqual(config_sha256(a), config_sha256(c))

    def test_retry_settings_convert(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = load_config(self._write(td, _VALID_YAML))
            retry = retry_config_from_settings(cfg.embedding.retry)

            self.assertEqual(retry.max_attempts, 4)
            self.assertEqual(retry.base_delay_seconds, 0.1)
            self.assertEqual(retry.jitter_seconds, 0.0)


if __name__ == "__main__":
    unittest.main()
