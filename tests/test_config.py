"""Tests for YAML configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from case_rag.config import AppConfig, config_to_dict, load_config, resolve_secret


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path: Path, monkeypatch) -> None:
        monkeypatch.delenv("CASE_RAG_DATABASE_URL", raising=False)
        cfg = load_config(tmp_path / "nope.yaml")
        assert cfg.generation.total_test_cases == 15
        assert cfg.generation.max_attempts == 3
        assert cfg.database is None

    def test_values_applied(self, tmp_path: Path, monkeypatch) -> None:
        monkeypatch.delenv("CASE_RAG_DATABASE_URL", raising=False)
        path = tmp_path / "config.yaml"
        path.write_text(
            "chunking:\n  chunk_size: 500\n  overlap: 50\n"
            "retry:\n  base_delay: 1\n"
            "database:\n  url: sqlite:///jobs.db\n",
            encoding="utf-8",
        )
        cfg = load_config(path)
        assert cfg.chunking.chunk_size == 500
        assert cfg.retry.base_delay == 1.0
        assert isinstance(cfg.retry.base_delay, float)
        assert cfg.database.url == "sqlite:///jobs.db"

    def test_unknown_and_mistyped_keys_ignored(self, tmp_path: Path, monkeypatch) -> None:
        monkeypatch.delenv("CASE_RAG_DATABASE_URL", raising=False)
        path = tmp_path / "config.yaml"
        path.write_text(
            "chunking:\n  chunk_size: big\n  colour: blue\nretrieval:\n  top_k: true\n",
            encoding="utf-8",
        )
        cfg = load_config(path)
        assert cfg.chunking.chunk_size == 1000
        assert cfg.retrieval.top_k == 8

    def test_empty_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("", encoding="utf-8")
        assert isinstance(load_config(path), AppConfig)

    def test_invalid_overlap(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("chunking:\n  chunk_size: 100\n  overlap: 100\n", encoding="utf-8")
        with pytest.raises(ValueError, match="overlap"):
            load_config(path)

    def test_database_url_from_env(self, tmp_path: Path, monkeypatch) -> None:
        monkeypatch.setenv("CASE_RAG_DATABASE_URL", "postgresql://u:p@db/cases")
        cfg = load_config(tmp_path / "nope.yaml")
        assert cfg.database.url == "postgresql://u:p@db/cases"


class TestSecrets:
    def test_resolve_secret(self, monkeypatch) -> None:
        monkeypatch.setenv("MY_KEY", "s3cret")
        assert resolve_secret("MY_KEY") == "s3cret"
        assert resolve_secret("") is None

    def test_config_to_dict_redacts_database_url(self, tmp_path: Path, monkeypatch) -> None:
        monkeypatch.setenv("CASE_RAG_DATABASE_URL", "postgresql://u:p@db/cases")
        data = config_to_dict(load_config(tmp_path / "nope.yaml"))
        assert data["database"]["url"] == "***"
        assert data["generation"]["total_test_cases"] == 15
