"""Tests for environment-driven configuration."""

from medical_pipeline.config import DEFAULT_NULL_TOKENS, PipelineConfig


def test_from_env_defaults(monkeypatch, tmp_path):
    for name in ("PIPELINE_DB_PATH", "CSV_DELIMITER", "CSV_NULL_TOKENS", "SYNC_INTERVAL_SECONDS", "AWS_PROFILE"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)

    config = PipelineConfig.from_env()

    assert config.csv_format.delimiter == ","
    assert config.csv_format.null_tokens == DEFAULT_NULL_TOKENS
    assert config.sync_interval_seconds == 3600
    assert config.profile_name is None


def test_from_env_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("PIPELINE_DB_PATH", str(tmp_path / "x.db"))
    monkeypatch.setenv("CSV_DELIMITER", ";")
    monkeypatch.setenv("CSV_NULL_TOKENS", "|NULL|-")
    monkeypatch.setenv("SYNC_INTERVAL_SECONDS", "900")
    monkeypatch.setenv("LANDING_BUCKET", "my-landing")

    config = PipelineConfig.from_env()

    assert config.db_path == str(tmp_path / "x.db")
    assert config.csv_format.delimiter == ";"
    assert config.csv_format.null_tokens == frozenset({"", "NULL", "-"})
    assert config.sync_interval_seconds == 900
    assert config.bucket == "my-landing"


def test_from_env_reads_dotenv_file(monkeypatch, tmp_path):
    monkeypatch.delenv("LOADER_MAX_WORKERS", raising=False)
    env_file = tmp_path / ".env"
    env_file.write_text("LOADER_MAX_WORKERS=7\n", encoding="utf-8")

    config = PipelineConfig.from_env(str(env_file))

    assert config.loader_max_workers == 7
