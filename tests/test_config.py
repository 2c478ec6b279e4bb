from pathlib import Path

from nexusdrop.config import load_config, load_runtime_env


def test_defaults() -> None:
    config = load_config({})

    assert config.retry.max_retries == 7
    assert config.retry.retry_delay_ms == 1000
    assert config.retry.stuck_timeout_ms == 60_000
    assert config.sweeper.snapshot_interval_seconds == 5.0
    assert config.sweeper.expiry_scan_interval_seconds == 86_400.0
    assert config.default_ttl_hours == 72.0
    assert config.fetch.mirror_host == "get.0ms.dev"
    assert config.storage.snapshot_path == Path("data") / "downloads.json"
    assert config.storage.http_public_prefix == "/downloads/"


def test_env_overrides_and_bounds() -> None:
    config = load_config(
        {
            "MAX_RETRIES": "3",
            "STUCK_TIMEOUT_MS": "10",
            "PROGRESS_INTERVAL_MS": "200",
            "RETRY_DELAY_MS": "not-a-number",
            "MIRROR_HOST": "",
            "MIRROR_SCHEME": "ftp",
            "HTTP_PUBLIC_PREFIX": "files",
            "SWARM_ENABLED": "off",
            "LOG_LEVEL": "debug",
        }
    )

    assert config.retry.max_retries == 3
    assert config.retry.stuck_timeout_ms == 1000
    assert config.retry.retry_delay_ms == 1000
    assert config.fetch.progress_interval_ms == 1000
    assert config.fetch.mirror_host == ""
    assert config.fetch.mirror_scheme == "https"
    assert config.storage.http_public_prefix == "/files/"
    assert config.swarm.enabled is False
    assert config.log_level == "DEBUG"


def test_runtime_env_prefers_process_environment(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("MAX_RETRIES=2\nFILENAME_PREFIX='Drop'\n# comment\n", encoding="utf-8")

    env = load_runtime_env(env_file=env_file, base_env={"MAX_RETRIES": "5"})

    assert env["MAX_RETRIES"] == "5"
    assert env["FILENAME_PREFIX"] == "Drop"
