import os
from pathlib import Path

from smolbot.config_service import ConfigService, DEFAULT_CHAT_MODELS, DEFAULT_VISION_MODEL


def write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def test_defaults_from_empty_file(tmp_path):
    cfg = ConfigService(write(tmp_path / "config.yaml", ""))
    limits = cfg.rate_limits()
    assert (limits.max_requests, limits.window_seconds, limits.max_wait_seconds) == (30, 60.0, 300.0)
    sched = cfg.scheduler()
    assert (sched.max_concurrent, sched.min_delay_seconds, sched.job_timeout_seconds) == (3, 2.0, 30.0)
    assert sched.response_timeout_seconds == 24.0
    assert cfg.cache().max_size == 20
    assert cfg.cache().backend == "none"
    assert cfg.window_size() == 15
    assert cfg.mention_window_size() == 20
    models = cfg.model_configs()
    assert models["chat"].tiers() == list(DEFAULT_CHAT_MODELS)
    assert models["chat"].max_retries == 3
    assert models["vision"].tiers() == [DEFAULT_VISION_MODEL]
    assert models["vision"].max_retries == 2
    assert cfg.interjections().enabled is False
    assert cfg.http_enabled() is False


def test_example_config_parses():
    cfg = ConfigService(Path(__file__).resolve().parents[1] / "config.example.yaml")
    assert cfg.model_configs()["chat"].primary == "mixtral-8x7b-32768"
    assert cfg.interjections().temperature == 0.8
    assert cfg.cache().backend == "json"


def test_bad_values_fall_back_to_defaults(tmp_path):
    cfg = ConfigService(write(tmp_path / "config.yaml", "rate_limits:\n  max_requests: lots\npersona: '../etc'\n"))
    assert cfg.rate_limits().max_requests == 30
    assert cfg.persona_name() == "default"


def test_admin_ids_normalized_to_strings(tmp_path):
    cfg = ConfigService(write(tmp_path / "config.yaml", "discord:\n  admin_user_ids: [123, '456']\n"))
    assert cfg.discord_admin_user_ids() == {"123", "456"}


def test_hot_reload_on_mtime_change(tmp_path):
    path = write(tmp_path / "config.yaml", "cache:\n  max_size: 5\n")
    cfg = ConfigService(path)
    assert cfg.cache().max_size == 5
    write(path, "cache:\n  max_size: 7\n")
    st = path.stat()
    os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + 1_000_000_000))
    assert cfg.cache().max_size == 7


def test_response_timeout_is_capped_by_job_timeout(tmp_path):
    cfg = ConfigService(write(tmp_path / "config.yaml", "scheduler:\n  job_timeout_seconds: 10\n  response_timeout_seconds: 60\n"))
    assert cfg.scheduler().response_timeout_seconds == 10.0
