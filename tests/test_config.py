"""Tests for configuration models and resolution order."""

import pytest
import yaml
from pydantic import ValidationError

from media_transcoder.config import (
    QueueConfig,
    TranscoderConfig,
    merge_dicts,
    resolve_config,
)


@pytest.fixture
def in_tmp(tmp_path, monkeypatch):
    """Run from an empty directory so no repository YAML is picked up."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("MEDIA_TRANSCODER_CONFIG", raising=False)
    return tmp_path


def write_yaml(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data))
    return path


def test_defaults():
    config = TranscoderConfig()
    assert config.queue.workers == 2
    assert config.webhook.max_retries == 2
    assert config.storage.backend == "local"
    assert config.default_presets == ["720p_h264"]
    assert {p.id for p in config.presets} == {"1080p_h264", "720p_h264", "480p_h264", "720p_vp9"}


def test_merge_dicts_is_recursive():
    base = {"queue": {"workers": 2, "db_path": "a.db"}, "x": 1}
    merged = merge_dicts(base, {"queue": {"workers": 4}})
    assert merged == {"queue": {"workers": 4, "db_path": "a.db"}, "x": 1}
    assert base["queue"]["workers"] == 2


class TestResolveConfig:
    def test_no_files_gives_defaults(self, in_tmp):
        assert resolve_config() == TranscoderConfig()

    def test_explicit_path_then_cli(self, in_tmp):
        path = write_yaml(
            in_tmp / "custom.yaml",
            {"queue": {"workers": 3, "db_path": "yaml.db"}, "webhook": {"timeout_s": 9}},
        )
        config = resolve_config({"db": "cli.db", "workers": None}, config_path=path)

        assert config.queue.db_path == "cli.db"
        assert config.queue.workers == 3
        assert config.webhook.timeout_s == 9

    def test_local_overrides_default(self, in_tmp):
        write_yaml(in_tmp / "config" / "default.yaml", {"queue": {"workers": 2}})
        write_yaml(in_tmp / "config" / "local.yaml", {"queue": {"workers": 6}})

        assert resolve_config().queue.workers == 6

    def test_env_var_path(self, in_tmp, monkeypatch):
        path = write_yaml(in_tmp / "env.yaml", {"storage": {"local_root": "/srv/media"}})
        monkeypatch.setenv("MEDIA_TRANSCODER_CONFIG", str(path))

        assert resolve_config().storage.local_root == "/srv/media"

    def test_cli_storage_root(self, in_tmp):
        assert resolve_config({"storage_root": "objects"}).storage.local_root == "objects"


class TestValidation:
    def test_heartbeat_must_be_shorter_than_visibility(self):
        with pytest.raises(ValidationError):
            QueueConfig(heartbeat_interval_s=60, visibility_timeout_s=30)

    def test_workers_must_be_positive(self):
        with pytest.raises(ValidationError):
            QueueConfig(workers=0)

    def test_duplicate_preset_ids(self):
        preset = {"id": "dup", "format": "mp4", "video_codec": "libx264", "audio_codec": "aac"}
        with pytest.raises(ValidationError, match="duplicate preset id"):
            TranscoderConfig(presets=[preset, preset], default_presets=["dup"])

    def test_unknown_default_preset(self):
        with pytest.raises(ValidationError, match="unknown presets"):
            TranscoderConfig(default_presets=["4k_av1"])

    def test_shipped_default_yaml_is_valid(self):
        from pathlib import Path

        path = Path(__file__).resolve().parent.parent / "config" / "default.yaml"
        config = TranscoderConfig.from_dict(yaml.safe_load(path.read_text()))
        assert config.default_presets == ["720p_h264"]
