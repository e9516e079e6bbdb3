"""
tests/test_config.py — Configuration Loader Tests
==================================================
"""

from __future__ import annotations

import pytest

from nafflesync import constants as C
from nafflesync.config import load_config, load_permission_overrides

BASE_ENV = {
    "NAFFLES_API_BASE_URL": "https://api.naffles.test/",
    "NAFFLES_API_KEY": "key-123",
    "NAFFLES_WEBHOOK_SECRET": "whsec",
}


def _load(tmp_path, **extra):
    return load_config({**BASE_ENV, **extra}, permissions_path=tmp_path / "missing.yaml")


class TestLoadConfig:
    def test_defaults(self, tmp_path):
        cfg = _load(tmp_path)
        assert cfg.api_base_url == "https://api.naffles.test"
        assert cfg.webhook_port == 3001
        assert cfg.webhook_public_url is None
        assert cfg.webhook_max_requests_per_minute == 100
        assert cfg.sync.max_retries == 3
        assert cfg.sync.retry_delay_ms == 5000
        assert cfg.sync.cooldown == 60
        assert cfg.sync.pick_batch == 10
        assert cfg.sync.batch_size == 50
        assert cfg.sync.notify_on_status_change is True
        assert cfg.monitor.interval == 30
        assert dict(cfg.monitor.thresholds) == C.ALERT_THRESHOLDS
        assert cfg.guild_overrides == {}

    @pytest.mark.parametrize(
        "missing", ["NAFFLES_API_BASE_URL", "NAFFLES_API_KEY", "NAFFLES_WEBHOOK_SECRET"],
    )
    def test_missing_secret_raises(self, tmp_path, missing):
        env = {**BASE_ENV, missing: "  "}
        with pytest.raises(RuntimeError, match=missing):
            load_config(env, permissions_path=tmp_path / "missing.yaml")

    def test_tuning_from_env(self, tmp_path):
        cfg = _load(
            tmp_path,
            SYNC_MAX_RETRIES="5",
            SYNC_RETRY_DELAY_MS="250",
            SYNC_COOLDOWN_SECONDS="12.5",
            SYNC_NOTIFY_ON_STATUS_CHANGE="false",
            WEBHOOK_PORT="8080",
            WEBHOOK_PUBLIC_URL="https://bot.example/",
            MONITOR_INTERVAL_SECONDS="",
        )
        assert cfg.sync.max_retries == 5
        assert cfg.sync.retry_delay_ms == 250
        assert cfg.sync.cooldown == 12.5
        assert cfg.sync.notify_on_status_change is False
        assert cfg.webhook_port == 8080
        assert cfg.webhook_public_url == "https://bot.example"
        assert cfg.monitor.interval == 30

    def test_bad_number_raises(self, tmp_path):
        with pytest.raises(ValueError):
            _load(tmp_path, SYNC_PICK_BATCH="lots")


class TestPermissionOverrides:
    def test_missing_file_is_empty(self, tmp_path):
        assert load_permission_overrides(tmp_path / "nope.yaml") == {}

    def test_yaml_overrides(self, tmp_path):
        path = tmp_path / "permissions.yaml"
        path.write_text(
            "guilds:\n"
            "  1468816181854081229:\n"
            "    admin_roles: ['1470000000000000000']\n"
            "    commands:\n"
            "      naffles-status:\n"
            "        max_uses_per_hour: 3\n",
            encoding="utf-8",
        )
        cfg = load_config(BASE_ENV, permissions_path=path)
        guild = cfg.guild_overrides["1468816181854081229"]
        assert guild["admin_roles"] == ["1470000000000000000"]
        assert guild["commands"]["naffles-status"]["max_uses_per_hour"] == 3

    def test_empty_file(self, tmp_path):
        path = tmp_path / "permissions.yaml"
        path.write_text("", encoding="utf-8")
        assert load_permission_overrides(path) == {}
