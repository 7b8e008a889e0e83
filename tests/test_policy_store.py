from __future__ import annotations

import json
from pathlib import Path

import pytest

from ops_logrotate.errors import ConfigError
from ops_logrotate.models.policy import Compression
from ops_logrotate.services.policy_store import PolicyStore, parse_duration, parse_size


def _cfg(*policies, **top):
    d = {"policies": list(policies)}
    d.update(top)
    return d


def test_parse_size_units():
    assert parse_size(1000) == 1000
    assert parse_size("100k") == 100 * 1024
    assert parse_size("10M") == 10 * 1024 * 1024
    assert parse_size(" 1G ") == 1024**3


@pytest.mark.parametrize("bad", [0, "0", "10X", "-5", "", True, "1.5M"])
def test_parse_size_rejects(bad):
    with pytest.raises(ConfigError):
        parse_size(bad)


def test_parse_duration_units_and_keywords():
    assert parse_duration(30) == 30.0
    assert parse_duration("30m") == 1800.0
    assert parse_duration("7d") == 7 * 86400.0
    assert parse_duration("daily") == 86400.0
    assert parse_duration("weekly") == 7 * 86400.0


@pytest.mark.parametrize("bad", ["fortnightly", "5y", "0s", False])
def test_parse_duration_rejects(bad):
    with pytest.raises(ConfigError):
        parse_duration(bad)


def test_load_builds_ordered_policies(tmp_path: Path):
    store = PolicyStore(
        _cfg(
            {"path": str(tmp_path / "a.log"), "size": "1k", "rotate": 3},
            {"path": str(tmp_path / "b*.log"), "age": "daily", "size": "5M", "compress": "xz", "max_age": "7d"},
        )
    )
    policies = store.load()
    assert [p.path_pattern for p in policies] == [str(tmp_path / "a.log"), str(tmp_path / "b*.log")]
    a, b = policies
    assert a.trigger.kind == "size" and a.trigger.size_bytes == 1024
    assert a.retention_count == 3
    assert a.compression is Compression.GZIP
    assert a.rotate_empty is True
    assert b.trigger.kind == "both"
    assert b.compression is Compression.XZ
    assert b.retention_age_seconds == 7 * 86400.0


def test_retention_count_zero_is_rejected_and_not_registered(tmp_path: Path):
    store = PolicyStore(_cfg({"path": str(tmp_path / "app.log"), "size": 1000, "rotate": 0}))
    with pytest.raises(ConfigError, match="retention count"):
        store.load()
    with pytest.raises(ConfigError):
        store.snapshot()


def test_duplicate_pattern_rejected(tmp_path: Path):
    p = str(tmp_path / "app.log")
    with pytest.raises(ConfigError, match="duplicate"):
        PolicyStore(_cfg({"path": p, "size": 10}, {"path": p, "age": "1h"})).load()


@pytest.mark.parametrize(
    "policy",
    [
        {"path": "/x.log"},
        {"path": "/x.log", "size": 0},
        {"path": "/x.log", "size": "lots"},
        {"path": "/x.log", "age": "soon"},
        {"path": "/x.log", "size": 10, "compress": "zip"},
        {"path": "/x.log", "size": 10, "frequency": "daily"},
        {"path": "/x.log", "size": 10, "create_mode": "rw-r--r--"},
        {"size": 10},
    ],
)
def test_malformed_policies(policy):
    with pytest.raises(ConfigError):
        PolicyStore(_cfg(policy)).load()


def test_hook_validation():
    ok = _cfg(
        {"path": "/x.log", "size": 10, "post_rotate": "web"},
        hooks={"web": {"signal": "hup", "pidfile": "/run/web.pid"}, "app": {"command": ["true"]}},
    )
    snap_policies = PolicyStore(ok).load()
    assert snap_policies[0].post_rotate_action == "web"

    for hooks in (
        {"x": {"signal": "NOPE", "pidfile": "/run/x.pid"}},
        {"x": {"signal": "HUP"}},
        {"x": {"signal": "HUP", "command": ["true"]}},
        {"x": {"command": "systemctl reload x"}},
    ):
        with pytest.raises(ConfigError):
            PolicyStore(_cfg({"path": "/x.log", "size": 10}, hooks=hooks)).load()


def test_reload_swaps_snapshot(tmp_path: Path):
    cfg = tmp_path / "config.json"
    cfg.write_text(json.dumps(_cfg({"path": str(tmp_path / "a.log"), "size": 10})), encoding="utf-8")
    store = PolicyStore(cfg)
    store.load()
    first = store.snapshot()

    cfg.write_text(json.dumps(_cfg({"path": str(tmp_path / "b.log"), "size": 10})), encoding="utf-8")
    second = store.reload()
    assert second.version == first.version + 1
    assert second.policies[0].path_pattern.endswith("b.log")
    # the old snapshot object is untouched
    assert first.policies[0].path_pattern.endswith("a.log")


def test_reload_keeps_old_snapshot_on_error(tmp_path: Path):
    cfg = tmp_path / "config.json"
    cfg.write_text(json.dumps(_cfg({"path": str(tmp_path / "a.log"), "size": 10})), encoding="utf-8")
    store = PolicyStore(cfg)
    store.load()
    before = store.snapshot()

    cfg.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigError):
        store.reload()
    assert store.snapshot() is before


def test_default_path_env(monkeypatch, tmp_path: Path):
    monkeypatch.delenv("OPS_LOGROTATE_CONFIG", raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    assert PolicyStore.default_path() == tmp_path / "ops_logrotate" / "config.json"
    monkeypatch.setenv("OPS_LOGROTATE_CONFIG", str(tmp_path / "other.json"))
    assert PolicyStore.default_path() == tmp_path / "other.json"


def test_missing_config_file_is_config_error(tmp_path: Path):
    with pytest.raises(ConfigError, match="not found"):
        PolicyStore(tmp_path / "nope.json").load()
