from __future__ import annotations

import gzip
import os
from pathlib import Path

import pytest

from helpers import make_policy, watch
from ops_logrotate.errors import PruneError
from ops_logrotate.services.retention_pruner import RetentionPruner

DAY = 86400.0


def _gens(d: Path, n: int, clock, spacing: float = 3600.0) -> None:
    for i in range(1, n + 1):
        p = d / f"app.log.{i}.gz"
        p.write_bytes(gzip.compress(f"gen{i}".encode()))
        t = clock() - i * spacing
        os.utime(p, (t, t))


def test_count_limit(tmp_path: Path, engine, clock):
    live = tmp_path / "app.log"
    live.write_text("")
    _gens(tmp_path, 5, clock)
    wf = watch(live, make_policy(live, retention_count=2))

    removed = RetentionPruner(engine, clock=clock).prune(wf)

    assert sorted(g.sequence_index for g in removed) == [2, 3, 4]
    assert sorted(p.name for p in tmp_path.iterdir()) == ["app.log", "app.log.1.gz", "app.log.2.gz"]
    assert len(engine.generations(wf)) <= 2


def test_age_limit_prunes_under_count(tmp_path: Path, engine, clock):
    live = tmp_path / "app.log"
    live.write_text("")
    _gens(tmp_path, 4, clock, spacing=2 * DAY)  # index 3 is 8 days old
    wf = watch(live, make_policy(live, retention_count=1000, retention_age_seconds=7 * DAY))

    removed = RetentionPruner(engine, clock=clock).prune(wf)

    assert [g.sequence_index for g in removed] == [3]
    assert not (tmp_path / "app.log.4.gz").exists()
    assert (tmp_path / "app.log.3.gz").exists()


def test_prune_is_idempotent(tmp_path: Path, engine, clock):
    live = tmp_path / "app.log"
    live.write_text("")
    _gens(tmp_path, 3, clock)
    wf = watch(live, make_policy(live, retention_count=1))
    pruner = RetentionPruner(engine, clock=clock)
    assert len(pruner.prune(wf)) == 2
    assert pruner.prune(wf) == []


def test_archival_event_before_delete(tmp_path: Path, engine, clock):
    live = tmp_path / "app.log"
    live.write_text("")
    _gens(tmp_path, 2, clock)
    wf = watch(live, make_policy(live, retention_count=1))

    seen: list[tuple[str, bool, bool]] = []

    def archiver(event):
        seen.append((event.generation_path, event.eligible_for_archival, os.path.exists(event.generation_path)))

    def broken(_event):
        raise RuntimeError("upload endpoint down")

    pruner = RetentionPruner(engine, clock=clock)
    pruner.subscribe(broken)
    pruner.subscribe(archiver)
    removed = pruner.prune(wf)

    assert len(removed) == 1
    assert seen == [(str(tmp_path / "app.log.2.gz"), True, True)]
    assert not (tmp_path / "app.log.2.gz").exists()


def test_failed_delete_is_retryable(tmp_path: Path, engine, clock, monkeypatch):
    live = tmp_path / "app.log"
    live.write_text("")
    _gens(tmp_path, 3, clock)
    wf = watch(live, make_policy(live, retention_count=1))

    import ops_logrotate.services.retention_pruner as mod

    real_unlink = mod.os.unlink

    def picky_unlink(path):
        if str(path).endswith(".3.gz"):
            raise PermissionError(13, "Permission denied")
        return real_unlink(path)

    monkeypatch.setattr(mod.os, "unlink", picky_unlink)
    pruner = RetentionPruner(engine, clock=clock)
    with pytest.raises(PruneError) as ei:
        pruner.prune(wf)
    assert [g.sequence_index for g in ei.value.removed] == [1]
    assert (tmp_path / "app.log.3.gz").exists()

    monkeypatch.undo()
    assert [g.sequence_index for g in pruner.prune(wf)] == [2]


def test_rotation_cycle_with_retention(tmp_path: Path, engine, clock):
    """Three size rotations with retention 2 keep exactly .1.gz and .2.gz."""
    live = tmp_path / "app.log"
    wf = None
    pruner = RetentionPruner(engine, clock=clock)
    for n in range(3):
        live.write_bytes(f"round{n}".encode() * 300)
        wf = watch(live, make_policy(live, size=1000, retention_count=2))
        assert engine.evaluate(wf)
        engine.rotate(wf)
        pruner.prune(wf)
        clock.advance(60)

    assert sorted(p.name for p in tmp_path.iterdir()) == ["app.log", "app.log.1.gz", "app.log.2.gz"]
    with gzip.open(tmp_path / "app.log.1.gz") as f:
        assert f.read() == b"round2" * 300
    with gzip.open(tmp_path / "app.log.2.gz") as f:
        assert f.read() == b"round1" * 300
    assert [g.sequence_index for g in engine.generations(wf, refresh=True)] == [0, 1]
