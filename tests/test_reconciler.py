import pytest

import dosync.reconciler as reconciler_mod
from dosync.config import parse_config
from dosync.errors import ComposeError, DosyncError, NotFound, RollbackFailed
from dosync.imageref import RegistryKind
from dosync.metrics import MetricsCollector
from dosync.reconciler import Reconciler
from dosync.settings import Settings

from conftest import FakeEngine

WEB_OLD = "ghcr.io/acme/web:1.0.0"
WEB_NEW = "ghcr.io/acme/web:1.1.0"


class FakeRegistry:
    def __init__(self, tags):
        self.tags = tags
        self.asked = []

    def list_tags(self, ref):
        self.asked.append(ref.repository)
        if ref.repository not in self.tags:
            raise NotFound(f"{ref.repository} not found", registry=ref.registry_host, repository=ref.repository)
        return self.tags[ref.repository]


TAGS = {
    "acme/web": ["1.0.0", "1.1.0", "2.0.0-rc1"],
    "acme/api": ["1.0.0"],
    "library/postgres": ["15", "16"],
}


def make_reconciler(compose_file, rolling=True, engine=None, tags=TAGS):
    cfg = parse_config(
        {
            "checkInterval": "50ms",
            "rollingUpdate": {
                "enabled": rolling,
                "delay": 0,
                "rollbackOnFailure": True,
                "healthInterval": "10ms",
                "failureThreshold": 1,
            },
        }
    )
    settings = Settings(backup_name="backup.yml", db_path=":memory:")
    return Reconciler(
        str(compose_file),
        cfg,
        settings,
        engine=engine or FakeEngine(),
        registry=FakeRegistry(tags),
        metrics=MetricsCollector(":memory:"),
    )


@pytest.fixture()
def live_engine():
    engine = FakeEngine(healthy_images={WEB_OLD, WEB_NEW, "postgres:15", "postgres:16"})
    engine.add("web", WEB_OLD, count=3)
    engine.add("api", "ghcr.io/acme/api:1.0.0")
    engine.add("db", "postgres:15")
    return engine


def test_rolling_tick_updates_in_dependency_order(compose_file, live_engine):
    r = make_reconciler(compose_file, engine=live_engine)
    report = r.tick()

    assert [d.service for d in report.decisions] == ["db", "web"]
    assert report.updated == ["db", "web"]
    assert report.errors == {}
    assert report.rewritten
    text = compose_file.read_text(encoding="utf-8")
    assert '"ghcr.io/acme/web:1.1.0"' in text
    assert "image: postgres:16" in text
    assert "ghcr.io/acme/api:1.0.0" in text
    assert (compose_file.parent / "backup.yml").exists()
    assert live_engine.images("web") == [WEB_NEW] * 3
    assert live_engine.pruned == 1
    assert r.metrics.success_rate("web") == 1.0
    assert r.metrics.success_rate("db") == 1.0


def test_failed_update_is_rolled_back_and_file_kept(compose_file, live_engine):
    live_engine.healthy_images.discard(WEB_NEW)
    r = make_reconciler(compose_file, engine=live_engine)
    report = r.tick()

    assert report.updated == ["db"]
    assert "web" in report.errors
    assert report.results["web"].rolled_back
    text = compose_file.read_text(encoding="utf-8")
    assert '"ghcr.io/acme/web:1.0.0"' in text
    assert "image: postgres:16" in text
    assert live_engine.images("web") == [WEB_OLD] * 3
    assert r.metrics.rollback_count("web") == 1
    assert r.metrics.success_rate("web") == 0.0


def test_nothing_to_do(compose_file, live_engine):
    tags = {"acme/web": ["1.0.0"], "acme/api": ["1.0.0"], "library/postgres": ["15"]}
    r = make_reconciler(compose_file, engine=live_engine, tags=tags)
    before = compose_file.read_text(encoding="utf-8")
    report = r.tick()
    assert report.decisions == []
    assert not report.rewritten
    assert compose_file.read_text(encoding="utf-8") == before
    assert live_engine.pruned == 0


def test_registry_errors_do_not_stop_other_services(compose_file, live_engine):
    tags = {"acme/web": ["1.0.0", "1.1.0"]}
    r = make_reconciler(compose_file, engine=live_engine, tags=tags)
    report = r.tick()
    assert report.updated == ["web"]
    assert set(report.errors) == {"api", "db"}


def test_compose_mode_reverts_failed_services(compose_file, monkeypatch):
    calls = []

    def fake_up(path, service):
        calls.append(service)
        if service == "web":
            raise ComposeError("pull access denied")

    monkeypatch.setattr(reconciler_mod, "compose_up", fake_up)
    r = make_reconciler(compose_file, rolling=False)
    report = r.tick()

    assert calls == ["db", "web"]
    assert report.updated == ["db"]
    assert report.errors == {"web": "pull access denied"}
    text = compose_file.read_text(encoding="utf-8")
    assert '"ghcr.io/acme/web:1.0.0"' in text
    assert "image: postgres:16" in text


def test_digest_pinned_images_are_skipped(tmp_path, live_engine):
    p = tmp_path / "docker-compose.yml"
    digest = "sha256:" + "b" * 64
    p.write_text(f"services:\n  web:\n    image: ghcr.io/acme/web:1.0.0@{digest}\n", encoding="utf-8")
    r = make_reconciler(p, engine=live_engine)
    report = r.tick()
    assert report.decisions == []
    assert r.registry.asked == []


def test_overlapping_tick_is_skipped(compose_file):
    r = make_reconciler(compose_file)
    r._busy.acquire()
    try:
        assert r.tick() is None
    finally:
        r._busy.release()


def test_manual_rollback(compose_file, live_engine):
    r = make_reconciler(compose_file, engine=live_engine)
    with pytest.raises(DosyncError):
        r.rollback("web")
    r.tick()
    r.rollback("web")
    assert live_engine.images("web") == [WEB_OLD] * 3


def test_updates_leave_a_backup_per_service(compose_file, live_engine):
    r = make_reconciler(compose_file, engine=live_engine)
    r.tick()
    assert [e.tag for e in r.backups.history("web")] == ["1.0.0"]
    assert [e.tag for e in r.backups.history("db")] == ["15"]
    assert r.backups.history("api") == []


def test_rollback_to_saved_version(compose_file, live_engine):
    r = make_reconciler(compose_file, engine=live_engine)
    r.tick()
    assert live_engine.images("web") == [WEB_NEW] * 3

    assert r.rollback_to("web", "1.0.0") == WEB_OLD
    assert live_engine.images("web") == [WEB_OLD] * 3
    assert '"ghcr.io/acme/web:1.0.0"' in compose_file.read_text(encoding="utf-8")
    assert [e.tag for e in r.backups.history("web")] == ["1.1.0", "1.0.0"]
    assert any(e.message == "Rolled back 1.1.0 -> 1.0.0" for e in r.metrics.latest_events())
    with pytest.raises(RollbackFailed, match="no backup at version 0.1.0"):
        r.rollback_to("web", "0.1.0")


def test_rollback_to_in_compose_mode(compose_file, monkeypatch):
    ups = []
    monkeypatch.setattr(reconciler_mod, "compose_up", lambda path, service: ups.append(service))
    r = make_reconciler(compose_file, rolling=False)
    r.tick()
    assert "image: postgres:16" in compose_file.read_text(encoding="utf-8")

    assert r.rollback_to("db") == "postgres:15"
    assert ups[-1] == "db"
    assert "image: postgres:15" in compose_file.read_text(encoding="utf-8")


def test_harbor_registry_from_config_gets_its_policy(compose_file):
    cfg = parse_config(
        {
            "registry": {
                "harbor": {
                    "url": "https://registry.corp.example",
                    "username": "robot",
                    "password": "secret",
                    "imagePolicy": {"policy": {"semver": {"range": "<1.2.0"}}},
                }
            }
        }
    )
    r = Reconciler(
        str(compose_file),
        cfg,
        Settings(db_path=":memory:"),
        engine=FakeEngine(),
        registry=FakeRegistry({"team/app": ["1.0.0", "1.1.0", "1.2.0"]}),
        metrics=MetricsCollector(":memory:"),
    )
    assert "registry.corp.example" in r.harbor_hosts
    decision = r.evaluate("app", "registry.corp.example/team/app:1.0.0")
    assert decision.image.kind == RegistryKind.HARBOR
    assert decision.selected_tag == "1.1.0"

def test_loop_runs_and_stops(compose_file, live_engine):
    tags = {"acme/web": ["1.0.0"], "acme/api": ["1.0.0"], "library/postgres": ["15"]}
    r = make_reconciler(compose_file, engine=live_engine, tags=tags)
    r.start()
    r.stop()
    r.join(timeout=5)
    messages = [e.message for e in r.metrics.latest_events()]
    assert any(m.startswith("Reconciler started") for m in messages)
