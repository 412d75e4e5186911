import json

import pytest

import cli
from dosync import __version__
from dosync.backups import BackupStore
from dosync.errors import ConfigError
from dosync.metrics import MetricsCollector
from dosync.strategies import StrategyType


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in [
        "SYNC_FILE",
        "SYNC_CONFIG",
        "SYNC_INTERVAL",
        "SYNC_VERBOSE",
        "SYNC_ROLLING_UPDATE",
        "SYNC_STRATEGY",
        "SYNC_HEALTH_CHECK",
        "SYNC_HEALTH_ENDPOINT",
        "SYNC_DELAY",
        "SYNC_ROLLBACK_ON_FAILURE",
    ]:
        monkeypatch.delenv(name, raising=False)


def test_version(capsys):
    assert cli.main(["version"]) == 0
    assert __version__ in capsys.readouterr().out


def test_flags_override_config(tmp_path):
    cfg_file = tmp_path / "dosync.yml"
    cfg_file.write_text("rollingUpdate:\n  enabled: false\n  strategy: one-at-a-time\n", encoding="utf-8")
    args = cli.build_parser().parse_args(
        ["sync", "-c", str(cfg_file), "--rolling-update", "--strategy", "blue-green", "--delay", "3s", "-i", "2m"]
    )
    cfg = cli.apply_overrides(cli.load_config(args.config), args)
    assert cfg.rolling_update.enabled
    assert cfg.rolling_update.strategy == StrategyType.BLUE_GREEN
    assert cfg.rolling_update.delay == 3.0
    assert cfg.check_interval == 120.0


def test_environment_fallbacks(monkeypatch):
    monkeypatch.setenv("SYNC_ROLLING_UPDATE", "true")
    monkeypatch.setenv("SYNC_HEALTH_CHECK", "http")
    monkeypatch.setenv("SYNC_HEALTH_ENDPOINT", "/ready")
    args = cli.build_parser().parse_args(["sync"])
    cfg = cli.apply_overrides(cli.load_config(None), args)
    assert cfg.rolling_update.enabled
    assert cfg.rolling_update.strategy_config().health_check.endpoint == "/ready"


def test_unset_flags_keep_config_values(tmp_path):
    cfg_file = tmp_path / "dosync.yml"
    cfg_file.write_text("rollingUpdate:\n  enabled: true\n  rollbackOnFailure: true\n", encoding="utf-8")
    args = cli.build_parser().parse_args(["sync", "-c", str(cfg_file)])
    cfg = cli.apply_overrides(cli.load_config(args.config), args)
    assert cfg.rolling_update.enabled
    assert cfg.rolling_update.rollback_on_failure


def test_bad_flag_is_a_config_error():
    args = cli.build_parser().parse_args(["sync", "--strategy", "sideways"])
    with pytest.raises(ConfigError):
        cli.apply_overrides(cli.load_config(None), args)


def test_sync_exits_2_on_config_error(tmp_path):
    assert cli.main(["sync", "-f", str(tmp_path / "compose.yml"), "-c", str(tmp_path / "missing.yml")]) == 2
    assert cli.main(["sync", "-f", str(tmp_path / "missing-compose.yml"), "--once"]) == 2


def test_metrics_command(tmp_path, capsys):
    db = str(tmp_path / "m.db")
    m = MetricsCollector(db)
    rid = m.record_deployment_start("web", "1.1.0")
    m.record_deployment_success(rid, 2.0)

    assert cli.main(["metrics", "--db", db]) == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary[0]["service"] == "web"
    assert summary[0]["success_rate"] == 1.0

    assert cli.main(["metrics", "--db", db, "--service", "web"]) == 0
    detail = json.loads(capsys.readouterr().out)
    assert detail["deployments"][0]["version"] == "1.1.0"


def test_dashboard_requires_password(monkeypatch, tmp_path):
    monkeypatch.delenv("DOSYNC_DASHBOARD_PASSWORD", raising=False)
    assert cli.main(["dashboard", "--db", str(tmp_path / "d.db")]) == 2


def test_rollback_command(tmp_path, capsys, monkeypatch):
    monkeypatch.setenv("DOSYNC_DB_PATH", str(tmp_path / "m.db"))
    monkeypatch.delenv("DOSYNC_BACKUP_DIR", raising=False)
    compose = tmp_path / "docker-compose.yml"
    compose.write_text("services:\n  web:\n    image: ghcr.io/acme/web:1.1.0\n", encoding="utf-8")
    BackupStore(str(tmp_path / "backups")).create(str(compose), "web", "1.0.0")

    assert cli.main(["rollback", "web", "--list", "-f", str(compose)]) == 0
    listed = json.loads(capsys.readouterr().out)
    assert [e["version"] for e in listed] == ["1.0.0"]

    assert cli.main(["rollback", "api", "-f", str(compose)]) == 1
    assert cli.main(["rollback", "web", "-f", str(tmp_path / "missing.yml")]) == 2
