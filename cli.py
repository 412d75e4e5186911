from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
from dataclasses import asdict
from typing import Any

from pydantic import ValidationError

from dosync import __version__
from dosync.config import AppConfig, RollingUpdateConfig, load_config
from dosync.durations import parse_duration
from dosync.errors import ConfigError, DosyncError
from dosync.metrics import MetricsCollector
from dosync.settings import Settings, _env_bool


log = logging.getLogger("dosync")


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False, default=str))


def _flag(value: bool | None, env: str) -> bool | None:
    """A boolean flag given on the command line, else from `env`, else unset."""
    if value:
        return True
    if os.getenv(env) is not None:
        return _env_bool(env)
    return None


def apply_overrides(cfg: AppConfig, args: argparse.Namespace) -> AppConfig:
    """Layer `sync` flags (and their SYNC_* environment fallbacks) over the config file."""
    updates: dict[str, Any] = {}
    rolling = _flag(args.rolling_update, "SYNC_ROLLING_UPDATE")
    if rolling is not None:
        updates["enabled"] = rolling
    rollback = _flag(args.rollback_on_failure, "SYNC_ROLLBACK_ON_FAILURE")
    if rollback is not None:
        updates["rollback_on_failure"] = rollback
    for field, value in (
        ("strategy", args.strategy),
        ("health_check", args.health_check),
        ("health_endpoint", args.health_endpoint),
        ("delay", args.delay),
    ):
        if value is not None:
            updates[field] = value

    top: dict[str, Any] = {}
    try:
        if updates:
            merged = {**cfg.rolling_update.model_dump(), **updates}
            top["rolling_update"] = RollingUpdateConfig.model_validate(merged)
            top["rolling_update"].strategy_config()
        if args.interval is not None:
            interval = parse_duration(args.interval)
            if interval <= 0:
                raise ConfigError(f"interval must be positive, got {args.interval!r}")
            top["check_interval"] = interval
    except (ValidationError, ValueError) as e:
        raise ConfigError(f"invalid command line option: {e}") from e

    verbose = _flag(args.verbose, "SYNC_VERBOSE")
    if verbose is not None:
        top["verbose"] = verbose
    return cfg.model_copy(update=top) if top else cfg


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="dosync", description="Keep Docker Compose services on the newest allowed image tags")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_sync = sub.add_parser("sync", help="Reconcile the compose file against its registries")
    s_sync.add_argument("-f", "--file", default=os.getenv("SYNC_FILE", "docker-compose.yml"), help="Compose file")
    s_sync.add_argument("-c", "--config", default=os.getenv("SYNC_CONFIG"), help="dosync YAML config file")
    s_sync.add_argument("-i", "--interval", default=os.getenv("SYNC_INTERVAL"), help="Check interval, e.g. 1m or 30s")
    s_sync.add_argument("--verbose", action="store_true", default=None)
    s_sync.add_argument("--rolling-update", action="store_true", default=None, help="Update replicas with a strategy")
    s_sync.add_argument("--strategy", default=os.getenv("SYNC_STRATEGY"), help="one-at-a-time|all-at-once|blue-green|canary|percentage")
    s_sync.add_argument("--health-check", default=os.getenv("SYNC_HEALTH_CHECK"), help="docker|http|tcp|command")
    s_sync.add_argument("--health-endpoint", default=os.getenv("SYNC_HEALTH_ENDPOINT"), help="Path probed by http checks")
    s_sync.add_argument("--delay", default=os.getenv("SYNC_DELAY"), help="Delay between update steps, e.g. 10s")
    s_sync.add_argument("--rollback-on-failure", action="store_true", default=None)
    s_sync.add_argument("--once", action="store_true", help="Run a single reconcile pass and exit")

    s_met = sub.add_parser("metrics", help="Show recorded deployments")
    s_met.add_argument("--service")
    s_met.add_argument("--limit", type=int, default=20)
    s_met.add_argument("--db", help="Metrics database (default: DOSYNC_DB_PATH)")

    s_dash = sub.add_parser("dashboard", help="Serve the metrics dashboard API")
    s_dash.add_argument("--host", default="0.0.0.0")
    s_dash.add_argument("--port", type=int, default=8080)
    s_dash.add_argument("--db", help="Metrics database (default: DOSYNC_DB_PATH)")

    s_rb = sub.add_parser("rollback", help="Put a service back on a version saved in the backup history")
    s_rb.add_argument("service")
    s_rb.add_argument("--to", dest="version", help="Version to return to (default: the newest backup)")
    s_rb.add_argument("--list", action="store_true", help="List the saved versions and exit")
    s_rb.add_argument("-f", "--file", default=os.getenv("SYNC_FILE", "docker-compose.yml"), help="Compose file")
    s_rb.add_argument("-c", "--config", default=os.getenv("SYNC_CONFIG"), help="dosync YAML config file")

    sub.add_parser("version", help="Print the version")
    return p


def _sync(args: argparse.Namespace, settings: Settings) -> int:
    from dosync.reconciler import Reconciler

    try:
        cfg = apply_overrides(load_config(args.config), args)
    except ConfigError as e:
        logging.basicConfig(level=logging.INFO)
        log.error("%s", e)
        return 2

    logging.basicConfig(
        level=logging.DEBUG if cfg.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not os.path.isfile(args.file):
        log.error("compose file not found: %s", args.file)
        return 2
    try:
        recon = Reconciler(args.file, cfg, settings)
    except ConfigError as e:
        log.error("%s", e)
        return 2

    if args.once:
        report = recon.tick()
        if report is None:
            return 1
        _print(
            {
                "updated": report.updated,
                "decisions": {d.service: f"{d.current_tag} -> {d.selected_tag} ({d.source.value})" for d in report.decisions},
                "errors": report.errors,
                "rewritten": report.rewritten,
            }
        )
        return 0 if not report.errors else 1

    signal.signal(signal.SIGTERM, lambda *_: recon.stop())
    try:
        recon.run_forever()
    except KeyboardInterrupt:
        recon.stop()
    return 0


def _rollback(args: argparse.Namespace, settings: Settings) -> int:
    from dosync.reconciler import Reconciler

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        log.error("%s", e)
        return 2
    if not os.path.isfile(args.file):
        log.error("compose file not found: %s", args.file)
        return 2

    recon = Reconciler(args.file, cfg, settings)
    if args.list:
        _print([{"version": e.tag, "created_at": e.created_at.isoformat(), "path": e.path} for e in recon.backups.history(args.service)])
        return 0
    image = recon.rollback_to(args.service, args.version)
    _print({"service": args.service, "image": image})
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.cmd == "version":
        print(f"dosync {__version__}")
        return 0

    settings = Settings.from_env()

    if args.cmd == "sync":
        try:
            return _sync(args, settings)
        except DosyncError as e:
            log.error("%s", e)
            return 1

    if args.cmd == "rollback":
        try:
            return _rollback(args, settings)
        except DosyncError as e:
            log.error("%s", e)
            return 1

    if args.cmd == "metrics":
        metrics = MetricsCollector(args.db or settings.db_path)
        if args.service:
            _print(
                {
                    **metrics.stats(args.service),
                    "deployments": [asdict(r) for r in metrics.deployment_records(args.service, args.limit)],
                }
            )
        else:
            _print([metrics.stats(s) for s in metrics.services_with_metrics()])
        return 0

    if args.cmd == "dashboard":
        import uvicorn

        from dosync.api import create_app

        if not settings.dashboard_password:
            print("DOSYNC_DASHBOARD_PASSWORD must be set to serve the dashboard", file=sys.stderr)
            return 2
        app = create_app(MetricsCollector(args.db or settings.db_path), settings)
        uvicorn.run(app, host=args.host, port=args.port, log_level="info")
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
