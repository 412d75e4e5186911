from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Thread

from .alerts import Notifier
from .backups import BackupStore, default_backup_dir
from .compose import ComposeFile, load_compose, rewrite_images
from .config import AppConfig
from .dependency import DependencyGraph
from .docker_ops import DockerEngine, Engine, compose_up
from .durations import format_duration
from .errors import DosyncError, RollbackFailed
from .imageref import parse_image_ref
from .metrics import MetricsCollector
from .policy import UpdateDecision, decide
from .registry import RegistryClient
from .replica import ReplicaDetector
from .settings import Settings
from .strategies import DeploymentResult, StrategyOps, UpdateStrategy, new_strategy


log = logging.getLogger(__name__)


@dataclass
class TickReport:
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    decisions: list[UpdateDecision] = field(default_factory=list)
    results: dict[str, DeploymentResult] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    updated: list[str] = field(default_factory=list)
    rewritten: bool = False


class Reconciler:
    """Periodically brings the compose file and its containers up to the tags the policies select."""

    def __init__(
        self,
        compose_path: str,
        config: AppConfig,
        settings: Settings,
        engine: Engine | None = None,
        registry: RegistryClient | None = None,
        metrics: MetricsCollector | None = None,
        notifier: Notifier | None = None,
    ):
        self.compose_path = compose_path
        self.config = config
        self.settings = settings
        self.engine = engine
        self.registry = registry or RegistryClient(config.credentials(), timeout=settings.registry_timeout_s)
        self.metrics = metrics or MetricsCollector(settings.db_path)
        self.notifier = notifier or Notifier(settings, config.notifications)
        self.strategy_config = config.rolling_update.strategy_config()
        self.harbor_hosts = (*settings.harbor_hosts, *config.harbor_hosts())
        self.backups = BackupStore(settings.backup_dir or default_backup_dir(compose_path), settings.backup_history)
        self._stop = threading.Event()
        self._busy = threading.Lock()
        self._thr: Thread | None = None
        self._strategy: UpdateStrategy | None = None

    # -- loop --------------------------------------------------------------

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self.run_forever, name="dosync-reconciler", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        """Ask the loop to exit. A strategy in progress sees this as a cancellation."""
        self._stop.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thr:
            self._thr.join(timeout)

    def run_forever(self) -> None:
        interval = self.config.check_interval
        self.metrics.log_event("INFO", f"Reconciler started (interval {format_duration(interval)}, file {self.compose_path})")
        log.info("reconciler started: %s every %gs", self.compose_path, interval)
        next_at = time.monotonic()
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as e:
                log.exception("reconcile tick failed")
                self.metrics.log_event("ERROR", f"Reconciler tick failed: {type(e).__name__}: {e}")

            next_at += interval
            now = time.monotonic()
            if next_at <= now:
                missed = int((now - next_at) // interval) + 1
                next_at += missed * interval
                log.warning("tick overran its interval; skipping %d tick(s)", missed)
            self._stop.wait(next_at - now)
        log.info("reconciler stopped")

    def tick(self) -> TickReport | None:
        """Run one reconcile pass. Returns None if another pass is still running."""
        if not self._busy.acquire(blocking=False):
            log.warning("previous tick still running; skipped")
            return None
        try:
            return self._tick()
        finally:
            self._busy.release()

    # -- one pass ----------------------------------------------------------

    def _engine(self, compose: ComposeFile) -> Engine:
        if self.engine is None:
            self.engine = DockerEngine(project=compose.project)
        return self.engine

    def _strategy_for(self, compose: ComposeFile, graph: DependencyGraph) -> UpdateStrategy:
        engine = self._engine(compose)
        ops = StrategyOps(
            engine=engine,
            detector=ReplicaDetector(engine, compose),
            cancel=self._stop,
            dependents_of=graph.dependents,
        )
        if self._strategy is None:
            self._strategy = new_strategy(self.strategy_config, ops)
        else:
            self._strategy.ops = ops
        return self._strategy

    def evaluate(self, service: str, image: str) -> UpdateDecision | None:
        ref = parse_image_ref(image, self.harbor_hosts)
        if ref.pinned:
            log.debug("[%s] check: pinned by digest, skipped", service)
            return None
        tags = self.registry.list_tags(ref)
        decision = decide(service, ref, tags, self.config.policy_for(ref.kind))
        if decision is None:
            log.debug("[%s] check: %s is current (%d tags)", service, ref.current_tag, len(tags))
        else:
            log.info("[%s] check: %s -> %s (%s)", service, decision.current_tag, decision.selected_tag, decision.source.value)
        return decision

    def _tick(self) -> TickReport:
        report = TickReport()
        compose = load_compose(self.compose_path)
        graph = DependencyGraph.from_compose(compose)

        decisions: dict[str, UpdateDecision] = {}
        for name, svc in sorted(compose.services.items()):
            if not svc.image:
                continue
            try:
                decision = self.evaluate(name, svc.image)
            except DosyncError as e:
                report.errors[name] = str(e)
                log.warning("[%s] check: %s", name, e)
                continue
            if decision is not None:
                decisions[name] = decision

        order = [s for s in graph.get_update_order(decisions) if s in decisions]
        report.decisions = [decisions[s] for s in order]
        if not order:
            self._retention()
            return report

        if self.config.rolling_update.enabled:
            strategy = self._strategy_for(compose, graph)
            for name in order:
                if self._stop.is_set():
                    break
                if self._rolling_update(strategy, decisions[name], report):
                    report.updated.append(name)
            new_images = {s: decisions[s].target_image for s in report.updated}
            report.rewritten = rewrite_images(self.compose_path, new_images, self.settings.backup_name)
        else:
            self._compose_update(order, decisions, report)

        if report.updated:
            self._prune(compose)
        self._retention()
        return report

    def _back_up(self, d: UpdateDecision, report: TickReport) -> bool:
        try:
            self.backups.create(self.compose_path, d.service, d.current_tag)
        except DosyncError as e:
            report.errors[d.service] = str(e)
            log.warning("[%s] backup: %s", d.service, e)
            return False
        return True

    def _rolling_update(self, strategy: UpdateStrategy, d: UpdateDecision, report: TickReport) -> bool:
        if not self._back_up(d, report):
            return False
        record_id = self.metrics.record_deployment_start(d.service, d.selected_tag)
        try:
            result = strategy.execute(d.service, d.selected_tag, d.target_image)
        except Exception as e:
            log.exception("[%s] update: crashed", d.service)
            report.errors[d.service] = f"{type(e).__name__}: {e}"
            self.metrics.record_deployment_failure(record_id, report.errors[d.service])
            self.notifier.deployment_failed(d.service, d.selected_tag, report.errors[d.service])
            return False

        report.results[d.service] = result
        if result.ok:
            self.metrics.record_deployment_success(record_id, result.duration_s)
            self.metrics.log_event("INFO", f"Updated {d.current_tag} -> {d.selected_tag}", d.service, d.selected_tag)
            self.notifier.deployment_succeeded(d.service, d.selected_tag, result.duration_s)
            return True

        reason = str(result.error) if result.error else result.outcome
        report.errors[d.service] = reason
        self.metrics.record_deployment_failure(record_id, reason, result.duration_s)
        self.metrics.log_event("ERROR", f"Update to {d.selected_tag} {result.outcome}: {reason}", d.service, d.selected_tag)
        if result.rolled_back:
            self.metrics.record_rollback(record_id)
            self.metrics.log_event("WARN", f"Rolled back to {d.current_tag}", d.service, d.current_tag)
            self.notifier.rolled_back(d.service, d.selected_tag, d.current_tag)
        self.notifier.deployment_failed(d.service, d.selected_tag, reason)
        return False

    def _compose_update(self, order: list[str], decisions: dict[str, UpdateDecision], report: TickReport) -> None:
        """Without rolling updates: rewrite the file, then `docker compose up` each service."""
        order = [s for s in order if self._back_up(decisions[s], report)]
        new_images = {s: decisions[s].target_image for s in order}
        report.rewritten = rewrite_images(self.compose_path, new_images, self.settings.backup_name)

        failed: dict[str, str] = {}
        for name in order:
            d = decisions[name]
            record_id = self.metrics.record_deployment_start(name, d.selected_tag)
            started = time.monotonic()
            try:
                compose_up(self.compose_path, name)
            except DosyncError as e:
                report.errors[name] = str(e)
                failed[name] = d.image.render()
                self.metrics.record_deployment_failure(record_id, str(e), time.monotonic() - started)
                self.notifier.deployment_failed(name, d.selected_tag, str(e))
                log.warning("[%s] compose up: %s", name, e)
                continue
            duration = time.monotonic() - started
            self.metrics.record_deployment_success(record_id, duration)
            self.metrics.log_event("INFO", f"Updated {d.current_tag} -> {d.selected_tag}", name, d.selected_tag)
            self.notifier.deployment_succeeded(name, d.selected_tag, duration)
            report.updated.append(name)

        if failed:
            # Put the previous image back so the file matches what is running.
            rewrite_images(self.compose_path, failed, self.settings.backup_name)

    def _prune(self, compose: ComposeFile) -> None:
        if not self.settings.prune_images:
            return
        try:
            reclaimed = self._engine(compose).prune_images()
            log.info("pruned unused images, reclaimed %d bytes", reclaimed)
        except DosyncError as e:
            log.warning("image prune failed: %s", e)

    def _retention(self) -> None:
        days = self.config.metrics.retention_days
        if days:
            removed = self.metrics.prune_older_than(days)
            if removed:
                log.info("metrics retention: removed %d row(s) older than %d days", removed, days)

    def rollback(self, service: str) -> None:
        """Undo the last update of `service` made by the rolling-update strategy."""
        if self._strategy is None:
            raise DosyncError(f"{service}: no rolling update has run")
        self._strategy.rollback(service)
        self.metrics.log_event("WARN", "Manual rollback", service)

    def rollback_to(self, service: str, tag: str | None = None) -> str:
        """Put `service` back on the image it had in a saved backup.

        The newest backup is used unless `tag` names the version to return to.
        The running replicas are moved first (by the rolling-update strategy, or
        `docker compose up` without one); the compose file is rewritten once they
        are. Returns the restored image.
        """
        entry = self.backups.find(service, tag)
        image = entry.image()
        with self._busy:
            compose = load_compose(self.compose_path)
            current = compose.service(service).image
            if not current:
                raise RollbackFailed(f"{service}: no image in {self.compose_path}")
            if current == image:
                log.info("[%s] rollback: already on %s", service, image)
                return image
            current_tag = parse_image_ref(current, self.harbor_hosts).current_tag
            target_tag = parse_image_ref(image, self.harbor_hosts).current_tag
            self.backups.create(self.compose_path, service, current_tag)

            if self.config.rolling_update.enabled:
                strategy = self._strategy_for(compose, DependencyGraph.from_compose(compose))
                result = strategy.execute(service, target_tag, image)
                if not result.ok:
                    raise RollbackFailed(f"{service}: redeploy of {image} {result.outcome}: {result.error}")
                rewrite_images(self.compose_path, {service: image}, self.settings.backup_name)
            else:
                rewrite_images(self.compose_path, {service: image}, self.settings.backup_name)
                try:
                    compose_up(self.compose_path, service)
                except DosyncError:
                    rewrite_images(self.compose_path, {service: current}, self.settings.backup_name)
                    raise

        log.warning("[%s] rollback: %s -> %s", service, current_tag, target_tag)
        self.metrics.log_event("WARN", f"Rolled back {current_tag} -> {target_tag}", service, target_tag)
        self.notifier.rolled_back(service, current_tag, target_tag)
        return image
