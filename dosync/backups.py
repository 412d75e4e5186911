"""Per-service history of compose file backups.

Before a service is moved to a new tag, the compose file is copied into the
backup directory as ``<service>@<tag>@<timestamp>.yml``, where ``<tag>`` is
the version being replaced. Only the newest `max_history` copies of each
service are kept. A copy can later be looked up by tag to put the service
back on that version.
"""
from __future__ import annotations

import logging
import os
import re
import shutil
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from .compose import load_compose
from .errors import ComposeError, RollbackFailed


log = logging.getLogger(__name__)

_TS_FORMAT = "%Y%m%dT%H%M%S%f"
_NAME_RE = re.compile(r"^(?P<service>[^@/]+)@(?P<tag>[^@/]+)@(?P<ts>\d{8}T\d{12})\.yml$")


@dataclass(frozen=True)
class BackupEntry:
    service: str
    tag: str
    created_at: datetime
    path: str

    def image(self) -> str:
        """The `image:` value the service had in this backup."""
        image = load_compose(self.path).service(self.service).image
        if not image:
            raise RollbackFailed(f"{self.service}: backup {os.path.basename(self.path)} has no image")
        return image


def default_backup_dir(compose_path: str) -> str:
    return os.path.join(os.path.dirname(os.path.abspath(compose_path)), "backups")


class BackupStore:
    def __init__(self, directory: str, max_history: int = 10):
        if max_history < 1:
            raise ValueError("max_history must be at least 1")
        self.directory = directory
        self.max_history = max_history

    def _path(self, service: str, tag: str, when: datetime) -> str:
        return os.path.join(self.directory, f"{service}@{tag}@{when.strftime(_TS_FORMAT)}.yml")

    def create(self, compose_path: str, service: str, tag: str) -> BackupEntry:
        """Copy `compose_path` as the backup of `service` at `tag`, then trim the history."""
        when = datetime.now(timezone.utc)
        previous = self.history(service)
        if previous and previous[0].created_at >= when:
            when = previous[0].created_at + timedelta(microseconds=1)
        path = self._path(service, tag, when)
        try:
            os.makedirs(self.directory, exist_ok=True)
            shutil.copy2(compose_path, path)
        except OSError as e:
            raise ComposeError(f"cannot back up {compose_path} for {service}: {e}") from e

        entry = BackupEntry(service=service, tag=tag, created_at=when, path=path)
        log.info("[%s] backup: %s saved as %s", service, tag, os.path.basename(path))
        try:
            self.cleanup(service)
        except OSError as e:
            log.warning("[%s] backup: cleanup failed: %s", service, e)
        return entry

    def _entries(self) -> list[BackupEntry]:
        try:
            names = os.listdir(self.directory)
        except FileNotFoundError:
            return []
        except OSError as e:
            raise ComposeError(f"cannot read backup directory {self.directory}: {e}") from e

        entries = []
        for name in names:
            m = _NAME_RE.match(name)
            if not m:
                continue
            created = datetime.strptime(m["ts"], _TS_FORMAT).replace(tzinfo=timezone.utc)
            entries.append(BackupEntry(m["service"], m["tag"], created, os.path.join(self.directory, name)))
        return entries

    def history(self, service: str) -> list[BackupEntry]:
        """Backups of `service`, newest first."""
        entries = [e for e in self._entries() if e.service == service]
        return sorted(entries, key=lambda e: e.created_at, reverse=True)

    def services(self) -> list[str]:
        return sorted({e.service for e in self._entries()})

    def cleanup(self, service: str | None = None) -> int:
        """Delete all but the newest `max_history` backups of `service` (or of every service)."""
        removed = 0
        for name in [service] if service else self.services():
            for entry in self.history(name)[self.max_history :]:
                os.remove(entry.path)
                removed += 1
        return removed

    def find(self, service: str, tag: str | None = None) -> BackupEntry:
        """Newest backup of `service`, or the newest one taken at `tag`."""
        entries = self.history(service)
        if not entries:
            raise RollbackFailed(f"{service}: no backups in {self.directory}")
        if tag is None:
            return entries[0]
        for entry in entries:
            if entry.tag == tag:
                return entry
        known = ", ".join(dict.fromkeys(e.tag for e in entries))
        raise RollbackFailed(f"{service}: no backup at version {tag} (have: {known})")
