import threading
from datetime import datetime
from typing import Dict, List, Optional

from warprelease.logger import get_console
from warprelease.src.models.deployment_record import DeploymentRecord
from warprelease.src.models.timestamps import utcnow

console = get_console()


class DeploymentHistory:
    """In-memory store of deployment records, keyed by deployment ID.

    Records are immutable, so saving simply replaces the stored value. The
    orchestrator saves after every transition; the store is what makes
    re-invoking a deployment ID idempotent.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[str, DeploymentRecord] = {}

    def save(self, record: DeploymentRecord) -> DeploymentRecord:
        with self._lock:
            self._records[record.deployment_id] = record
        return record

    def get(self, deployment_id: str) -> Optional[DeploymentRecord]:
        with self._lock:
            return self._records.get(deployment_id)

    def __contains__(self, deployment_id: str) -> bool:
        return self.get(deployment_id) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def all(self) -> List[DeploymentRecord]:
        with self._lock:
            records = list(self._records.values())
        return sorted(records, key=lambda r: r.initiated_at, reverse=True)

    def for_team(self, team_id: str) -> List[DeploymentRecord]:
        return [r for r in self.all() if r.team_id == team_id]

    def for_app(self, app_identifier: str) -> List[DeploymentRecord]:
        return [r for r in self.all() if r.app_identifier == app_identifier]

    def in_progress(self, team_id: Optional[str] = None) -> List[DeploymentRecord]:
        return [
            r
            for r in self.all()
            if r.in_progress and (team_id is None or r.team_id == team_id)
        ]

    def latest_successful(self, app_identifier: str) -> Optional[DeploymentRecord]:
        for record in self.for_app(app_identifier):
            if record.succeeded:
                return record
        return None

    def archivable(self, now: Optional[datetime] = None) -> List[DeploymentRecord]:
        now = now or utcnow()
        return [r for r in self.all() if r.is_terminal and r.should_archive(now)]

    def purge_archivable(self, now: Optional[datetime] = None) -> List[DeploymentRecord]:
        """Drop terminal records past their retention period and return them"""
        expired = self.archivable(now)
        with self._lock:
            for record in expired:
                self._records.pop(record.deployment_id, None)
        if expired:
            console.log(f"[yellow]Archived {len(expired)} deployment records past retention")
        return expired

    def statistics(self, team_id: Optional[str] = None) -> Dict[str, object]:
        records = self.for_team(team_id) if team_id else self.all()
        terminal = [r for r in records if r.is_terminal]
        succeeded = [r for r in terminal if r.succeeded]
        durations = [r.duration for r in terminal if r.duration is not None]

        failure_kinds: Dict[str, int] = {}
        for record in terminal:
            if record.error is not None:
                failure_kinds[record.error.kind] = failure_kinds.get(record.error.kind, 0) + 1

        return {
            "total": len(records),
            "in_progress": len(records) - len(terminal),
            "completed": len(succeeded),
            "failed": len(terminal) - len(succeeded),
            "success_rate": round(len(succeeded) / len(terminal) * 100, 1) if terminal else 0.0,
            "average_duration": round(sum(durations) / len(durations), 1) if durations else None,
            "failure_kinds": failure_kinds,
        }
