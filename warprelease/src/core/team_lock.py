import threading
from contextlib import contextmanager
from typing import Dict, Optional

from warprelease.logger import get_console
from warprelease.src.core.errors import TeamBusyError

console = get_console()


class TeamLockRegistry:
    """Per-team advisory locks.

    A team's keychain and certificate/profile directories are shared and not
    transactional, so only one deployment may touch them at a time. Locks for
    different teams are independent.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, team_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(team_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[team_id] = lock
            return lock

    def is_locked(self, team_id: str) -> bool:
        return self._lock_for(team_id).locked()

    @contextmanager
    def hold(self, team_id: str, timeout: Optional[float] = None):
        """Hold the team's lock for the duration of the block.

        ``timeout=None`` waits indefinitely; otherwise ``TeamBusyError`` is
        raised once ``timeout`` seconds pass (``0`` means don't wait at all).
        """
        lock = self._lock_for(team_id)
        if timeout is None:
            acquired = lock.acquire()
        else:
            acquired = lock.acquire(timeout=max(timeout, 0))

        if not acquired:
            raise TeamBusyError(
                f"Another deployment is already running for team {team_id}",
                {"team_id": team_id, "timeout": timeout},
            )

        console.log(f"[cyan]Acquired deployment lock for team {team_id}")
        try:
            yield
        finally:
            lock.release()
            console.log(f"[cyan]Released deployment lock for team {team_id}")
