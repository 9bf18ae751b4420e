# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Tuple


class ClaimOutcome(str, Enum):
    STARTED = "started"
    # The task's token was superseded by a newer queued pass
    STALE = "stale"
    # Another pass holds the object's lease
    BUSY = "busy"


class ReconcileCoordinator(ABC):
    """
    Keeps at most one queued and one running reconciliation pass per TrainingJob.

    Every queued pass carries a token. Reserving a new pass supersedes the
    previous token, so a task holding an old token is dropped when it runs
    and duplicate polling chains collapse into one. A pass runs only while
    holding the object's lease.
    """

    def __init__(self, pending_timeout: float = 60.0, clock: Callable[[], float] = time.time):
        self.pending_timeout = pending_timeout
        self._clock = clock

    @staticmethod
    def new_token() -> str:
        return str(uuid.uuid4())

    @abstractmethod
    def reserve(self, namespace: str, name: str, countdown: float = 0, only_if_idle: bool = False) -> Optional[str]:
        """
        Reserve the queued pass of an object

        A token is issued when nothing is queued, when the request is due
        earlier than the queued pass, or when the queued pass is overdue by
        more than ``pending_timeout`` (its task was lost). With
        ``only_if_idle`` a token is issued only when no pass is queued or
        running.

        Returns:
            The token to send with the task, or None when a queued pass
            already covers the request
        """
        pass

    @abstractmethod
    def claim(
        self, namespace: str, name: str, owner: str, lease_seconds: float, token: Optional[str] = None
    ) -> ClaimOutcome:
        """
        Take the lease of an object to run a pass

        With a token, the token must be the queued one; it is consumed when
        the lease is granted. Without a token the pass is an ad-hoc one and
        the queued pass is left alone.
        """
        pass

    @abstractmethod
    def release(self, namespace: str, name: str, owner: str) -> None:
        """Give up the lease if ``owner`` still holds it"""
        pass


@dataclass
class _ScheduleEntry:
    pending_token: Optional[str] = None
    pending_due_at: Optional[float] = None
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[float] = None

    def pending_live(self, now: float, pending_timeout: float) -> bool:
        return self.pending_token is not None and self.pending_due_at >= now - pending_timeout

    def lease_held(self, now: float) -> bool:
        return self.lease_owner is not None and self.lease_expires_at >= now


class MemoryReconcileCoordinator(ReconcileCoordinator):
    """In-process implementation for testing or single-machine runs"""

    def __init__(self, pending_timeout: float = 60.0, clock: Callable[[], float] = time.time):
        super().__init__(pending_timeout, clock)
        self._entries: Dict[Tuple[str, str], _ScheduleEntry] = {}
        self._lock = threading.Lock()

    def reserve(self, namespace: str, name: str, countdown: float = 0, only_if_idle: bool = False) -> Optional[str]:
        now = self._clock()
        due = now + countdown
        with self._lock:
            entry = self._entries.setdefault((namespace, name), _ScheduleEntry())
            pending_live = entry.pending_live(now, self.pending_timeout)
            if only_if_idle:
                if pending_live or entry.lease_held(now):
                    return None
            elif pending_live and entry.pending_due_at <= due:
                return None
            entry.pending_token = self.new_token()
            entry.pending_due_at = due
            return entry.pending_token

    def claim(
        self, namespace: str, name: str, owner: str, lease_seconds: float, token: Optional[str] = None
    ) -> ClaimOutcome:
        now = self._clock()
        with self._lock:
            entry = self._entries.setdefault((namespace, name), _ScheduleEntry())
            if token is not None and entry.pending_token != token:
                return ClaimOutcome.STALE
            if entry.lease_held(now):
                return ClaimOutcome.BUSY
            if token is not None:
                entry.pending_token = None
                entry.pending_due_at = None
            entry.lease_owner = owner
            entry.lease_expires_at = now + lease_seconds
            return ClaimOutcome.STARTED

    def release(self, namespace: str, name: str, owner: str) -> None:
        with self._lock:
            entry = self._entries.get((namespace, name))
            if entry is not None and entry.lease_owner == owner:
                entry.lease_owner = None
                entry.lease_expires_at = None
