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

import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from smoperator.exceptions import ConflictError, ObjectNotFoundError
from smoperator.schema.trainingjob import TrainingJob
from smoperator.store.base import TrainingJobStore

logger = logging.getLogger(__name__)


class MemoryTrainingJobStore(TrainingJobStore):
    """In-process implementation for testing or single-machine runs"""

    def __init__(self, on_generation_change: Optional[Callable[[str, str], None]] = None):
        self._objects: Dict[Tuple[str, str], TrainingJob] = {}
        self._counter = 0
        self._lock = threading.Lock()
        self._on_generation_change = on_generation_change

    def _next_version(self) -> str:
        self._counter += 1
        return str(self._counter)

    def _current(self, namespace: str, name: str) -> TrainingJob:
        stored = self._objects.get((namespace, name))
        if stored is None:
            raise ObjectNotFoundError(namespace, name)
        return stored

    def _check_version(self, stored: TrainingJob, job: TrainingJob):
        if stored.metadata.resource_version != job.metadata.resource_version:
            raise ConflictError(job.metadata.namespace, job.metadata.name, job.metadata.resource_version)

    def create(self, job: TrainingJob) -> TrainingJob:
        with self._lock:
            key = (job.metadata.namespace, job.metadata.name)
            if key in self._objects:
                raise ConflictError(job.metadata.namespace, job.metadata.name)
            stored = job.model_copy(deep=True)
            stored.metadata.uid = stored.metadata.uid or str(uuid.uuid4())
            stored.metadata.generation = 1
            stored.metadata.resource_version = self._next_version()
            self._objects[key] = stored
            return stored.model_copy(deep=True)

    def get(self, namespace: str, name: str) -> TrainingJob:
        with self._lock:
            return self._current(namespace, name).model_copy(deep=True)

    def update(self, job: TrainingJob) -> TrainingJob:
        namespace, name = job.metadata.namespace, job.metadata.name
        with self._lock:
            stored = self._current(namespace, name)
            self._check_version(stored, job)

            updated = stored.model_copy(deep=True)
            updated.spec = job.spec.model_copy(deep=True)
            updated.metadata.finalizers = list(job.metadata.finalizers)
            spec_changed = updated.spec.model_dump() != stored.spec.model_dump()
            if spec_changed:
                updated.metadata.generation = stored.metadata.generation + 1
            updated.metadata.resource_version = self._next_version()

            if updated.is_being_deleted and not updated.metadata.finalizers:
                logger.info(f"Finalizers cleared, removing TrainingJob {namespace}/{name}")
                del self._objects[(namespace, name)]
            else:
                self._objects[(namespace, name)] = updated
            result = updated.model_copy(deep=True)

        if spec_changed and self._on_generation_change:
            self._on_generation_change(namespace, name)
        return result

    def update_status(self, job: TrainingJob) -> TrainingJob:
        namespace, name = job.metadata.namespace, job.metadata.name
        with self._lock:
            stored = self._current(namespace, name)
            self._check_version(stored, job)
            updated = stored.model_copy(deep=True)
            updated.status = job.status.model_copy(deep=True)
            updated.metadata.resource_version = self._next_version()
            self._objects[(namespace, name)] = updated
            return updated.model_copy(deep=True)

    def request_deletion(self, namespace: str, name: str) -> Optional[TrainingJob]:
        """Mark an object for deletion; objects without finalizers are removed at once"""
        requested = False
        with self._lock:
            stored = self._current(namespace, name)
            if not stored.metadata.finalizers:
                del self._objects[(namespace, name)]
                return None
            if stored.metadata.deletion_timestamp is None:
                stored.metadata.deletion_timestamp = datetime.now(timezone.utc)
                stored.metadata.generation += 1
                stored.metadata.resource_version = self._next_version()
                requested = True
            result = stored.model_copy(deep=True)

        if requested and self._on_generation_change:
            self._on_generation_change(namespace, name)
        return result

    def list_keys(self) -> List[Tuple[str, str]]:
        with self._lock:
            return sorted(self._objects.keys())
