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

from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

from smoperator.schema.trainingjob import TrainingJob


class TrainingJobStore(ABC):
    """Abstract datastore holding TrainingJob objects"""

    @abstractmethod
    def get(self, namespace: str, name: str) -> TrainingJob:
        """
        Read the current snapshot of an object

        Raises:
            ObjectNotFoundError: The object does not exist
            StoreUnavailableError: The datastore could not be reached
        """
        pass

    @abstractmethod
    def update(self, job: TrainingJob) -> TrainingJob:
        """
        Persist spec and metadata (finalizers) of an object

        The write is conditional on ``job.metadata.resource_version``. The
        generation is incremented only when the spec changed. An object that
        is being deleted and carries no finalizers is removed.

        Returns:
            The stored object with its new resource version and generation

        Raises:
            ConflictError: The object was modified since it was read
            ObjectNotFoundError: The object no longer exists
            StoreUnavailableError: The datastore could not be reached
        """
        pass

    @abstractmethod
    def update_status(self, job: TrainingJob) -> TrainingJob:
        """
        Replace the whole status of an object

        The write is conditional on ``job.metadata.resource_version``; spec and
        metadata in ``job`` are ignored.

        Raises:
            ConflictError: The object was modified since it was read
            ObjectNotFoundError: The object no longer exists
            StoreUnavailableError: The datastore could not be reached
        """
        pass

    @abstractmethod
    def list_keys(self) -> List[Tuple[str, str]]:
        """Return (namespace, name) of every object"""
        pass

    @abstractmethod
    def create(self, job: TrainingJob) -> TrainingJob:
        """
        Store a new object with generation 1 and a fresh UID

        Raises:
            ConflictError: An object with the same namespace and name exists
            StoreUnavailableError: The datastore could not be reached
        """
        pass

    @abstractmethod
    def request_deletion(self, namespace: str, name: str) -> Optional[TrainingJob]:
        """
        Set the deletion timestamp of an object

        Objects without finalizers are removed at once and None is returned.

        Raises:
            ObjectNotFoundError: The object does not exist
            StoreUnavailableError: The datastore could not be reached
        """
        pass
