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
from typing import Callable, Optional

from smoperator.config import settings
from smoperator.controllers.trainingjob import TrainingJobReconciler
from smoperator.exceptions import ConfigurationError
from smoperator.sagemaker.client import AwsClientLoader
from smoperator.store.base import TrainingJobStore
from smoperator.tasks.coordinator import MemoryReconcileCoordinator, ReconcileCoordinator

logger = logging.getLogger(__name__)


def create_store(
    datastore: Optional[str] = None, on_generation_change: Optional[Callable[[str, str], None]] = None
) -> TrainingJobStore:
    """Create the configured datastore adapter"""
    datastore = datastore or settings.datastore
    if datastore == "sql":
        from smoperator.store.sql import SqlTrainingJobStore

        store = SqlTrainingJobStore(on_generation_change=on_generation_change)
        store.create_tables()
        return store
    if datastore == "kubernetes":
        from smoperator.store.kube import KubernetesTrainingJobStore

        return KubernetesTrainingJobStore(namespace=settings.kube_namespace)
    if datastore == "memory":
        from smoperator.store.memory import MemoryTrainingJobStore

        return MemoryTrainingJobStore(on_generation_change=on_generation_change)
    raise ConfigurationError(f"Unknown datastore: {datastore}")


def create_client_loader() -> AwsClientLoader:
    return AwsClientLoader(
        default_endpoint=settings.default_sagemaker_endpoint,
        user_agent_extra=settings.user_agent_extra,
    )


def create_reconciler(store: Optional[TrainingJobStore] = None) -> TrainingJobReconciler:
    store = store or create_store()
    logger.info(f"Creating TrainingJob reconciler with {type(store).__name__}")
    return TrainingJobReconciler(
        store=store,
        client_loader=create_client_loader(),
        poll_interval=settings.poll_interval,
        finalizer_name=settings.finalizer_name,
        job_name_max_length=settings.job_name_max_length,
    )


def create_coordinator(datastore: Optional[str] = None) -> ReconcileCoordinator:
    """Create the coordinator that keeps one queued and one running pass per object"""
    datastore = datastore or settings.datastore
    if datastore == "memory":
        return MemoryReconcileCoordinator(pending_timeout=settings.pending_timeout)

    from smoperator.store.sql import SqlReconcileCoordinator

    coordinator = SqlReconcileCoordinator(pending_timeout=settings.pending_timeout)
    coordinator.create_tables()
    return coordinator
