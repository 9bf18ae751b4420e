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
from typing import Optional

from config.celery import app
from smoperator.config import settings
from smoperator.tasks.dispatcher import ReconcileDispatcher, ReconcileQueue

logger = logging.getLogger(__name__)

_queue: Optional[ReconcileQueue] = None
_dispatcher: Optional[ReconcileDispatcher] = None


def send_reconcile(namespace: str, name: str, token: str, countdown: float = 0) -> None:
    reconcile_training_job_task.apply_async(args=(namespace, name, token), countdown=countdown)


def get_queue() -> ReconcileQueue:
    global _queue
    if _queue is None:
        # Import here to avoid circular dependencies
        from smoperator.manager import create_coordinator

        _queue = ReconcileQueue(create_coordinator(), send_reconcile)
    return _queue


def request_reconcile(namespace: str, name: str, countdown: float = 0) -> bool:
    """Queue a pass for a TrainingJob unless an earlier one is already queued"""
    return get_queue().schedule(namespace, name, countdown)


def get_dispatcher() -> ReconcileDispatcher:
    global _dispatcher
    if _dispatcher is None:
        from smoperator.manager import create_reconciler, create_store

        store = create_store(on_generation_change=request_reconcile)
        _dispatcher = ReconcileDispatcher(
            reconciler=create_reconciler(store),
            queue=get_queue(),
            error_requeue_delay=settings.error_requeue_delay,
            lease_seconds=settings.reconcile_lease_seconds,
        )
    return _dispatcher


@app.task
def reconcile_training_job_task(namespace: str, name: str, token: Optional[str] = None) -> str:
    """
    Run one reconciliation pass for a TrainingJob

    Args:
        namespace: Namespace of the TrainingJob
        name: Name of the TrainingJob
        token: Token of the queued pass; without one the task only queues a pass
    """
    if token is None:
        return "scheduled" if request_reconcile(namespace, name) else "already queued"

    result = get_dispatcher().run(namespace, name, token)
    if result is None:
        return "skipped"
    return result.describe()


@app.task
def resync_training_jobs_task() -> int:
    """Periodic task that queues a pass for every TrainingJob with none queued or running"""
    try:
        keys = get_dispatcher().reconciler.store.list_keys()
    except Exception as e:
        logger.error(f"TrainingJob resync failed: {e}")
        raise

    queue = get_queue()
    scheduled = 0
    for namespace, name in keys:
        if queue.schedule(namespace, name, only_if_idle=True):
            scheduled += 1
    logger.info(f"Resync queued reconciliation for {scheduled} of {len(keys)} TrainingJobs")
    return scheduled
