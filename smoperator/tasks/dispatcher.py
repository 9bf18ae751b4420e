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

from smoperator.controllers.result import Result, requeue_if_error
from smoperator.controllers.trainingjob import TrainingJobReconciler
from smoperator.tasks.coordinator import ClaimOutcome, ReconcileCoordinator

logger = logging.getLogger(__name__)

# (namespace, name, token, countdown in seconds)
SendFunc = Callable[[str, str, str, float], None]


class ReconcileQueue:
    """Sends reconciliation tasks, keeping at most one queued pass per object"""

    def __init__(self, coordinator: ReconcileCoordinator, send: SendFunc):
        self.coordinator = coordinator
        self.send = send

    def schedule(self, namespace: str, name: str, countdown: float = 0, only_if_idle: bool = False) -> bool:
        token = self.coordinator.reserve(namespace, name, countdown, only_if_idle=only_if_idle)
        if token is None:
            logger.debug(f"A pass for TrainingJob {namespace}/{name} is already queued")
            return False
        logger.debug(f"Scheduling reconciliation of TrainingJob {namespace}/{name} in {countdown}s")
        self.send(namespace, name, token, countdown)
        return True


class ReconcileDispatcher:
    """
    Runs reconciliation passes and schedules the follow-up ones.

    A pass runs only while holding the object's lease, so passes on the same
    object never overlap. A task whose token was superseded is dropped; a task
    that finds the lease taken is sent again with the same token.
    """

    def __init__(
        self,
        reconciler: TrainingJobReconciler,
        queue: ReconcileQueue,
        error_requeue_delay: float = 1.0,
        lease_seconds: float = 300.0,
    ):
        self.reconciler = reconciler
        self.queue = queue
        self.error_requeue_delay = error_requeue_delay
        self.lease_seconds = lease_seconds

    @property
    def coordinator(self) -> ReconcileCoordinator:
        return self.queue.coordinator

    def requeue_delay(self, result: Result) -> Optional[float]:
        if result.requeue_after is not None:
            return result.requeue_after
        if result.requeue:
            return 0
        if result.error is not None:
            return self.error_requeue_delay
        return None

    def _reconcile(self, namespace: str, name: str) -> Result:
        try:
            result = self.reconciler.reconcile(namespace, name)
        except Exception as e:
            logger.error(f"Reconciliation of TrainingJob {namespace}/{name} failed: {e}", exc_info=True)
            result = requeue_if_error(e)

        if result.error is not None:
            logger.info(f"Reconciliation of TrainingJob {namespace}/{name} returned error: {result.error}")
        return result

    def run(self, namespace: str, name: str, token: str) -> Optional[Result]:
        """
        Run the queued pass identified by ``token``

        Returns:
            The pass result, or None when the task was dropped or deferred
        """
        outcome = self.coordinator.claim(namespace, name, owner=token, lease_seconds=self.lease_seconds, token=token)
        if outcome == ClaimOutcome.STALE:
            logger.debug(f"Dropping superseded reconciliation task for TrainingJob {namespace}/{name}")
            return None
        if outcome == ClaimOutcome.BUSY:
            logger.info(f"TrainingJob {namespace}/{name} is being reconciled, retrying in {self.error_requeue_delay}s")
            self.queue.send(namespace, name, token, self.error_requeue_delay)
            return None

        try:
            result = self._reconcile(namespace, name)
        finally:
            self.coordinator.release(namespace, name, token)

        delay = self.requeue_delay(result)
        if delay is not None:
            self.queue.schedule(namespace, name, delay)
        return result

    def run_once(self, namespace: str, name: str) -> Optional[Result]:
        """Run an ad-hoc pass without scheduling a follow-up; None if a pass is running"""
        owner = self.coordinator.new_token()
        outcome = self.coordinator.claim(namespace, name, owner=owner, lease_seconds=self.lease_seconds)
        if outcome != ClaimOutcome.STARTED:
            return None
        try:
            return self._reconcile(namespace, name)
        finally:
            self.coordinator.release(namespace, name, owner)
