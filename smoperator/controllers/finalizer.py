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

from smoperator.controllers.policy import ErrorPolicy
from smoperator.controllers.result import (
    Result,
    no_requeue,
    requeue_after,
    requeue_if_error,
    requeue_immediately,
)
from smoperator.controllers.status import StatusSynchronizer, is_status_regression, status_from_description
from smoperator.exceptions import ObjectNotFoundError, StoreError
from smoperator.sagemaker.client import SageMakerJobClient
from smoperator.sagemaker.convert import RemoteJobDescription
from smoperator.schema.trainingjob import SageMakerJobStatus, TrainingJob, is_terminal_status
from smoperator.store.base import TrainingJobStore

logger = logging.getLogger(__name__)


class FinalizerCoordinator:
    """
    Owns the deletion-protection marker on TrainingJob objects.

    While the marker is present the datastore keeps the object around, so the
    remote training job is always stopped (or found terminal) before the
    local object disappears. Other finalizers on the object are left alone.
    """

    def __init__(
        self,
        store: TrainingJobStore,
        status_sync: StatusSynchronizer,
        error_policy: ErrorPolicy,
        finalizer_name: str,
        poll_interval: float,
    ):
        self.store = store
        self.status_sync = status_sync
        self.error_policy = error_policy
        self.finalizer_name = finalizer_name
        self.poll_interval = poll_interval

    def add_finalizer(self, job: TrainingJob) -> TrainingJob:
        """Attach the marker and persist. Raises StoreError on failure."""
        updated = job.model_copy(deep=True)
        if self.finalizer_name not in updated.metadata.finalizers:
            updated.metadata.finalizers.append(self.finalizer_name)
        logger.info(f"Adding finalizer {self.finalizer_name} to TrainingJob {job.key}")
        return self.store.update(updated)

    def remove_finalizer(self, job: TrainingJob) -> Result:
        updated = job.model_copy(deep=True)
        updated.metadata.finalizers = [f for f in updated.metadata.finalizers if f != self.finalizer_name]
        logger.info(f"Removing finalizer {self.finalizer_name} from TrainingJob {job.key}")
        try:
            self.store.update(updated)
        except ObjectNotFoundError:
            logger.info(f"TrainingJob {job.key} already removed")
            return no_requeue()
        except StoreError as e:
            logger.error(f"Failed to remove finalizer from TrainingJob {job.key}: {e}")
            return requeue_if_error(e)
        return no_requeue()

    def handle_deletion(
        self, job: TrainingJob, client: SageMakerJobClient, description: RemoteJobDescription, log_url: str
    ) -> Result:
        if not job.has_finalizer(self.finalizer_name):
            logger.info(f"TrainingJob {job.key} has no finalizer, nothing to do")
            return no_requeue()

        job_name = job.spec.training_job_name
        remote_status = description.training_job_status
        logger.info(f"TrainingJob {job.key} scheduled for deletion, remote job {job_name} is {remote_status}")

        if remote_status == SageMakerJobStatus.IN_PROGRESS.value:
            result = client.stop(job_name)
            if result.ok:
                return requeue_immediately()
            if result.error.is_not_found:
                return self.remove_finalizer(job)
            return self.error_policy.handle(job, result.error, log_url)

        if remote_status == SageMakerJobStatus.STOPPING.value:
            status = status_from_description(job_name, description, log_url)
            if not is_status_regression(job.status.training_job_status, status.training_job_status):
                try:
                    self.status_sync.update_status(job, status)
                except StoreError as e:
                    logger.info(f"Status refresh for stopping TrainingJob {job.key} failed, polling anyway: {e}")
            return requeue_after(self.poll_interval)

        if is_terminal_status(remote_status):
            logger.info(f"Remote job {job_name} is in terminal status {remote_status}")
            return self.remove_finalizer(job)

        logger.error(f"Remote job {job_name} for TrainingJob {job.key} is in unknown status {remote_status!r}")
        return no_requeue()
