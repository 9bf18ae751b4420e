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

from smoperator.config import DEFAULT_FINALIZER_NAME, MAX_TRAINING_JOB_NAME_LENGTH
from smoperator.controllers.comparator import compare_spec_to_description, spec_differs_message
from smoperator.controllers.finalizer import FinalizerCoordinator
from smoperator.controllers.naming import resolve_job_name
from smoperator.controllers.policy import ErrorPolicy
from smoperator.controllers.result import (
    Result,
    no_requeue,
    requeue_after,
    requeue_if_error,
    requeue_immediately,
    requeue_immediately_unless_generation_changed,
)
from smoperator.controllers.status import (
    StatusSynchronizer,
    cloudwatch_log_url,
    is_status_regression,
    model_path,
    now,
    status_from_description,
)
from smoperator.exceptions import ConfigurationError, ObjectNotFoundError, StoreError
from smoperator.sagemaker.client import AwsClientLoader, SageMakerJobClient
from smoperator.sagemaker.convert import RemoteJobDescription
from smoperator.schema.trainingjob import (
    INITIALIZING_JOB_STATUS,
    SageMakerJobStatus,
    TrainingJob,
    TrainingJobStatus,
    is_terminal_status,
)
from smoperator.store.base import TrainingJobStore

logger = logging.getLogger(__name__)


class TrainingJobReconciler:
    """
    Drives a TrainingJob object toward the state of its SageMaker training job.

    Each call to ``reconcile`` is one bounded pass: it reads a snapshot, makes
    at most one remote mutation and at most one datastore write, and returns
    a Result telling the dispatcher whether and when to come back. Passes
    never raise; datastore and SageMaker failures become requeue directives.
    """

    def __init__(
        self,
        store: TrainingJobStore,
        client_loader: AwsClientLoader,
        poll_interval: float = 5.0,
        finalizer_name: str = DEFAULT_FINALIZER_NAME,
        job_name_max_length: int = MAX_TRAINING_JOB_NAME_LENGTH,
    ):
        self.store = store
        self.client_loader = client_loader
        self.poll_interval = poll_interval
        self.job_name_max_length = job_name_max_length
        self.status_sync = StatusSynchronizer(store)
        self.error_policy = ErrorPolicy(self.status_sync, poll_interval)
        self.finalizer = FinalizerCoordinator(store, self.status_sync, self.error_policy, finalizer_name, poll_interval)

    def reconcile(self, namespace: str, name: str) -> Result:
        try:
            job = self.store.get(namespace, name)
            return self.reconcile_job(job)
        except ObjectNotFoundError:
            logger.info(f"TrainingJob {namespace}/{name} not found, ignoring")
            return no_requeue()
        except StoreError as e:
            logger.error(f"Failed to read TrainingJob {namespace}/{name}: {e}")
            return requeue_if_error(e)
        except Exception as e:
            logger.exception(f"Unexpected error reconciling TrainingJob {namespace}/{name}: {e}")
            return requeue_if_error(e)

    def reconcile_job(self, job: TrainingJob) -> Result:
        logger.info(f"Reconciling TrainingJob {job.key} generation={job.metadata.generation}")

        if not job.status.training_job_status:
            return self._initialize_status(job)

        if not job.spec.training_job_name:
            return self._assign_job_name(job)

        job_name = job.spec.training_job_name
        try:
            client = self.client_loader.load(job.spec.region, job.spec.sage_maker_endpoint)
        except ConfigurationError as e:
            logger.error(f"Error loading AWS config for TrainingJob {job.key}: {e}")
            return no_requeue()

        log_url = cloudwatch_log_url(job.spec.region, job_name)
        described = client.describe(job_name)

        if job.is_being_deleted:
            if described.ok:
                return self.finalizer.handle_deletion(job, client, described.value, log_url)
            if described.error.is_not_found:
                logger.info(f"Training job {job_name} does not exist in SageMaker, removing finalizer")
                return self.finalizer.remove_finalizer(job)
            return self.error_policy.handle(job, described.error, log_url)

        if not described.ok:
            if described.error.is_not_found:
                return self._create_remote_job(job, client, log_url)
            return self.error_policy.handle(job, described.error, log_url)

        return self._sync_with_description(job, described.value, log_url)

    def _initialize_status(self, job: TrainingJob) -> Result:
        status = TrainingJobStatus(training_job_status=INITIALIZING_JOB_STATUS, last_check_time=now())
        try:
            self.status_sync.update_status(job, status)
        except StoreError as e:
            return requeue_if_error(e)
        return requeue_immediately()

    def _assign_job_name(self, job: TrainingJob) -> Result:
        updated = job.model_copy(deep=True)
        updated.spec.training_job_name = resolve_job_name(job.spec, job.metadata, self.job_name_max_length)
        logger.info(f"Assigning SageMaker training job name {updated.spec.training_job_name} to TrainingJob {job.key}")
        try:
            self.store.update(updated)
        except StoreError as e:
            logger.info(f"Failed to add generated name to TrainingJob {job.key}: {e}")
            return requeue_if_error(e)
        # The spec write is itself a new generation; its event drives the next pass
        return no_requeue()

    def _create_remote_job(self, job: TrainingJob, client: SageMakerJobClient, log_url: str) -> Result:
        job_name = job.spec.training_job_name
        if is_terminal_status(job.status.training_job_status):
            logger.info(
                f"Training job {job_name} not found in SageMaker but TrainingJob {job.key} is already "
                f"{job.status.training_job_status}, not creating it again"
            )
            return no_requeue()

        logger.info(f"Training job {job_name} does not yet exist in SageMaker, creating it")
        created = client.create(job.spec)
        if created.ok:
            return requeue_immediately()
        return self.error_policy.handle(job, created.error, log_url)

    def _sync_with_description(self, job: TrainingJob, description: RemoteJobDescription, log_url: str) -> Result:
        job_name = job.spec.training_job_name

        comparison = compare_spec_to_description(job.spec, description)
        if not comparison.equal:
            return self._mark_spec_drift(job, comparison.differences)

        if not job.has_finalizer(self.finalizer.finalizer_name):
            prev_generation = job.metadata.generation
            try:
                updated = self.finalizer.add_finalizer(job)
            except StoreError as e:
                return requeue_if_error(e)
            return requeue_immediately_unless_generation_changed(prev_generation, updated.metadata.generation)

        remote_status = description.training_job_status
        if (
            job.status.training_job_status != remote_status
            or job.status.secondary_status != description.secondary_status
        ):
            status = status_from_description(job_name, description, log_url, description.failure_reason or "")
            if is_status_regression(job.status.training_job_status, remote_status):
                logger.info(
                    f"TrainingJob {job.key} is {job.status.training_job_status}, "
                    f"ignoring remote status {remote_status}"
                )
                return no_requeue()
            return self._write_and_poll(job, status)

        if remote_status in (SageMakerJobStatus.IN_PROGRESS.value, SageMakerJobStatus.STOPPING.value):
            return self._write_and_poll(job, status_from_description(job_name, description, log_url))

        if remote_status in (SageMakerJobStatus.STOPPED.value, SageMakerJobStatus.FAILED.value):
            return no_requeue()

        if remote_status == SageMakerJobStatus.COMPLETED.value:
            return self._record_model_path(job, description, log_url)

        logger.error(f"Training job {job_name} for TrainingJob {job.key} is in unknown status {remote_status!r}")
        return no_requeue()

    def _mark_spec_drift(self, job: TrainingJob, differences) -> Result:
        failed = SageMakerJobStatus.FAILED.value
        additional = spec_differs_message(failed, differences)
        if job.status.training_job_status == failed and job.status.additional == additional:
            return no_requeue()

        logger.info(f"SageMaker job and TrainingJob {job.key} spec differ, marking it {failed}")
        status = TrainingJobStatus(
            sage_maker_training_job_name=job.spec.training_job_name,
            training_job_status=failed,
            additional=additional,
            last_check_time=now(),
        )
        try:
            self.status_sync.update_status(job, status)
        except StoreError as e:
            return requeue_if_error(e)
        return no_requeue()

    def _write_and_poll(self, job: TrainingJob, status: TrainingJobStatus) -> Result:
        try:
            self.status_sync.update_status(job, status)
        except StoreError as e:
            logger.info(f"Error syncing TrainingJob {job.key} with SageMaker state: {e}")
            return requeue_after(self.poll_interval, e)
        return requeue_after(self.poll_interval)

    def _record_model_path(self, job: TrainingJob, description: RemoteJobDescription, log_url: str) -> Result:
        output_path = self._output_path(job, description)
        remote_name = job.status.sage_maker_training_job_name or job.spec.training_job_name
        path = model_path(output_path, remote_name)
        if job.status.model_path == path:
            return no_requeue()

        logger.info(f"Training job {remote_name} for TrainingJob {job.key} completed, model at {path}")
        status = status_from_description(job.spec.training_job_name, description, log_url)
        status.model_path = path
        try:
            self.status_sync.update_status(job, status)
        except StoreError as e:
            return requeue_if_error(e)
        return no_requeue()

    @staticmethod
    def _output_path(job: TrainingJob, description: RemoteJobDescription) -> str:
        if job.spec.output_data_config is not None:
            return job.spec.output_data_config.s3_output_path
        return description.output_path or ""
