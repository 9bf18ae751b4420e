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

from smoperator.controllers.result import Result, requeue_after, requeue_if_error
from smoperator.controllers.status import StatusSynchronizer, now
from smoperator.exceptions import StoreError
from smoperator.sagemaker.errors import ErrorKind, RemoteError
from smoperator.schema.trainingjob import SageMakerJobStatus, TrainingJob, TrainingJobStatus

logger = logging.getLogger(__name__)


class ErrorPolicy:
    """
    Turns a classified SageMaker failure into a reconciliation outcome.

    Transient failures (server faults, throttling) are retried after the poll
    interval without touching the status. Anything else marks the job Failed.
    Not-found errors are routed by callers before reaching this policy.
    """

    def __init__(self, status_sync: StatusSynchronizer, poll_interval: float):
        self.status_sync = status_sync
        self.poll_interval = poll_interval

    def handle(self, job: TrainingJob, error: RemoteError, log_url: str = "") -> Result:
        if error.kind == ErrorKind.SERVER_FAULT:
            logger.error(f"SageMaker server error for TrainingJob {job.key}, will retry: {error}")
            return requeue_after(self.poll_interval, error)
        if error.kind == ErrorKind.RATE_LIMITED:
            logger.info(f"SageMaker rate limit exceeded for TrainingJob {job.key}, will retry: {error}")
            return requeue_after(self.poll_interval, error)

        logger.error(f"Unrecoverable SageMaker error for TrainingJob {job.key}: {error}")
        status = TrainingJobStatus(
            sage_maker_training_job_name=job.spec.training_job_name or "",
            training_job_status=SageMakerJobStatus.FAILED.value,
            additional=str(error),
            last_check_time=now(),
            cloud_watch_log_url=log_url,
        )
        try:
            self.status_sync.update_status(job, status)
        except StoreError as e:
            return requeue_if_error(e)
        return requeue_if_error(None)
