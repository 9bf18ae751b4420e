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
from datetime import datetime, timezone
from typing import Optional

from smoperator.exceptions import StoreError
from smoperator.sagemaker.convert import RemoteJobDescription
from smoperator.schema.trainingjob import TrainingJob, TrainingJobStatus, is_terminal_status
from smoperator.store.base import TrainingJobStore

logger = logging.getLogger(__name__)

MODEL_ARTIFACT_SUFFIX = "/output/model.tar.gz"


def now() -> datetime:
    return datetime.now(timezone.utc)


def cloudwatch_log_url(region: str, job_name: str) -> str:
    return (
        f"https://{region}.console.aws.amazon.com/cloudwatch/home?region={region}"
        f"#logStream:group=/aws/sagemaker/TrainingJobs;prefix={job_name};streamFilter=typeLogStreamPrefix"
    )


def model_path(s3_output_path: str, remote_job_name: str) -> str:
    # Plain concatenation; s3OutputPath is expected to end with "/"
    return f"{s3_output_path}{remote_job_name}{MODEL_ARTIFACT_SUFFIX}"


def status_from_description(
    job_name: str, description: RemoteJobDescription, log_url: str, additional: str = ""
) -> TrainingJobStatus:
    return TrainingJobStatus(
        sage_maker_training_job_name=job_name,
        training_job_status=description.training_job_status,
        secondary_status=description.secondary_status,
        last_check_time=now(),
        cloud_watch_log_url=log_url,
        additional=additional,
    )


def is_status_regression(current: Optional[str], new: Optional[str]) -> bool:
    """A terminal status may only be replaced by another terminal status"""
    return is_terminal_status(current) and not is_terminal_status(new)


class StatusSynchronizer:
    """Replaces the observed status of a TrainingJob as a whole"""

    def __init__(self, store: TrainingJobStore):
        self.store = store

    def update_status(self, job: TrainingJob, status: TrainingJobStatus) -> TrainingJob:
        """
        Persist ``status`` on a copy of ``job`` through the status write.

        Raises ConflictError or StoreUnavailableError. Callers must requeue on
        failure so that a terminal status is never lost.
        """
        updated = job.model_copy(deep=True)
        updated.status = status.model_copy(deep=True)
        logger.info(
            f"Updating status of TrainingJob {job.key}: {status.training_job_status}"
            f" secondary={status.secondary_status!r} job={status.sage_maker_training_job_name!r}"
        )
        try:
            return self.store.update_status(updated)
        except StoreError as e:
            logger.error(f"Error updating status of TrainingJob {job.key}: {e}")
            raise
