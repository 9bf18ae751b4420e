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

from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy import create_engine

# Finalizer recognized only by this operator
DEFAULT_FINALIZER_NAME = "sagemaker-operator-finalizer"

# Added to every SageMaker request to identify jobs created from Kubernetes
SAGEMAKER_USER_AGENT_EXTRA = "sagemaker-on-kubernetes"

# SageMaker training job names are limited to 63 characters
MAX_TRAINING_JOB_NAME_LENGTH = 63


class Config(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Datastore
    datastore: str = "sql"
    database_url: str = "sqlite:///smoperator.db"
    kube_namespace: Optional[str] = None

    # Reconciliation cadence, in seconds. The poll interval is a fixed retry
    # cadence; SageMaker state transitions take minutes.
    poll_interval: float = 5.0
    error_requeue_delay: float = 1.0
    resync_interval: float = 30.0
    # A running pass holds its object for at most reconcile_lease_seconds; a queued
    # pass overdue by more than pending_timeout is treated as lost.
    reconcile_lease_seconds: float = 300.0
    pending_timeout: float = 60.0

    # SageMaker
    default_sagemaker_endpoint: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("AWS_DEFAULT_SAGEMAKER_ENDPOINT", "default_sagemaker_endpoint"),
    )
    user_agent_extra: str = SAGEMAKER_USER_AGENT_EXTRA
    finalizer_name: str = DEFAULT_FINALIZER_NAME
    job_name_max_length: int = MAX_TRAINING_JOB_NAME_LENGTH

    # Celery
    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: Optional[str] = None

    log_level: str = "INFO"


settings = Config()

engine = create_engine(settings.database_url, pool_pre_ping=True)
