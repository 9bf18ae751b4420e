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
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError, InvalidRegionError

from smoperator.exceptions import ConfigurationError
from smoperator.sagemaker.convert import RemoteJobDescription, build_create_request
from smoperator.sagemaker.errors import RemoteError, classify_error
from smoperator.schema.trainingjob import TrainingJobSpec

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RemoteResult(Generic[T]):
    """Outcome of one SageMaker call: either a value or a classified error"""

    value: Optional[T] = None
    error: Optional[RemoteError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T = None) -> "RemoteResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: RemoteError) -> "RemoteResult[T]":
        return cls(error=error)


class SageMakerJobClient:
    """
    Call boundary to the SageMaker training job API.

    Exceptions raised by boto3 never leave this class; every call returns a
    RemoteResult whose error has already been classified.
    """

    def __init__(self, sagemaker_client: Any):
        self._client = sagemaker_client

    @property
    def region(self) -> str:
        return self._client.meta.region_name

    def create(self, spec: TrainingJobSpec) -> RemoteResult[None]:
        request = build_create_request(spec)
        logger.info(f"Calling SageMaker CreateTrainingJob for {spec.training_job_name}")
        logger.debug(f"CreateTrainingJob request parameters: {request}")
        try:
            self._client.create_training_job(**request)
        except (ClientError, BotoCoreError) as e:
            return RemoteResult.failure(classify_error(e))
        return RemoteResult.success()

    def describe(self, name: str) -> RemoteResult[RemoteJobDescription]:
        logger.info(f"Calling SageMaker DescribeTrainingJob for {name}")
        try:
            response = self._client.describe_training_job(TrainingJobName=name)
        except (ClientError, BotoCoreError) as e:
            return RemoteResult.failure(classify_error(e))
        return RemoteResult.success(RemoteJobDescription.from_response(response))

    def stop(self, name: str) -> RemoteResult[None]:
        logger.info(f"Calling SageMaker StopTrainingJob for {name}")
        try:
            self._client.stop_training_job(TrainingJobName=name)
        except (ClientError, BotoCoreError) as e:
            return RemoteResult.failure(classify_error(e))
        return RemoteResult.success()


class AwsClientLoader:
    """
    Builds SageMaker clients scoped to a region and optional endpoint override.

    Credentials resolve through the default boto3 chain at call time.
    """

    def __init__(self, default_endpoint: Optional[str] = None, user_agent_extra: str = "", session_factory=None):
        self.default_endpoint = default_endpoint
        self.user_agent_extra = user_agent_extra
        self._session_factory = session_factory or boto3.session.Session

    def load(self, region: Optional[str], endpoint_override: Optional[str] = None) -> SageMakerJobClient:
        if not region:
            raise ConfigurationError("Region is required to reach SageMaker")

        endpoint = endpoint_override or self.default_endpoint or None
        if endpoint and not endpoint.startswith(("https://", "http://")):
            raise ConfigurationError(f"Invalid SageMaker endpoint override: {endpoint}")

        boto_config = BotoConfig(region_name=region, user_agent_extra=self.user_agent_extra or None)
        try:
            session = self._session_factory(region_name=region)
            sagemaker_client = session.client("sagemaker", endpoint_url=endpoint, config=boto_config)
        except (InvalidRegionError, ValueError, BotoCoreError) as e:
            raise ConfigurationError(f"Unable to load AWS config for region {region}: {e}") from e

        logger.info(f"Loaded AWS config for region {region}" + (f" with endpoint {endpoint}" if endpoint else ""))
        return SageMakerJobClient(sagemaker_client)
