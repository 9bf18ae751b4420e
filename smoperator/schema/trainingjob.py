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

"""
TrainingJob resource model.

The same models read and write Kubernetes manifests (camelCase keys) and the
SQL datastore's JSON columns. Unknown keys are kept so that a read-modify-write
through the datastore never drops fields this operator does not know about.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

API_GROUP = "sagemaker.aws.amazon.com"
API_VERSION = "v1"
KIND = "TrainingJob"
PLURAL = "trainingjobs"

# Written on first sight of an object, before SageMaker has been contacted
INITIALIZING_JOB_STATUS = "SynchronizingK8sJobWithSageMaker"


class SageMakerJobStatus(str, Enum):
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    FAILED = "Failed"
    STOPPING = "Stopping"
    STOPPED = "Stopped"


TERMINAL_STATUSES = frozenset(
    {SageMakerJobStatus.COMPLETED.value, SageMakerJobStatus.FAILED.value, SageMakerJobStatus.STOPPED.value}
)


def is_terminal_status(status: Optional[str]) -> bool:
    return status in TERMINAL_STATUSES


def to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class KeyValuePair(CamelModel):
    name: str
    value: str


class Tag(CamelModel):
    key: str
    value: str


class MetricDefinition(CamelModel):
    name: str
    regex: str


class AlgorithmSpecification(CamelModel):
    training_input_mode: str
    training_image: Optional[str] = None
    algorithm_name: Optional[str] = None
    metric_definitions: Optional[List[MetricDefinition]] = None


class S3DataSource(CamelModel):
    s3_data_type: str
    s3_uri: str
    s3_data_distribution_type: Optional[str] = None
    attribute_names: Optional[List[str]] = None


class DataSource(CamelModel):
    s3_data_source: Optional[S3DataSource] = None


class Channel(CamelModel):
    channel_name: str
    data_source: DataSource
    content_type: Optional[str] = None
    compression_type: Optional[str] = None
    record_wrapper_type: Optional[str] = None
    input_mode: Optional[str] = None


class OutputDataConfig(CamelModel):
    s3_output_path: str
    kms_key_id: Optional[str] = None


class ResourceConfig(CamelModel):
    instance_count: int
    instance_type: str
    volume_size_in_gb: int = Field(alias="volumeSizeInGB")
    volume_kms_key_id: Optional[str] = None


class StoppingCondition(CamelModel):
    max_runtime_in_seconds: Optional[int] = None
    max_wait_time_in_seconds: Optional[int] = None


class VpcConfig(CamelModel):
    security_group_ids: List[str]
    subnets: List[str]


class CheckpointConfig(CamelModel):
    s3_uri: str
    local_path: Optional[str] = None


class TrainingJobSpec(CamelModel):
    """Desired state of a SageMaker training job."""

    region: str
    sage_maker_endpoint: Optional[str] = None
    training_job_name: Optional[str] = None

    algorithm_specification: Optional[AlgorithmSpecification] = None
    hyper_parameters: Optional[List[KeyValuePair]] = None
    input_data_config: Optional[List[Channel]] = None
    output_data_config: Optional[OutputDataConfig] = None
    resource_config: Optional[ResourceConfig] = None
    role_arn: Optional[str] = None
    stopping_condition: Optional[StoppingCondition] = None
    vpc_config: Optional[VpcConfig] = None
    checkpoint_config: Optional[CheckpointConfig] = None
    enable_network_isolation: Optional[bool] = None
    enable_inter_container_traffic_encryption: Optional[bool] = None
    enable_managed_spot_training: Optional[bool] = None
    tags: Optional[List[Tag]] = None


class TrainingJobStatus(CamelModel):
    """Observed state, always replaced as a whole."""

    training_job_status: str = ""
    secondary_status: str = ""
    sage_maker_training_job_name: str = ""
    last_check_time: Optional[datetime] = None
    additional: str = ""
    cloud_watch_log_url: str = ""
    model_path: str = ""


class ObjectMeta(CamelModel):
    name: str
    namespace: str = "default"
    uid: str = ""
    generation: int = 1
    resource_version: Optional[str] = None
    finalizers: List[str] = Field(default_factory=list)
    deletion_timestamp: Optional[datetime] = None


class TrainingJob(CamelModel):
    api_version: str = f"{API_GROUP}/{API_VERSION}"
    kind: str = KIND
    metadata: ObjectMeta
    spec: TrainingJobSpec
    status: TrainingJobStatus = Field(default_factory=TrainingJobStatus)

    @property
    def key(self) -> str:
        return f"{self.metadata.namespace}/{self.metadata.name}"

    @property
    def is_being_deleted(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.metadata.finalizers

    def to_manifest(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")

    @classmethod
    def from_manifest(cls, data: Dict[str, Any]) -> "TrainingJob":
        data = dict(data)
        if data.get("status") is None:
            data.pop("status", None)
        return cls.model_validate(data)
