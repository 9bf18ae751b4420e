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

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from pydantic import BaseModel

from smoperator.schema.trainingjob import TrainingJobSpec

# Spec fields sent to CreateTrainingJob, in request order
CREATE_REQUEST_FIELDS = (
    "algorithm_specification",
    "enable_inter_container_traffic_encryption",
    "enable_managed_spot_training",
    "enable_network_isolation",
    "hyper_parameters",
    "input_data_config",
    "output_data_config",
    "resource_config",
    "role_arn",
    "stopping_condition",
    "vpc_config",
    "checkpoint_config",
    "tags",
)

_PASCAL_OVERRIDES = {
    "volume_size_in_gb": "VolumeSizeInGB",
}


def to_pascal(name: str) -> str:
    if name in _PASCAL_OVERRIDES:
        return _PASCAL_OVERRIDES[name]
    return "".join(part[:1].upper() + part[1:] for part in name.split("_"))


def _to_request_value(value: Any) -> Any:
    # Only declared model fields are sent; unknown keys kept from manifests are not
    if isinstance(value, BaseModel):
        result = {}
        for field_name in type(value).model_fields:
            field_value = getattr(value, field_name)
            if field_value is None:
                continue
            result[to_pascal(field_name)] = _to_request_value(field_value)
        return result
    if isinstance(value, list):
        return [_to_request_value(item) for item in value]
    return value


def build_create_request(spec: TrainingJobSpec) -> Dict[str, Any]:
    """Build CreateTrainingJob keyword arguments from a TrainingJob spec"""
    request: Dict[str, Any] = {"TrainingJobName": spec.training_job_name}
    for field_name in CREATE_REQUEST_FIELDS:
        value = getattr(spec, field_name)
        if value is None:
            continue
        if field_name == "hyper_parameters":
            request["HyperParameters"] = {pair.name: pair.value for pair in value}
        else:
            request[to_pascal(field_name)] = _to_request_value(value)
    return request


@dataclass
class RemoteJobDescription:
    """SageMaker's view of a training job, parsed from DescribeTrainingJob"""

    training_job_name: str
    training_job_status: str
    secondary_status: str = ""
    failure_reason: Optional[str] = None
    output_path: Optional[str] = None
    model_artifacts: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_response(cls, response: Dict[str, Any]) -> "RemoteJobDescription":
        return cls(
            training_job_name=response.get("TrainingJobName", ""),
            training_job_status=response.get("TrainingJobStatus", ""),
            secondary_status=response.get("SecondaryStatus", ""),
            failure_reason=response.get("FailureReason"),
            output_path=(response.get("OutputDataConfig") or {}).get("S3OutputPath"),
            model_artifacts=(response.get("ModelArtifacts") or {}).get("S3ModelArtifacts"),
            raw=response,
        )
