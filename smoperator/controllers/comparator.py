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
Drift detection between a TrainingJob spec and SageMaker's description.

Only fields the user declared are compared. Nested objects use subset
semantics: keys SageMaker fills in with defaults are ignored unless the user
declared them. Lists must match in length and element by element.
"""

import json
from dataclasses import dataclass, field
from typing import Any, List, Tuple

from smoperator.sagemaker.convert import RemoteJobDescription, build_create_request
from smoperator.schema.trainingjob import TrainingJobSpec

COMPARED_FIELDS = (
    "AlgorithmSpecification",
    "EnableInterContainerTrafficEncryption",
    "EnableManagedSpotTraining",
    "EnableNetworkIsolation",
    "HyperParameters",
    "InputDataConfig",
    "OutputDataConfig",
    "ResourceConfig",
    "RoleArn",
    "StoppingCondition",
    "VpcConfig",
    "CheckpointConfig",
)


@dataclass(frozen=True)
class FieldDifference:
    field: str
    declared: Any
    observed: Any


@dataclass(frozen=True)
class Comparison:
    differences: Tuple[FieldDifference, ...] = field(default_factory=tuple)

    @property
    def equal(self) -> bool:
        return not self.differences


def _matches(declared: Any, observed: Any) -> bool:
    if isinstance(declared, dict):
        if not isinstance(observed, dict):
            return False
        return all(_matches(value, observed.get(key)) for key, value in declared.items())
    if isinstance(declared, list):
        if not isinstance(observed, list) or len(declared) != len(observed):
            return False
        return all(_matches(d, o) for d, o in zip(declared, observed))
    return declared == observed


def compare_spec_to_description(spec: TrainingJobSpec, description: RemoteJobDescription) -> Comparison:
    declared_request = build_create_request(spec)
    observed_response = description.raw

    differences: List[FieldDifference] = []
    for name in COMPARED_FIELDS:
        if name not in declared_request:
            continue
        declared = declared_request[name]
        observed = observed_response.get(name)
        if not _matches(declared, observed):
            differences.append(FieldDifference(field=name, declared=declared, observed=observed))
    return Comparison(differences=tuple(differences))


def format_differences(differences) -> str:
    payload = [{"field": d.field, "declared": d.declared, "observed": d.observed} for d in differences]
    return json.dumps(payload, sort_keys=True, default=str)


def spec_differs_message(status: str, differences) -> str:
    return (
        f"Status: {status}. The resource no longer matches the state in SageMaker. "
        f"Delete the resource and create a new one to apply the changes. "
        f"Differences: {format_differences(differences)}"
    )
