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

import re

from smoperator.config import MAX_TRAINING_JOB_NAME_LENGTH
from smoperator.schema.trainingjob import ObjectMeta, TrainingJobSpec

_INVALID_NAME_CHARS = re.compile(r"[^A-Za-z0-9-]")


def generate_job_name(uid: str, name: str, max_length: int = MAX_TRAINING_JOB_NAME_LENGTH) -> str:
    """
    Derive a SageMaker training job name from an object's name and UID.

    The result is ``<name>-<uid without dashes>``. The name part is sanitized
    and truncated so that the whole result fits ``max_length``; the UID
    suffix keeps the result unique and is only cut when it alone is too long.
    """
    suffix = uid.replace("-", "")
    display_name = _INVALID_NAME_CHARS.sub("-", name).strip("-")

    if len(suffix) >= max_length:
        return suffix[:max_length]
    if not display_name:
        return suffix

    room = max_length - len(suffix) - 1
    if room <= 0:
        return suffix
    display_name = display_name[:room].rstrip("-")
    if not display_name:
        return suffix
    return f"{display_name}-{suffix}"


def resolve_job_name(
    spec: TrainingJobSpec, metadata: ObjectMeta, max_length: int = MAX_TRAINING_JOB_NAME_LENGTH
) -> str:
    if spec.training_job_name:
        return spec.training_job_name.strip()
    return generate_job_name(metadata.uid, metadata.name, max_length)
