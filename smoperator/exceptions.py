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
Operator exceptions.

Remote SageMaker failures are not raised through the reconciler; they are
classified into ``RemoteError`` values at the client boundary (see
``smoperator.sagemaker.errors``). The exceptions here cover the datastore
and configuration boundaries.
"""


class OperatorError(Exception):
    """Base exception for the operator."""

    pass


class ConfigurationError(OperatorError):
    """
    Remote access configuration could not be resolved.

    Raised for a missing or invalid region or endpoint override. Retrying an
    unchanged configuration cannot succeed, so the reconciler does not requeue.
    """

    pass


class StoreError(OperatorError):
    """Base exception for datastore failures."""

    pass


class ObjectNotFoundError(StoreError):
    """Raised when a TrainingJob object does not exist in the datastore."""

    def __init__(self, namespace: str, name: str):
        self.namespace = namespace
        self.name = name
        super().__init__(f"TrainingJob not found: {namespace}/{name}")


class ConflictError(StoreError):
    """
    Raised when a write lost an optimistic-concurrency race.

    The stored resource version no longer matches the one the caller read.
    Always recovered by requeueing the object.
    """

    def __init__(self, namespace: str, name: str, expected_version: str = None):
        self.namespace = namespace
        self.name = name
        self.expected_version = expected_version
        super().__init__(
            f"Conflict writing TrainingJob {namespace}/{name}: "
            f"resource version {expected_version} is stale"
        )


class StoreUnavailableError(StoreError):
    """Raised when the datastore cannot be reached or rejected the request."""

    pass


class InvalidObjectError(StoreError):
    """Raised when a stored TrainingJob cannot be parsed into the resource model."""

    def __init__(self, namespace: str, name: str, reason: str):
        self.namespace = namespace
        self.name = name
        super().__init__(f"TrainingJob {namespace}/{name} is malformed: {reason}")
