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
from typing import List, Optional, Tuple

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from pydantic import ValidationError
from urllib3.exceptions import HTTPError

from smoperator.exceptions import (
    ConfigurationError,
    ConflictError,
    InvalidObjectError,
    ObjectNotFoundError,
    StoreUnavailableError,
)
from smoperator.schema.trainingjob import API_GROUP, API_VERSION, PLURAL, TrainingJob
from smoperator.store.base import TrainingJobStore

logger = logging.getLogger(__name__)


def load_kube_config():
    """Load in-cluster configuration, falling back to the local kubeconfig"""
    try:
        config.load_incluster_config()
    except ConfigException:
        try:
            config.load_kube_config()
        except ConfigException as e:
            raise ConfigurationError(f"Unable to load Kubernetes configuration: {e}") from e


class KubernetesTrainingJobStore(TrainingJobStore):
    """
    TrainingJob datastore backed by the Kubernetes API server.

    Objects are ``trainingjobs.sagemaker.aws.amazon.com/v1`` custom resources.
    Status is written through the status subresource. The API server enforces
    resourceVersion on replace and removes objects whose finalizers are gone.
    """

    def __init__(self, api: Optional[client.CustomObjectsApi] = None, namespace: Optional[str] = None):
        if api is None:
            load_kube_config()
            api = client.CustomObjectsApi()
        self._api = api
        self._namespace = namespace

    def _call(self, func, namespace: str, obj_name: str, **kwargs) -> dict:
        try:
            return func(group=API_GROUP, version=API_VERSION, namespace=namespace, plural=PLURAL, **kwargs)
        except ApiException as e:
            if e.status == 404:
                raise ObjectNotFoundError(namespace, obj_name) from e
            if e.status == 409:
                expected = kwargs.get("body", {}).get("metadata", {}).get("resourceVersion")
                raise ConflictError(namespace, obj_name, expected) from e
            logger.error(f"Kubernetes API error for TrainingJob {namespace}/{obj_name}: {e.status} {e.reason}")
            raise StoreUnavailableError(f"Kubernetes API error {e.status}: {e.reason}") from e
        except HTTPError as e:
            logger.error(f"Kubernetes API unreachable for TrainingJob {namespace}/{obj_name}: {e}")
            raise StoreUnavailableError(str(e)) from e

    @staticmethod
    def _to_job(obj: dict, namespace: str, obj_name: str) -> TrainingJob:
        try:
            return TrainingJob.from_manifest(obj)
        except ValidationError as e:
            logger.error(f"TrainingJob {namespace}/{obj_name} returned by the API server is malformed: {e}")
            raise InvalidObjectError(namespace, obj_name, str(e)) from e

    def get(self, namespace: str, name: str) -> TrainingJob:
        obj = self._call(self._api.get_namespaced_custom_object, namespace, name, name=name)
        return self._to_job(obj, namespace, name)

    def update(self, job: TrainingJob) -> TrainingJob:
        namespace, name = job.metadata.namespace, job.metadata.name
        obj = self._call(
            self._api.replace_namespaced_custom_object, namespace, name, name=name, body=job.to_manifest()
        )
        return self._to_job(obj, namespace, name)

    def update_status(self, job: TrainingJob) -> TrainingJob:
        namespace, name = job.metadata.namespace, job.metadata.name
        obj = self._call(
            self._api.replace_namespaced_custom_object_status, namespace, name, name=name, body=job.to_manifest()
        )
        return self._to_job(obj, namespace, name)

    def create(self, job: TrainingJob) -> TrainingJob:
        namespace, name = job.metadata.namespace, job.metadata.name
        body = job.to_manifest()
        body.pop("status", None)
        for key in ("resourceVersion", "uid", "generation"):
            body["metadata"].pop(key, None)
        obj = self._call(self._api.create_namespaced_custom_object, namespace, name, body=body)
        logger.info(f"Created TrainingJob {namespace}/{name}")
        return self._to_job(obj, namespace, name)

    def request_deletion(self, namespace: str, name: str) -> Optional[TrainingJob]:
        self._call(self._api.delete_namespaced_custom_object, namespace, name, name=name)
        logger.info(f"Deletion requested for TrainingJob {namespace}/{name}")
        try:
            return self.get(namespace, name)
        except ObjectNotFoundError:
            return None

    def list_keys(self) -> List[Tuple[str, str]]:
        try:
            if self._namespace:
                result = self._api.list_namespaced_custom_object(
                    group=API_GROUP, version=API_VERSION, namespace=self._namespace, plural=PLURAL
                )
            else:
                result = self._api.list_cluster_custom_object(group=API_GROUP, version=API_VERSION, plural=PLURAL)
        except (ApiException, HTTPError) as e:
            logger.error(f"Failed to list TrainingJobs: {e}")
            raise StoreUnavailableError(str(e)) from e

        keys = []
        for item in result.get("items", []):
            metadata = item.get("metadata", {})
            keys.append((metadata.get("namespace", "default"), metadata["name"]))
        return sorted(keys)
