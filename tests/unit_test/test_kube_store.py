"""Tests for the Kubernetes-backed TrainingJob datastore with a mocked API client"""

from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import MaxRetryError

from smoperator.controllers.result import Result
from smoperator.controllers.trainingjob import TrainingJobReconciler
from smoperator.exceptions import (
    ConfigurationError,
    ConflictError,
    InvalidObjectError,
    ObjectNotFoundError,
    StoreUnavailableError,
)
from smoperator.store.kube import KubernetesTrainingJobStore, load_kube_config
from tests.unit_test.fakes import make_job

GROUP_KWARGS = {"group": "sagemaker.aws.amazon.com", "version": "v1", "plural": "trainingjobs"}


def manifest(name="xgboost-mnist", namespace="default", resource_version="42"):
    job = make_job(name, namespace, uid="uid-1", resourceVersion=resource_version)
    return job.to_manifest()


class TestKubernetesTrainingJobStore:
    """Test suite for KubernetesTrainingJobStore."""

    def setup_method(self):
        self.api = MagicMock()
        self.store = KubernetesTrainingJobStore(api=self.api)

    def test_get(self):
        self.api.get_namespaced_custom_object.return_value = manifest()
        job = self.store.get("default", "xgboost-mnist")

        assert job.metadata.resource_version == "42"
        assert job.spec.region == "us-west-2"
        self.api.get_namespaced_custom_object.assert_called_once_with(
            namespace="default", name="xgboost-mnist", **GROUP_KWARGS
        )

    def test_get_not_found(self):
        self.api.get_namespaced_custom_object.side_effect = ApiException(status=404, reason="Not Found")
        with pytest.raises(ObjectNotFoundError):
            self.store.get("default", "xgboost-mnist")

    def test_update_conflict(self):
        self.api.replace_namespaced_custom_object.side_effect = ApiException(status=409, reason="Conflict")
        with pytest.raises(ConflictError) as exc_info:
            self.store.update(make_job(resourceVersion="41"))
        assert exc_info.value.expected_version == "41"

    def test_update_status_uses_status_subresource(self):
        self.api.replace_namespaced_custom_object_status.return_value = manifest(resource_version="43")
        job = make_job(resourceVersion="42")
        job.status.training_job_status = "InProgress"

        stored = self.store.update_status(job)

        assert stored.metadata.resource_version == "43"
        body = self.api.replace_namespaced_custom_object_status.call_args.kwargs["body"]
        assert body["status"]["trainingJobStatus"] == "InProgress"
        assert body["metadata"]["resourceVersion"] == "42"

    def test_server_error_unavailable(self):
        self.api.replace_namespaced_custom_object.side_effect = ApiException(status=500, reason="Internal")
        with pytest.raises(StoreUnavailableError):
            self.store.update(make_job(resourceVersion="1"))

    def test_connection_error_unavailable(self):
        self.api.get_namespaced_custom_object.side_effect = MaxRetryError(None, "/apis", "refused")
        with pytest.raises(StoreUnavailableError):
            self.store.get("default", "xgboost-mnist")

    def test_create_strips_server_fields(self):
        self.api.create_namespaced_custom_object.return_value = manifest()
        self.store.create(make_job(uid="ignored", resourceVersion="9"))

        body = self.api.create_namespaced_custom_object.call_args.kwargs["body"]
        assert "status" not in body
        assert "uid" not in body["metadata"]
        assert "resourceVersion" not in body["metadata"]

    def test_request_deletion_gone(self):
        self.api.get_namespaced_custom_object.side_effect = ApiException(status=404, reason="Not Found")
        assert self.store.request_deletion("default", "xgboost-mnist") is None
        self.api.delete_namespaced_custom_object.assert_called_once()

    def test_update_forwards_name(self):
        self.api.replace_namespaced_custom_object.return_value = manifest(resource_version="43")
        stored = self.store.update(make_job(resourceVersion="42"))

        assert stored.metadata.resource_version == "43"
        kwargs = self.api.replace_namespaced_custom_object.call_args.kwargs
        assert kwargs["name"] == "xgboost-mnist"
        assert kwargs["namespace"] == "default"
        assert kwargs["body"]["metadata"]["resourceVersion"] == "42"

    def test_malformed_object_invalid(self):
        bad = manifest()
        bad["spec"]["resourceConfig"] = "not-an-object"
        self.api.get_namespaced_custom_object.return_value = bad
        with pytest.raises(InvalidObjectError):
            self.store.get("default", "xgboost-mnist")

    def test_request_deletion_pending_finalizers(self):
        self.api.get_namespaced_custom_object.return_value = manifest()
        job = self.store.request_deletion("default", "xgboost-mnist")

        assert job.metadata.name == "xgboost-mnist"
        self.api.delete_namespaced_custom_object.assert_called_once_with(
            namespace="default", name="xgboost-mnist", **GROUP_KWARGS
        )

    def test_list_keys_cluster_wide(self):
        self.api.list_cluster_custom_object.return_value = {
            "items": [manifest("b", "ns-1"), manifest("a", "ns-2"), manifest("a", "ns-1")]
        }
        assert self.store.list_keys() == [("ns-1", "a"), ("ns-1", "b"), ("ns-2", "a")]

    def test_list_keys_namespaced(self):
        store = KubernetesTrainingJobStore(api=self.api, namespace="ml")
        self.api.list_namespaced_custom_object.return_value = {"items": [manifest("a", "ml")]}
        assert store.list_keys() == [("ml", "a")]
        self.api.list_namespaced_custom_object.assert_called_once_with(namespace="ml", **GROUP_KWARGS)


class TestReconcileWithKubernetesStore:
    """Test suite for reconciliation passes reading through the Kubernetes datastore."""

    def setup_method(self):
        self.api = MagicMock()

    def _reconciler(self, client_loader):
        return TrainingJobReconciler(store=KubernetesTrainingJobStore(api=self.api), client_loader=client_loader)

    def test_missing_object_ignored(self, client_loader):
        self.api.get_namespaced_custom_object.side_effect = ApiException(status=404, reason="Not Found")
        assert self._reconciler(client_loader).reconcile("default", "xgboost-mnist") == Result()

    def test_status_initialized_through_subresource(self, client_loader):
        self.api.get_namespaced_custom_object.return_value = manifest()
        self.api.replace_namespaced_custom_object_status.return_value = manifest(resource_version="43")

        result = self._reconciler(client_loader).reconcile("default", "xgboost-mnist")

        assert result.requeue
        body = self.api.replace_namespaced_custom_object_status.call_args.kwargs["body"]
        assert body["status"]["trainingJobStatus"] == "SynchronizingK8sJobWithSageMaker"

    def test_malformed_object_requeued(self, client_loader):
        bad = manifest()
        bad["spec"]["resourceConfig"] = "not-an-object"
        self.api.get_namespaced_custom_object.return_value = bad

        result = self._reconciler(client_loader).reconcile("default", "xgboost-mnist")

        assert isinstance(result.error, InvalidObjectError)
        assert result.needs_requeue


class TestLoadKubeConfig:
    """Test suite for cluster configuration loading."""

    @patch("smoperator.store.kube.config")
    def test_falls_back_to_kubeconfig(self, mock_config):
        mock_config.load_incluster_config.side_effect = ConfigException("not in cluster")
        load_kube_config()
        mock_config.load_kube_config.assert_called_once()

    @patch("smoperator.store.kube.config")
    def test_no_configuration(self, mock_config):
        mock_config.load_incluster_config.side_effect = ConfigException("not in cluster")
        mock_config.load_kube_config.side_effect = ConfigException("no kubeconfig")
        with pytest.raises(ConfigurationError):
            load_kube_config()
