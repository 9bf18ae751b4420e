"""
Unit tests for the TrainingJob reconciliation engine.

Test Coverage:
=============

1. Lifecycle: status initialization, name assignment, creation, finalizer
   attachment, status synchronization and model path recording
2. Deletion: stopping running jobs, waiting on stopping jobs, finalizer removal
3. Error handling: transient and unrecoverable SageMaker errors, datastore
   conflicts and outages, misconfiguration
4. Properties: idempotence, at-most-one creation, status monotonicity and
   spec drift detection

Note: These tests use an in-memory datastore and a fake SageMaker client.
"""

from unittest.mock import patch

import pytest

from smoperator.controllers.result import Result
from smoperator.exceptions import ConfigurationError, ConflictError, ObjectNotFoundError, StoreUnavailableError
from smoperator.schema.trainingjob import INITIALIZING_JOB_STATUS
from tests.unit_test.fakes import (
    FINALIZER,
    POLL_INTERVAL,
    base_spec,
    make_job,
    server_error,
    throttling_error,
    validation_error,
)

NS, NAME = "default", "xgboost-mnist"


def bring_up(store, reconciler, sagemaker, **spec_overrides):
    """Create a TrainingJob and drive it until SageMaker runs it and the status is synced"""
    store.create(make_job(NAME, NS, spec=base_spec(**spec_overrides)))
    reconciler.reconcile(NS, NAME)  # status initialized
    reconciler.reconcile(NS, NAME)  # name assigned
    reconciler.reconcile(NS, NAME)  # created in SageMaker
    reconciler.reconcile(NS, NAME)  # finalizer added
    reconciler.reconcile(NS, NAME)  # status synced
    job = store.get(NS, NAME)
    assert job.status.training_job_status == "InProgress"
    assert job.has_finalizer(FINALIZER)
    return job


class TestLifecycle:
    """Test suite for the creation path of the reconciler."""

    def test_missing_object_ignored(self, reconciler):
        assert reconciler.reconcile(NS, "does-not-exist") == Result()

    def test_status_initialized_first(self, store, reconciler, sagemaker):
        store.create(make_job(NAME, NS))
        result = reconciler.reconcile(NS, NAME)

        assert result.requeue
        job = store.get(NS, NAME)
        assert job.status.training_job_status == INITIALIZING_JOB_STATUS
        assert job.status.last_check_time is not None
        assert sagemaker.calls["describe"] == []

    def test_name_assigned_without_requeue(self, store, reconciler, sagemaker):
        created = store.create(make_job(NAME, NS))
        reconciler.reconcile(NS, NAME)
        result = reconciler.reconcile(NS, NAME)

        assert not result.needs_requeue
        job = store.get(NS, NAME)
        assert job.spec.training_job_name == f"{NAME}-{created.metadata.uid.replace('-', '')}"
        assert job.metadata.generation == 2
        assert sagemaker.calls["create"] == []

    def test_user_supplied_name_kept(self, store, reconciler, sagemaker):
        store.create(make_job(NAME, NS, spec=base_spec(trainingJobName="my-training-job")))
        reconciler.reconcile(NS, NAME)
        result = reconciler.reconcile(NS, NAME)

        assert result.requeue
        assert sagemaker.calls["create"] == ["my-training-job"]

    def test_creates_remote_job(self, store, reconciler, sagemaker):
        store.create(make_job(NAME, NS))
        reconciler.reconcile(NS, NAME)
        reconciler.reconcile(NS, NAME)
        result = reconciler.reconcile(NS, NAME)

        job = store.get(NS, NAME)
        assert result.requeue
        assert sagemaker.calls["create"] == [job.spec.training_job_name]
        assert job.spec.training_job_name in sagemaker.jobs

    def test_finalizer_added_after_creation(self, store, reconciler, sagemaker):
        store.create(make_job(NAME, NS))
        for _ in range(3):
            reconciler.reconcile(NS, NAME)
        result = reconciler.reconcile(NS, NAME)

        job = store.get(NS, NAME)
        assert job.has_finalizer(FINALIZER)
        assert result.requeue
        assert job.status.training_job_status == INITIALIZING_JOB_STATUS

    def test_status_synced_with_log_url(self, store, reconciler, sagemaker):
        job = bring_up(store, reconciler, sagemaker)

        assert job.status.secondary_status == "Starting"
        assert job.status.sage_maker_training_job_name == job.spec.training_job_name
        assert job.status.cloud_watch_log_url == (
            "https://us-west-2.console.aws.amazon.com/cloudwatch/home?region=us-west-2"
            f"#logStream:group=/aws/sagemaker/TrainingJobs;prefix={job.spec.training_job_name}"
            ";streamFilter=typeLogStreamPrefix"
        )

    def test_in_progress_polls(self, store, reconciler, sagemaker):
        bring_up(store, reconciler, sagemaker)
        result = reconciler.reconcile(NS, NAME)
        assert result == Result(requeue_after=POLL_INTERVAL)

    def test_secondary_status_change_synced(self, store, reconciler, sagemaker):
        job = bring_up(store, reconciler, sagemaker)
        sagemaker.set_status(job.spec.training_job_name, "InProgress", "Training")

        result = reconciler.reconcile(NS, NAME)

        assert result.requeue_after == POLL_INTERVAL
        assert store.get(NS, NAME).status.secondary_status == "Training"

    def test_failure_reason_recorded(self, store, reconciler, sagemaker):
        job = bring_up(store, reconciler, sagemaker)
        sagemaker.set_status(job.spec.training_job_name, "Failed", "Failed", failure_reason="AlgorithmError: oops")

        reconciler.reconcile(NS, NAME)
        result = reconciler.reconcile(NS, NAME)

        status = store.get(NS, NAME).status
        assert status.training_job_status == "Failed"
        assert status.additional == "AlgorithmError: oops"
        assert not result.needs_requeue

    def test_completed_job_records_model_path(self, store, reconciler, sagemaker):
        """s3://my-bucket/xgboost/ + job name + /output/model.tar.gz"""
        job = bring_up(store, reconciler, sagemaker)
        name = job.spec.training_job_name
        sagemaker.set_status(name, "Completed", "Completed")

        assert reconciler.reconcile(NS, NAME).requeue_after == POLL_INTERVAL
        result = reconciler.reconcile(NS, NAME)

        status = store.get(NS, NAME).status
        assert not result.needs_requeue
        assert status.training_job_status == "Completed"
        assert status.model_path == f"s3://my-bucket/xgboost/{name}/output/model.tar.gz"

    def test_stopped_job_needs_no_action(self, store, reconciler, sagemaker):
        job = bring_up(store, reconciler, sagemaker)
        sagemaker.set_status(job.spec.training_job_name, "Stopped", "Stopped")
        reconciler.reconcile(NS, NAME)

        assert reconciler.reconcile(NS, NAME) == Result()

    def test_unknown_remote_status(self, store, reconciler, sagemaker):
        job = bring_up(store, reconciler, sagemaker)
        sagemaker.set_status(job.spec.training_job_name, "Paused", "Paused")
        reconciler.reconcile(NS, NAME)

        assert reconciler.reconcile(NS, NAME) == Result()

    def test_endpoint_override_passed_to_loader(self, store, reconciler, client_loader, sagemaker):
        store.create(make_job(NAME, NS, spec=base_spec(sageMakerEndpoint="https://sm.example.com")))
        for _ in range(3):
            reconciler.reconcile(NS, NAME)
        assert client_loader.loaded[-1] == ("us-west-2", "https://sm.example.com")

    def test_model_path_concatenated_without_separator(self, store, reconciler, sagemaker):
        spec = base_spec(trainingJobName="job-123", outputDataConfig={"s3OutputPath": "s3://bucket/prefix"})
        store.create(make_job(NAME, NS, spec=spec))
        for _ in range(4):
            reconciler.reconcile(NS, NAME)
        sagemaker.set_status("job-123", "Completed", "Completed")

        reconciler.reconcile(NS, NAME)
        reconciler.reconcile(NS, NAME)

        assert store.get(NS, NAME).status.model_path == "s3://bucket/prefixjob-123/output/model.tar.gz"


class TestDeletion:
    """Test suite for deletion of TrainingJobs with running remote jobs."""

    def test_running_job_stopped_then_finalizer_removed(self, store, reconciler, sagemaker):
        job = bring_up(store, reconciler, sagemaker)
        name = job.spec.training_job_name
        store.request_deletion(NS, NAME)

        assert reconciler.reconcile(NS, NAME).requeue
        assert sagemaker.calls["stop"] == [name]

        result = reconciler.reconcile(NS, NAME)
        assert result == Result(requeue_after=POLL_INTERVAL)
        assert store.get(NS, NAME).status.training_job_status == "Stopping"

        sagemaker.set_status(name, "Stopped", "Stopped")
        assert reconciler.reconcile(NS, NAME) == Result()

        with pytest.raises(ObjectNotFoundError):
            store.get(NS, NAME)
        assert sagemaker.calls["stop"] == [name]

    def test_finalizer_kept_until_remote_terminal(self, store, reconciler, sagemaker):
        bring_up(store, reconciler, sagemaker)
        store.request_deletion(NS, NAME)
        reconciler.reconcile(NS, NAME)
        reconciler.reconcile(NS, NAME)
        reconciler.reconcile(NS, NAME)

        assert store.get(NS, NAME).has_finalizer(FINALIZER)

    def test_remote_job_missing_removes_finalizer(self, store, reconciler, sagemaker):
        job = bring_up(store, reconciler, sagemaker)
        del sagemaker.jobs[job.spec.training_job_name]
        store.request_deletion(NS, NAME)

        assert reconciler.reconcile(NS, NAME) == Result()
        assert store.list_keys() == []

    def test_completed_job_deleted_without_stop(self, store, reconciler, sagemaker):
        job = bring_up(store, reconciler, sagemaker)
        sagemaker.set_status(job.spec.training_job_name, "Completed", "Completed")
        store.request_deletion(NS, NAME)

        reconciler.reconcile(NS, NAME)

        assert sagemaker.calls["stop"] == []
        assert store.list_keys() == []

    def test_other_finalizers_preserved(self, store, reconciler, sagemaker):
        job = bring_up(store, reconciler, sagemaker)
        job.metadata.finalizers.insert(0, "example.com/backup")
        store.update(job)
        sagemaker.set_status(job.spec.training_job_name, "Stopped", "Stopped")
        store.request_deletion(NS, NAME)

        reconciler.reconcile(NS, NAME)

        remaining = store.get(NS, NAME)
        assert remaining.metadata.finalizers == ["example.com/backup"]

    def test_describe_error_during_deletion_retried(self, store, reconciler, sagemaker):
        bring_up(store, reconciler, sagemaker)
        store.request_deletion(NS, NAME)
        sagemaker.fail_next("describe", server_error())

        result = reconciler.reconcile(NS, NAME)

        assert result.requeue_after == POLL_INTERVAL
        assert result.error is not None
        assert store.get(NS, NAME).has_finalizer(FINALIZER)

    def test_stop_throttled_retried(self, store, reconciler, sagemaker):
        bring_up(store, reconciler, sagemaker)
        store.request_deletion(NS, NAME)
        sagemaker.fail_next("stop", throttling_error())

        result = reconciler.reconcile(NS, NAME)

        assert result.requeue_after == POLL_INTERVAL
        assert store.get(NS, NAME).status.training_job_status == "InProgress"

    def test_unrecoverable_describe_error_during_deletion(self, store, reconciler, sagemaker):
        bring_up(store, reconciler, sagemaker)
        store.request_deletion(NS, NAME)
        sagemaker.fail_next("describe", validation_error("Access denied"))

        result = reconciler.reconcile(NS, NAME)

        job = store.get(NS, NAME)
        assert not result.needs_requeue
        assert job.status.training_job_status == "Failed"
        assert "Access denied" in job.status.additional
        assert job.has_finalizer(FINALIZER)
        assert sagemaker.calls["stop"] == []


class TestErrorHandling:
    """Test suite for SageMaker and datastore failures."""

    def _created_name(self, store, reconciler):
        store.create(make_job(NAME, NS))
        reconciler.reconcile(NS, NAME)
        reconciler.reconcile(NS, NAME)
        return store.get(NS, NAME).spec.training_job_name

    def test_throttled_describe_leaves_status(self, store, reconciler, sagemaker):
        bring_up(store, reconciler, sagemaker)
        before = store.get(NS, NAME)
        sagemaker.fail_next("describe", throttling_error())

        result = reconciler.reconcile(NS, NAME)

        assert result.requeue_after == POLL_INTERVAL
        assert result.error.is_transient
        assert store.get(NS, NAME).status == before.status

    def test_server_error_on_create_retried(self, store, reconciler, sagemaker):
        self._created_name(store, reconciler)
        sagemaker.fail_next("create", server_error())

        result = reconciler.reconcile(NS, NAME)

        assert result.requeue_after == POLL_INTERVAL
        assert store.get(NS, NAME).status.training_job_status == INITIALIZING_JOB_STATUS

    def test_unrecoverable_create_error_fails_job(self, store, reconciler, sagemaker):
        name = self._created_name(store, reconciler)
        sagemaker.fail_next("create", validation_error("Invalid training image"))

        result = reconciler.reconcile(NS, NAME)

        status = store.get(NS, NAME).status
        assert not result.needs_requeue
        assert status.training_job_status == "Failed"
        assert "Invalid training image" in status.additional
        assert status.sage_maker_training_job_name == name

    def test_no_create_after_terminal_status(self, store, reconciler, sagemaker):
        self._created_name(store, reconciler)
        sagemaker.fail_next("create", validation_error())
        reconciler.reconcile(NS, NAME)

        assert reconciler.reconcile(NS, NAME) == Result()
        assert len(sagemaker.calls["create"]) == 1

    def test_configuration_error_not_requeued(self, store, reconciler, client_loader, sagemaker):
        self._created_name(store, reconciler)
        client_loader.error = ConfigurationError("Invalid SageMaker endpoint override")

        assert reconciler.reconcile(NS, NAME) == Result()
        assert sagemaker.calls["describe"] == []

    def test_status_write_conflict_requeued(self, store, reconciler, sagemaker):
        job = bring_up(store, reconciler, sagemaker)
        sagemaker.set_status(job.spec.training_job_name, "InProgress", "Training")

        with patch.object(store, "update_status", side_effect=ConflictError(NS, NAME, "7")):
            result = reconciler.reconcile(NS, NAME)

        assert isinstance(result.error, ConflictError)
        assert result.requeue_after == POLL_INTERVAL

    def test_terminal_status_write_failure_requeued(self, store, reconciler, sagemaker):
        job = bring_up(store, reconciler, sagemaker)
        sagemaker.set_status(job.spec.training_job_name, "Completed", "Completed")
        reconciler.reconcile(NS, NAME)

        with patch.object(store, "update_status", side_effect=StoreUnavailableError("db down")):
            result = reconciler.reconcile(NS, NAME)

        assert isinstance(result.error, StoreUnavailableError)
        assert result.needs_requeue

    def test_datastore_read_failure_requeued(self, store, reconciler):
        with patch.object(store, "get", side_effect=StoreUnavailableError("db down")):
            result = reconciler.reconcile(NS, NAME)
        assert isinstance(result.error, StoreUnavailableError)

    def test_name_assignment_conflict_requeued(self, store, reconciler):
        store.create(make_job(NAME, NS))
        reconciler.reconcile(NS, NAME)
        with patch.object(store, "update", side_effect=ConflictError(NS, NAME, "2")):
            result = reconciler.reconcile(NS, NAME)
        assert isinstance(result.error, ConflictError)
        assert store.get(NS, NAME).spec.training_job_name is None

    def test_unexpected_error_becomes_requeue(self, store, reconciler, client_loader):
        store.create(make_job(NAME, NS))
        reconciler.reconcile(NS, NAME)
        reconciler.reconcile(NS, NAME)
        with patch.object(client_loader, "load", side_effect=TypeError("bad argument")):
            result = reconciler.reconcile(NS, NAME)

        assert isinstance(result.error, TypeError)
        assert result.needs_requeue

    def test_unexpected_read_error_becomes_requeue(self, store, reconciler):
        with patch.object(store, "get", side_effect=KeyError("metadata")):
            result = reconciler.reconcile(NS, NAME)
        assert isinstance(result.error, KeyError)


class TestProperties:
    """Test suite for invariants that hold across reconciliation passes."""

    def test_idempotent_once_settled(self, store, reconciler, sagemaker):
        """Repeated passes on an unchanged completed job cause no writes and no remote mutations."""
        job = bring_up(store, reconciler, sagemaker)
        sagemaker.set_status(job.spec.training_job_name, "Completed", "Completed")
        reconciler.reconcile(NS, NAME)
        reconciler.reconcile(NS, NAME)
        settled = store.get(NS, NAME)

        for _ in range(3):
            assert reconciler.reconcile(NS, NAME) == Result()

        assert store.get(NS, NAME).metadata.resource_version == settled.metadata.resource_version
        assert len(sagemaker.calls["create"]) == 1
        assert sagemaker.calls["stop"] == []

    def test_at_most_one_creation(self, store, reconciler, sagemaker):
        store.create(make_job(NAME, NS))
        for _ in range(10):
            reconciler.reconcile(NS, NAME)
        assert len(sagemaker.calls["create"]) == 1

    def test_terminal_status_never_regresses(self, store, reconciler, sagemaker):
        job = bring_up(store, reconciler, sagemaker)
        name = job.spec.training_job_name
        sagemaker.set_status(name, "Completed", "Completed")
        reconciler.reconcile(NS, NAME)
        reconciler.reconcile(NS, NAME)

        sagemaker.set_status(name, "InProgress", "Training")
        result = reconciler.reconcile(NS, NAME)

        assert result == Result()
        assert store.get(NS, NAME).status.training_job_status == "Completed"

    def test_spec_drift_fails_job(self, store, reconciler, sagemaker):
        job = bring_up(store, reconciler, sagemaker)
        job.spec.resource_config.instance_count = 2
        updated = store.update(job)
        assert updated.metadata.generation == 3

        result = reconciler.reconcile(NS, NAME)

        status = store.get(NS, NAME).status
        assert not result.needs_requeue
        assert status.training_job_status == "Failed"
        assert status.additional.startswith("Status: Failed.")
        assert "ResourceConfig" in status.additional
        assert len(sagemaker.calls["create"]) == 1
        assert sagemaker.calls["stop"] == []

    def test_spec_drift_reported_once(self, store, reconciler, sagemaker):
        job = bring_up(store, reconciler, sagemaker)
        job.spec.role_arn = "arn:aws:iam::123456789012:role/other"
        store.update(job)
        reconciler.reconcile(NS, NAME)
        version = store.get(NS, NAME).metadata.resource_version

        assert reconciler.reconcile(NS, NAME) == Result()
        assert store.get(NS, NAME).metadata.resource_version == version

    def test_spec_drift_checked_before_finalizer(self, store, reconciler, sagemaker):
        store.create(make_job(NAME, NS))
        reconciler.reconcile(NS, NAME)  # status initialized
        reconciler.reconcile(NS, NAME)  # name assigned
        reconciler.reconcile(NS, NAME)  # created in SageMaker
        job = store.get(NS, NAME)
        assert not job.has_finalizer(FINALIZER)
        job.spec.role_arn = "arn:aws:iam::123456789012:role/other"
        store.update(job)

        result = reconciler.reconcile(NS, NAME)

        job = store.get(NS, NAME)
        assert not result.needs_requeue
        assert job.status.training_job_status == "Failed"
        assert "RoleArn" in job.status.additional
        assert not job.has_finalizer(FINALIZER)
