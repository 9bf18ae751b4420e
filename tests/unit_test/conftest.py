"""Shared fixtures for operator unit tests"""

import pytest

from smoperator.controllers.trainingjob import TrainingJobReconciler
from smoperator.store.memory import MemoryTrainingJobStore
from tests.unit_test.fakes import FINALIZER, POLL_INTERVAL, FakeClientLoader, FakeSageMakerClient


@pytest.fixture
def store():
    return MemoryTrainingJobStore()


@pytest.fixture
def sagemaker():
    return FakeSageMakerClient()


@pytest.fixture
def client_loader(sagemaker):
    return FakeClientLoader(sagemaker)


@pytest.fixture
def reconciler(store, client_loader):
    return TrainingJobReconciler(
        store=store,
        client_loader=client_loader,
        poll_interval=POLL_INTERVAL,
        finalizer_name=FINALIZER,
    )
