"""Shared fixtures for feature manager tests."""

from collections.abc import AsyncGenerator, Callable

import pytest

from feature_manager.manifest import (
    Cluster,
    ClusterFeature,
    ClusterFeatureSpec,
    ClusterSummary,
    ClusterSummarySpec,
    OwnerReference,
    CLUSTER_FEATURE_KIND,
)
from feature_manager.store import InMemoryStore
from feature_manager.task import TaskService, TaskServiceImpl

CLUSTER_FEATURE_NAME = "feature"
CLUSTER_NAMESPACE = "clusters"
CLUSTER_NAME = "workload"


@pytest.fixture(name="task_service")
async def task_service_fixture() -> AsyncGenerator[TaskService, None]:
    """Create a task service, waiting for its tasks at teardown."""
    service = TaskServiceImpl()
    yield service
    await service.block_till_done()


@pytest.fixture(name="store")
def store_fixture() -> InMemoryStore:
    """Create an in-memory store holding the owning ClusterFeature and target cluster."""
    store = InMemoryStore()
    store.add_object(ClusterFeature(name=CLUSTER_FEATURE_NAME))
    store.add_object(Cluster(name=CLUSTER_NAME, namespace=CLUSTER_NAMESPACE))
    return store


@pytest.fixture(name="new_cluster_summary")
def new_cluster_summary_fixture() -> Callable[..., ClusterSummary]:
    """Return a factory of ClusterSummaries owned by the test ClusterFeature."""

    def _new(
        name: str = "summary", spec: ClusterFeatureSpec | None = None
    ) -> ClusterSummary:
        return ClusterSummary(
            name=name,
            spec=ClusterSummarySpec(
                cluster_namespace=CLUSTER_NAMESPACE,
                cluster_name=CLUSTER_NAME,
                cluster_feature_spec=spec or ClusterFeatureSpec(),
            ),
            owner_references=[
                OwnerReference(kind=CLUSTER_FEATURE_KIND, name=CLUSTER_FEATURE_NAME)
            ],
        )

    return _new
