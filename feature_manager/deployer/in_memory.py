"""Deployer that records applied payloads in memory."""

import asyncio
import logging

from feature_manager.config import DeployerConfig
from feature_manager.exceptions import DeployError, DeployTimeout
from feature_manager.manifest import FeatureID, NamedResource
from feature_manager.task import TaskService, TaskServiceImpl

from .deployer import Deployer, DeployPayload, DeployRequest

_LOGGER = logging.getLogger(__name__)


class InMemoryDeployer(Deployer):
    """Deployer running each request as a tracked task.

    A request identical to one still in flight joins the running task rather
    than being applied a second time. Applied payloads are kept per target
    cluster and can be inspected with `applied`.
    """

    def __init__(
        self,
        config: DeployerConfig | None = None,
        task_service: TaskService | None = None,
    ) -> None:
        self._config = config or DeployerConfig()
        self._task_service = task_service or TaskServiceImpl()
        self._applied: dict[NamedResource, dict[tuple[str, FeatureID], DeployPayload]] = {}
        self._unreachable: set[NamedResource] = set()
        self._in_flight: dict[str, tuple[DeployRequest, bool]] = {}

    def set_reachable(self, cluster: NamedResource, reachable: bool) -> None:
        """Simulate losing or regaining connectivity to a target cluster."""
        if reachable:
            self._unreachable.discard(cluster)
        else:
            self._unreachable.add(cluster)

    def applied(self, cluster: NamedResource) -> dict[tuple[str, FeatureID], DeployPayload]:
        """Return the payloads currently applied to a cluster by (applicant, feature)."""
        return dict(self._applied.get(cluster, {}))

    async def deploy(self, request: DeployRequest) -> None:
        """Apply the request payload to the target cluster."""
        await self._submit(request, cleanup=False)

    async def undeploy(self, request: DeployRequest) -> None:
        """Remove the content previously applied for the request's feature."""
        await self._submit(request, cleanup=True)

    async def _submit(self, request: DeployRequest, cleanup: bool) -> None:
        # One task per (cluster, applicant, feature) slot, whichever the direction
        name = request.key
        try:
            async with asyncio.timeout(self._config.timeout):
                task = self._task_service.get_task(name)
                while task is not None and self._in_flight.get(name) != (
                    request,
                    cleanup,
                ):
                    _LOGGER.debug("Waiting for previous request %s to finish", name)
                    await asyncio.gather(asyncio.shield(task), return_exceptions=True)
                    task = self._task_service.get_task(name)
                if task is None:
                    self._in_flight[name] = (request, cleanup)
                    task = self._task_service.create_task(
                        self._apply(request, cleanup), name
                    )
                else:
                    _LOGGER.debug("Joining in flight request %s", name)
                await asyncio.shield(task)
        except TimeoutError as err:
            raise DeployTimeout(
                f"Request {name} did not complete within {self._config.timeout}s"
            ) from err

    async def _apply(self, request: DeployRequest, cleanup: bool) -> None:
        try:
            await asyncio.sleep(0)
            if request.cluster in self._unreachable:
                raise DeployError(f"Cluster {request.cluster} is not reachable")
            slot = (request.applicant, request.feature_id)
            if cleanup:
                _LOGGER.info(
                    "Removing %s from %s", request.feature_id, request.cluster
                )
                cluster_state = self._applied.get(request.cluster, {})
                cluster_state.pop(slot, None)
            else:
                _LOGGER.info(
                    "Applying %d objects for %s to %s",
                    len(request.payload.objects),
                    request.feature_id,
                    request.cluster,
                )
                self._applied.setdefault(request.cluster, {})[slot] = request.payload
        finally:
            self._in_flight.pop(request.key, None)
