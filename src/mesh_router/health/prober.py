"""
Active health probing.

Every registered endpoint gets its own recurring asyncio task that sends
``GET <address><health_path>`` and records the result into the backend pool.
Tasks follow pool membership: they start when an endpoint is registered and
are cancelled when it is deregistered. Ejected endpoints are left alone until
their ejection expires.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from mesh_router.circuit_breaker import CircuitBreakerState
from mesh_router.core.exceptions import ProbeFailure
from mesh_router.core.proxy import ForwardingClient
from mesh_router.pool import BackendPool, EndpointView
from mesh_router.routing.models import ProbeConfig

logger = logging.getLogger(__name__)


class HealthProber:
    """Runs one probe loop per endpoint."""

    def __init__(self,
                 pool: BackendPool,
                 client: ForwardingClient,
                 probe_config: Callable[[], ProbeConfig]):
        """
        Args:
            pool: Pool whose endpoints are probed and which receives results
            client: Shared forwarding client used for probe requests
            probe_config: Returns the probe settings of the active configuration
        """
        self.pool = pool
        self.client = client
        self._probe_config = probe_config
        self._tasks: Dict[str, asyncio.Task] = {}
        self._running = False

        pool.add_membership_listener(self._on_endpoint_added, self._on_endpoint_removed)

    @property
    def probing(self) -> List[str]:
        """Endpoint ids with an active probe task."""
        return sorted(self._tasks)

    def start(self) -> None:
        """Start probing every endpoint currently in the pool."""
        self._running = True
        for view in self.pool.snapshot():
            self._start_task(view.endpoint_id)
        logger.info("Health prober started", extra={"endpoints": len(self._tasks)})

    async def stop(self) -> None:
        """Cancel all probe tasks and wait for them to finish."""
        self._running = False
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Health prober stopped", extra={"cancelled": len(tasks)})

    async def probe_once(self, endpoint_id: str) -> Optional[bool]:
        """
        Probe one endpoint and record the result.

        Returns:
            The probe result, or None if the endpoint was skipped
        """
        view = self.pool.get_endpoint(endpoint_id)
        if view is None:
            return None
        if view.breaker_state == CircuitBreakerState.OPEN:
            logger.debug("Skipping probe of ejected endpoint", extra={"endpoint_id": endpoint_id})
            return None

        config = self._probe_config()
        try:
            await self.client.probe(endpoint_id, view.address, config.health_path, config.timeout_seconds)
        except ProbeFailure as e:
            logger.info(
                "Health probe failed",
                extra={"endpoint_id": endpoint_id, "error": e.message, "status_code": e.status_code}
            )
            self.pool.record_probe_result(endpoint_id, False, e.message)
            return False

        self.pool.record_probe_result(endpoint_id, True)
        return True

    async def _probe_loop(self, endpoint_id: str) -> None:
        while True:
            config = self._probe_config()
            try:
                if config.enabled:
                    await self.probe_once(endpoint_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Health probe loop error", extra={"endpoint_id": endpoint_id})

            if endpoint_id not in self.pool.endpoint_ids():
                break
            await asyncio.sleep(config.interval_seconds)

        self._tasks.pop(endpoint_id, None)

    def _start_task(self, endpoint_id: str) -> None:
        if endpoint_id in self._tasks:
            return
        self._tasks[endpoint_id] = asyncio.create_task(
            self._probe_loop(endpoint_id),
            name=f"probe:{endpoint_id}"
        )
        logger.debug("Probe task started", extra={"endpoint_id": endpoint_id})

    def _on_endpoint_added(self, view: EndpointView) -> None:
        if not self._running:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "Endpoint registered outside the event loop - not probing",
                extra={"endpoint_id": view.endpoint_id}
            )
            return
        self._start_task(view.endpoint_id)

    def _on_endpoint_removed(self, endpoint_id: str) -> None:
        task = self._tasks.pop(endpoint_id, None)
        if task is not None:
            task.cancel()
            logger.debug("Probe task cancelled", extra={"endpoint_id": endpoint_id})
