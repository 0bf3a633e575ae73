"""Watches a Deployment rollout until it is healthy, failed, or timed out.

The watcher polls the cluster at a fixed interval and drives a `RolloutStatus`
through `Pending -> Progressing -> {Succeeded | Failed | TimedOut}`:
```python
from kube_release.cluster import KubectlCluster
from kube_release.rollout import RolloutWatcher, raise_for_status

watcher = RolloutWatcher(KubectlCluster(), target, timeout=300)
status = await watcher.watch()
raise_for_status(status)
```

A watch may be aborted with `cancel()`. This only stops polling; the
cluster is left as it is and an in-flight deployment is not rolled back.
"""

import asyncio
import logging

from .cluster import Cluster
from .exceptions import CommandException, RolloutFailure, RolloutTimeout
from .manifest import DeploymentTarget, RolloutPhase, RolloutStatus

__all__ = [
    "RolloutWatcher",
    "raise_for_status",
]

_LOGGER = logging.getLogger(__name__)

DEFAULT_INTERVAL = 5.0
DEFAULT_TIMEOUT = 300.0
DEFAULT_STABILITY_WINDOW = 10.0


class RolloutWatcher:
    """Polls the cluster for the health of a Deployment."""

    def __init__(
        self,
        cluster: Cluster,
        target: DeploymentTarget,
        interval: float = DEFAULT_INTERVAL,
        timeout: float = DEFAULT_TIMEOUT,
        stability_window: float = DEFAULT_STABILITY_WINDOW,
    ) -> None:
        """Initialize RolloutWatcher.

        Args:
            cluster: The cluster to read Deployment state from.
            target: The Deployment being rolled out.
            interval: Seconds between polls.
            timeout: Seconds until the rollout is considered timed out.
            stability_window: Seconds all replicas must stay ready to succeed.
        """
        if interval <= 0:
            raise ValueError("Poll interval must be positive")
        self._cluster = cluster
        self._target = target
        self._interval = interval
        self._timeout = timeout
        self._stability_window = stability_window
        self._task: asyncio.Task[None] | None = None
        self.status = RolloutStatus(desired=target.replicas)

    async def _poll(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout
        ready_since: float | None = None
        last_error: str | None = None
        name = f"{self._target.namespace}/{self._target.name}"
        while True:
            try:
                state = await self._cluster.get_deployment_state(
                    self._target.namespace, self._target.name
                )
            except CommandException as err:
                last_error = str(err)
                _LOGGER.warning("Unable to read Deployment %s: %s", name, err)
                state = None
            now = loop.time()
            if state is not None:
                last_error = None
                self.status.observe(state.ready, state.desired)
                _LOGGER.debug("Deployment %s: %s", name, self.status)
                if state.failure:
                    self.status.fail(state.failure)
                    return
                if state.is_ready:
                    if ready_since is None:
                        ready_since = now
                    if now - ready_since >= self._stability_window:
                        self.status.succeed()
                        return
                else:
                    ready_since = None
            if now >= deadline:
                message = (
                    f"Deployment {name} not ready after {self._timeout:g}s "
                    f"({self.status.ready}/{self.status.desired} ready)"
                )
                if last_error:
                    message += f": {last_error}"
                if self.status.phase == RolloutPhase.PENDING:
                    self.status.observe(self.status.ready, self.status.desired)
                self.status.time_out(message)
                return
            await asyncio.sleep(min(self._interval, max(deadline - now, 0)))

    async def watch(self) -> RolloutStatus:
        """Poll until the rollout reaches a terminal phase.

        Raises asyncio.CancelledError if the watch is cancelled, leaving the
        status in its last non-terminal phase.
        """
        if self._task is not None:
            raise RuntimeError("Rollout watch already started")
        _LOGGER.info(
            "Waiting for %s/%s rollout of %d replicas",
            self._target.namespace,
            self._target.name,
            self._target.replicas,
        )
        self._task = asyncio.create_task(self._poll(), name=f"watch-{self._target.name}")
        await self._task
        _LOGGER.info("Rollout %s", self.status)
        return self.status

    def cancel(self) -> bool:
        """Abort an in-progress watch without touching the cluster."""
        if self._task is None or self._task.done():
            return False
        _LOGGER.info("Cancelling rollout watch of %s", self._target.name)
        return self._task.cancel()


def raise_for_status(status: RolloutStatus) -> None:
    """Raise an exception for an unsuccessful terminal rollout status."""
    if status.phase == RolloutPhase.TIMED_OUT:
        raise RolloutTimeout(status.message or "Rollout timed out")
    if status.phase == RolloutPhase.FAILED:
        raise RolloutFailure(status.message or "Rollout failed")
