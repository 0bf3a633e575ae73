"""Library for talking to the Kubernetes cluster API.

Manifests are applied with create-or-update semantics and the health of a
Deployment is read back as a `DeploymentState`, including any permanent
failure that no amount of waiting will fix (e.g. the image can't be pulled).
"""

from abc import ABC, abstractmethod
import json
import logging
from typing import Any

import yaml

from . import command
from .command import Command
from .exceptions import CommandException
from .manifest import DeploymentState

__all__ = [
    "Cluster",
    "KubectlCluster",
]

_LOGGER = logging.getLogger(__name__)

KUBECTL_BIN = "kubectl"

# Container waiting reasons that will not resolve without operator intervention
PERMANENT_WAITING_REASONS = {
    "ErrImagePull",
    "ImagePullBackOff",
    "InvalidImageName",
    "CreateContainerConfigError",
    "CreateContainerError",
}
PROGRESS_DEADLINE_EXCEEDED = "ProgressDeadlineExceeded"
UNSCHEDULABLE = "Unschedulable"


class Cluster(ABC):
    """An external cluster API."""

    @abstractmethod
    async def apply(self, documents: list[dict[str, Any]]) -> None:
        """Create or update the resources."""

    @abstractmethod
    async def get_deployment_state(self, namespace: str, name: str) -> DeploymentState:
        """Read the current state of a Deployment."""


def deployment_failure(deployment: dict[str, Any]) -> str | None:
    """Return a permanent failure reported in the Deployment conditions."""
    for condition in (deployment.get("status") or {}).get("conditions") or []:
        if (
            condition.get("type") == "Progressing"
            and condition.get("reason") == PROGRESS_DEADLINE_EXCEEDED
        ):
            return condition.get("message") or PROGRESS_DEADLINE_EXCEEDED
        if condition.get("type") == "ReplicaFailure" and condition.get("status") == "True":
            return condition.get("message") or condition.get("reason")
    return None


def pod_failure(pod: dict[str, Any]) -> str | None:
    """Return a permanent failure of a pod, such as an image pull error."""
    status = pod.get("status") or {}
    name = (pod.get("metadata") or {}).get("name", "<unknown>")
    for condition in status.get("conditions") or []:
        if condition.get("type") == "PodScheduled" and condition.get("reason") == UNSCHEDULABLE:
            return f"Pod {name} unschedulable: {condition.get('message', '')}".strip()
    for container in status.get("containerStatuses") or []:
        waiting = (container.get("state") or {}).get("waiting") or {}
        if (reason := waiting.get("reason")) in PERMANENT_WAITING_REASONS:
            message = waiting.get("message", "")
            return f"Pod {name} container {container.get('name')}: {reason} {message}".strip()
    return None


def _images(resource: dict[str, Any]) -> set[str]:
    """Return the container images of a pod or pod template."""
    containers = (resource.get("spec") or {}).get("containers") or []
    return {container["image"] for container in containers if container.get("image")}


def parse_deployment_state(
    deployment: dict[str, Any], pods: list[dict[str, Any]]
) -> DeploymentState:
    """Build a DeploymentState from the Deployment and its pods."""
    spec = deployment.get("spec") or {}
    status = deployment.get("status") or {}
    metadata = deployment.get("metadata") or {}
    generation = int(metadata.get("generation", 0))
    observed_generation = int(status.get("observedGeneration", 0))
    failure: str | None = None
    # Conditions and pods describe the previous revision until the controller
    # has observed the latest spec
    if observed_generation >= generation:
        failure = deployment_failure(deployment)
        if failure is None:
            images = _images(spec.get("template") or {})
            for pod in pods:
                # Pods of an older ReplicaSet still run the previous images
                if images and (pod_images := _images(pod)) and pod_images != images:
                    continue
                if failure := pod_failure(pod):
                    break
    return DeploymentState(
        desired=int(spec.get("replicas", 1)),
        ready=int(status.get("readyReplicas", 0)),
        updated=int(status.get("updatedReplicas", 0)),
        available=int(status.get("availableReplicas", 0)),
        generation=generation,
        observed_generation=observed_generation,
        failure=failure,
    )


class KubectlCluster(Cluster):
    """Cluster client using the kubectl command line."""

    def __init__(self, context: str | None = None, kubeconfig: str | None = None) -> None:
        """Initialize KubectlCluster."""
        self._context = context
        self._kubeconfig = kubeconfig

    def _cmd(self, args: list[str]) -> Command:
        cmd = [KUBECTL_BIN]
        if self._kubeconfig:
            cmd.extend(["--kubeconfig", self._kubeconfig])
        if self._context:
            cmd.extend(["--context", self._context])
        return Command(cmd + args)

    async def apply(self, documents: list[dict[str, Any]]) -> None:
        """Apply the documents, passed on stdin."""
        content = yaml.dump_all(documents, sort_keys=False, explicit_start=True)
        out = await command.run(
            self._cmd(["apply", "-f", "-"]), stdin=content.encode("utf-8")
        )
        for line in out.splitlines():
            _LOGGER.info("%s", line)

    async def _get_json(self, args: list[str]) -> dict[str, Any]:
        out = await command.run(self._cmd(["get", *args, "-o", "json"]))
        try:
            return json.loads(out)
        except json.JSONDecodeError as err:
            raise CommandException(f"Unable to parse kubectl output: {err}") from err

    async def get_deployment_state(self, namespace: str, name: str) -> DeploymentState:
        """Read the Deployment and its pods."""
        deployment = await self._get_json(["deployment", name, "--namespace", namespace])
        selector = ((deployment.get("spec") or {}).get("selector") or {}).get(
            "matchLabels"
        ) or {}
        pods: list[dict[str, Any]] = []
        if selector:
            label_selector = ",".join(f"{k}={v}" for k, v in sorted(selector.items()))
            pod_list = await self._get_json(
                ["pods", "--namespace", namespace, "--selector", label_selector]
            )
            pods = pod_list.get("items") or []
        return parse_deployment_state(deployment, pods)
