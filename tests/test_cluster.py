"""Tests for the cluster client."""

import json
from typing import Any
from unittest.mock import patch

import pytest
import yaml

from kube_release.cluster import KubectlCluster, parse_deployment_state
from kube_release.exceptions import CommandException

DEPLOYMENT = {
    "metadata": {"name": "web", "namespace": "apps", "generation": 2},
    "spec": {"replicas": 3, "selector": {"matchLabels": {"app": "web"}}},
    "status": {
        "observedGeneration": 2,
        "replicas": 3,
        "readyReplicas": 2,
        "updatedReplicas": 3,
        "availableReplicas": 2,
    },
}


def _pod(waiting_reason: str | None = None) -> dict[str, Any]:
    state: dict[str, Any] = {"running": {}}
    if waiting_reason:
        state = {"waiting": {"reason": waiting_reason, "message": "back-off"}}
    return {
        "metadata": {"name": "web-1"},
        "status": {"containerStatuses": [{"name": "web", "state": state}]},
    }


def test_parse_deployment_state() -> None:
    """Test reading replica counts from a Deployment."""
    state = parse_deployment_state(DEPLOYMENT, [_pod()])
    assert state.desired == 3
    assert state.ready == 2
    assert state.updated == 3
    assert state.available == 2
    assert state.is_current
    assert not state.is_ready
    assert state.failure is None


def test_image_pull_failure() -> None:
    """Test an image pull error is a permanent failure."""
    state = parse_deployment_state(DEPLOYMENT, [_pod(), _pod("ImagePullBackOff")])
    assert state.failure == "Pod web-1 container web: ImagePullBackOff back-off"


def test_container_creating_not_failure() -> None:
    """Test a pod that is still starting is not a failure."""
    state = parse_deployment_state(DEPLOYMENT, [_pod("ContainerCreating")])
    assert state.failure is None


def test_progress_deadline_exceeded() -> None:
    """Test the Deployment reporting it stopped making progress."""
    deployment = json.loads(json.dumps(DEPLOYMENT))
    deployment["status"]["conditions"] = [
        {
            "type": "Progressing",
            "status": "False",
            "reason": "ProgressDeadlineExceeded",
            "message": 'ReplicaSet "web-5d8f" has timed out progressing.',
        }
    ]
    state = parse_deployment_state(deployment, [])
    assert state.failure == 'ReplicaSet "web-5d8f" has timed out progressing.'


def test_unschedulable() -> None:
    """Test a pod that can't be scheduled."""
    pod = {
        "metadata": {"name": "web-1"},
        "status": {
            "conditions": [
                {
                    "type": "PodScheduled",
                    "status": "False",
                    "reason": "Unschedulable",
                    "message": "0/3 nodes are available: insufficient cpu.",
                }
            ]
        },
    }
    state = parse_deployment_state(DEPLOYMENT, [pod])
    assert state.failure == (
        "Pod web-1 unschedulable: 0/3 nodes are available: insufficient cpu."
    )


def _template(image: str) -> dict[str, Any]:
    return {"spec": {"containers": [{"name": "web", "image": image}]}}


def test_stale_generation_not_failure() -> None:
    """Test conditions and pods of the previous revision are not a failure."""
    deployment = json.loads(json.dumps(DEPLOYMENT))
    deployment["spec"]["template"] = _template("registry.example.com/web:new")
    deployment["status"]["observedGeneration"] = 1
    deployment["status"]["conditions"] = [
        {
            "type": "Progressing",
            "status": "False",
            "reason": "ProgressDeadlineExceeded",
            "message": 'ReplicaSet "web-old" has timed out progressing.',
        }
    ]
    pod = _pod("ImagePullBackOff")
    pod["spec"] = _template("registry.example.com/web:old")["spec"]
    state = parse_deployment_state(deployment, [pod])
    assert not state.is_current
    assert not state.is_ready
    assert state.failure is None


def test_old_replica_set_pod_ignored() -> None:
    """Test only pods running the current template images can fail a rollout."""
    deployment = json.loads(json.dumps(DEPLOYMENT))
    deployment["spec"]["template"] = _template("registry.example.com/web:new")
    old_pod = _pod("ImagePullBackOff")
    old_pod["spec"] = _template("registry.example.com/web:old")["spec"]
    state = parse_deployment_state(deployment, [old_pod, _pod()])
    assert state.is_current
    assert state.failure is None

    new_pod = _pod("ErrImagePull")
    new_pod["spec"] = _template("registry.example.com/web:new")["spec"]
    state = parse_deployment_state(deployment, [old_pod, new_pod])
    assert state.failure == "Pod web-1 container web: ErrImagePull back-off"


async def test_kubectl_apply() -> None:
    """Test documents are passed to kubectl apply on stdin."""
    documents = [{"apiVersion": "v1", "kind": "Service", "metadata": {"name": "web"}}]
    cluster = KubectlCluster(context="prod")
    with patch(
        "kube_release.cluster.command.run", return_value="service/web configured\n"
    ) as mock_run:
        await cluster.apply(documents)
    cmd = mock_run.call_args.args[0]
    assert cmd.cmd == ["kubectl", "--context", "prod", "apply", "-f", "-"]
    stdin = mock_run.call_args.kwargs["stdin"]
    assert list(yaml.safe_load_all(stdin.decode("utf-8"))) == documents


async def test_kubectl_get_deployment_state() -> None:
    """Test reading the Deployment and its pods with kubectl."""
    pods = {"items": [_pod("ErrImagePull")]}
    cluster = KubectlCluster()
    with patch(
        "kube_release.cluster.command.run",
        side_effect=[json.dumps(DEPLOYMENT), json.dumps(pods)],
    ) as mock_run:
        state = await cluster.get_deployment_state("apps", "web")
    assert [c.args[0].cmd for c in mock_run.call_args_list] == [
        ["kubectl", "get", "deployment", "web", "--namespace", "apps", "-o", "json"],
        [
            "kubectl",
            "get",
            "pods",
            "--namespace",
            "apps",
            "--selector",
            "app=web",
            "-o",
            "json",
        ],
    ]
    assert state.ready == 2
    assert state.failure is not None
    assert "ErrImagePull" in state.failure


async def test_kubectl_invalid_output() -> None:
    """Test kubectl output that is not JSON."""
    with patch("kube_release.cluster.command.run", return_value="not json"):
        with pytest.raises(CommandException, match="Unable to parse"):
            await KubectlCluster().get_deployment_state("apps", "web")
