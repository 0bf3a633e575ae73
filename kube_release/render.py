"""Library for rendering cluster manifests from templates.

Templates are multi-document YAML with `${NAME}` placeholders, the same
syntax used by Flux post-build substitution. `${NAME:=default}` supplies a
default and `$${NAME}` is left in the output as a literal `${NAME}`:
```python
from kube_release import render

values = target.substitutions() | {"IMAGE": tag_set.reference(tag_set.primary)}
manifests = render.render(render.DEFAULT_TEMPLATES, values)
print(manifests.yaml())
```

Rendering is pure; the resulting documents are validated so that a
Deployment always has a replica count and container images, and a Service
always has ports.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
import logging
from pathlib import Path
import re
from typing import Any

import aiofiles
import yaml

from .exceptions import RenderFailure, UnresolvedPlaceholder

__all__ = [
    "DEFAULT_TEMPLATES",
    "RenderedManifests",
    "load_templates",
    "render",
    "substitute",
]

_LOGGER = logging.getLogger(__name__)

DEPLOYMENT_KIND = "Deployment"
SERVICE_KIND = "Service"
IMAGE_VAR = "IMAGE"

_PLACEHOLDER_RE = re.compile(
    r"\$(?P<escape>\$)?\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::=(?P<default>[^}]*))?\}"
)

DEPLOYMENT_TEMPLATE = """\
---
apiVersion: apps/v1
kind: Deployment
metadata:
  name: ${APP_NAME}
  namespace: ${NAMESPACE}
  labels:
    app: ${APP_NAME}
spec:
  replicas: ${REPLICAS}
  selector:
    matchLabels:
      app: ${APP_NAME}
  template:
    metadata:
      labels:
        app: ${APP_NAME}
    spec:
      securityContext:
        runAsNonRoot: true
        runAsUser: 1001
      containers:
        - name: ${APP_NAME}
          image: ${IMAGE}
          imagePullPolicy: IfNotPresent
          ports:
            - name: http
              containerPort: ${CONTAINER_PORT}
          resources:
            requests:
              cpu: ${CPU_REQUEST}
              memory: ${MEMORY_REQUEST}
            limits:
              cpu: ${CPU_LIMIT}
              memory: ${MEMORY_LIMIT}
          livenessProbe:
            httpGet:
              path: ${LIVENESS_PATH}
              port: http
            initialDelaySeconds: ${LIVENESS_INITIAL_DELAY}
            periodSeconds: ${LIVENESS_PERIOD}
            timeoutSeconds: ${LIVENESS_TIMEOUT}
            failureThreshold: ${LIVENESS_FAILURE_THRESHOLD}
          readinessProbe:
            httpGet:
              path: ${READINESS_PATH}
              port: http
            initialDelaySeconds: ${READINESS_INITIAL_DELAY}
            periodSeconds: ${READINESS_PERIOD}
            timeoutSeconds: ${READINESS_TIMEOUT}
            failureThreshold: ${READINESS_FAILURE_THRESHOLD}
"""

SERVICE_TEMPLATE = """\
---
apiVersion: v1
kind: Service
metadata:
  name: ${APP_NAME}
  namespace: ${NAMESPACE}
  labels:
    app: ${APP_NAME}
spec:
  type: ${SERVICE_TYPE:=ClusterIP}
  selector:
    app: ${APP_NAME}
  ports:
    - name: http
      port: ${SERVICE_PORT}
      targetPort: ${CONTAINER_PORT}
      protocol: TCP
"""

DEFAULT_TEMPLATES = [DEPLOYMENT_TEMPLATE, SERVICE_TEMPLATE]


@dataclass
class RenderedManifests:
    """Fully resolved manifest documents."""

    documents: list[dict[str, Any]] = field(default_factory=list)

    def of_kind(self, kind: str) -> list[dict[str, Any]]:
        """Return the documents of the specified kind."""
        return [doc for doc in self.documents if doc.get("kind") == kind]

    @property
    def deployments(self) -> list[dict[str, Any]]:
        """All Deployment documents."""
        return self.of_kind(DEPLOYMENT_KIND)

    @property
    def images(self) -> list[str]:
        """Container images referenced by all Deployments."""
        return [
            container["image"]
            for doc in self.deployments
            for container in _containers(doc)
        ]

    def yaml(self) -> str:
        """Return the documents as a multi-document YAML string."""
        return yaml.dump_all(self.documents, sort_keys=False, explicit_start=True)


def substitute(template: str, values: Mapping[str, str]) -> str:
    """Replace placeholders in the template.

    Raises UnresolvedPlaceholder naming every placeholder without a value.
    """
    missing: list[str] = []

    def replace(match: re.Match[str]) -> str:
        name = match.group("name")
        if match.group("escape"):
            return match.group(0)[1:]
        if name in values:
            return str(values[name])
        if (default := match.group("default")) is not None:
            return default
        if name not in missing:
            missing.append(name)
        return match.group(0)

    result = _PLACEHOLDER_RE.sub(replace, template)
    if missing:
        raise UnresolvedPlaceholder(missing)
    return result


def _mapping(value: Any, doc: dict[str, Any], path: str) -> dict[str, Any]:
    """Return the value if it is an object, treating a missing value as empty."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise RenderFailure(f"{_name(doc)} {path} must be an object: {value!r}")
    return value


def _containers(doc: dict[str, Any]) -> list[dict[str, Any]]:
    spec = _mapping(doc.get("spec"), doc, "spec")
    template = _mapping(spec.get("template"), doc, "spec.template")
    pod_spec = _mapping(template.get("spec"), doc, "spec.template.spec")
    containers = pod_spec.get("containers") or []
    if not isinstance(containers, list):
        raise RenderFailure(f"{_name(doc)} containers must be a list: {containers!r}")
    return [
        _mapping(container, doc, "spec.template.spec.containers[]")
        for container in containers
    ]


def _name(doc: dict[str, Any]) -> str:
    metadata = doc.get("metadata")
    name = metadata.get("name", "<unnamed>") if isinstance(metadata, dict) else "<unnamed>"
    return f"{doc.get('kind')}/{name}"


def _is_port(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 < value < 65536


def _ports(doc: dict[str, Any], ports: Any, path: str) -> list[dict[str, Any]]:
    if ports is None:
        return []
    if not isinstance(ports, list):
        raise RenderFailure(f"{_name(doc)} {path} must be a list: {ports!r}")
    return [_mapping(port, doc, f"{path}[]") for port in ports]


def _validate(doc: dict[str, Any]) -> None:
    """Check required fields of the rendered documents."""
    kind = doc.get("kind")
    if not kind or not doc.get("apiVersion"):
        raise RenderFailure(f"Rendered document missing kind or apiVersion: {doc}")
    if not _mapping(doc.get("metadata"), doc, "metadata").get("name"):
        raise UnresolvedPlaceholder(["metadata.name"], f"{kind} missing metadata.name")
    spec = _mapping(doc.get("spec"), doc, "spec")
    if kind == DEPLOYMENT_KIND:
        replicas = spec.get("replicas")
        if not isinstance(replicas, int) or isinstance(replicas, bool):
            raise UnresolvedPlaceholder(
                ["spec.replicas"], f"{_name(doc)} has invalid replicas: {replicas!r}"
            )
        if not (containers := _containers(doc)):
            raise UnresolvedPlaceholder(
                ["spec.template.spec.containers"], f"{_name(doc)} has no containers"
            )
        container_ports = []
        for container in containers:
            if not container.get("image"):
                raise UnresolvedPlaceholder(
                    ["image"], f"{_name(doc)} container has no image"
                )
            container_ports.extend(_ports(doc, container.get("ports"), "ports"))
        if not container_ports:
            raise UnresolvedPlaceholder(
                ["containerPort"], f"{_name(doc)} has no container ports"
            )
        for port in container_ports:
            if not _is_port(port.get("containerPort")):
                raise UnresolvedPlaceholder(
                    ["containerPort"],
                    f"{_name(doc)} has invalid containerPort: "
                    f"{port.get('containerPort')!r}",
                )
    elif kind == SERVICE_KIND:
        if not (ports := _ports(doc, spec.get("ports"), "spec.ports")):
            raise UnresolvedPlaceholder(["spec.ports"], f"{_name(doc)} has no ports")
        for port in ports:
            if not _is_port(port.get("port")):
                raise UnresolvedPlaceholder(
                    ["port"], f"{_name(doc)} has invalid port: {port.get('port')!r}"
                )


def render(templates: Iterable[str], values: Mapping[str, str]) -> RenderedManifests:
    """Render the templates with the values and return the documents."""
    if IMAGE_VAR not in values:
        raise UnresolvedPlaceholder([IMAGE_VAR])
    documents: list[dict[str, Any]] = []
    for template in templates:
        content = substitute(template, values)
        try:
            docs = list(yaml.safe_load_all(content))
        except yaml.YAMLError as err:
            raise RenderFailure(f"Unable to parse rendered manifest: {err}") from err
        for doc in docs:
            if doc is None:
                continue
            if not isinstance(doc, dict):
                raise RenderFailure(f"Rendered manifest is not an object: {doc!r}")
            _validate(doc)
            documents.append(doc)
    if not documents:
        raise RenderFailure("No manifests were rendered")
    _LOGGER.debug("Rendered %d documents", len(documents))
    return RenderedManifests(documents=documents)


async def load_templates(paths: Iterable[Path]) -> list[str]:
    """Read the template files."""
    templates = []
    for path in paths:
        try:
            async with aiofiles.open(str(path)) as template_file:
                templates.append(await template_file.read())
        except FileNotFoundError as err:
            raise RenderFailure(f"Template file not found: {path}") from err
    return templates
