from __future__ import annotations

import logging
import os
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from digestwatch.src.errors import ContainerNotFoundError, DeploymentReadError, RestartError

LOGGER = logging.getLogger(__name__)

RESTART_ANNOTATION_KEY = "kubectl.kubernetes.io/restartedAt"

# Unreachable or timed-out API servers surface as urllib3 errors, not ApiException.
_KUBE_ERRORS = (ApiException, HTTPError)


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def load_kube_configuration(kubeconfig: str | None = None) -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to a kubeconfig file.  ``$VAR`` references in *kubeconfig* are expanded.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        path = os.path.expandvars(kubeconfig) if kubeconfig else None
        config.load_kube_config(config_file=path)
        LOGGER.info("Loaded kubeconfig %s", path or "(default)")


def build_clients() -> tuple[CoreV1Api, AppsV1Api]:
    """Return CoreV1 and AppsV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api()


def format_label_selector(selector: Any) -> str:
    """Render a ``V1LabelSelector`` as the string form accepted by list calls."""
    clauses: list[str] = []
    match_labels = getattr(selector, "match_labels", None) or {}
    for key in sorted(match_labels):
        clauses.append(f"{key}={match_labels[key]}")

    for expression in getattr(selector, "match_expressions", None) or []:
        key = expression.key
        operator = expression.operator
        values = ",".join(expression.values or [])
        if operator == "In":
            clauses.append(f"{key} in ({values})")
        elif operator == "NotIn":
            clauses.append(f"{key} notin ({values})")
        elif operator == "Exists":
            clauses.append(key)
        elif operator == "DoesNotExist":
            clauses.append(f"!{key}")
    return ",".join(clauses)


def _pod_is_ready(pod: Any) -> bool:
    conditions = getattr(getattr(pod, "status", None), "conditions", None) or []
    return any(c.type == "Ready" and c.status == "True" for c in conditions)


class DeploymentInspector:
    """Reads the digest a deployment is actually running and restarts it.

    The deployment spec is pinned to a tag, so drift is only visible on the
    pods: each container status reports the resolved ``imageID``
    (``registry/repo@sha256:...``).
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        annotation_key: str = RESTART_ANNOTATION_KEY,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.core_api = core_api
        self.apps_api = apps_api
        self.annotation_key = annotation_key
        self.now_fn = now_fn

    def _read_deployment(self, namespace: str, name: str) -> Any:
        try:
            return self.apps_api.read_namespaced_deployment(name=name, namespace=namespace)
        except _KUBE_ERRORS as exc:
            raise DeploymentReadError(namespace, name, getattr(exc, "status", None)) from exc

    def current_running_digest(self, namespace: str, name: str, container: str) -> str:
        """Return the image identifier of *container* in the first healthy pod.

        Terminating pods, pods outside the ``Running`` phase, pods without a
        ``Ready`` condition and non-ready container statuses are ignored so a
        rollout in progress is never mistaken for drift.
        """
        deployment = self._read_deployment(namespace, name)
        selector = format_label_selector(deployment.spec.selector)
        try:
            pods = self.core_api.list_namespaced_pod(namespace=namespace, label_selector=selector)
        except _KUBE_ERRORS as exc:
            raise DeploymentReadError(namespace, name, getattr(exc, "status", None)) from exc

        for pod in pods.items or []:
            if getattr(pod.metadata, "deletion_timestamp", None) is not None:
                continue
            if pod.status is None or pod.status.phase != "Running":
                continue
            if not _pod_is_ready(pod):
                continue
            for status in pod.status.container_statuses or []:
                if status.name == container and status.ready and status.image_id:
                    return status.image_id

        raise ContainerNotFoundError(namespace, name, container)

    def rollout_restart(self, namespace: str, name: str) -> None:
        """Stamp the restart annotation on the pod template, like ``kubectl rollout restart``.

        Only the annotation changes; the container image stays on its tag and
        ``imagePullPolicy: Always`` makes the new pods pull the fresh digest.
        """
        deployment = self._read_deployment(namespace, name)
        template_metadata = deployment.spec.template.metadata
        if template_metadata is None:
            template_metadata = client.V1ObjectMeta()
            deployment.spec.template.metadata = template_metadata
        if template_metadata.annotations is None:
            template_metadata.annotations = {}
        template_metadata.annotations[self.annotation_key] = self.now_fn()

        try:
            self.apps_api.replace_namespaced_deployment(
                name=name, namespace=namespace, body=deployment
            )
        except _KUBE_ERRORS as exc:
            raise RestartError(namespace, name, getattr(exc, "status", None)) from exc
