from __future__ import annotations

from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException
from urllib3.exceptions import MaxRetryError, ProtocolError

from digestwatch.src.errors import ContainerNotFoundError, DeploymentReadError, RestartError
from digestwatch.src.kube import (
    DeploymentInspector,
    build_clients,
    format_label_selector,
    load_kube_configuration,
)

IMAGE_ID = "docker.io/library/nginx@sha256:" + "a" * 64


def make_deployment(annotations: dict[str, str] | None = None) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name="web", namespace="default"),
        spec=SimpleNamespace(
            selector=SimpleNamespace(match_labels={"app": "web"}, match_expressions=None),
            template=SimpleNamespace(metadata=SimpleNamespace(annotations=annotations)),
        ),
    )


def make_pod(
    phase: str = "Running",
    ready: bool = True,
    terminating: bool = False,
    container: str = "nginx",
    container_ready: bool = True,
    image_id: str = IMAGE_ID,
) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name="web-abc",
            deletion_timestamp="2026-01-01T00:00:00Z" if terminating else None,
        ),
        status=SimpleNamespace(
            phase=phase,
            conditions=[SimpleNamespace(type="Ready", status="True" if ready else "False")],
            container_statuses=[
                SimpleNamespace(name=container, ready=container_ready, image_id=image_id)
            ],
        ),
    )


class FakeAppsApi:
    def __init__(self, deployment: Any = None, read_status: int | None = None) -> None:
        self.deployment = deployment if deployment is not None else make_deployment()
        self.read_status = read_status
        self.replace_status: int | None = None
        self.replaced: list[tuple[str, str, Any]] = []

    def read_namespaced_deployment(self, name: str, namespace: str) -> Any:
        if self.read_status is not None:
            raise ApiException(status=self.read_status, reason="boom")
        return self.deployment

    def replace_namespaced_deployment(self, name: str, namespace: str, body: Any) -> None:
        if self.replace_status is not None:
            raise ApiException(status=self.replace_status, reason="conflict")
        self.replaced.append((namespace, name, body))


class FakeCoreApi:
    def __init__(self, pods: list[Any]) -> None:
        self.pods = pods
        self.last_selector = ""

    def list_namespaced_pod(self, namespace: str, label_selector: str) -> SimpleNamespace:
        self.last_selector = label_selector
        return SimpleNamespace(items=self.pods)


def _inspector(pods: list[Any], apps_api: FakeAppsApi | None = None) -> DeploymentInspector:
    return DeploymentInspector(
        core_api=FakeCoreApi(pods),  # type: ignore[arg-type]
        apps_api=apps_api or FakeAppsApi(),  # type: ignore[arg-type]
        annotation_key="kubectl.kubernetes.io/restartedAt",
        now_fn=lambda: "2026-01-01T00:00:00Z",
    )


# ---------------------------------------------------------------------------
# Client bootstrap
# ---------------------------------------------------------------------------


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("digestwatch.src.kube.config.load_incluster_config") as mock_incluster,
        patch("digestwatch.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_expands_kubeconfig_path(monkeypatch: pytest.MonkeyPatch) -> None:
    from kubernetes.config.config_exception import ConfigException

    monkeypatch.setenv("HOME", "/home/ops")
    with (
        patch(
            "digestwatch.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("digestwatch.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration("$HOME/.kube/config")

    mock_kubeconfig.assert_called_once_with(config_file="/home/ops/.kube/config")


def test_build_clients_returns_tuple() -> None:
    with patch("digestwatch.src.kube.client") as mock_client:
        mock_client.CoreV1Api.return_value = SimpleNamespace(name="core")
        mock_client.AppsV1Api.return_value = SimpleNamespace(name="apps")
        core, apps = build_clients()

    assert core.name == "core"
    assert apps.name == "apps"


def test_format_label_selector_renders_labels_and_expressions() -> None:
    selector = SimpleNamespace(
        match_labels={"tier": "web", "app": "shop"},
        match_expressions=[
            SimpleNamespace(key="env", operator="In", values=["prod", "staging"]),
            SimpleNamespace(key="canary", operator="DoesNotExist", values=None),
        ],
    )

    assert format_label_selector(selector) == "app=shop,tier=web,env in (prod,staging),!canary"


# ---------------------------------------------------------------------------
# Running digest
# ---------------------------------------------------------------------------


def test_current_running_digest_returns_ready_container_image_id() -> None:
    inspector = _inspector([make_pod()])

    assert inspector.current_running_digest("default", "web", "nginx") == IMAGE_ID
    assert inspector.core_api.last_selector == "app=web"  # type: ignore[attr-defined]


@pytest.mark.parametrize(
    "pod",
    [
        make_pod(terminating=True),
        make_pod(phase="Pending"),
        make_pod(ready=False),
        make_pod(container_ready=False),
        make_pod(container="sidecar"),
    ],
    ids=["terminating", "pending", "pod-not-ready", "container-not-ready", "other-container"],
)
def test_current_running_digest_ignores_unhealthy_pods(pod: SimpleNamespace) -> None:
    inspector = _inspector([pod])

    with pytest.raises(ContainerNotFoundError) as exc_info:
        inspector.current_running_digest("default", "web", "nginx")

    assert exc_info.value.namespace == "default"
    assert exc_info.value.name == "web"
    assert exc_info.value.container == "nginx"


def test_current_running_digest_skips_to_first_healthy_pod() -> None:
    healthy_id = "docker.io/library/nginx@sha256:" + "b" * 64
    inspector = _inspector([make_pod(terminating=True), make_pod(image_id=healthy_id)])

    assert inspector.current_running_digest("default", "web", "nginx") == healthy_id


def test_current_running_digest_with_no_pods_is_not_found() -> None:
    with pytest.raises(ContainerNotFoundError):
        _inspector([]).current_running_digest("default", "web", "nginx")


def test_current_running_digest_wraps_deployment_read_errors() -> None:
    inspector = _inspector([make_pod()], apps_api=FakeAppsApi(read_status=404))

    with pytest.raises(DeploymentReadError) as exc_info:
        inspector.current_running_digest("default", "web", "nginx")

    assert exc_info.value.status == 404


# ---------------------------------------------------------------------------
# Rollout restart
# ---------------------------------------------------------------------------


def test_rollout_restart_stamps_annotation_and_replaces() -> None:
    apps_api = FakeAppsApi(make_deployment(annotations={"existing": "kept"}))
    inspector = _inspector([], apps_api=apps_api)

    inspector.rollout_restart("default", "web")

    [(namespace, name, body)] = apps_api.replaced
    assert (namespace, name) == ("default", "web")
    annotations = body.spec.template.metadata.annotations
    assert annotations["kubectl.kubernetes.io/restartedAt"] == "2026-01-01T00:00:00Z"
    assert annotations["existing"] == "kept"


def test_rollout_restart_creates_missing_annotation_map() -> None:
    apps_api = FakeAppsApi(make_deployment(annotations=None))
    inspector = _inspector([], apps_api=apps_api)

    inspector.rollout_restart("default", "web")

    body = apps_api.replaced[0][2]
    assert body.spec.template.metadata.annotations == {
        "kubectl.kubernetes.io/restartedAt": "2026-01-01T00:00:00Z"
    }


def test_rollout_restart_never_touches_container_image() -> None:
    apps_api = MagicMock()
    deployment = make_deployment()
    deployment.spec.template.spec = SimpleNamespace(
        containers=[SimpleNamespace(name="nginx", image="nginx:latest")]
    )
    apps_api.read_namespaced_deployment.return_value = deployment
    inspector = DeploymentInspector(core_api=MagicMock(), apps_api=apps_api)

    inspector.rollout_restart("default", "web")

    body = apps_api.replace_namespaced_deployment.call_args.kwargs["body"]
    assert body.spec.template.spec.containers[0].image == "nginx:latest"


def test_rollout_restart_wraps_write_failures() -> None:
    apps_api = FakeAppsApi()
    apps_api.replace_status = 409
    inspector = _inspector([], apps_api=apps_api)

    with pytest.raises(RestartError) as exc_info:
        inspector.rollout_restart("default", "web")

    assert exc_info.value.status == 409


# ---------------------------------------------------------------------------
# API server unreachable
# ---------------------------------------------------------------------------


def _unreachable() -> MaxRetryError:
    return MaxRetryError(None, "/apis/apps/v1/namespaces/default/deployments/web", "timed out")


def test_current_running_digest_wraps_unreachable_deployment_read() -> None:
    apps_api = MagicMock()
    apps_api.read_namespaced_deployment.side_effect = _unreachable()
    inspector = DeploymentInspector(core_api=MagicMock(), apps_api=apps_api)

    with pytest.raises(DeploymentReadError) as exc_info:
        inspector.current_running_digest("default", "web", "nginx")

    assert exc_info.value.status is None
    assert isinstance(exc_info.value.__cause__, MaxRetryError)


def test_current_running_digest_wraps_unreachable_pod_list() -> None:
    core_api = MagicMock()
    core_api.list_namespaced_pod.side_effect = ProtocolError("connection reset")
    inspector = DeploymentInspector(core_api=core_api, apps_api=FakeAppsApi())  # type: ignore[arg-type]

    with pytest.raises(DeploymentReadError) as exc_info:
        inspector.current_running_digest("default", "web", "nginx")

    assert exc_info.value.status is None


def test_rollout_restart_wraps_unreachable_write() -> None:
    apps_api = MagicMock()
    apps_api.read_namespaced_deployment.return_value = make_deployment()
    apps_api.replace_namespaced_deployment.side_effect = _unreachable()
    inspector = DeploymentInspector(core_api=MagicMock(), apps_api=apps_api)

    with pytest.raises(RestartError) as exc_info:
        inspector.rollout_restart("default", "web")

    assert exc_info.value.status is None
