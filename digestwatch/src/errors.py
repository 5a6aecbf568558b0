from __future__ import annotations


class DigestWatchError(Exception):
    """Base class for every failure the controller knows how to classify."""


class RegistryNotFoundError(DigestWatchError):
    """An image references a registry that is not in the configuration."""

    def __init__(self, image_key: str, registry: str) -> None:
        self.image_key = image_key
        self.registry = registry
        super().__init__(f"registry {registry!r} not configured for image {image_key}")


class RegistryProtocolError(DigestWatchError):
    """The registry answered with something the V2 protocol does not allow."""

    def __init__(self, registry: str, reason: str) -> None:
        self.registry = registry
        self.reason = reason
        super().__init__(f"registry protocol error from {registry}: {reason}")


class RegistryRequestError(DigestWatchError):
    """A manifest request finished with a non-200 status."""

    def __init__(self, url: str, status: int, body: str) -> None:
        self.url = url
        self.status = status
        self.body = body
        super().__init__(f"registry request failed: {url} returned {status}: {body[:200]}")


class AuthRequestError(DigestWatchError):
    """The token endpoint refused the exchange or returned no token."""

    def __init__(self, realm: str, status: int, reason: str = "") -> None:
        self.realm = realm
        self.status = status
        self.reason = reason
        detail = f": {reason}" if reason else ""
        super().__init__(f"auth request to {realm} failed with status {status}{detail}")


class RegistryTransportError(DigestWatchError):
    """Network failure or timeout while talking to a registry or token endpoint."""

    def __init__(self, url: str, cause: Exception) -> None:
        self.url = url
        self.cause = cause
        super().__init__(f"transport error for {url}: {cause}")


class ContainerNotFoundError(DigestWatchError):
    """No ready, running pod reports the container.  Expected during rollouts."""

    def __init__(self, namespace: str, name: str, container: str) -> None:
        self.namespace = namespace
        self.name = name
        self.container = container
        super().__init__(
            f"container {container} not found in deployment {namespace}/{name} "
            "or no ready running pods found"
        )


class DeploymentReadError(DigestWatchError):
    """Reading a deployment or its pods from the Kubernetes API failed."""

    def __init__(self, namespace: str, name: str, status: int | None) -> None:
        self.namespace = namespace
        self.name = name
        self.status = status
        super().__init__(f"failed to read deployment {namespace}/{name} (status={status})")


class RestartError(DigestWatchError):
    """Writing the restart annotation back to the deployment failed."""

    def __init__(self, namespace: str, name: str, status: int | None) -> None:
        self.namespace = namespace
        self.name = name
        self.status = status
        super().__init__(f"failed to restart deployment {namespace}/{name} (status={status})")
