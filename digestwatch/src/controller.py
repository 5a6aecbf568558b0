from __future__ import annotations

import enum
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from kubernetes.client import AppsV1Api, CoreV1Api

from digestwatch.src.config import ControllerConfig, DeploymentTarget, Image, is_default_registry
from digestwatch.src.errors import (
    AuthRequestError,
    ContainerNotFoundError,
    DeploymentReadError,
    DigestWatchError,
    RegistryNotFoundError,
    RegistryProtocolError,
    RegistryRequestError,
    RegistryTransportError,
    RestartError,
)
from digestwatch.src.kube import DeploymentInspector
from digestwatch.src.metrics import METRICS
from digestwatch.src.registry import RegistryClient
from digestwatch.src.tracker import DigestTracker


class SyncOutcome(enum.Enum):
    IN_SYNC = "in_sync"
    RESTARTED = "restarted"
    RESTART_FAILED = "restart_failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ImageCheckResult:
    """Immutable record of one image's check within a cycle.

    ``digest`` is ``None`` when resolution failed (see ``error``) or the
    cycle was cancelled before the registry was contacted.
    """

    image_key: str
    digest: str | None
    changed: bool
    outcomes: tuple[tuple[DeploymentTarget, SyncOutcome], ...] = ()
    error: DigestWatchError | None = None

    @property
    def restarted(self) -> int:
        return sum(1 for _, outcome in self.outcomes if outcome is SyncOutcome.RESTARTED)


def image_prefix(image: Image) -> str:
    """Return the string deployment images must start with to be affected by *image*.

    The default hub is implicit in deployment images (``nginx:latest``), any
    other registry is spelled out by host (``ghcr.io/org/app:latest``).
    """
    if is_default_registry(image.registry):
        return image.name
    host = image.registry.removeprefix("https://").removeprefix("http://").rstrip("/")
    return f"{host}/{image.name}"


class DigestController:
    """Polls registries for digest changes and restarts drifted deployments.

    Every ``check_interval_seconds`` the controller resolves all configured
    images concurrently (one worker thread per image) and waits for all of
    them before sleeping again.  For each image, every deployment whose
    ``image`` starts with :func:`image_prefix` is synced: the digest reported
    by its running pods is compared against the registry digest and the
    deployment is rollout-restarted when they differ.

    Syncing runs on every cycle, not only when the registry digest changed,
    so deployments that drift on their own (scale-ups pulling a cached
    layer, manual rollbacks) are corrected too.

    Key internal state:
        ``tracker``
            Last registry digest per ``Image.key``.  Only used to report
            registry-side changes; the restart decision never reads it.
        ``ready``
            Set once the first cycle has completed, cleared on shutdown.
    """

    def __init__(
        self,
        config: ControllerConfig,
        registry_client: RegistryClient,
        inspector: DeploymentInspector,
        tracker: DigestTracker | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.registry_client = registry_client
        self.inspector = inspector
        self.tracker = tracker or DigestTracker()
        self.logger = logger or logging.getLogger(__name__)
        self.ready = threading.Event()

    def _log_failure(self, exc: DigestWatchError, identity: str) -> None:
        METRICS.errors_total.labels(kind=type(exc).__name__).inc()
        if isinstance(exc, ContainerNotFoundError):
            self.logger.info("Skipping sync for %s: %s", identity, exc)
        elif isinstance(exc, DeploymentReadError):
            if exc.status == 404:
                self.logger.info("Skipping sync for %s: deployment not found", identity)
            else:
                self.logger.warning("Skipping sync for %s: %s", identity, exc)
        elif isinstance(exc, RegistryNotFoundError):
            self.logger.error("Cannot check %s: %s", identity, exc)
        elif isinstance(
            exc,
            (RegistryProtocolError, RegistryRequestError, AuthRequestError, RegistryTransportError),
        ):
            self.logger.warning("Failed to resolve digest for %s: %s", identity, exc)
        elif isinstance(exc, RestartError):
            self.logger.error("Failed to restart %s: %s", identity, exc)
        else:
            self.logger.error("Unclassified failure for %s: %s", identity, exc)

    def _sync_deployment(self, target: DeploymentTarget, digest: str) -> SyncOutcome:
        """Restart *target* if its running image identifier does not end with *digest*."""
        identity = f"{target.namespace}/{target.name}/{target.container}"
        try:
            running = self.inspector.current_running_digest(
                target.namespace, target.name, target.container
            )
        except (ContainerNotFoundError, DeploymentReadError) as exc:
            self._log_failure(exc, identity)
            METRICS.sync_skipped_total.labels(namespace=target.namespace).inc()
            return SyncOutcome.SKIPPED

        if running.endswith(digest):
            self.logger.debug("Deployment %s is running %s", identity, digest)
            return SyncOutcome.IN_SYNC

        self.logger.info(
            "Deployment %s runs %s but registry has %s; restarting", identity, running, digest
        )
        try:
            self.inspector.rollout_restart(target.namespace, target.name)
        except RestartError as exc:
            self._log_failure(exc, identity)
            METRICS.restart_errors_total.labels(namespace=target.namespace).inc()
            return SyncOutcome.RESTART_FAILED

        METRICS.restarts_total.labels(namespace=target.namespace).inc()
        self.logger.info("Triggered rollout restart for deployment %s", identity)
        return SyncOutcome.RESTARTED

    def _sync_deployment_guarded(self, target: DeploymentTarget, digest: str) -> SyncOutcome:
        try:
            return self._sync_deployment(target, digest)
        except Exception:
            # Sibling deployments of the same image are still synced.
            self.logger.exception(
                "Unexpected error while syncing %s/%s", target.namespace, target.name
            )
            METRICS.errors_total.labels(kind="unexpected").inc()
            METRICS.sync_skipped_total.labels(namespace=target.namespace).inc()
            return SyncOutcome.SKIPPED

    def matching_deployments(self, image: Image) -> list[DeploymentTarget]:
        prefix = image_prefix(image)
        return [d for d in self.config.deployments if d.image.startswith(prefix)]

    def check_image(self, image: Image, stop: threading.Event) -> ImageCheckResult:
        """Resolve, record and sync one image.  Never raises for expected failures."""
        key = image.key
        if stop.is_set():
            return ImageCheckResult(image_key=key, digest=None, changed=False)

        try:
            registry = self.config.find_registry(image.registry)
            if registry is None:
                raise RegistryNotFoundError(key, image.registry)
            digest = self.registry_client.resolve_digest(image, registry)
        except DigestWatchError as exc:
            self._log_failure(exc, key)
            METRICS.checks_total.labels(image=key, result="error").inc()
            return ImageCheckResult(image_key=key, digest=None, changed=False, error=exc)

        previous = self.tracker.set(key, digest)
        METRICS.tracked_images.set(len(self.tracker))
        METRICS.checks_total.labels(image=key, result="ok").inc()
        changed = previous != digest
        if previous is None:
            self.logger.info("Initial digest for %s: %s", key, digest)
        elif changed:
            self.logger.info("Digest changed for %s: %s -> %s", key, previous, digest)
        else:
            self.logger.debug("No change for %s (digest: %s)", key, digest)
        if changed:
            METRICS.digest_changes_total.labels(image=key).inc()

        outcomes: list[tuple[DeploymentTarget, SyncOutcome]] = []
        for target in self.matching_deployments(image):
            if stop.is_set():
                outcomes.append((target, SyncOutcome.CANCELLED))
                continue
            outcomes.append((target, self._sync_deployment_guarded(target, digest)))

        return ImageCheckResult(
            image_key=key, digest=digest, changed=changed, outcomes=tuple(outcomes)
        )

    def _check_image_guarded(self, image: Image, stop: threading.Event) -> ImageCheckResult:
        try:
            return self.check_image(image, stop)
        except Exception:
            # An image failure must never abort the cycle.
            self.logger.exception("Unexpected error while checking %s", image.key)
            METRICS.checks_total.labels(image=image.key, result="error").inc()
            return ImageCheckResult(image_key=image.key, digest=None, changed=False)

    def check_once(self, stop: threading.Event | None = None) -> list[ImageCheckResult]:
        """Run one reconciliation cycle and return once every image task finished."""
        stop = stop or threading.Event()
        images = self.config.images
        if not images:
            self.logger.info("No images configured; nothing to check")
            return []

        self.logger.info("Checking %d image(s) for digest updates", len(images))
        started = time.monotonic()
        with ThreadPoolExecutor(
            max_workers=len(images), thread_name_prefix="digestwatch-check"
        ) as pool:
            futures = [pool.submit(self._check_image_guarded, image, stop) for image in images]
            results = [future.result() for future in futures]
        METRICS.cycle_duration_seconds.observe(time.monotonic() - started)
        return results

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Check immediately, then once per interval until *shutdown_event* is set.

        Ticks are scheduled at a fixed rate from each cycle's start; a cycle
        that overruns the interval is followed immediately by the next one.
        The event is checked before every cycle, so no cycle starts after
        shutdown was requested.  Returning normally means a clean shutdown.
        """
        stop = shutdown_event or threading.Event()
        interval = self.config.check_interval_seconds
        self.logger.info("Starting digest controller (interval=%ss)", interval)

        while not stop.is_set():
            cycle_started = time.monotonic()
            self.check_once(stop)
            self.ready.set()
            remaining = max(0.0, interval - (time.monotonic() - cycle_started))
            if stop.wait(timeout=remaining):
                break

        self.ready.clear()
        self.logger.info("Digest controller stopped")


def build_controller(
    config: ControllerConfig, core_api: CoreV1Api, apps_api: AppsV1Api
) -> DigestController:
    """Wire a :class:`DigestController` and its collaborators from *config*."""
    return DigestController(
        config=config,
        registry_client=RegistryClient(timeout=config.registry_timeout_seconds),
        inspector=DeploymentInspector(
            core_api=core_api,
            apps_api=apps_api,
            annotation_key=config.rollout_annotation_key,
        ),
    )
