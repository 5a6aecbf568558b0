from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Any

import requests

from digestwatch.src.config import DOCKER_HUB_REGISTRY, Image, Registry, RegistryAuth
from digestwatch.src.errors import (
    AuthRequestError,
    RegistryProtocolError,
    RegistryRequestError,
    RegistryTransportError,
)

LOGGER = logging.getLogger(__name__)

MANIFEST_MEDIA_TYPE = "application/vnd.docker.distribution.manifest.v2+json"
_CHALLENGE_PARAM = re.compile(r'([A-Za-z_][A-Za-z0-9_-]*)\s*=\s*"([^"]*)"')


@dataclass(frozen=True)
class AuthChallenge:
    """Parameters of a ``WWW-Authenticate: Bearer ...`` challenge."""

    realm: str
    service: str | None
    scope: str | None


def normalize_registry(name: str) -> str:
    return name.rstrip("/") or DOCKER_HUB_REGISTRY


def normalize_image_path(registry_url: str, image_name: str) -> str:
    """Official hub images live under ``library/`` when the name is unqualified."""
    if registry_url == DOCKER_HUB_REGISTRY and "/" not in image_name:
        return f"library/{image_name}"
    return image_name


def expand_credentials(auth: RegistryAuth | None) -> tuple[str, str] | None:
    """Expand ``$VAR`` placeholders now so rotated secrets apply without a restart."""
    if auth is None:
        return None
    username = os.path.expandvars(auth.username)
    password = os.path.expandvars(auth.password)
    if not username:
        LOGGER.debug("Ignoring credentials: username %r expanded to an empty string", auth.username)
        return None
    return username, password


def parse_auth_challenge(header: str | None, registry: str) -> AuthChallenge:
    """Parse a ``WWW-Authenticate`` header value.

    Only the ``Bearer`` scheme is accepted and ``realm`` is mandatory.
    Attributes follow the ``key="value"`` grammar separated by commas.
    """
    if not header or not header.strip():
        raise RegistryProtocolError(registry, "401 response without WWW-Authenticate header")

    scheme, _, params_str = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        raise RegistryProtocolError(registry, f"unsupported auth scheme {scheme!r}")

    params = {key.lower(): value for key, value in _CHALLENGE_PARAM.findall(params_str)}
    realm = params.get("realm")
    if not realm:
        raise RegistryProtocolError(registry, "bearer challenge is missing realm")

    return AuthChallenge(realm=realm, service=params.get("service"), scope=params.get("scope"))


class RegistryClient:
    """Resolves image digests through the Docker Registry HTTP API V2.

    The manifest request is sent once without a token (with basic auth when
    credentials are configured).  A ``401`` carrying a bearer challenge
    triggers a token exchange at the challenge realm, after which the
    manifest request is retried with ``Authorization: Bearer``.

    The session is shared across worker threads; it carries no per-image
    state, every call passes its own headers and timeout.
    """

    def __init__(self, session: requests.Session | None = None, timeout: float = 10) -> None:
        self.session = session or requests.Session()
        self.timeout = timeout

    def resolve_digest(self, image: Image, registry: Registry) -> str:
        registry_url = normalize_registry(registry.name)
        image_path = normalize_image_path(registry_url, image.name)
        credentials = expand_credentials(registry.auth)
        manifest_url = f"{registry_url}/v2/{image_path}/manifests/{image.tag}"
        headers = {"Accept": MANIFEST_MEDIA_TYPE}

        response = self._get(manifest_url, headers=headers, auth=credentials)
        if response.status_code == 401:
            challenge = parse_auth_challenge(
                response.headers.get("WWW-Authenticate"), registry_url
            )
            token = self.fetch_token(challenge, image_path, credentials)
            LOGGER.debug("Obtained bearer token for %s from %s", image.key, challenge.realm)
            response = self._get(
                manifest_url,
                headers={**headers, "Authorization": f"Bearer {token}"},
            )

        if response.status_code != 200:
            raise RegistryRequestError(manifest_url, response.status_code, response.text)

        return self._extract_digest(response, registry_url)

    def fetch_token(
        self,
        challenge: AuthChallenge,
        image_path: str,
        credentials: tuple[str, str] | None,
    ) -> str:
        params = {"scope": challenge.scope or f"repository:{image_path}:pull"}
        if challenge.service:
            params["service"] = challenge.service

        response = self._get(challenge.realm, params=params, auth=credentials)
        if response.status_code != 200:
            raise AuthRequestError(challenge.realm, response.status_code)

        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthRequestError(
                challenge.realm, response.status_code, "token response is not JSON"
            ) from exc

        token = None
        if isinstance(payload, dict):
            token = payload.get("token") or payload.get("access_token")
        if not token:
            raise AuthRequestError(
                challenge.realm, response.status_code, "response has neither token nor access_token"
            )
        return str(token)

    def _get(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
        auth: tuple[str, str] | None = None,
    ) -> requests.Response:
        try:
            return self.session.get(
                url, headers=headers, params=params, auth=auth, timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise RegistryTransportError(url, exc) from exc

    @staticmethod
    def _extract_digest(response: requests.Response, registry_url: str) -> str:
        """Prefer ``Docker-Content-Digest``; fall back to the manifest's config digest."""
        digest = response.headers.get("Docker-Content-Digest")
        if digest:
            return digest

        try:
            manifest: Any = response.json()
        except ValueError as exc:
            raise RegistryProtocolError(registry_url, "failed to decode manifest") from exc

        config = manifest.get("config") if isinstance(manifest, dict) else None
        digest = config.get("digest") if isinstance(config, dict) else None
        if not digest:
            raise RegistryProtocolError(registry_url, "manifest has no digest")
        return str(digest)
