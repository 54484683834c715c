from __future__ import annotations

import base64
import logging
import os
import ssl
import tempfile
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
from kubernetes.client import ApiException, CoreV1Api

from clusterop.src.kube import ObjectKey
from clusterop.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

DEFAULT_CLIENT_PORT = 2379
CONTROL_SERVICE = "pd"
HEALTH_PATH = "/pd/api/v1/health"
MEMBERS_PATH = "/pd/api/v1/members"
SUBSERVICE_HEALTH_PATH = "/api/v1/health"
CLIENT_SECRET_SUFFIX = "cluster-client-secret"


class ControlServiceError(Exception):
    """A control-service call failed: transport error, bad status, or unhealthy member."""


@dataclass(frozen=True)
class MemberEndpoint:
    """One addressable replica of the control service as last observed in status."""

    name: str
    client_url: str


@dataclass(frozen=True)
class ClientKey:
    """Cache key of a service-level client."""

    namespace: str
    name: str
    service: str = CONTROL_SERVICE
    cluster_domain: str = ""
    tls_enabled: bool = False
    headless: bool = False

    def __str__(self) -> str:
        domain = f"@{self.cluster_domain}" if self.cluster_domain else ""
        return f"{self.service}:{self.namespace}/{self.name}{domain}"


def control_service_url(
    namespace: str,
    name: str,
    *,
    service: str = CONTROL_SERVICE,
    tls_enabled: bool = False,
    cluster_domain: str = "",
    headless: bool = False,
) -> str:
    """Return the in-cluster URL of the ``service`` fronting cluster ``name``.

    ``headless`` selects the ``-peer`` service, which resolves across
    Kubernetes clusters when ``cluster_domain`` is set.
    """
    scheme = "https" if tls_enabled else "http"
    host = f"{name}-{service}"
    if headless:
        host += "-peer"
    host += f".{namespace}"
    if cluster_domain:
        host += f".svc.{cluster_domain}"
    return f"{scheme}://{host}:{DEFAULT_CLIENT_PORT}"


def client_secret_name(cluster_name: str) -> str:
    return f"{cluster_name}-{CLIENT_SECRET_SUFFIX}"


def load_tls_context(core_api: CoreV1Api, namespace: str, cluster_name: str) -> ssl.SSLContext:
    """Build a mutual-TLS context from the cluster client certificate Secret.

    The Secret carries PEM ``ca.crt``, ``tls.crt`` and ``tls.key`` entries.
    ``ssl`` only loads certificate chains from files, so the pair is written
    to private temporary files that are removed as soon as it is loaded.
    """
    secret_name = client_secret_name(cluster_name)
    try:
        secret = core_api.read_namespaced_secret(name=secret_name, namespace=namespace)
    except ApiException as exc:
        raise ControlServiceError(
            f"failed to read TLS secret {namespace}/{secret_name}: status={exc.status}"
        ) from exc

    data = getattr(secret, "data", None) or {}
    try:
        ca_pem, cert_pem, key_pem = (
            base64.b64decode(data[entry]) for entry in ("ca.crt", "tls.crt", "tls.key")
        )
    except KeyError as exc:
        raise ControlServiceError(
            f"TLS secret {namespace}/{secret_name} is missing {exc.args[0]}"
        ) from exc

    context = ssl.create_default_context(cadata=ca_pem.decode("utf-8"))
    paths: list[str] = []
    try:
        for pem in (cert_pem, key_pem):
            fd, path = tempfile.mkstemp(prefix="clusterop-tls-")
            paths.append(path)
            with os.fdopen(fd, "wb") as handle:
                handle.write(pem)
        context.load_cert_chain(certfile=paths[0], keyfile=paths[1])
    except ssl.SSLError as exc:
        raise ControlServiceError(
            f"TLS secret {namespace}/{secret_name} holds an invalid key pair"
        ) from exc
    finally:
        for path in paths:
            os.unlink(path)
    return context


class _BaseClient:
    service = CONTROL_SERVICE
    health_path = HEALTH_PATH

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float,
        verify: ssl.SSLContext | bool = True,
        transport: httpx.BaseTransport | None = None,
        pinned_member: str | None = None,
    ) -> None:
        self.base_url = base_url
        self.pinned_member = pinned_member
        self._http = httpx.Client(
            base_url=base_url,
            timeout=timeout,
            verify=verify,
            transport=transport,
        )

    def _get(self, path: str) -> httpx.Response:
        try:
            response = self._http.get(path)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ControlServiceError(f"GET {self.base_url}{path} failed: {exc}") from exc
        return response

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> _BaseClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __repr__(self) -> str:
        pinned = f", member={self.pinned_member}" if self.pinned_member else ""
        return f"{type(self).__name__}({self.base_url}{pinned})"


class ControlClient(_BaseClient):
    """HTTP client for the control service, bound to one service or member URL."""

    def get_health(self) -> list[dict[str, Any]]:
        """Return the per-member health report as served.

        Raises :class:`ControlServiceError` when the service cannot be
        reached, answers with an error status, or sends a body that is not a
        list of members. Unhealthy members are part of the report, not errors.
        """
        response = self._get(self.health_path)
        try:
            members = response.json()
        except ValueError as exc:
            raise ControlServiceError(f"undecodable health report from {self.base_url}") from exc
        if not isinstance(members, list) or not all(isinstance(member, dict) for member in members):
            raise ControlServiceError(f"unexpected health report from {self.base_url}")
        return members

    def get_members(self) -> dict[str, Any]:
        response = self._get(MEMBERS_PATH)
        try:
            return response.json()
        except ValueError as exc:
            raise ControlServiceError(f"undecodable member list from {self.base_url}") from exc


class SubserviceClient(_BaseClient):
    """HTTP client for a named control-plane sub-service (tso, scheduling, ...)."""

    health_path = SUBSERVICE_HEALTH_PATH

    def __init__(self, base_url: str, *, service: str, **kwargs: Any) -> None:
        super().__init__(base_url, **kwargs)
        self.service = service

    def get_health(self) -> None:
        self._get(self.health_path)


class ClientControl:
    """Process-scoped cache of service-level control clients.

    Created once by the entry point and handed to every resolver call. A
    cached client is shared by all workers resolving the same key; clients
    pinned to one member are built per call and never stored, so a failover
    choice made by one worker cannot leak into another.
    """

    def __init__(
        self,
        core_api: CoreV1Api | None = None,
        *,
        timeout: float = 5.0,
        transport: httpx.BaseTransport | None = None,
        ssl_context_factory: Callable[[str, str], ssl.SSLContext] | None = None,
    ) -> None:
        self.core_api = core_api
        self.timeout = timeout
        self._transport = transport
        self._ssl_context_factory = ssl_context_factory
        self._clients: dict[ClientKey, _BaseClient] = {}
        self._lock = threading.Lock()

    def _tls_context(self, cert_source: ObjectKey) -> ssl.SSLContext | None:
        try:
            if self._ssl_context_factory is not None:
                return self._ssl_context_factory(cert_source.namespace, cert_source.name)
            if self.core_api is None:
                raise ControlServiceError("TLS is enabled but no Kubernetes API is configured")
            return load_tls_context(self.core_api, cert_source.namespace, cert_source.name)
        except ControlServiceError:
            LOGGER.exception("Failed to load TLS material for cluster %s", cert_source)
            return None

    def _build(
        self,
        client_cls: type[_BaseClient],
        key: ClientKey,
        cert_source: ObjectKey,
        endpoint: MemberEndpoint | None,
    ) -> tuple[_BaseClient, bool]:
        verify: ssl.SSLContext | bool = True
        complete = True
        if key.tls_enabled:
            context = self._tls_context(cert_source)
            if context is None:
                complete = False
            else:
                verify = context

        if endpoint is not None:
            base_url = endpoint.client_url
        else:
            base_url = control_service_url(
                key.namespace,
                key.name,
                service=key.service,
                tls_enabled=key.tls_enabled,
                cluster_domain=key.cluster_domain,
                headless=key.headless,
            )

        kwargs: dict[str, Any] = {
            "timeout": self.timeout,
            "verify": verify,
            "transport": self._transport,
            "pinned_member": endpoint.name if endpoint is not None else None,
        }
        if client_cls is SubserviceClient:
            kwargs["service"] = key.service
        return client_cls(base_url, **kwargs), complete

    def _get_or_build(
        self,
        client_cls: type[_BaseClient],
        key: ClientKey,
        tls_cert_from: ObjectKey | None,
        endpoint: MemberEndpoint | None,
    ) -> _BaseClient:
        cert_source = tls_cert_from or ObjectKey(key.namespace, key.name)
        if endpoint is not None:
            client, _ = self._build(client_cls, key, cert_source, endpoint)
            return client

        with self._lock:
            cached = self._clients.get(key)
            if cached is not None:
                return cached
            client, complete = self._build(client_cls, key, cert_source, None)
            # Clients missing their TLS material are rebuilt on the next call.
            if complete:
                self._clients[key] = client
                METRICS.control_clients_cached.set(len(self._clients))
                LOGGER.debug("Cached control client for %s at %s", key, client.base_url)
            return client

    def get_client(
        self,
        namespace: str,
        name: str,
        tls_enabled: bool,
        *,
        tls_cert_from: ObjectKey | None = None,
        cluster_domain: str = "",
        headless: bool = False,
        endpoint: MemberEndpoint | None = None,
    ) -> ControlClient:
        """Return the client for the control service of cluster ``namespace/name``.

        Without ``endpoint`` the shared service-level client is returned,
        built on first use. With ``endpoint`` a fresh client pinned to that
        member's URL is returned; the caller owns it and should close it.
        ``tls_cert_from`` names the cluster whose client certificate Secret
        is used, when it is not the addressed cluster itself.
        """
        key = ClientKey(
            namespace=namespace,
            name=name,
            service=CONTROL_SERVICE,
            cluster_domain=cluster_domain,
            tls_enabled=tls_enabled,
            headless=headless,
        )
        return self._get_or_build(ControlClient, key, tls_cert_from, endpoint)  # type: ignore[return-value]

    def get_subservice_client(
        self,
        namespace: str,
        name: str,
        service: str,
        tls_enabled: bool,
        *,
        tls_cert_from: ObjectKey | None = None,
        cluster_domain: str = "",
        headless: bool = False,
        endpoint: MemberEndpoint | None = None,
    ) -> SubserviceClient:
        key = ClientKey(
            namespace=namespace,
            name=name,
            service=service,
            cluster_domain=cluster_domain,
            tls_enabled=tls_enabled,
            headless=headless,
        )
        return self._get_or_build(SubserviceClient, key, tls_cert_from, endpoint)  # type: ignore[return-value]

    def cached_keys(self) -> list[ClientKey]:
        with self._lock:
            return list(self._clients)

    def invalidate(self, key: ClientKey) -> None:
        """Drop and close the cached client for *key*, if any."""
        with self._lock:
            client = self._clients.pop(key, None)
            METRICS.control_clients_cached.set(len(self._clients))
        if client is not None:
            client.close()
            LOGGER.info("Invalidated control client for %s", key)

    def close(self) -> None:
        with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
            METRICS.control_clients_cached.set(0)
        for client in clients:
            client.close()
