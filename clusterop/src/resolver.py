from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace

from clusterop.src.control import (
    CONTROL_SERVICE,
    ClientControl,
    ControlClient,
    ControlServiceError,
    MemberEndpoint,
    SubserviceClient,
)
from clusterop.src.kube import ObjectKey, meta_of
from clusterop.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)
TRACER = trace.get_tracer(__name__)


@dataclass(frozen=True)
class ClusterRef:
    """Reference to the cluster whose control service a heterogeneous cluster borrows."""

    namespace: str
    name: str
    cluster_domain: str = ""


@dataclass(frozen=True)
class ClusterDescriptor:
    """Everything the resolver needs to know about one cluster, fixed for a reconcile pass.

    ``peer_members`` keeps the order the cluster status listed them in; it is
    the failover probe order. ``subservice_members`` maps a sub-service name
    to the ordered URLs of its members.
    """

    namespace: str
    name: str
    parent: ClusterRef | None = None
    has_local_control_service: bool = True
    cluster_domain: str = ""
    tls_enabled: bool = False
    across_domains: bool = False
    peer_members: tuple[MemberEndpoint, ...] = ()
    subservice_members: tuple[tuple[str, tuple[str, ...]], ...] = ()

    @property
    def heterogeneous(self) -> bool:
        return self.parent is not None and bool(self.parent.name)

    @property
    def borrows_control_service(self) -> bool:
        return self.heterogeneous and not self.has_local_control_service

    def members_of(self, service: str) -> tuple[str, ...]:
        for name, urls in self.subservice_members:
            if name == service:
                return urls
        return ()

    @classmethod
    def from_resource(cls, obj: Any) -> ClusterDescriptor:
        """Build a descriptor from a cluster custom resource body or wrapper."""
        body: Mapping[str, Any] = obj if isinstance(obj, Mapping) else obj.body
        meta = meta_of(obj)
        spec = body.get("spec") or {}
        status = body.get("status") or {}

        parent = None
        cluster = spec.get("cluster") or {}
        if cluster.get("name"):
            parent = ClusterRef(
                namespace=cluster.get("namespace") or meta.namespace,
                name=cluster["name"],
                cluster_domain=cluster.get("clusterDomain") or "",
            )

        peers = tuple(
            MemberEndpoint(name=member.get("name") or key, client_url=member.get("clientURL") or "")
            for key, member in ((status.get("pd") or {}).get("peerMembers") or {}).items()
        )
        subservices = tuple(
            (service.get("name") or key, tuple(service.get("members") or ()))
            for key, service in (status.get("pdms") or {}).items()
        )

        return cls(
            namespace=meta.namespace,
            name=meta.name,
            parent=parent,
            has_local_control_service=spec.get("pd") is not None,
            cluster_domain=spec.get("clusterDomain") or "",
            tls_enabled=bool((spec.get("tlsCluster") or {}).get("enabled")),
            across_domains=bool(spec.get("acrossK8s")),
            peer_members=peers,
            subservice_members=subservices,
        )


def _service_level_kwargs(descriptor: ClusterDescriptor) -> tuple[str, str, dict[str, Any]]:
    parent = descriptor.parent
    if parent is not None and descriptor.borrows_control_service:
        return parent.namespace, parent.name, {
            "tls_cert_from": ObjectKey(descriptor.namespace, descriptor.name),
            "cluster_domain": parent.cluster_domain,
            "headless": descriptor.across_domains,
        }
    return descriptor.namespace, descriptor.name, {"cluster_domain": descriptor.cluster_domain}


def _is_healthy(client: ControlClient | SubserviceClient) -> bool:
    try:
        client.get_health()
    except ControlServiceError as exc:
        LOGGER.debug("Health probe of %s failed: %s", client, exc)
        METRICS.control_probes_total.labels(service=client.service, outcome="unhealthy").inc()
        return False
    METRICS.control_probes_total.labels(service=client.service, outcome="healthy").inc()
    return True


def resolve_control_client(control: ClientControl, descriptor: ClusterDescriptor) -> ControlClient:
    """Return a working client to the cluster's control service, failing over to peers.

    Without recorded peers the shared service-level client is returned
    unprobed. Otherwise the service is probed, then each peer in recorded
    order; the first healthy one wins. When nothing answers the service
    client is still returned so the caller's own request surfaces the error.
    """
    namespace, name, kwargs = _service_level_kwargs(descriptor)
    client = control.get_client(namespace, name, descriptor.tls_enabled, **kwargs)
    if not descriptor.peer_members:
        return client

    with TRACER.start_as_current_span("resolve_control_client") as span:
        span.set_attribute("cluster", f"{descriptor.namespace}/{descriptor.name}")
        if _is_healthy(client):
            return client

        for member in descriptor.peer_members:
            pinned = control.get_client(
                descriptor.namespace,
                descriptor.name,
                descriptor.tls_enabled,
                endpoint=member,
            )
            if _is_healthy(pinned):
                LOGGER.info(
                    "Control service of %s/%s unreachable; using peer %s at %s",
                    descriptor.namespace,
                    descriptor.name,
                    member.name,
                    member.client_url,
                )
                METRICS.control_failovers_total.labels(service=CONTROL_SERVICE, outcome="peer").inc()
                span.set_attribute("member", member.name)
                return pinned
            pinned.close()

        LOGGER.warning(
            "No healthy control service member for %s/%s; returning the service client",
            descriptor.namespace,
            descriptor.name,
        )
        METRICS.control_failovers_total.labels(service=CONTROL_SERVICE, outcome="fallback").inc()
        return client


def resolve_subservice_client(
    control: ClientControl,
    descriptor: ClusterDescriptor,
    service: str,
) -> SubserviceClient | None:
    """Return a healthy client to the named sub-service, or ``None`` if none answers.

    Sub-services are optional, so unlike :func:`resolve_control_client` the
    service-level client is always probed and total failure is reported to
    the caller as ``None``.
    """
    namespace, name, kwargs = _service_level_kwargs(descriptor)
    with TRACER.start_as_current_span("resolve_subservice_client") as span:
        span.set_attribute("cluster", f"{descriptor.namespace}/{descriptor.name}")
        span.set_attribute("service", service)
        client = control.get_subservice_client(
            namespace, name, service, descriptor.tls_enabled, **kwargs
        )
        if _is_healthy(client):
            return client

        for url in descriptor.members_of(service):
            pinned = control.get_subservice_client(
                descriptor.namespace,
                descriptor.name,
                service,
                descriptor.tls_enabled,
                endpoint=MemberEndpoint(name=url, client_url=url),
            )
            if _is_healthy(pinned):
                METRICS.control_failovers_total.labels(service=service, outcome="peer").inc()
                return pinned
            pinned.close()

        LOGGER.warning(
            "Sub-service %s of %s/%s is unavailable",
            service,
            descriptor.namespace,
            descriptor.name,
        )
        METRICS.control_failovers_total.labels(service=service, outcome="unavailable").inc()
        return None


def client_for_member(
    control: ClientControl,
    descriptor: ClusterDescriptor,
    member: MemberEndpoint | None,
) -> ControlClient | None:
    if member is None:
        return None
    return control.get_client(
        descriptor.namespace,
        descriptor.name,
        descriptor.tls_enabled,
        endpoint=member,
    )
