from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiClient, V1Ingress

from autotls.src.errors import InvalidAnnotation, StructuralError

LOGGER = logging.getLogger(__name__)

DOMAIN_ANNOTATION = "autotls/domain"
ISSUER_ANNOTATION = "autotls/issuer"

AUTO_ISSUER_VALUE = "auto"
SSL_REDIRECT_ANNOTATION = "ingress.kubernetes.io/ssl-redirect"
TLS_ACME_ANNOTATION = "kubernetes.io/tls-acme"
CLUSTER_ISSUER_ANNOTATION = "cert-manager.io/cluster-issuer"

# Only used for its model -> dict conversion; never talks to the API server.
_SERIALIZER = ApiClient()


@dataclass(frozen=True)
class AutoIssuer:
    """Let the ingress controller's legacy ACME integration issue the certificate."""


@dataclass(frozen=True)
class NamedIssuer:
    """Request a certificate from the named cert-manager ``ClusterIssuer``."""

    name: str


IssuerDirective = AutoIssuer | NamedIssuer


@dataclass(frozen=True)
class IngressPatch:
    """Partial Ingress holding only the fields one patcher wants to own.

    ``None`` means "not part of this patch"; server-side apply then leaves
    the field to whichever manager already owns it.
    """

    name: str
    rules: tuple[dict[str, Any], ...] | None = None
    annotations: dict[str, str] | None = None
    tls: tuple[dict[str, Any], ...] | None = None

    def to_body(self) -> dict[str, Any]:
        """Render the patch as a server-side apply document."""
        metadata: dict[str, Any] = {"name": self.name}
        if self.annotations is not None:
            metadata["annotations"] = dict(self.annotations)

        spec: dict[str, Any] = {}
        if self.rules is not None:
            spec["rules"] = [dict(rule) for rule in self.rules]
        if self.tls is not None:
            spec["tls"] = [dict(block) for block in self.tls]

        body: dict[str, Any] = {
            "apiVersion": "networking.k8s.io/v1",
            "kind": "Ingress",
            "metadata": metadata,
        }
        if spec:
            body["spec"] = spec
        return body


def parse_domain(value: str) -> str:
    domain = value.strip()
    if not domain:
        raise InvalidAnnotation(DOMAIN_ANNOTATION, value)
    return domain


def parse_issuer(value: str) -> IssuerDirective:
    """Decode the ``autotls/issuer`` annotation into an :data:`IssuerDirective`.

    The literal ``auto`` selects :class:`AutoIssuer`; any other non-blank
    value is taken as a ClusterIssuer name.
    """
    issuer = value.strip()
    if not issuer:
        raise InvalidAnnotation(ISSUER_ANNOTATION, value)
    if issuer == AUTO_ISSUER_VALUE:
        return AutoIssuer()
    return NamedIssuer(issuer)


def compute_domain_patch(ingress: V1Ingress, domain: str) -> IngressPatch | None:
    """Qualify every bare rule host with *domain*.

    A host containing a ``.`` is treated as already fully qualified and is
    left untouched.  Returns ``None`` when no host needed rewriting, which
    makes the patch idempotent: running it on its own output yields nothing.

    The returned patch carries the complete rule list because the list is
    owned as a whole by the domain patcher.
    """
    spec = getattr(ingress, "spec", None)
    if spec is None:
        raise StructuralError(".spec")

    rules = spec.rules or []
    if not rules:
        LOGGER.warning("Ingress has no rules, skipping")
        return None

    serialized: list[dict[str, Any]] = _SERIALIZER.sanitize_for_serialization(list(rules))
    patched = False
    for rule in serialized:
        host = rule.get("host")
        if host and "." not in host:
            rule["host"] = f"{host}.{domain}"
            patched = True

    if not patched:
        return None

    return IngressPatch(name=ingress.metadata.name, rules=tuple(serialized))


def compute_tls_patch(ingress: V1Ingress, issuer: IssuerDirective) -> IngressPatch | None:
    """Derive TLS annotations and a TLS block covering every rule host.

    Skips any Ingress that already declares ``spec.tls``, whether written by
    hand or by an earlier run of this patcher.  Hosts are kept in rule order
    and are not deduplicated.
    """
    name = getattr(getattr(ingress, "metadata", None), "name", None)
    if not name:
        raise StructuralError(".metadata.name")
    spec = getattr(ingress, "spec", None)
    if spec is None:
        raise StructuralError(".spec")

    if spec.tls is not None:
        LOGGER.info("Ingress %s already specifies TLS, skipping", name)
        return None

    if spec.rules is None:
        raise StructuralError(".spec.rules")
    hosts = [rule.host for rule in spec.rules if rule.host]

    annotations = {SSL_REDIRECT_ANNOTATION: "true"}
    if isinstance(issuer, AutoIssuer):
        annotations[TLS_ACME_ANNOTATION] = "true"
    else:
        annotations[CLUSTER_ISSUER_ANNOTATION] = issuer.name

    return IngressPatch(
        name=name,
        annotations=annotations,
        tls=({"hosts": hosts, "secretName": f"{name}-tls"},),
    )
