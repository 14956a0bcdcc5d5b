from __future__ import annotations

import logging

from kubernetes import client, config
from kubernetes.client import NetworkingV1Api, V1Ingress
from kubernetes.config.config_exception import ConfigException

from autotls.src.errors import PatchApplyFailed
from autotls.src.patches import IngressPatch

LOGGER = logging.getLogger(__name__)

APPLY_PATCH_CONTENT_TYPE = "application/apply-patch+yaml"


def load_kube_configuration() -> None:
    """Load in-cluster configuration, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_networking_api() -> NetworkingV1Api:
    return client.NetworkingV1Api()


def apply_ingress_patch(
    networking_api: NetworkingV1Api,
    namespace: str,
    patch: IngressPatch,
    field_manager: str,
    force: bool = False,
) -> V1Ingress | None:
    """Server-side apply *patch* onto the Ingress it names.

    Fields in the patch become owned by *field_manager*.  With
    ``force=True`` ownership of conflicting fields is taken over from other
    managers; without it a conflict is reported as a ``409`` and surfaces
    as :class:`PatchApplyFailed`.  No retries happen here.

    Returns the Ingress as stored by the API server after the apply.
    """
    try:
        return networking_api.patch_namespaced_ingress(
            name=patch.name,
            namespace=namespace,
            body=patch.to_body(),
            field_manager=field_manager,
            force=force,
            _content_type=APPLY_PATCH_CONTENT_TYPE,
        )
    except Exception as exc:
        raise PatchApplyFailed(field_manager, exc) from exc
