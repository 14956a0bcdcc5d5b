from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException

from autotls.src.errors import PatchApplyFailed
from autotls.src.kube import apply_ingress_patch, build_networking_api, load_kube_configuration
from autotls.src.patches import IngressPatch


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("autotls.src.kube.config.load_incluster_config") as mock_incluster,
        patch("autotls.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "autotls.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("autotls.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


def test_build_networking_api() -> None:
    with patch("autotls.src.kube.client") as mock_client:
        mock_client.NetworkingV1Api.return_value = SimpleNamespace(name="networking")
        api = build_networking_api()

    assert api.name == "networking"


def test_apply_ingress_patch_uses_server_side_apply() -> None:
    api = MagicMock()
    ingress_patch = IngressPatch(name="app", rules=({"host": "app.example.com"},))

    apply_ingress_patch(
        api,
        "default",
        ingress_patch,
        field_manager="autotls-controller/domain-patcher",
        force=True,
    )

    kwargs = api.patch_namespaced_ingress.call_args.kwargs
    assert kwargs["name"] == "app"
    assert kwargs["namespace"] == "default"
    assert kwargs["field_manager"] == "autotls-controller/domain-patcher"
    assert kwargs["force"] is True
    assert kwargs["_content_type"] == "application/apply-patch+yaml"
    assert kwargs["body"] == {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "Ingress",
        "metadata": {"name": "app"},
        "spec": {"rules": [{"host": "app.example.com"}]},
    }


def test_apply_ingress_patch_defaults_to_unforced() -> None:
    api = MagicMock()

    apply_ingress_patch(api, "default", IngressPatch(name="app"), field_manager="m")

    assert api.patch_namespaced_ingress.call_args.kwargs["force"] is False


def test_apply_ingress_patch_returns_stored_object() -> None:
    api = MagicMock()
    stored = SimpleNamespace(name="stored")
    api.patch_namespaced_ingress.return_value = stored

    result = apply_ingress_patch(api, "default", IngressPatch(name="app"), field_manager="m")

    assert result is stored


def test_apply_ingress_patch_wraps_api_errors() -> None:
    api = MagicMock()
    api.patch_namespaced_ingress.side_effect = ApiException(status=403, reason="Forbidden")

    with pytest.raises(PatchApplyFailed) as excinfo:
        apply_ingress_patch(
            api, "default", IngressPatch(name="app"), field_manager="autotls-controller/tls-patcher"
        )

    assert excinfo.value.status == 403
    assert excinfo.value.kind == "patch_apply_failed"
    assert isinstance(excinfo.value.__cause__, ApiException)
    assert "autotls-controller/tls-patcher" in str(excinfo.value)


def test_apply_ingress_patch_wraps_transport_errors() -> None:
    api = MagicMock()
    api.patch_namespaced_ingress.side_effect = ConnectionError("connection reset")

    with pytest.raises(PatchApplyFailed) as excinfo:
        apply_ingress_patch(api, "default", IngressPatch(name="app"), field_manager="m")

    assert excinfo.value.status is None
    assert isinstance(excinfo.value.__cause__, ConnectionError)
