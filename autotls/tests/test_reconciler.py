from __future__ import annotations

import logging
from typing import Any
from unittest.mock import patch

import pytest
from kubernetes.client import ApiException, V1Ingress, V1IngressRule, V1IngressSpec, V1ObjectMeta

from autotls.src.errors import (
    InvalidAnnotation,
    MissingObjectKey,
    PatchApplyFailed,
    StructuralError,
)
from autotls.src.reconciler import (
    ReconcileContext,
    RequeuePolicy,
    object_key,
    reconcile,
)


class FakeNetworkingApi:
    def __init__(
        self,
        fail_managers: set[str] | None = None,
        responses: dict[str, Any] | None = None,
    ) -> None:
        self.fail_managers = fail_managers or set()
        self.responses = responses or {}
        self.patches: list[dict[str, Any]] = []

    def patch_namespaced_ingress(self, **kwargs: Any) -> Any:
        self.patches.append(kwargs)
        if kwargs["field_manager"] in self.fail_managers:
            raise ApiException(status=409, reason="Conflict")
        return self.responses.get(kwargs["field_manager"])


def make_ingress(
    hosts: list[str] | None,
    annotations: dict[str, str] | None = None,
    name: str | None = "app",
    namespace: str | None = "default",
    tls: list[Any] | None = None,
) -> V1Ingress:
    rules = None if hosts is None else [V1IngressRule(host=h) for h in hosts]
    return V1Ingress(
        metadata=V1ObjectMeta(name=name, namespace=namespace, annotations=annotations),
        spec=V1IngressSpec(rules=rules, tls=tls),
    )


def _ctx(api: FakeNetworkingApi, prefix: str = "autotls-controller") -> ReconcileContext:
    return ReconcileContext(networking_api=api, field_manager_prefix=prefix, resync_seconds=300)


# ---------------------------------------------------------------------------
# reconcile()
# ---------------------------------------------------------------------------


def test_domain_annotation_applies_forced_domain_patch() -> None:
    api = FakeNetworkingApi()
    ingress = make_ingress(["app"], annotations={"autotls/domain": "example.com"})

    requeue = reconcile(ingress, _ctx(api))

    assert requeue == 300
    assert len(api.patches) == 1
    call = api.patches[0]
    assert call["name"] == "app"
    assert call["namespace"] == "default"
    assert call["field_manager"] == "autotls-controller/domain-patcher"
    assert call["force"] is True
    assert call["_content_type"] == "application/apply-patch+yaml"
    assert call["body"]["spec"]["rules"] == [{"host": "app.example.com"}]


def test_issuer_annotation_applies_unforced_tls_patch() -> None:
    api = FakeNetworkingApi()
    ingress = make_ingress(["app.example.com"], annotations={"autotls/issuer": "letsencrypt"})

    reconcile(ingress, _ctx(api))

    assert len(api.patches) == 1
    call = api.patches[0]
    assert call["field_manager"] == "autotls-controller/tls-patcher"
    assert call["force"] is False
    assert call["body"]["metadata"]["annotations"] == {
        "ingress.kubernetes.io/ssl-redirect": "true",
        "cert-manager.io/cluster-issuer": "letsencrypt",
    }
    assert call["body"]["spec"]["tls"] == [
        {"hosts": ["app.example.com"], "secretName": "app-tls"}
    ]


def test_no_annotations_means_no_patches() -> None:
    api = FakeNetworkingApi()

    requeue = reconcile(make_ingress(["app"]), _ctx(api))

    assert requeue == 300
    assert api.patches == []


def test_domain_without_rules_is_a_silent_skip(caplog: pytest.LogCaptureFixture) -> None:
    api = FakeNetworkingApi()
    ingress = make_ingress(None, annotations={"autotls/domain": "example.com"})

    with caplog.at_level(logging.WARNING):
        requeue = reconcile(ingress, _ctx(api))

    assert requeue == 300
    assert api.patches == []
    assert "no rules" in caplog.text


def test_missing_namespace_raises_missing_object_key() -> None:
    api = FakeNetworkingApi()
    ingress = make_ingress(["app"], annotations={"autotls/domain": "example.com"}, namespace=None)

    with pytest.raises(MissingObjectKey) as excinfo:
        reconcile(ingress, _ctx(api))

    assert excinfo.value.field == ".metadata.namespace"
    assert api.patches == []


def test_missing_name_raises_missing_object_key() -> None:
    with pytest.raises(MissingObjectKey, match=r"\.metadata\.name"):
        object_key(make_ingress(["app"], name=None))


def test_tls_already_configured_skips_tls_patch() -> None:
    api = FakeNetworkingApi()
    ingress = make_ingress(
        ["app.example.com"],
        annotations={"autotls/issuer": "auto"},
        tls=[{"hosts": ["app.example.com"], "secretName": "manual"}],
    )

    reconcile(ingress, _ctx(api))

    assert api.patches == []


def test_both_pipelines_run_in_order_and_tls_uses_applied_hosts() -> None:
    applied = make_ingress(["app.example.com"], annotations={"autotls/issuer": "letsencrypt"})
    api = FakeNetworkingApi(responses={"autotls-controller/domain-patcher": applied})
    ingress = make_ingress(
        ["app"],
        annotations={"autotls/domain": "example.com", "autotls/issuer": "letsencrypt"},
    )

    reconcile(ingress, _ctx(api))

    assert [call["field_manager"] for call in api.patches] == [
        "autotls-controller/domain-patcher",
        "autotls-controller/tls-patcher",
    ]
    assert api.patches[1]["body"]["spec"]["tls"][0]["hosts"] == ["app.example.com"]


def test_domain_patch_failure_aborts_tls_pipeline() -> None:
    api = FakeNetworkingApi(fail_managers={"autotls-controller/domain-patcher"})
    ingress = make_ingress(
        ["app"],
        annotations={"autotls/domain": "example.com", "autotls/issuer": "auto"},
    )

    with pytest.raises(PatchApplyFailed) as excinfo:
        reconcile(ingress, _ctx(api))

    assert len(api.patches) == 1
    assert excinfo.value.status == 409
    assert excinfo.value.field_manager == "autotls-controller/domain-patcher"
    assert isinstance(excinfo.value.__cause__, ApiException)


def test_blank_issuer_is_rejected() -> None:
    api = FakeNetworkingApi()
    ingress = make_ingress(["app.example.com"], annotations={"autotls/issuer": " "})

    with pytest.raises(InvalidAnnotation):
        reconcile(ingress, _ctx(api))

    assert api.patches == []


def test_structural_error_from_tls_pipeline_propagates() -> None:
    ingress = make_ingress(None, annotations={"autotls/issuer": "auto"})

    with pytest.raises(StructuralError, match="rules"):
        reconcile(ingress, _ctx(FakeNetworkingApi()))


def test_field_manager_prefix_is_configurable() -> None:
    api = FakeNetworkingApi()
    ingress = make_ingress(["app"], annotations={"autotls/domain": "example.com"})

    reconcile(ingress, _ctx(api, prefix="platform"))

    assert api.patches[0]["field_manager"] == "platform/domain-patcher"


def test_scenario_a_then_b() -> None:
    api = FakeNetworkingApi()
    original = make_ingress(["app"], annotations={"autotls/domain": "example.com"})

    reconcile(original, _ctx(api))
    qualified = [rule["host"] for rule in api.patches[0]["body"]["spec"]["rules"]]
    assert qualified == ["app.example.com"]

    updated = make_ingress(
        qualified,
        annotations={"autotls/domain": "example.com", "autotls/issuer": "letsencrypt"},
    )
    reconcile(updated, _ctx(api))

    assert len(api.patches) == 2
    tls_body = api.patches[1]["body"]
    assert tls_body["metadata"]["annotations"] == {
        "ingress.kubernetes.io/ssl-redirect": "true",
        "cert-manager.io/cluster-issuer": "letsencrypt",
    }
    assert tls_body["spec"]["tls"] == [{"hosts": ["app.example.com"], "secretName": "app-tls"}]


# ---------------------------------------------------------------------------
# RequeuePolicy
# ---------------------------------------------------------------------------

KEY = ("default", "app")


def test_policy_success_uses_resync_interval() -> None:
    policy = RequeuePolicy(resync_seconds=300)

    assert policy.on_success(KEY) == 300
    assert policy.on_success(KEY, requeue_after=120) == 120


def test_policy_failure_backs_off_exponentially() -> None:
    policy = RequeuePolicy(retry_base_seconds=1, retry_max_seconds=60)
    error = MissingObjectKey(".metadata.namespace")

    with patch("autotls.src.reconciler.random.random", return_value=0.5):
        delays = [policy.on_failure(KEY, error) for _ in range(8)]

    assert delays == [1, 2, 4, 8, 16, 32, 60, 60]
    assert policy.failures(KEY) == 8


def test_policy_jitter_never_goes_below_base_or_above_max() -> None:
    policy = RequeuePolicy(retry_base_seconds=1, retry_max_seconds=4)
    error = StructuralError(".spec")

    with patch("autotls.src.reconciler.random.random", return_value=0.0):
        assert policy.on_failure(KEY, error) == pytest.approx(1.0)
    with patch("autotls.src.reconciler.random.random", return_value=0.999):
        for _ in range(5):
            assert policy.on_failure(KEY, error) <= 4


def test_policy_success_resets_failure_count() -> None:
    policy = RequeuePolicy(retry_base_seconds=1, retry_max_seconds=60)
    error = StructuralError(".spec")

    with patch("autotls.src.reconciler.random.random", return_value=0.5):
        policy.on_failure(KEY, error)
        policy.on_failure(KEY, error)
        policy.on_success(KEY)
        assert policy.on_failure(KEY, error) == pytest.approx(1.0)


def test_policy_tracks_keys_independently() -> None:
    policy = RequeuePolicy()
    error = StructuralError(".spec")

    with patch("autotls.src.reconciler.random.random", return_value=0.5):
        policy.on_failure(KEY, error)
        policy.on_failure(KEY, error)
        assert policy.on_failure(("other", "app"), error) == pytest.approx(1.0)

    policy.forget(KEY)
    assert policy.failures(KEY) == 0


def test_policy_logs_error_kind(caplog: pytest.LogCaptureFixture) -> None:
    policy = RequeuePolicy()

    with caplog.at_level(logging.ERROR):
        policy.on_failure(("", "app"), MissingObjectKey(".metadata.namespace"))

    assert "missing_object_key" in caplog.text
    assert "/app" in caplog.text


def test_policy_logs_traceback_for_unexpected_errors(caplog: pytest.LogCaptureFixture) -> None:
    policy = RequeuePolicy()

    try:
        raise RuntimeError("boom")
    except RuntimeError as exc:
        with caplog.at_level(logging.ERROR):
            policy.on_failure(KEY, exc)

    record = caplog.records[-1]
    assert record.exc_info is not None
    assert "boom" in caplog.text


def test_policy_rejects_invalid_bounds() -> None:
    with pytest.raises(ValueError, match="retry_base_seconds"):
        RequeuePolicy(retry_base_seconds=0)
    with pytest.raises(ValueError, match="retry_max_seconds"):
        RequeuePolicy(retry_base_seconds=10, retry_max_seconds=5)
