from __future__ import annotations


class ReconcileError(Exception):
    """Base class for every failure surfaced by a single reconcile.

    ``kind`` is a stable label used in logs and the
    ``autotls_reconcile_errors_total`` metric.
    """

    kind = "unexpected"


class StructuralError(ReconcileError):
    """A required field is missing from the observed Ingress."""

    kind = "structural"

    def __init__(self, field: str) -> None:
        super().__init__(f"{field} missing from ingress")
        self.field = field


class InvalidAnnotation(StructuralError):
    """A directive annotation is present but carries no usable value."""

    kind = "invalid_annotation"

    def __init__(self, annotation: str, value: str) -> None:
        ReconcileError.__init__(self, f"annotation {annotation} has an invalid value: {value!r}")
        self.field = f".metadata.annotations[{annotation}]"
        self.annotation = annotation
        self.value = value


class MissingObjectKey(ReconcileError):
    """The object has no name or namespace, so it cannot even be addressed."""

    kind = "missing_object_key"

    def __init__(self, field: str) -> None:
        super().__init__(f"MissingObjectKey: {field}")
        self.field = field


class PatchApplyFailed(ReconcileError):
    """A server-side apply against the Ingress failed.

    The transport or API error is chained as ``__cause__``; ``status`` is
    copied from it when the cause is an ``ApiException``.
    """

    kind = "patch_apply_failed"

    def __init__(self, field_manager: str, cause: BaseException) -> None:
        super().__init__(f"Failed to patch Ingress as {field_manager}: {cause}")
        self.field_manager = field_manager
        self.status: int | None = getattr(cause, "status", None)
