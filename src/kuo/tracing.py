"""OpenTelemetry tracing helpers for reconcile passes.

Every reconcile pass runs inside a ``reconcile.<kind>`` span. Spans carry
only the object kind and name: private keys, certificates and kubeconfigs
never become span attributes.

Example:
    >>> from kuo.tracing import get_tracer, reconcile_span
    >>> tracer = get_tracer()
    >>> with reconcile_span(tracer, "ManagedUser", "alice") as span:
    ...     span.set_attribute("kuo.requeue_after", 600)
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

if TYPE_CHECKING:
    from collections.abc import Iterator

TRACER_NAME = "kuo.operator"

ATTR_KIND = "kuo.kind"
ATTR_NAME = "kuo.name"
ATTR_REQUEUE_AFTER = "kuo.requeue_after"


def get_tracer() -> trace.Tracer:
    """Get the OpenTelemetry tracer for the operator.

    Returns a no-op tracer when no tracer provider is configured.
    """
    return trace.get_tracer(TRACER_NAME)


@contextmanager
def reconcile_span(
    tracer: trace.Tracer,
    kind: str,
    name: str,
    *,
    extra_attributes: dict[str, Any] | None = None,
) -> Iterator[trace.Span]:
    """Context manager wrapping one reconcile pass in a span.

    Args:
        tracer: OpenTelemetry tracer instance.
        kind: Resource kind being reconciled (e.g., "ManagedUser").
        name: Name of the reconciled object.
        extra_attributes: Additional span attributes.

    Yields:
        The active span for adding custom attributes.
    """
    attributes: dict[str, Any] = {ATTR_KIND: kind, ATTR_NAME: name}
    if extra_attributes:
        attributes.update(extra_attributes)

    with tracer.start_as_current_span(f"reconcile.{kind}", attributes=attributes) as span:
        try:
            yield span
            span.set_status(Status(StatusCode.OK))
        except Exception as e:
            span.set_status(Status(StatusCode.ERROR, type(e).__name__))
            span.set_attribute("exception.type", type(e).__name__)
            raise


__all__ = [
    "ATTR_KIND",
    "ATTR_NAME",
    "ATTR_REQUEUE_AFTER",
    "TRACER_NAME",
    "get_tracer",
    "reconcile_span",
]
