"""
Tracers handed to docshift components.

Every component takes ``tracer=`` and ``enable_tracing=`` arguments and
opens spans through :meth:`Tracer.span`; nothing else in the package imports
OpenTelemetry. Span attributes may carry enums (migration mode, execution
mode) and ``None`` for unknown values; tracers normalize them before they
reach the OpenTelemetry API, which accepts only primitives.

Example:
    >>> tracer = create_tracer(__name__, enable_tracing=False)
    >>> with tracer.span("docshift.backup.create", {"docshift.environment": "staging"}):
    ...     ...
"""

from __future__ import annotations

import contextlib
from collections.abc import Iterator, Mapping
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from opentelemetry import trace

if TYPE_CHECKING:
    from opentelemetry.trace import Span

SpanAttributes = Mapping[str, Any]


def normalize_attributes(attributes: SpanAttributes | None) -> dict[str, Any]:
    """
    Drop ``None`` values and unwrap enums and tuples.

    Example:
        >>> normalize_attributes({"docshift.page.number": 3, "docshift.document.id": None})
        {'docshift.page.number': 3}
    """
    normalized: dict[str, Any] = {}
    for key, value in (attributes or {}).items():
        if value is None:
            continue
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, tuple | list):
            value = [item.value if isinstance(item, Enum) else item for item in value]
        normalized[key] = value
    return normalized


@runtime_checkable
class Tracer(Protocol):
    """
    Anything that can open a span around a block of work.

    Implementations:
    - NullTracer: tracing switched off
    - OpenTelemetryTracer: spans through the OpenTelemetry API
    - MockTracer: records spans for test assertions
    """

    def span(
        self, name: str, attributes: SpanAttributes | None = None
    ) -> AbstractContextManager[Span | None]: ...

    @property
    def enabled(self) -> bool: ...


class NullTracer:
    """Tracer that opens no spans."""

    @contextlib.contextmanager
    def span(self, name: str, attributes: SpanAttributes | None = None) -> Iterator[None]:
        yield None

    @property
    def enabled(self) -> bool:
        return False


class OpenTelemetryTracer:
    """
    Tracer backed by ``opentelemetry.trace.get_tracer``.

    Spans are exported only when the application installs an SDK
    TracerProvider; with the bare API they are non-recording. Exceptions
    raised inside a span are recorded on it and mark it as an error.
    """

    def __init__(self, tracer_name: str) -> None:
        self._tracer = trace.get_tracer(tracer_name)

    def span(
        self, name: str, attributes: SpanAttributes | None = None
    ) -> AbstractContextManager[Span]:
        return self._tracer.start_as_current_span(
            name,
            attributes=normalize_attributes(attributes),
            record_exception=True,
            set_status_on_exception=True,
        )

    @property
    def enabled(self) -> bool:
        return True


@dataclass
class RecordedSpan:
    """One span captured by MockTracer."""

    name: str
    attributes: dict[str, Any] = field(default_factory=dict)
    error: BaseException | None = None


class MockTracer:
    """
    Tracer for tests; records every span and the exception that ended it.

    Example:
        >>> tracer = MockTracer()
        >>> executor = BatchMigrationExecutor(store, layers, tracer=tracer)
        >>> await executor.migrate_collection("trades")
        >>> tracer.span_names.count("docshift.executor.page")
        3
    """

    def __init__(self) -> None:
        self.spans: list[RecordedSpan] = []

    @contextlib.contextmanager
    def span(self, name: str, attributes: SpanAttributes | None = None) -> Iterator[None]:
        recorded = RecordedSpan(name, normalize_attributes(attributes))
        self.spans.append(recorded)
        try:
            yield None
        except BaseException as e:
            recorded.error = e
            raise

    @property
    def enabled(self) -> bool:
        return True

    @property
    def span_names(self) -> list[str]:
        return [s.name for s in self.spans]

    def find(self, name: str) -> list[RecordedSpan]:
        """Spans with the given name, in the order they were opened."""
        return [s for s in self.spans if s.name == name]

    def clear(self) -> None:
        self.spans.clear()


def create_tracer(name: str, enable_tracing: bool = True) -> Tracer:
    """OpenTelemetryTracer when tracing is enabled, NullTracer otherwise."""
    if enable_tracing:
        return OpenTelemetryTracer(name)
    return NullTracer()


__all__ = [
    "MockTracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "RecordedSpan",
    "SpanAttributes",
    "Tracer",
    "create_tracer",
    "normalize_attributes",
]
