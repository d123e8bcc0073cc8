"""Spans, metrics and structured logging.

Everything here is fire-and-forget: callers never consume a return value from
recording a metric or closing a span. Logging goes through structlog; call
configure_logging() once at application start-up to choose console or JSON output.

Usage:
    with span("embed_documents", model="text-embedding-3-small"):
        ...
    record_metric("llm_input_tokens", 120, model="gpt-4o-mini")
    log_structured("info", "batch_done", items=42)
"""
import contextvars
import logging
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

import structlog


@dataclass
class Metric:
    name: str
    value: float
    tags: Dict[str, str] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


@dataclass
class Span:
    """A named, timed operation. Spans opened inside another span become its children."""
    name: str
    tags: Dict[str, str] = field(default_factory=dict)
    start_time: float = field(default_factory=time.perf_counter)
    end_time: Optional[float] = None
    children: List["Span"] = field(default_factory=list)

    def finish(self) -> None:
        self.end_time = time.perf_counter()

    @property
    def duration_ms(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time) * 1000.0


class Observer:
    """Collects metrics and finished root spans in memory.

    The open span is tracked per asyncio task through a ContextVar, so spans
    opened by concurrent tasks nest only under their own parent.
    """

    def __init__(self):
        self.metrics: List[Metric] = []
        self.spans: List[Span] = []
        self._current: contextvars.ContextVar[Optional[Span]] = contextvars.ContextVar(
            f"flowlet_span_{id(self)}", default=None
        )

    def record_metric(self, name: str, value: float, **tags: Any) -> None:
        self.metrics.append(Metric(name, float(value), {k: str(v) for k, v in tags.items()}))

    @contextmanager
    def span(self, name: str, **tags: Any) -> Iterator[Span]:
        current = Span(name, {k: str(v) for k, v in tags.items()})
        parent = self._current.get()
        token = self._current.set(current)
        try:
            yield current
        finally:
            current.finish()
            self._current.reset(token)
            if parent is not None:
                parent.children.append(current)
            else:
                self.spans.append(current)

    def metrics_summary(self) -> Dict[str, Dict[str, float]]:
        by_name: Dict[str, List[float]] = defaultdict(list)
        for metric in self.metrics:
            by_name[metric.name].append(metric.value)
        return {
            name: {"count": len(values), "sum": sum(values), "average": sum(values) / len(values)}
            for name, values in by_name.items()
        }

    def clear(self) -> None:
        self.metrics.clear()
        self.spans.clear()


observer = Observer()


def record_metric(name: str, value: float, **tags: Any) -> None:
    observer.record_metric(name, value, **tags)


def span(name: str, **tags: Any):
    return observer.span(name, **tags)


def log_structured(level: str, message: str, **fields: Any) -> None:
    """Emit ``message`` at ``level`` ("debug", "info", "warning", "error", "critical")."""
    log = structlog.get_logger("flowlet")
    getattr(log, level.lower())(message, **fields)


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Configure structlog for flowlet's loggers.

    Args:
        level: Minimum level name, e.g. "DEBUG" or "WARNING".
        json_logs: Render one JSON object per line instead of the colored console format.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level.upper())),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
