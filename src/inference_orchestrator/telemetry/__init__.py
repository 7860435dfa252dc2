"""Telemetry: structured logging, Prometheus metrics and the event queue."""

from .event_sink import EventQueue, EventSink, InMemoryEventSink, LoggingEventSink
from .metrics import MetricsCollector

__all__ = [
    "EventQueue",
    "EventSink",
    "InMemoryEventSink",
    "LoggingEventSink",
    "MetricsCollector",
]
