from __future__ import annotations

from contextlib import contextmanager
import json
import logging
import sys
from contextvars import ContextVar
from threading import Lock
from typing import Iterator

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

_entity_id_var: ContextVar[str | None] = ContextVar('entity_id', default=None)
_queue_item_var: ContextVar[str | None] = ContextVar('queue_item_id', default=None)
_agent_id_var: ContextVar[str | None] = ContextVar('agent_id', default=None)

_CONTEXT_FIELDS = (
    ('entity_id', _entity_id_var),
    ('queue_item_id', _queue_item_var),
    ('agent_id', _agent_id_var),
)


def set_run_context(
    entity_id: str | None = None,
    queue_item_id: str | None = None,
    agent_id: str | None = None,
) -> None:
    """Set correlation context for structured log output of the current run."""
    _entity_id_var.set(entity_id)
    _queue_item_var.set(queue_item_id)
    _agent_id_var.set(agent_id)


def set_agent_context(agent_id: str | None) -> None:
    _agent_id_var.set(agent_id)


def get_run_context() -> dict[str, str]:
    out: dict[str, str] = {}
    for name, var in _CONTEXT_FIELDS:
        value = var.get(None)
        if value:
            out[name] = value
    return out


class RelayLogFormatter(logging.Formatter):
    """One JSON object per line; run correlation fields come from the record or the context."""

    def format(self, record: logging.LogRecord) -> str:
        line: dict = {
            'time': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        line.update(get_run_context())
        for name, _ in _CONTEXT_FIELDS:
            override = getattr(record, name, None)
            if override:
                line[name] = override
        if record.exc_info and record.exc_info[1] is not None:
            line['exc'] = self.formatException(record.exc_info)
        return json.dumps(line, default=str)


_state_lock = Lock()
_handler_installed = False
_tracing_endpoint: str | None = None


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def _install_log_handler(level: int) -> None:
    global _handler_installed
    root = logging.getLogger('awe_agentrelay')
    if not any(isinstance(h.formatter, RelayLogFormatter) for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(RelayLogFormatter())
        root.addHandler(handler)
    root.setLevel(level)
    _handler_installed = True


def _install_tracer(service_name: str, endpoint: str) -> None:
    global _tracing_endpoint
    provider = TracerProvider(resource=Resource.create({'service.name': service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    _tracing_endpoint = endpoint


def configure_observability(
    *,
    service_name: str,
    otlp_endpoint: str | None,
    level: int = logging.INFO,
) -> None:
    """Install the JSON log handler once, and OTLP span export when an endpoint is set."""
    endpoint = str(otlp_endpoint or '').strip()
    with _state_lock:
        if not _handler_installed:
            _install_log_handler(level)
        if endpoint and endpoint != _tracing_endpoint:
            _install_tracer(service_name, endpoint)
            logging.getLogger(__name__).info('exporting spans service=%s endpoint=%s', service_name, endpoint)


@contextmanager
def run_span(name: str, **attributes: object) -> Iterator[None]:
    """Wrap one pipeline dispatch in a tracing span (no-op until a provider is configured)."""
    tracer = trace.get_tracer('awe_agentrelay')
    with tracer.start_as_current_span(name) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(f'relay.{key}', str(value))
        yield
