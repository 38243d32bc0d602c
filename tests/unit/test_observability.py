from __future__ import annotations

import json
import logging
import sys

from awe_agentrelay import observability
from awe_agentrelay.observability import RelayLogFormatter, get_run_context, set_agent_context, set_run_context


def _record(message: str, **extra: object) -> logging.LogRecord:
    record = logging.LogRecord('awe_agentrelay.test', logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_includes_run_context():
    set_run_context(entity_id='task-1', queue_item_id='42')
    set_agent_context('agent-7')

    payload = json.loads(RelayLogFormatter().format(_record('dispatching')))

    assert payload['message'] == 'dispatching'
    assert payload['level'] == 'INFO'
    assert payload['logger'] == 'awe_agentrelay.test'
    assert 'time' in payload
    assert payload['entity_id'] == 'task-1'
    assert payload['queue_item_id'] == '42'
    assert payload['agent_id'] == 'agent-7'


def test_record_attributes_override_context():
    set_run_context(entity_id='task-1')
    payload = json.loads(RelayLogFormatter().format(_record('moved', entity_id='task-2')))
    assert payload['entity_id'] == 'task-2'


def test_cleared_fields_are_omitted():
    set_run_context(entity_id='chat-1')
    assert get_run_context() == {'entity_id': 'chat-1'}
    payload = json.loads(RelayLogFormatter().format(_record('idle')))
    assert 'agent_id' not in payload

    set_run_context()
    assert get_run_context() == {}


def test_formatter_serializes_exceptions():
    try:
        raise ValueError('boom')
    except ValueError:
        record = logging.LogRecord(
            'awe_agentrelay.test', logging.ERROR, __file__, 1, 'failed', None, sys.exc_info()
        )
    payload = json.loads(RelayLogFormatter().format(record))
    assert 'ValueError: boom' in payload['exc']


def test_configure_observability_installs_single_handler(monkeypatch):
    monkeypatch.setattr(observability, '_handler_installed', False)
    root = logging.getLogger('awe_agentrelay')
    before = list(root.handlers)
    try:
        observability.configure_observability(service_name='test', otlp_endpoint=None)
        monkeypatch.setattr(observability, '_handler_installed', False)
        observability.configure_observability(service_name='test', otlp_endpoint='')
        relay_handlers = [h for h in root.handlers if isinstance(h.formatter, RelayLogFormatter)]
        assert len(relay_handlers) == 1
        assert observability._tracing_endpoint is None
    finally:
        for handler in list(root.handlers):
            if handler not in before:
                root.removeHandler(handler)
