"""Тесты для настройки логирования"""
import json
import logging

import pytest

from okito.utils import logger as logger_module
from okito.utils.logger import (
    EVENTS_LOGGER,
    JSONFormatter,
    OperationIdFilter,
    get_logger,
    log_operation_event,
    setup_json_logging,
)
from okito.utils.trace_context import OperationTrace


def make_record(message='hello'):
    return logging.LogRecord('okito.test', logging.INFO, __file__, 1, message, (), None)


def test_get_logger_is_cached():
    assert get_logger('okito.cache_test') is get_logger('okito.cache_test')


def test_filter_without_trace():
    record = make_record()
    assert OperationIdFilter().filter(record)
    assert record.operation_id == '-'


def test_filter_with_trace():
    trace = OperationTrace.start('token_airdrop', operation_id='abc123')
    try:
        record = make_record()
        OperationIdFilter().filter(record)
        assert record.operation_id == 'abc123'
    finally:
        trace.finish()


def test_json_formatter_extras():
    record = make_record('batch done')
    record.event_type = 'batch_completed'
    record.batch_index = 3

    data = json.loads(JSONFormatter().format(record))

    assert data['message'] == 'batch done'
    assert data['event_type'] == 'batch_completed'
    assert data['batch_index'] == 3
    assert data['level'] == 'INFO'


@pytest.fixture
def events_file(tmp_path, monkeypatch):
    monkeypatch.setattr(logger_module, 'LOG_DIR', tmp_path)
    events_logger = logging.getLogger(EVENTS_LOGGER)
    saved = list(events_logger.handlers)
    for handler in saved:
        events_logger.removeHandler(handler)
    setup_json_logging('events.jsonl')
    yield tmp_path / 'events.jsonl'
    for handler in list(events_logger.handlers):
        handler.close()
        events_logger.removeHandler(handler)
    for handler in saved:
        events_logger.addHandler(handler)


def test_log_operation_event(events_file):
    trace = OperationTrace.start('batch_airdrop', operation_id='op-42')
    try:
        log_operation_event('batch_completed', 'airdrop', batch_index=1, transaction_id='tx9',
                            extra={'recipients': 15})
    finally:
        trace.finish()

    for handler in logging.getLogger(EVENTS_LOGGER).handlers:
        handler.flush()
    line = json.loads(events_file.read_text(encoding='utf-8').strip().splitlines()[-1])

    assert line['event_type'] == 'batch_completed'
    assert line['operation'] == 'airdrop'
    assert line['operation_id'] == 'op-42'
    assert line['batch_index'] == 1
    assert line['transaction_id'] == 'tx9'
    assert line['data'] == {'recipients': 15}


def test_setup_json_logging_is_idempotent(events_file):
    setup_json_logging('events.jsonl')
    assert len(logging.getLogger(EVENTS_LOGGER).handlers) == 1


def test_setup_file_logging_once(tmp_path, monkeypatch):
    monkeypatch.setattr(logger_module, 'LOG_DIR', tmp_path)
    monkeypatch.setattr(logger_module, '_file_handler_added', False)
    root = logging.getLogger()
    before = list(root.handlers)
    saved_level = root.level
    try:
        logger_module.setup_file_logging('okito_test.log', use_rotation=False)
        logger_module.setup_file_logging('okito_test.log', use_rotation=False)
        added = [h for h in root.handlers if h not in before]

        assert len(added) == 1
        assert (tmp_path / 'okito_test.log').exists()
    finally:
        for handler in root.handlers[:]:
            if handler not in before:
                handler.close()
                root.removeHandler(handler)
        root.setLevel(saved_level)
