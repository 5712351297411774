"""Unit tests for OperationTrace"""
import asyncio
import time

import pytest

from okito.utils.trace_context import OperationTrace, TraceEvent, get_current_trace, get_operation_id


class TestTraceEvent:
    """Tests for TraceEvent"""

    def test_event_creation(self):
        event = TraceEvent.now('submit', batch=1)
        assert event.stage == 'submit'
        assert event.data == {'batch': 1}
        assert event.timestamp_mono > 0
        assert 'Z' in event.timestamp_wall


class TestOperationTrace:
    """Tests for OperationTrace"""

    def test_trace_creation(self):
        trace = OperationTrace.start('batch_airdrop')

        assert len(trace.operation_id) == 12
        assert trace.operation == 'batch_airdrop'
        assert len(trace.events) == 1

        trace.finish()

    def test_explicit_operation_id(self):
        trace = OperationTrace.start('token_airdrop', operation_id='op-1')
        assert get_operation_id() == 'op-1'
        trace.finish()

    def test_context_var_binding(self):
        trace = OperationTrace.start('token_airdrop')

        assert get_current_trace() is trace
        assert get_operation_id() == trace.operation_id

        trace.finish()

        assert get_current_trace() is None
        assert get_operation_id() is None

    def test_nested_traces_restore_parent(self):
        outer = OperationTrace.start('outer')
        inner = OperationTrace.start('inner')
        assert get_current_trace() is inner

        inner.finish()
        assert get_current_trace() is outer

        outer.finish()
        assert get_current_trace() is None

    def test_stage_timings_accumulate(self):
        trace = OperationTrace.start('batch_airdrop')

        with trace.stage('batch'):
            time.sleep(0.01)
        with trace.stage('batch'):
            time.sleep(0.01)

        assert trace.stage_timings_ms['batch'] >= 20
        trace.finish()

    def test_stage_recorded_on_error(self):
        trace = OperationTrace.start('token_airdrop')

        with pytest.raises(ValueError):
            with trace.stage('prepare'):
                raise ValueError('boom')

        assert 'prepare' in trace.stage_timings_ms
        trace.finish('failure')
        assert trace.events[-1].data == {'outcome': 'failure'}

    def test_metrics(self):
        trace = OperationTrace.start('token_airdrop')
        trace.retry_count = 2
        with trace.stage('submit'):
            pass
        trace.finish()

        metrics = trace.metrics()
        assert metrics['operation_id'] == trace.operation_id
        assert metrics['retry_count'] == 2
        assert set(metrics['stage_timings_ms']) == {'submit'}
        assert metrics['elapsed_ms'] == round(trace.elapsed_ms, 3)

    def test_elapsed_frozen_after_finish(self):
        trace = OperationTrace.start('token_airdrop')
        trace.finish()
        elapsed = trace.elapsed_ms
        time.sleep(0.01)
        assert trace.elapsed_ms == elapsed


@pytest.mark.asyncio
async def test_traces_isolated_between_tasks():
    """Тест: у параллельных задач свои operation_id"""
    async def run(name):
        trace = OperationTrace.start(name)
        await asyncio.sleep(0.01)
        seen = get_operation_id()
        trace.finish()
        return trace.operation_id, seen

    results = await asyncio.gather(run('a'), run('b'))

    for operation_id, seen in results:
        assert operation_id == seen
    assert results[0][0] != results[1][0]
