"""
OperationTrace - сквозная трассировка операций
operation_id живёт в contextvars и автоматически попадает в логи
"""

import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

_current_trace: ContextVar[Optional['OperationTrace']] = ContextVar('current_operation_trace', default=None)


@dataclass
class TraceEvent:
    """Событие в рамках трейса"""
    stage: str
    timestamp_mono: float
    timestamp_wall: str
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def now(cls, stage: str, **data) -> 'TraceEvent':
        return cls(
            stage=stage,
            timestamp_mono=time.monotonic(),
            timestamp_wall=datetime.utcnow().isoformat() + 'Z',
            data=data,
        )


@dataclass
class OperationTrace:
    """Контекст трассировки одной операции (airdrop, batch, ...)"""
    operation_id: str
    operation: str
    started: float = field(default_factory=time.monotonic)
    finished: Optional[float] = None
    stage_timings_ms: Dict[str, float] = field(default_factory=dict)
    retry_count: int = 0
    events: List[TraceEvent] = field(default_factory=list)
    _token: Optional[Token] = field(default=None, repr=False)

    @classmethod
    def start(cls, operation: str, operation_id: Optional[str] = None) -> 'OperationTrace':
        """Создать трейс и сделать его текущим"""
        trace = cls(operation_id=operation_id or str(uuid.uuid4())[:12], operation=operation)
        trace._token = _current_trace.set(trace)
        trace.add_event('start')
        return trace

    def add_event(self, stage: str, **data) -> None:
        self.events.append(TraceEvent.now(stage, **data))

    @contextmanager
    def stage(self, name: str) -> Iterator[None]:
        """Замер длительности стадии; повторные стадии суммируются"""
        started = time.monotonic()
        try:
            yield
        finally:
            elapsed = (time.monotonic() - started) * 1000
            self.stage_timings_ms[name] = self.stage_timings_ms.get(name, 0.0) + elapsed

    def finish(self, outcome: str = 'success') -> None:
        """Завершить трейс и восстановить предыдущий контекст"""
        self.finished = time.monotonic()
        self.add_event('finish', outcome=outcome)
        if self._token is not None:
            _current_trace.reset(self._token)
            self._token = None

    @property
    def elapsed_ms(self) -> float:
        end = self.finished if self.finished is not None else time.monotonic()
        return (end - self.started) * 1000

    def metrics(self) -> Dict[str, Any]:
        return {
            'operation_id': self.operation_id,
            'stage_timings_ms': {k: round(v, 3) for k, v in self.stage_timings_ms.items()},
            'retry_count': self.retry_count,
            'elapsed_ms': round(self.elapsed_ms, 3),
        }


def get_current_trace() -> Optional[OperationTrace]:
    return _current_trace.get()


def get_operation_id() -> Optional[str]:
    """Текущий operation_id (для логгера)"""
    trace = _current_trace.get()
    return trace.operation_id if trace else None
