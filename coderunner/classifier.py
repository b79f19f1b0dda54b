"""Verdict classification.

Turns the raw evidence a backend collects about one run into a
`VerdictKind` plus a human readable message. The local variant inspects exit
status, signal and stderr text because a container exec only gives us those;
the remote variant maps the Judge0 status enumeration.
"""
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Dict, Optional, Tuple

from .normalizer import outputs_match
from .schemas import VerdictKind

Classification = Tuple[VerdictKind, str]

WRONG_ANSWER_MESSAGE = 'Output did not match expected result'

MAX_MESSAGE_CHARS = 4096


class Termination(str, Enum):
    EXITED = 'exited'
    SIGNALED = 'signaled'
    TIMED_OUT = 'timed_out'
    BACKEND_ERROR = 'backend_error'


@dataclass
class ExecutionOutcome:
    stdout: str = ''
    stderr: str = ''
    termination: Termination = Termination.EXITED
    exit_code: Optional[int] = None
    signal: Optional[str] = None
    elapsed_s: Optional[float] = None
    oom_killed: bool = False


TIMEOUT_MARKERS = (
    'time limit exceeded',
    'timed out',
    'cputime limit exceeded',
)

MEMORY_MARKERS = (
    'memoryerror',
    'std::bad_alloc',
    'outofmemoryerror',
    'out of memory',
    'cannot allocate memory',
    'javascript heap out of memory',
    'killed',
)

FAULT_MARKERS = (
    ('segmentation fault', 'Segmentation fault'),
    ('core dumped', 'Aborted'),
    ('aborted', 'Aborted'),
    ('floating point exception', 'Floating point exception'),
    ('zerodivisionerror', 'Division by zero'),
    ('arithmeticexception', 'Division by zero'),
    ('divide by zero', 'Division by zero'),
    ('stack overflow', 'Stack overflow'),
    ('stackoverflowerror', 'Stack overflow'),
    ('recursionerror', 'Stack overflow'),
    ('traceback (most recent call last)', 'Uncaught exception'),
    ('exception in thread', 'Uncaught exception'),
    ('panicked at', 'Panic'),
    ('panic:', 'Panic'),
)

FAULT_SIGNALS = {
    'SIGSEGV': 'Segmentation fault',
    'SIGABRT': 'Aborted',
    'SIGFPE': 'Floating point exception',
    'SIGBUS': 'Bus error',
    'SIGILL': 'Illegal instruction',
}


def _trim(text: str) -> str:
    text = (text or '').strip()
    if len(text) > MAX_MESSAGE_CHARS:
        return text[:MAX_MESSAGE_CHARS] + '\n...[truncated]'
    return text


def _detail(label: str, stderr: str) -> str:
    stderr = _trim(stderr)
    return f'{label}\n{stderr}' if stderr else label


def _judge_output(actual: str, expected: Optional[str]) -> Classification:
    if expected is None or outputs_match(actual, expected):
        return VerdictKind.ACCEPTED, 'Passed'
    return VerdictKind.WRONG_ANSWER, WRONG_ANSWER_MESSAGE


def classify_local(outcome: ExecutionOutcome, expected: Optional[str] = None) -> Classification:
    """Classify one container run.

    A timeout or memory classification short-circuits output comparison. When
    `expected` is None the run is only checked for clean termination. Stderr
    markers are only trusted once the run has ended abnormally.
    """
    stderr_lower = (outcome.stderr or '').lower()

    if outcome.termination is Termination.BACKEND_ERROR:
        return VerdictKind.SYSTEM_ERROR, _trim(outcome.stderr) or 'Execution backend error'

    if outcome.termination is Termination.TIMED_OUT or outcome.signal == 'SIGXCPU':
        return VerdictKind.TIME_LIMIT_EXCEEDED, 'Time limit exceeded'

    abnormal = outcome.termination is Termination.SIGNALED or (outcome.exit_code or 0) != 0
    if not abnormal:
        return _judge_output(outcome.stdout, expected)

    if outcome.oom_killed:
        return VerdictKind.MEMORY_LIMIT_EXCEEDED, 'Memory limit exceeded'

    if any(m in stderr_lower for m in TIMEOUT_MARKERS):
        return VerdictKind.TIME_LIMIT_EXCEEDED, 'Time limit exceeded'

    if any(m in stderr_lower for m in MEMORY_MARKERS):
        return VerdictKind.MEMORY_LIMIT_EXCEEDED, 'Memory limit exceeded'

    if outcome.signal == 'SIGXFSZ':
        return VerdictKind.RUNTIME_ERROR, 'Output limit exceeded'

    if outcome.signal in FAULT_SIGNALS:
        return VerdictKind.RUNTIME_ERROR, _detail(FAULT_SIGNALS[outcome.signal], outcome.stderr)

    for marker, label in FAULT_MARKERS:
        if marker in stderr_lower:
            return VerdictKind.RUNTIME_ERROR, _detail(label, outcome.stderr)

    if outcome.signal:
        label = f'Killed by {outcome.signal}'
    else:
        label = f'Exited with code {outcome.exit_code}'
    return VerdictKind.RUNTIME_ERROR, _detail(label, outcome.stderr)


class RemoteStatus(IntEnum):
    IN_QUEUE = 1
    PROCESSING = 2
    ACCEPTED = 3
    WRONG_ANSWER = 4
    TIME_LIMIT_EXCEEDED = 5
    COMPILATION_ERROR = 6
    RUNTIME_ERROR_SIGSEGV = 7
    RUNTIME_ERROR_SIGXFSZ = 8
    RUNTIME_ERROR_SIGFPE = 9
    RUNTIME_ERROR_SIGABRT = 10
    RUNTIME_ERROR_NZEC = 11
    RUNTIME_ERROR_OTHER = 12
    INTERNAL_ERROR = 13
    EXEC_FORMAT_ERROR = 14


# statuses at or above this are terminal
FINISHED_THRESHOLD = RemoteStatus.ACCEPTED

REMOTE_RUNTIME_LABELS = {
    RemoteStatus.RUNTIME_ERROR_SIGSEGV: 'Segmentation fault',
    RemoteStatus.RUNTIME_ERROR_SIGXFSZ: 'Output limit exceeded',
    RemoteStatus.RUNTIME_ERROR_SIGFPE: 'Floating point exception',
    RemoteStatus.RUNTIME_ERROR_SIGABRT: 'Aborted',
    RemoteStatus.RUNTIME_ERROR_NZEC: 'Non-zero exit code',
    RemoteStatus.RUNTIME_ERROR_OTHER: 'Runtime error',
    RemoteStatus.EXEC_FORMAT_ERROR: 'Exec format error',
}


def is_terminal(status_id: Optional[int]) -> bool:
    return status_id is not None and status_id >= FINISHED_THRESHOLD


def classify_remote(
    result: Dict[str, Any],
    expected: Optional[str] = None,
    memory_limit_kb: Optional[int] = None,
) -> Classification:
    """Classify one finished Judge0 submission (decoded result document)."""
    status = result.get('status') or {}
    status_id = status.get('id')
    description = status.get('description') or 'Unknown status'
    stderr = result.get('stderr') or ''
    compile_output = result.get('compile_output') or ''

    try:
        code = RemoteStatus(status_id)
    except ValueError:
        return VerdictKind.RUNTIME_ERROR, _detail(description, stderr)

    if code is RemoteStatus.ACCEPTED:
        return _judge_output(result.get('stdout') or '', expected)
    if code is RemoteStatus.WRONG_ANSWER:
        return VerdictKind.WRONG_ANSWER, WRONG_ANSWER_MESSAGE
    if code is RemoteStatus.TIME_LIMIT_EXCEEDED:
        return VerdictKind.TIME_LIMIT_EXCEEDED, 'Time limit exceeded'
    if code is RemoteStatus.COMPILATION_ERROR:
        return VerdictKind.COMPILATION_ERROR, _trim(compile_output) or description
    if code is RemoteStatus.INTERNAL_ERROR:
        return VerdictKind.SYSTEM_ERROR, _detail(description, result.get('message') or '')
    if code in REMOTE_RUNTIME_LABELS:
        memory = result.get('memory')
        if memory_limit_kb and memory and memory >= memory_limit_kb:
            return VerdictKind.MEMORY_LIMIT_EXCEEDED, 'Memory limit exceeded'
        return VerdictKind.RUNTIME_ERROR, _detail(REMOTE_RUNTIME_LABELS[code], stderr)
    # still queued or processing; callers only pass finished results
    return VerdictKind.RUNTIME_ERROR, _detail(description, stderr)
