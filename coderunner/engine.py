"""Execution engine: the single entry point callers use to judge code.

The engine resolves the language, opens a session on the configured backend
and walks the test cases under one of three policies:

* stop-on-first-failure returns the first failing verdict, or Accepted;
* evaluate-all-count runs every case and reports how many were Accepted;
* evaluate-all-collect runs every case and returns raw outputs unjudged.

Whatever goes wrong inside a backend comes back as a System Error verdict,
never as an exception.
"""
import asyncio
from typing import List, Sequence, Union

import structlog

from .backend import Backend, ExecutionSession
from .config import Settings
from .executor import LocalBackend
from .judge0 import RemoteBackend
from .languages import Language, UnsupportedLanguageError, resolve_language
from .schemas import (
    Accepted,
    Counted,
    EvaluationMode,
    EvaluationResult,
    Failed,
    RawOutput,
    RawOutputs,
    Submission,
    TestCase,
    Verdict,
    VerdictKind,
)

logger = structlog.get_logger(__name__)

ALL_PASSED_MESSAGE = 'All test cases passed successfully'


def _system_error(message: str) -> Failed:
    return Failed(verdict=VerdictKind.SYSTEM_ERROR, message=message)


class ExecutionEngine:
    def __init__(self, backend: Backend):
        self.backend = backend

    @classmethod
    def from_settings(cls, settings: Settings) -> 'ExecutionEngine':
        if settings.backend == 'local':
            return cls(LocalBackend(settings))
        return cls(RemoteBackend(settings))

    async def evaluate(
        self,
        submission: Submission,
        test_cases: Sequence[Union[TestCase, str]],
        mode: EvaluationMode = EvaluationMode.STOP_ON_FIRST_FAILURE,
    ) -> EvaluationResult:
        mode = EvaluationMode(mode)
        cases = [TestCase(input=c) if isinstance(c, str) else c for c in test_cases]
        log = logger.bind(backend=self.backend.name, mode=mode.value, language=submission.language)

        try:
            language = resolve_language(submission.language)
        except UnsupportedLanguageError as e:
            log.info('unsupported_language')
            return _system_error(str(e))

        if mode is EvaluationMode.EVALUATE_ALL_COUNT and not cases:
            return Counted(passed=0, total=0)

        try:
            if mode is EvaluationMode.STOP_ON_FIRST_FAILURE:
                result = await self._stop_on_first_failure(submission, language, cases)
            elif mode is EvaluationMode.EVALUATE_ALL_COUNT:
                result = await self._count(submission, language, cases)
            else:
                result = await self._collect(submission, language, cases)
        except Exception as e:
            log.error('evaluation_failed', exc_info=True)
            return _system_error(str(e) or type(e).__name__)

        log.info('evaluation_finished', tests=len(cases), result=result.type)
        return result

    def evaluate_sync(
        self,
        submission: Submission,
        test_cases: Sequence[Union[TestCase, str]],
        mode: EvaluationMode = EvaluationMode.STOP_ON_FIRST_FAILURE,
    ) -> EvaluationResult:
        """Blocking variant for worker threads without a running event loop."""
        return asyncio.run(self.evaluate(submission, test_cases, mode))

    async def _stop_on_first_failure(
        self, submission: Submission, language: Language, cases: List[TestCase]
    ) -> EvaluationResult:
        async with self.backend.open(submission, language) as session:
            failure = await session.prepare()
            if failure is not None:
                if cases:
                    failure = failure.model_copy(update={'input': cases[0].input})
                return Failed.from_verdict(failure)
            for index, case in enumerate(cases):
                verdict = await session.run(case)
                if not verdict.passed:
                    logger.info('test_case_failed', test=index, verdict=verdict.kind.value)
                    return Failed.from_verdict(verdict)
        return Accepted(message=ALL_PASSED_MESSAGE)

    async def _count(
        self, submission: Submission, language: Language, cases: List[TestCase]
    ) -> EvaluationResult:
        total = len(cases)
        async with self.backend.open(submission, language) as session:
            if await session.prepare() is not None:
                return Counted(passed=0, total=total)
            if session.concurrent:
                outcomes = await asyncio.gather(
                    *(session.run(case) for case in cases), return_exceptions=True
                )
            else:
                outcomes = [await self._run_guarded(session, case) for case in cases]

        passed = 0
        for index, outcome in enumerate(outcomes):
            if isinstance(outcome, BaseException):
                logger.warning('test_case_errored', test=index, error=str(outcome))
            elif outcome.passed:
                passed += 1
        return Counted(passed=passed, total=total)

    async def _run_guarded(self, session: ExecutionSession, case: TestCase):
        try:
            return await session.run(case)
        except Exception as e:
            return e

    async def _collect(
        self, submission: Submission, language: Language, cases: List[TestCase]
    ) -> EvaluationResult:
        unjudged = [TestCase(input=c.input) for c in cases]
        async with self.backend.open(submission, language) as session:
            failure = await session.prepare()
            if failure is not None:
                return RawOutputs(
                    outputs=[RawOutput(input=c.input, error=failure.message) for c in unjudged]
                )
            outputs = []
            for case in unjudged:
                outcome = await self._run_guarded(session, case)
                outputs.append(self._raw_output(case, outcome))
        return RawOutputs(outputs=outputs)

    @staticmethod
    def _raw_output(case: TestCase, outcome: Union[Verdict, Exception]) -> RawOutput:
        if isinstance(outcome, Exception):
            return RawOutput(input=case.input, error=str(outcome) or type(outcome).__name__)
        if outcome.passed:
            return RawOutput(input=case.input, output=outcome.actual or '')
        return RawOutput(input=case.input, error=f'{outcome.kind.value}: {outcome.message}')
