import asyncio
import functools
import os
import shutil
import tempfile
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

import structlog

from .backend import Backend, ExecutionSession
from .classifier import ExecutionOutcome, Termination, classify_local
from .config import Settings
from .docker_runner import DockerSandbox, default_client_factory
from .languages import Language, LanguageSpec, language_spec
from .schemas import Submission, TestCase, Verdict, VerdictKind

logger = structlog.get_logger(__name__)


async def _in_thread(fn, *args, **kwargs):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))


def create_workarea(root: Optional[str] = None) -> str:
    if root:
        os.makedirs(root, exist_ok=True)
    return tempfile.mkdtemp(prefix=f'exec_{uuid.uuid4().hex[:12]}_', dir=root)


def destroy_workarea(workdir: str, keep: bool = False) -> None:
    if keep:
        logger.info('workarea_retained', path=workdir)
        return
    try:
        shutil.rmtree(workdir)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning('workarea_cleanup_failed', path=workdir, error=str(e))


class LocalSession(ExecutionSession):
    """Compiles once, then runs test cases one by one in the same container."""

    concurrent = False

    def __init__(self, sandbox: DockerSandbox, submission: Submission, spec: LanguageSpec, settings: Settings):
        self.sandbox = sandbox
        self.submission = submission
        self.spec = spec
        self.settings = settings
        self._next_index = 0

    async def prepare(self) -> Optional[Verdict]:
        if not self.spec.compiled:
            return None
        ok, diagnostics = await _in_thread(
            self.sandbox.compile, self.spec.compile, self.settings.compile_timeout_s
        )
        if ok:
            return None
        logger.info('compilation_failed', source=self.spec.source_name)
        return Verdict(
            kind=VerdictKind.COMPILATION_ERROR,
            message=diagnostics.strip() or 'Compilation failed',
        )

    async def run(self, case: TestCase) -> Verdict:
        index = self._next_index
        self._next_index += 1
        cpu_limit = self.submission.time_limit_s
        wall_limit = cpu_limit * self.settings.wall_time_factor
        ceiling = wall_limit + self.settings.host_grace_s

        try:
            outcome = await asyncio.wait_for(
                _in_thread(
                    self.sandbox.run_case, index, case.input, self.spec.run, cpu_limit, wall_limit
                ),
                timeout=ceiling,
            )
        except asyncio.TimeoutError:
            logger.warning('run_ceiling_exceeded', test=index, ceiling_s=ceiling)
            await _in_thread(self.sandbox.restart)
            outcome = ExecutionOutcome(termination=Termination.TIMED_OUT, elapsed_s=ceiling)

        kind, message = classify_local(outcome, case.expected_output)
        logger.debug(
            'test_case_finished',
            test=index,
            verdict=kind.value,
            exit_code=outcome.exit_code,
            signal=outcome.signal,
            elapsed_s=outcome.elapsed_s,
        )
        return Verdict(
            kind=kind,
            message=message,
            input=case.input,
            expected=case.expected_output,
            actual=outcome.stdout,
            time_s=outcome.elapsed_s,
        )


class LocalBackend(Backend):
    name = 'local'

    def __init__(self, settings: Settings, client_factory: Callable = default_client_factory):
        self.settings = settings
        self.client_factory = client_factory

    @asynccontextmanager
    async def open(self, submission: Submission, language: Language) -> AsyncIterator[LocalSession]:
        spec = language_spec(language)
        root = str(self.settings.workarea_root) if self.settings.workarea_root else None
        workdir = create_workarea(root)
        sandbox = None
        try:
            src_path = os.path.join(workdir, spec.source_name)
            with open(src_path, 'w', encoding='utf-8') as f:
                f.write(submission.code)

            sandbox = DockerSandbox(
                workdir,
                image=self.settings.runner_image,
                memory_limit_kb=submission.memory_limit_kb,
                cpus=self.settings.cpus,
                pids_limit=submission.pids_limit or self.settings.pids_limit,
                output_limit_kb=self.settings.output_limit_kb,
                docker_url=self.settings.docker_url,
                client_factory=self.client_factory,
            )
            await _in_thread(sandbox.start)
            logger.info('local_session_opened', language=language.value, workarea=workdir)
            yield LocalSession(sandbox, submission, spec, self.settings)
        finally:
            if sandbox is not None:
                await _in_thread(sandbox.close)
            destroy_workarea(workdir, keep=self.settings.keep_workarea)
