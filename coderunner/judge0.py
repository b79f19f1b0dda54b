"""Remote backend: a Judge0 compatible judging service.

Each test case is one independent submit + poll cycle. Source, stdin and
outputs travel base64 encoded so that non UTF-8 program output does not make
the service reject the request.
"""
import asyncio
import base64
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Optional

import aiohttp
import structlog

from .backend import Backend, ExecutionSession
from .classifier import classify_remote, is_terminal
from .config import Settings
from .languages import Language, LanguageSpec, language_spec
from .schemas import Submission, TestCase, Verdict

logger = structlog.get_logger(__name__)

RESULT_FIELDS = 'token,stdout,stderr,compile_output,message,status,time,memory,exit_code,exit_signal'
ENCODED_FIELDS = ('stdout', 'stderr', 'compile_output', 'message')


class RemoteJudgeError(Exception):
    pass


class PollTimeoutError(RemoteJudgeError):
    pass


def _b64encode(text: Optional[str]) -> str:
    return base64.b64encode((text or '').encode('utf-8')).decode('ascii')


def _b64decode(value: Optional[str]) -> Optional[str]:
    if not value:
        return value
    return base64.b64decode(value).decode('utf-8', errors='replace')


class Judge0Client:
    def __init__(self, settings: Settings):
        self.base_url = settings.judge0_api_url.rstrip('/')
        self.headers = {
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        }
        if settings.judge0_api_key is not None:
            self.headers[settings.judge0_auth_header] = settings.judge0_api_key.get_secret_value()
        if settings.judge0_api_host:
            self.headers['X-RapidAPI-Host'] = settings.judge0_api_host
        self.timeout = aiohttp.ClientTimeout(total=settings.request_timeout_s)
        self.poll_interval_s = settings.poll_interval_s
        self.poll_backoff = settings.poll_backoff
        self.poll_max_interval_s = max(settings.poll_max_interval_s, settings.poll_interval_s)
        self.poll_max_attempts = settings.poll_max_attempts
        self.max_cpu_time_s = settings.remote_max_cpu_time_s
        self.max_memory_kb = settings.remote_max_memory_kb

    def effective_memory_kb(self, submission: Submission) -> int:
        return min(submission.memory_limit_kb, self.max_memory_kb)

    def build_payload(self, submission: Submission, spec: LanguageSpec, stdin: str) -> Dict[str, Any]:
        payload = {
            'language_id': spec.judge0_id,
            'source_code': _b64encode(submission.code),
            'stdin': _b64encode(stdin),
            'cpu_time_limit': min(submission.time_limit_s, self.max_cpu_time_s),
            'memory_limit': self.effective_memory_kb(submission),
        }
        if submission.pids_limit:
            payload['max_processes_and_or_threads'] = submission.pids_limit
        return payload

    async def _request(self, session, method: str, url: str, **kwargs) -> Dict[str, Any]:
        try:
            async with session.request(
                method, url, headers=self.headers, timeout=self.timeout, **kwargs
            ) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise RemoteJudgeError(
                        f'{method} {url} failed with HTTP {resp.status}: {text[:256]}'
                    )
                return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise RemoteJudgeError(f'{method} {url} failed: {e}') from e

    async def submit(self, session, payload: Dict[str, Any]) -> str:
        data = await self._request(
            session,
            'POST',
            self.base_url,
            params={'base64_encoded': 'true', 'wait': 'false'},
            json=payload,
        )
        token = data.get('token') if isinstance(data, dict) else None
        if not token:
            raise RemoteJudgeError(f'No submission token in response: {str(data)[:256]}')
        return token

    async def poll(self, session, token: str) -> Dict[str, Any]:
        return await self._request(
            session,
            'GET',
            f'{self.base_url}/{token}',
            params={'base64_encoded': 'true', 'fields': RESULT_FIELDS},
        )

    async def wait_for_result(self, session, token: str) -> Dict[str, Any]:
        interval = self.poll_interval_s
        for attempt in range(1, self.poll_max_attempts + 1):
            result = await self.poll(session, token)
            status_id = (result.get('status') or {}).get('id')
            if is_terminal(status_id):
                logger.debug('submission_finished', token=token, status=status_id, attempts=attempt)
                return self._decode(result)
            if attempt < self.poll_max_attempts:
                await asyncio.sleep(interval)
                interval = min(interval * self.poll_backoff, self.poll_max_interval_s)
        logger.warning('poll_attempts_exhausted', token=token, attempts=self.poll_max_attempts)
        raise PollTimeoutError('request timed out')

    def _decode(self, result: Dict[str, Any]) -> Dict[str, Any]:
        decoded = dict(result)
        for field in ENCODED_FIELDS:
            decoded[field] = _b64decode(result.get(field))
        return decoded

    async def execute(self, session, submission: Submission, spec: LanguageSpec, stdin: str) -> Dict[str, Any]:
        token = await self.submit(session, self.build_payload(submission, spec, stdin))
        logger.debug('submission_created', token=token, language_id=spec.judge0_id)
        return await self.wait_for_result(session, token)


class RemoteSession(ExecutionSession):
    concurrent = True

    def __init__(self, client: Judge0Client, http, submission: Submission, spec: LanguageSpec):
        self.client = client
        self.http = http
        self.submission = submission
        self.spec = spec

    async def prepare(self) -> Optional[Verdict]:
        # the service compiles as part of every submission
        return None

    async def run(self, case: TestCase) -> Verdict:
        result = await self.client.execute(self.http, self.submission, self.spec, case.input)
        kind, message = classify_remote(
            result, case.expected_output, self.client.effective_memory_kb(self.submission)
        )
        elapsed = result.get('time')
        return Verdict(
            kind=kind,
            message=message,
            input=case.input,
            expected=case.expected_output,
            actual=result.get('stdout') or '',
            time_s=float(elapsed) if elapsed else None,
        )


class RemoteBackend(Backend):
    name = 'remote'

    def __init__(
        self,
        settings: Settings,
        client: Optional[Judge0Client] = None,
        session_factory: Callable = aiohttp.ClientSession,
    ):
        self.client = client or Judge0Client(settings)
        self.session_factory = session_factory

    @asynccontextmanager
    async def open(self, submission: Submission, language: Language) -> AsyncIterator[RemoteSession]:
        spec = language_spec(language)
        async with self.session_factory() as http:
            yield RemoteSession(self.client, http, submission, spec)
