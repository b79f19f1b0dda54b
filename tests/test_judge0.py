import base64

import aiohttp
import pytest

from conftest import FakeJudge0, judged_sum
from coderunner.judge0 import Judge0Client, PollTimeoutError, RemoteBackend, RemoteJudgeError
from coderunner.languages import Language, language_spec
from coderunner.schemas import Submission, TestCase, VerdictKind

pytestmark = pytest.mark.asyncio

PYTHON = language_spec(Language.PYTHON)


def submission(**kwargs):
    kwargs.setdefault('code', 'print(sum(map(int, input().split())))')
    kwargs.setdefault('language', 'python')
    return Submission(**kwargs)


async def test_execute_submits_then_polls(remote_settings):
    fake = FakeJudge0(judged_sum, pending_polls=2)
    client = Judge0Client(remote_settings)

    result = await client.execute(fake, submission(), PYTHON, '1 2 3 4 5')

    assert result['stdout'] == '15\n'
    assert [r['method'] for r in fake.requests] == ['POST', 'GET', 'GET', 'GET']
    post = fake.requests[0]
    assert post['url'] == 'https://judge.example.com/submissions'
    assert post['params'] == {'base64_encoded': 'true', 'wait': 'false'}
    assert post['headers']['X-RapidAPI-Key'] == 'secret-key'
    assert fake.requests[1]['url'] == 'https://judge.example.com/submissions/token-0'


async def test_payload_is_encoded_and_clamped(remote_settings):
    client = Judge0Client(remote_settings)
    payload = client.build_payload(
        submission(time_limit_s=60, memory_limit_kb=2048000, pids_limit=8), PYTHON, 'in'
    )
    assert payload['language_id'] == 71
    assert base64.b64decode(payload['stdin']) == b'in'
    assert payload['cpu_time_limit'] == remote_settings.remote_max_cpu_time_s
    assert payload['memory_limit'] == remote_settings.remote_max_memory_kb
    assert payload['max_processes_and_or_threads'] == 8


async def test_poll_ceiling_is_a_request_timeout(remote_settings):
    fake = FakeJudge0(judged_sum, pending_polls=100)
    client = Judge0Client(remote_settings)
    with pytest.raises(PollTimeoutError, match='request timed out'):
        await client.execute(fake, submission(), PYTHON, '1')
    assert fake.polls['token-0'] == remote_settings.poll_max_attempts


async def test_transport_failure_raises_remote_error(remote_settings):
    def unreachable(stdin):
        raise aiohttp.ClientConnectionError('connection reset')

    client = Judge0Client(remote_settings)
    with pytest.raises(RemoteJudgeError):
        await client.execute(FakeJudge0(unreachable), submission(), PYTHON, '1')


async def test_http_error_status_raises(remote_settings):
    class Rejecting(FakeJudge0):
        def request(self, method, url, **kwargs):
            from conftest import FakeResponse
            return FakeResponse(422, {'error': 'language_id is invalid'})

    client = Judge0Client(remote_settings)
    with pytest.raises(RemoteJudgeError, match='HTTP 422'):
        await client.submit(Rejecting(judged_sum), {})


async def test_session_judges_and_decodes(remote_settings):
    fake = FakeJudge0(judged_sum)
    backend = RemoteBackend(remote_settings, session_factory=fake.factory)

    async with backend.open(submission(), Language.PYTHON) as session:
        assert session.concurrent
        assert await session.prepare() is None
        ok = await session.run(TestCase(input='1 2 3 4 5', expected_output='15'))
        wrong = await session.run(TestCase(input='1 2 3 4 5', expected_output='16'))

    assert fake.closed
    assert ok.kind is VerdictKind.ACCEPTED
    assert ok.time_s == pytest.approx(0.012)
    assert wrong.kind is VerdictKind.WRONG_ANSWER
    assert wrong.actual == '15\n'


async def test_session_maps_compile_error(remote_settings):
    def compile_error(stdin):
        return {
            'status': {'id': 6, 'description': 'Compilation Error'},
            'compile_output': "main.cpp:1:1: error: 'x' does not name a type",
        }

    backend = RemoteBackend(remote_settings, session_factory=FakeJudge0(compile_error).factory)
    async with backend.open(submission(language='cpp'), Language.CPP) as session:
        verdict = await session.run(TestCase(input='', expected_output=''))
    assert verdict.kind is VerdictKind.COMPILATION_ERROR
    assert 'does not name a type' in verdict.message
