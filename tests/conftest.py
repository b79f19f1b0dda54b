import base64
import json
import os
import re
import signal
import subprocess
from collections import defaultdict

import pytest

from coderunner.config import Settings


# ---- docker ----

class FakeContainer:
    """Executes scripts by calling a Python handler instead of a shell.

    The handler receives the test input and returns (exit_code, stdout, stderr)
    or (exit_code, stdout, stderr, oom_killed); the fake writes the artifacts
    the real container would have written.
    """

    def __init__(self, workdir, handler, compile_result, cgroup_counter=True):
        self.id = 'fake-container'
        self.workdir = workdir
        self.handler = handler
        self.compile_result = compile_result
        self.cgroup_counter = cgroup_counter
        self.oom_kills = 0
        self.attrs = {'State': {'OOMKilled': False}}
        self.scripts = []
        self.restarted = 0
        self.removed = False

    def _write(self, name, text):
        if os.path.isdir(self.workdir):
            with open(os.path.join(self.workdir, name), 'w', encoding='utf-8') as fh:
                fh.write(text)

    def exec_run(self, cmd, workdir=None):
        script = cmd[-1]
        self.scripts.append(script)
        if 'memory.events' in script:
            if not self.cgroup_counter:
                return 1, b''
            return 0, f'low 0\nhigh 0\nmax 3\noom 1\noom_kill {self.oom_kills}\n'.encode()
        match = re.search(r'< input_(\d+)\.txt', script)
        if match is None:
            rc, errors = self.compile_result
            self._write('compile_error.txt', errors)
            return rc, b''
        index = match.group(1)
        with open(os.path.join(self.workdir, f'input_{index}.txt'), encoding='utf-8') as fh:
            stdin = fh.read()
        rc, stdout, stderr, *oom = self.handler(stdin)
        if oom and oom[0]:
            self.oom_kills += 1
            self.attrs['State']['OOMKilled'] = True
        self._write(f'output_{index}.txt', stdout)
        self._write(f'error_{index}.txt', stderr)
        return rc, b''

    def reload(self):
        pass

    def restart(self, timeout=None):
        self.restarted += 1

    def remove(self, force=False):
        self.removed = True


class ShellContainer:
    """Runs exec scripts in the host's /bin/sh with the work area as cwd."""

    def __init__(self, workdir):
        self.id = 'shell-container'
        self.workdir = workdir
        self.attrs = {'State': {'OOMKilled': False}}

    def exec_run(self, cmd, workdir=None):
        if 'memory.events' in cmd[-1]:
            # the host cgroup is not the sandbox's
            return 1, b''
        proc = subprocess.run(cmd, cwd=self.workdir, stdout=subprocess.PIPE, stderr=subprocess.STDOUT)
        rc = proc.returncode
        # docker reports a signal death as 128 + signo
        return (128 - rc if rc < 0 else rc), proc.stdout

    def reload(self):
        pass

    def remove(self, force=False):
        pass


class FakeDockerClient:
    def __init__(self, handler=None, compile_result=(0, ''), error=None, cgroup_counter=True):
        self.handler = handler or (lambda stdin: (0, '', ''))
        self.compile_result = compile_result
        self.error = error
        self.cgroup_counter = cgroup_counter
        self.run_args = None
        self.container = None
        self.containers = self

    def run(self, image, **kwargs):
        if self.error is not None:
            raise self.error
        self.run_args = (image, kwargs)
        workdir = next(iter(kwargs['volumes']))
        self.container = FakeContainer(workdir, self.handler, self.compile_result, self.cgroup_counter)
        return self.container

    def factory(self, docker_url=None):
        return self


class ShellDockerClient:
    def __init__(self):
        self.containers = self

    def run(self, image, **kwargs):
        return ShellContainer(next(iter(kwargs['volumes'])))

    def factory(self, docker_url=None):
        return self


def sum_program(stdin):
    return 0, f'{sum(int(x) for x in stdin.split())}\n', ''


def infinite_loop(stdin):
    # CPU soft limit reached
    return 128 + signal.SIGXCPU, '', ''


def memory_hog(stdin):
    return 128 + signal.SIGKILL, '', '', True


def divide_by_zero(stdin):
    return 1, '', (
        'Traceback (most recent call last):\n'
        '  File "main.py", line 1, in <module>\n'
        'ZeroDivisionError: division by zero\n'
    )


# ---- judge0 ----

class FakeResponse:
    def __init__(self, status, payload):
        self.status = status
        self.payload = payload

    async def json(self):
        return self.payload

    async def text(self):
        return json.dumps(self.payload)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


def _encode(value):
    if value is None:
        return None
    return base64.b64encode(value.encode('utf-8')).decode('ascii')


class FakeJudge0:
    """In-process stand-in for the Judge0 submissions API and an aiohttp session.

    `responder(stdin)` returns the finished result with plain-text fields; it
    may raise to simulate a transport failure on the poll request.
    """

    def __init__(self, responder, pending_polls=0):
        self.responder = responder
        self.pending_polls = pending_polls
        self.submissions = {}
        self.polls = defaultdict(int)
        self.requests = []
        self.closed = False

    def request(self, method, url, headers=None, timeout=None, params=None, json=None):
        self.requests.append({'method': method, 'url': url, 'params': params, 'json': json, 'headers': headers})
        if method == 'POST':
            token = f'token-{len(self.submissions)}'
            self.submissions[token] = json
            return FakeResponse(201, {'token': token})

        token = url.rsplit('/', 1)[-1]
        self.polls[token] += 1
        if self.polls[token] <= self.pending_polls:
            return FakeResponse(200, {'status': {'id': 2, 'description': 'Processing'}})
        payload = self.submissions[token]
        stdin = base64.b64decode(payload['stdin']).decode('utf-8')
        result = dict(self.responder(stdin))
        for field in ('stdout', 'stderr', 'compile_output', 'message'):
            result[field] = _encode(result.get(field))
        return FakeResponse(200, result)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.closed = True
        return False

    def factory(self):
        return self


def judged_sum(stdin):
    return {
        'status': {'id': 3, 'description': 'Accepted'},
        'stdout': f'{sum(int(x) for x in stdin.split())}\n',
        'time': '0.012',
        'memory': 3200,
    }


# ---- settings ----

@pytest.fixture
def local_settings(tmp_path):
    return Settings(
        backend='local',
        workarea_root=tmp_path / 'work',
        host_grace_s=5.0,
    )


@pytest.fixture
def remote_settings():
    return Settings(
        backend='remote',
        judge0_api_url='https://judge.example.com/submissions',
        judge0_api_key='secret-key',
        poll_interval_s=0,
        poll_max_attempts=5,
    )
