import math
import os
import shlex
import signal
import time
from typing import Callable, Optional, Tuple

import docker
import structlog
from docker.errors import DockerException, ImageNotFound

from .classifier import ExecutionOutcome, Termination

logger = structlog.get_logger(__name__)

WORKSPACE = '/workspace'
COMPILE_ERROR_FILE = 'compile_error.txt'
TIMEOUT_EXIT_CODE = 124
# cgroup v2, then v1; both expose an oom_kill counter
OOM_COUNTER_FILES = ('/sys/fs/cgroup/memory.events', '/sys/fs/cgroup/memory/memory.oom_control')


class SandboxUnavailableError(Exception):
    pass


def default_client_factory(docker_url: Optional[str] = None):
    if docker_url:
        return docker.DockerClient(base_url=docker_url)
    return docker.from_env()


def _read_output(raw) -> str:
    if raw is None:
        return ''
    if isinstance(raw, tuple):
        raw = b''.join([p for p in raw if p])
    if isinstance(raw, bytes):
        return raw.decode('utf-8', errors='replace')
    return str(raw)


def _read_artifact(path: str, limit_bytes: int) -> str:
    if not os.path.exists(path):
        return ''
    with open(path, 'rb') as fh:
        data = fh.read(limit_bytes)
    return data.decode('utf-8', errors='replace')


def _signal_name(exit_code: Optional[int]) -> Optional[str]:
    if exit_code is None or exit_code <= 128:
        return None
    try:
        return signal.Signals(exit_code - 128).name
    except ValueError:
        return None


class DockerSandbox:
    """One resource-capped container bound to one work area.

    The work area is mounted read/write at ``/workspace``; every artifact a
    run produces (compiler errors, per-test stdout and stderr) is written
    there and read back from the host side.
    """

    def __init__(
        self,
        workdir: str,
        image: str,
        memory_limit_kb: int,
        cpus: float = 0.5,
        pids_limit: int = 64,
        output_limit_kb: int = 10240,
        docker_url: Optional[str] = None,
        client_factory: Callable = default_client_factory,
    ):
        self.workdir = workdir
        self.image = image
        self.memory_limit_kb = memory_limit_kb
        self.cpus = cpus
        self.pids_limit = pids_limit
        self.output_limit_kb = output_limit_kb
        self.docker_url = docker_url
        self._client_factory = client_factory
        self.container = None
        self._oom_kills = 0
        self._oom_flag = False

    def start(self) -> None:
        nano_cpus = int(self.cpus * 1e9)
        mem_limit = f'{self.memory_limit_kb}k'
        try:
            client = self._client_factory(self.docker_url)
            self.container = client.containers.run(
                self.image,
                command='/bin/sh',
                detach=True,
                tty=True,
                working_dir=WORKSPACE,
                volumes={self.workdir: {'bind': WORKSPACE, 'mode': 'rw'}},
                network_mode='none',
                read_only=True,
                tmpfs={'/tmp': 'rw,exec,size=64m'},
                environment={'HOME': '/tmp', 'GOCACHE': '/tmp/go-cache'},
                security_opt=['no-new-privileges'],
                cap_drop=['ALL'],
                mem_limit=mem_limit,
                memswap_limit=mem_limit,
                nano_cpus=nano_cpus,
                pids_limit=self.pids_limit,
            )
        except ImageNotFound as e:
            raise SandboxUnavailableError(f'Execution image not found: {self.image}') from e
        except DockerException as e:
            raise SandboxUnavailableError(f'Docker unavailable: {e}') from e
        logger.debug('container_started', container=self.container.id, image=self.image)

    def _exec(self, script: str) -> Tuple[int, str]:
        if self.container is None:
            raise SandboxUnavailableError('Container is not running')
        try:
            rc, out = self.container.exec_run(cmd=['/bin/sh', '-c', script], workdir=WORKSPACE)
        except DockerException as e:
            raise SandboxUnavailableError(f'Container exec failed: {e}') from e
        return rc, _read_output(out)

    def compile(self, compile_cmd: str, timeout_s: int) -> Tuple[bool, str]:
        """Run the compile step; returns (succeeded, compiler diagnostics)."""
        script = (
            f'timeout -k 1 {timeout_s}s sh -c {shlex.quote(compile_cmd)} '
            f'2> {COMPILE_ERROR_FILE}'
        )
        rc, out = self._exec(script)
        if rc == TIMEOUT_EXIT_CODE:
            return False, f'Compilation timed out after {timeout_s}s'
        errors = _read_artifact(
            os.path.join(self.workdir, COMPILE_ERROR_FILE), self.output_limit_kb * 1024
        )
        return rc == 0, errors or out

    def run_case(
        self, index: int, stdin: str, run_cmd: str, cpu_limit_s: float, wall_limit_s: float
    ) -> ExecutionOutcome:
        input_fn = f'input_{index}.txt'
        output_fn = f'output_{index}.txt'
        error_fn = f'error_{index}.txt'
        with open(os.path.join(self.workdir, input_fn), 'w', encoding='utf-8') as fh:
            fh.write(stdin or '')

        cpu_seconds = max(1, math.ceil(cpu_limit_s))
        # soft limit delivers SIGXCPU, the hard one a second later SIGKILL
        # dash counts ulimit -f in 512 byte blocks
        fsize_blocks = self.output_limit_kb * 2
        script = (
            f'ulimit -S -t {cpu_seconds}; ulimit -H -t {cpu_seconds + 1}; '
            f'ulimit -f {fsize_blocks}; '
            f'timeout -k 1 {wall_limit_s:g}s sh -c {shlex.quote(run_cmd)} '
            f'< {input_fn} > {output_fn} 2> {error_fn}'
        )
        start = time.perf_counter()
        rc, _ = self._exec(script)
        elapsed = time.perf_counter() - start

        limit_bytes = self.output_limit_kb * 1024
        stdout = _read_artifact(os.path.join(self.workdir, output_fn), limit_bytes)
        stderr = _read_artifact(os.path.join(self.workdir, error_fn), limit_bytes)

        sig = _signal_name(rc)
        oom_killed = sig == 'SIGKILL' and self._oom_killed()
        if rc == TIMEOUT_EXIT_CODE or (sig == 'SIGKILL' and not oom_killed):
            # inside the container only the OOM killer, the CPU hard limit
            # and `timeout -k` send SIGKILL
            termination = Termination.TIMED_OUT
        elif sig:
            termination = Termination.SIGNALED
        else:
            termination = Termination.EXITED

        return ExecutionOutcome(
            stdout=stdout,
            stderr=stderr,
            termination=termination,
            exit_code=rc,
            signal=sig,
            elapsed_s=elapsed,
            oom_killed=oom_killed,
        )

    def _oom_killed(self) -> bool:
        """True when the kernel OOM killer fired since the last check."""
        _, out = self._exec(f'cat {" ".join(OOM_COUNTER_FILES)} 2>/dev/null')
        count = None
        for line in out.splitlines():
            key, _, value = line.partition(' ')
            if key == 'oom_kill' and value.strip().isdigit():
                count = int(value)
                break
        if count is not None:
            fired = count > self._oom_kills
            self._oom_kills = count
            return fired

        # no cgroup counter visible; fall back to the daemon's sticky flag
        try:
            self.container.reload()
            flag = bool(self.container.attrs.get('State', {}).get('OOMKilled'))
        except DockerException as e:
            logger.warning('oom_state_unavailable', container=self.container.id, error=str(e))
            return False
        fired = flag and not self._oom_flag
        self._oom_flag = flag
        return fired

    def restart(self) -> None:
        """Kill everything running in the container, keeping its mounts."""
        if self.container is None:
            return
        try:
            self.container.restart(timeout=0)
        except DockerException as e:
            raise SandboxUnavailableError(f'Container restart failed: {e}') from e

    def close(self) -> None:
        if self.container is None:
            return
        try:
            self.container.remove(force=True)
        except DockerException as e:
            logger.warning('container_remove_failed', container=self.container.id, error=str(e))
        finally:
            self.container = None
