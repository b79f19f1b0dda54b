from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process-wide configuration, read once at start-up.

    Every field can be overridden with a ``CODERUNNER_*`` environment variable
    or a ``.env`` file in the working directory.
    """

    backend: Literal['local', 'remote'] = 'remote'

    # ---- submission defaults ----
    default_time_limit_s: float = Field(default=2.0, gt=0)
    default_memory_limit_kb: int = Field(default=256000, gt=0)

    # ---- local docker backend ----
    runner_image: str = 'coderunner/runner:latest'
    docker_url: Optional[str] = None
    cpus: float = Field(default=0.5, gt=0)
    pids_limit: int = Field(default=64, gt=0)
    compile_timeout_s: int = Field(default=30, gt=0)
    output_limit_kb: int = Field(default=10240, gt=0)
    # wall clock ceiling per test = time limit * factor
    wall_time_factor: float = Field(default=2.0, ge=1.0)
    host_grace_s: float = Field(default=5.0, ge=0)
    workarea_root: Optional[Path] = None
    keep_workarea: bool = False

    # ---- remote judge0 backend ----
    judge0_api_url: str = 'https://judge0-ce.p.rapidapi.com/submissions'
    judge0_api_key: Optional[SecretStr] = None
    judge0_api_host: Optional[str] = 'judge0-ce.p.rapidapi.com'
    judge0_auth_header: str = 'X-RapidAPI-Key'
    request_timeout_s: float = Field(default=15.0, gt=0)
    poll_interval_s: float = Field(default=1.0, ge=0)
    poll_backoff: float = Field(default=1.0, ge=1.0)
    poll_max_interval_s: float = Field(default=5.0, ge=0)
    poll_max_attempts: int = Field(default=30, gt=0)
    remote_max_cpu_time_s: float = Field(default=15.0, gt=0)
    remote_max_memory_kb: int = Field(default=512000, gt=0)

    # ---- logging ----
    log_level: str = 'INFO'
    log_json: bool = True

    model_config = SettingsConfigDict(
        env_prefix='CODERUNNER_', env_file='.env', extra='ignore'
    )

    @model_validator(mode='after')
    def _require_remote_credentials(self) -> 'Settings':
        if self.backend == 'remote' and not self.judge0_api_key:
            raise ValueError(
                'CODERUNNER_JUDGE0_API_KEY is required when backend is "remote"'
            )
        return self


def load_settings(**overrides) -> Settings:
    return Settings(**overrides)
