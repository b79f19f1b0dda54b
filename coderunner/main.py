import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .config import Settings, load_settings
from .engine import ExecutionEngine
from .languages import UnsupportedLanguageError, resolve_language
from .log import setup_logging
from .schemas import (
    EvaluationMode,
    EvaluationResult,
    ExecuteRequest,
    Failed,
    RawOutputs,
    RunRequest,
    Submission,
    TestCase,
)

logger = structlog.get_logger(__name__)

_started = time.monotonic()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # a bad configuration stops the process here, before any request
    settings = load_settings()
    setup_logging(settings.log_level, settings.log_json)
    app.state.settings = settings
    app.state.engine = ExecutionEngine.from_settings(settings)
    logger.info('service_started', backend=settings.backend)
    yield


app = FastAPI(title='Code Runner', lifespan=lifespan)


@app.exception_handler(UnsupportedLanguageError)
async def unsupported_language_handler(request: Request, exc: UnsupportedLanguageError):
    return JSONResponse(status_code=400, content={'detail': str(exc)})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error('request_failed', path=request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={'detail': 'execution error'})


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_engine(request: Request) -> ExecutionEngine:
    return request.app.state.engine


def _submission(
    code: str,
    language: str,
    time_limit: Optional[float],
    memory_limit: Optional[int],
    settings: Settings,
) -> Submission:
    return Submission(
        code=code,
        language=language,
        time_limit_s=time_limit or settings.default_time_limit_s,
        memory_limit_kb=memory_limit or settings.default_memory_limit_kb,
    )


def _verdict_response(result: EvaluationResult) -> dict:
    if isinstance(result, Failed):
        detail = None
        if result.failing_input is not None:
            detail = {
                'input': result.failing_input,
                'expected': result.failing_expected,
                'output': result.failing_actual or '',
            }
        return {
            'isError': True,
            'errorType': result.verdict.value,
            'message': result.message,
            'result': detail,
        }
    return {'isError': False, 'message': result.message}


async def _judge(
    req: RunRequest, include_hidden: bool, engine: ExecutionEngine, settings: Settings
) -> dict:
    resolve_language(req.language)
    submission = _submission(
        req.code, req.language, req.problem.time_limit, req.problem.memory_limit, settings
    )
    tests = req.problem.test_cases(include_hidden)
    result = await engine.evaluate(submission, tests, EvaluationMode.STOP_ON_FIRST_FAILURE)
    return _verdict_response(result)


@app.get('/health')
async def health():
    return {
        'status': 'ok',
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'uptime': time.monotonic() - _started,
    }


@app.post('/run')
async def run_code(
    req: RunRequest,
    engine: ExecutionEngine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
):
    logger.info('run', language=req.language, problem_id=req.problem.id or 'unknown')
    return await _judge(req, False, engine, settings)


@app.post('/submit')
async def submit_code(
    req: RunRequest,
    engine: ExecutionEngine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
):
    logger.info('submit', language=req.language, problem_id=req.problem.id or 'unknown')
    return await _judge(req, True, engine, settings)


@app.post('/run-all')
async def run_all(
    req: RunRequest,
    engine: ExecutionEngine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
):
    tests = req.problem.test_cases(include_hidden=True)
    logger.info('run_all', language=req.language, problem_id=req.problem.id or 'unknown')
    submission = _submission(
        req.code, req.language, req.problem.time_limit, req.problem.memory_limit, settings
    )
    result = await engine.evaluate(submission, tests, EvaluationMode.EVALUATE_ALL_COUNT)
    if isinstance(result, Failed):
        raise HTTPException(status_code=500, detail=result.message)
    return {'success': True, 'passed': result.passed, 'total': result.total}


@app.post('/execute')
async def execute_inputs(
    req: ExecuteRequest,
    engine: ExecutionEngine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
):
    inputs = req.raw_inputs()
    if inputs is None:
        raise HTTPException(
            status_code=400,
            detail='Missing required fields: code, language, and inputs (array) or problem.testCases',
        )
    logger.info('execute', language=req.language, tests=len(inputs))
    submission = _submission(req.code, req.language, req.time_limit, req.memory_limit, settings)
    tests: List[TestCase] = [TestCase(input=i) for i in inputs]
    result = await engine.evaluate(submission, tests, EvaluationMode.EVALUATE_ALL_COLLECT)
    if not isinstance(result, RawOutputs):
        raise HTTPException(status_code=500, detail=result.message)
    outputs = [
        f'Error: {o.error}' if o.error is not None else (o.output or '')
        for o in result.outputs
    ]
    return {'outputs': outputs}
