from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class VerdictKind(str, Enum):
    ACCEPTED = 'Accepted'
    WRONG_ANSWER = 'Wrong Answer'
    COMPILATION_ERROR = 'Compilation Error'
    RUNTIME_ERROR = 'Runtime Error'
    TIME_LIMIT_EXCEEDED = 'Time Limit Exceeded'
    MEMORY_LIMIT_EXCEEDED = 'Memory Limit Exceeded'
    SYSTEM_ERROR = 'System Error'


class EvaluationMode(str, Enum):
    STOP_ON_FIRST_FAILURE = 'stop-on-first-failure'
    EVALUATE_ALL_COUNT = 'evaluate-all-count'
    EVALUATE_ALL_COLLECT = 'evaluate-all-collect'


class TestCase(BaseModel):
    __test__ = False  # not a pytest class

    input: str = ''
    expected_output: Optional[str] = None


class Submission(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str = Field(min_length=1)
    language: str
    time_limit_s: float = Field(default=2.0, gt=0)
    memory_limit_kb: int = Field(default=256000, gt=0)
    pids_limit: Optional[int] = Field(default=None, gt=0)


class Verdict(BaseModel):
    kind: VerdictKind
    message: str = ''
    input: Optional[str] = None
    expected: Optional[str] = None
    actual: Optional[str] = None
    time_s: Optional[float] = None

    @property
    def passed(self) -> bool:
        return self.kind is VerdictKind.ACCEPTED


class Accepted(BaseModel):
    type: Literal['accepted'] = 'accepted'
    message: str


class Failed(BaseModel):
    type: Literal['failed'] = 'failed'
    verdict: VerdictKind
    message: str
    failing_input: Optional[str] = None
    failing_expected: Optional[str] = None
    failing_actual: Optional[str] = None

    @classmethod
    def from_verdict(cls, verdict: Verdict) -> 'Failed':
        return cls(
            verdict=verdict.kind,
            message=verdict.message,
            failing_input=verdict.input,
            failing_expected=verdict.expected,
            failing_actual=verdict.actual,
        )


class Counted(BaseModel):
    type: Literal['counted'] = 'counted'
    passed: int
    total: int


class RawOutput(BaseModel):
    input: str
    output: Optional[str] = None
    error: Optional[str] = None


class RawOutputs(BaseModel):
    type: Literal['raw_outputs'] = 'raw_outputs'
    outputs: List[RawOutput]


EvaluationResult = Annotated[
    Union[Accepted, Failed, Counted, RawOutputs], Field(discriminator='type')
]


# request layer

class Example(BaseModel):
    input: str = ''
    output: str = ''


class Problem(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    id: Optional[str] = None
    examples: List[Example] = Field(default_factory=list)
    sample_tests: List[Example] = Field(default_factory=list, alias='sampleTests')
    hidden_tests: List[Example] = Field(default_factory=list, alias='hiddenTests')
    time_limit: Optional[float] = Field(default=None, gt=0, alias='timeLimit')
    memory_limit: Optional[int] = Field(default=None, gt=0, alias='memoryLimit')

    def test_cases(self, include_hidden: bool = False) -> List[TestCase]:
        tests = self.examples or self.sample_tests
        if include_hidden:
            tests = tests + self.hidden_tests
        return [TestCase(input=t.input, expected_output=t.output) for t in tests]


class RunRequest(BaseModel):
    code: str = Field(min_length=1)
    language: str
    problem: Problem


class ExecuteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str = Field(min_length=1)
    language: str
    inputs: Optional[List[str]] = None
    problem: Optional[dict] = None
    time_limit: Optional[float] = Field(default=None, gt=0, alias='timeLimit')
    memory_limit: Optional[int] = Field(default=None, gt=0, alias='memoryLimit')

    def raw_inputs(self) -> Optional[List[str]]:
        if self.inputs is not None:
            return self.inputs
        cases = (self.problem or {}).get('testCases')
        if not isinstance(cases, list):
            return None
        return [c.get('input', '') if isinstance(c, dict) else str(c) for c in cases]
