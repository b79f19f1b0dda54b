import abc
from typing import AsyncContextManager, Optional

from .languages import Language
from .schemas import Submission, TestCase, Verdict


class ExecutionSession(abc.ABC):
    """One submission bound to one backend for the length of an evaluation."""

    # whether run() may be awaited for several cases at once
    concurrent: bool = False

    @abc.abstractmethod
    async def prepare(self) -> Optional[Verdict]:
        """Compile if needed. Returns a failing verdict, or None when ready."""

    @abc.abstractmethod
    async def run(self, case: TestCase) -> Verdict:
        """Run one test case and return its classified verdict.

        With ``case.expected_output`` set to None the verdict only reflects
        whether the program terminated cleanly; ``actual`` carries its stdout.
        """


class Backend(abc.ABC):
    name: str = 'backend'

    @abc.abstractmethod
    def open(self, submission: Submission, language: Language) -> AsyncContextManager[ExecutionSession]:
        """Acquire execution resources; released when the context exits."""
