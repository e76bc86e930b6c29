import asyncio
from typing import List, Optional, Sequence, Union

import pytest
from parallel_execution_client.errors import TransportError
from parallel_execution_client.models import (
    ExecutionArgs,
    FailureDetail,
    JobHandle,
    JobStatus,
    StatusResponse,
)

ScriptedResponse = Union[StatusResponse, Exception]


class FakeClock:
    """Virtual time: sleeping advances the clock instantly."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    def time(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)


class ScriptedJobClient:
    """Answers polls from a script; the last entry repeats forever."""

    def __init__(self, responses: Sequence[ScriptedResponse]):
        self.responses = list(responses)
        self.polls = 0
        self.submitted: List[ExecutionArgs] = []

    async def submit(self, args: ExecutionArgs) -> JobHandle:
        self.submitted.append(args)
        return JobHandle(id=f"execution/{len(self.submitted)}")

    async def poll(self, handle: JobHandle) -> StatusResponse:
        self.polls += 1
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def waiting() -> StatusResponse:
    return StatusResponse(
        status=JobStatus.waiting,
        raw_response={"status": {"code": 3, "message": "in progress"}},
        elapsed_time=0.0,
    )


def ready(payload: Optional[dict] = None) -> StatusResponse:
    return StatusResponse(
        status=JobStatus.ready,
        raw_response=payload if payload is not None else {"status": {"code": 5}},
        elapsed_time=0.0,
    )


def failed(message: str, cause: Optional[str] = None) -> StatusResponse:
    return StatusResponse(
        status=JobStatus.failed,
        raw_response={"status": {"code": -1, "message": message}},
        elapsed_time=0.0,
        error=FailureDetail(code="job_failed", message=message, status_code=-1, cause=cause),
    )


def http_error(status: int) -> TransportError:
    return TransportError(f"{status} for http://example.test/execution/1", status=status)


def connection_error() -> TransportError:
    return TransportError("error accessing http://example.test/execution/1", connection=True)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
