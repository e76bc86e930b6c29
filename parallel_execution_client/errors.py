from typing import Optional

from parallel_execution_client.models import FailureDetail, JobHandle

# 402 is returned when every remote slot is busy; backing off may free one up.
TRANSIENT_HTTP_STATUSES = frozenset({402, 429})


class ExecutionError(Exception):
    """Base class for failures of a single execution"""

    code = "execution_error"

    @property
    def detail(self) -> FailureDetail:
        return FailureDetail(code=self.code, message=str(self))


class TransportError(ExecutionError):
    """A request to the execution service failed before we got a usable status"""

    code = "transport"

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        status: Optional[int] = None,
        body: Optional[str] = None,
        connection: bool = False,
    ):
        super().__init__(message)
        self.url = url
        self.status = status
        self.body = body
        self.connection = connection

    @property
    def detail(self) -> FailureDetail:
        return FailureDetail(code=self.code, message=str(self), status_code=self.status)


class SubmissionError(ExecutionError):
    code = "submission"

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message)
        self.cause = cause

    @property
    def detail(self) -> FailureDetail:
        cause = str(self.cause) if self.cause is not None else None
        return FailureDetail(code=self.code, message=str(self), cause=cause)


class JobFailedError(ExecutionError):
    """The remote job finished in a failed state"""

    code = "job_failed"

    def __init__(self, handle: JobHandle, failure: FailureDetail):
        super().__init__(f"{handle} failed ({failure.full_message()})")
        self.handle = handle
        self.failure = failure

    @property
    def detail(self) -> FailureDetail:
        return self.failure


class JobTimeoutError(ExecutionError, TimeoutError):
    code = "timeout"

    def __init__(self, handle: JobHandle, waited: float):
        super().__init__(f"{handle} did not complete within {waited:.1f} seconds")
        self.handle = handle
        self.waited = waited

    @property
    def detail(self) -> FailureDetail:
        return FailureDetail(code=self.code, message=str(self), resource=self.handle.id)


def is_transient(error: Exception) -> bool:
    """Is this transport failure likely to go away if we wait and try again?"""
    if not isinstance(error, TransportError):
        return False
    if error.connection:
        return True
    if error.status is None:
        return False
    return 500 <= error.status < 600 or error.status in TRANSIENT_HTTP_STATUSES
