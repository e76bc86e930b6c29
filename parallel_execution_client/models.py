import json
import re
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator, model_validator


class JobStatus(str, Enum):
    waiting = "waiting"
    ready = "ready"
    failed = "failed"


# Integer status codes reported by the remote execution service.
WORKING_STATUS_CODES = frozenset({0, 1, 2, 3, 4})
FINISHED_STATUS_CODE = 5
FAULTY_STATUS_CODES = frozenset({-1, -2})


def job_status_from_code(code: int) -> JobStatus:
    """Map a remote status code onto the three states the waiter cares about"""
    if code == FINISHED_STATUS_CODE:
        return JobStatus.ready
    if code in FAULTY_STATUS_CODES:
        return JobStatus.failed
    if code in WORKING_STATUS_CODES:
        return JobStatus.waiting
    raise ValueError(f"unknown status code {code!r}, expected a number between -2 and 5")


class FailureDetail(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    status_code: Optional[int] = None
    cause: Optional[str] = None
    resource: Optional[str] = None

    def full_message(self) -> str:
        if self.cause:
            return f"{self.message} ({self.cause})"
        return self.message


class JobHandle(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str

    def __str__(self) -> str:
        return self.id


class StatusResponse(BaseModel):
    status: JobStatus
    raw_response: dict
    elapsed_time: float
    error: Optional[FailureDetail] = None

    @property
    def payload(self) -> dict:
        return self.raw_response


class WaitPolicy(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    initial_delay: float = 4.0
    max_delay: float = 120.0
    backoff_factor: float = 2.0
    timeout: float = 600.0  # 10 minutes
    is_transient: Optional[Callable[[Exception], bool]] = Field(default=None, exclude=True)

    @model_validator(mode="after")
    def _check_intervals(self) -> "WaitPolicy":
        if self.initial_delay <= 0:
            raise ValueError("initial_delay must be > 0")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        if self.timeout <= 0:
            raise ValueError("timeout must be > 0")
        return self

    def next_delay(self, delay: float) -> float:
        """Grow a poll interval by the backoff factor, capped at max_delay"""
        return min(delay * self.backoff_factor, self.max_delay)


class SubmitPolicy(BaseModel):
    # Creation failures usually mean the account is out of slots, so these
    # delays are long enough for somebody else's batch to finish.
    initial_delay: float = Field(default=60.0, gt=0)
    max_delay: float = Field(default=600.0, gt=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    allowed_errors: int = Field(default=6, ge=0)


class RetryPolicy(BaseModel):
    """Decides whether a failed execution should be submitted again.

    `retry_on` is matched case-insensitively against the failure message, and
    at most `retry_count` retries follow the original attempt. Retry `n`
    waits `initial_delay * backoff_factor ** (n - 1)` seconds, capped at
    `max_delay`, before resubmitting.
    """

    model_config = ConfigDict(frozen=True)

    retry_on: Optional[str] = None
    retry_count: int = Field(default=0, ge=0)
    initial_delay: float = Field(default=120.0, ge=0)
    max_delay: float = Field(default=3600.0, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1)

    _pattern: Optional[re.Pattern] = PrivateAttr(default=None)

    @field_validator("retry_on")
    @classmethod
    def _check_pattern(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            try:
                re.compile(value)
            except re.error as e:
                raise ValueError(f"invalid retry pattern {value!r}: {e}") from e
        return value

    @model_validator(mode="after")
    def _check_delays(self) -> "RetryPolicy":
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        return self

    def model_post_init(self, __context: Any) -> None:
        if self.retry_on is not None:
            self._pattern = re.compile(self.retry_on, re.IGNORECASE)

    def should_retry(self, failure: FailureDetail, attempt: int) -> bool:
        if self._pattern is None:
            return False
        if attempt > self.retry_count:
            return False
        return self._pattern.search(failure.message) is not None

    def next_delay(self, delay: float) -> float:
        return min(delay * self.backoff_factor, self.max_delay)


class ExecutionInput(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    value: Any

    @classmethod
    def parse(cls, text: str) -> "ExecutionInput":
        """Parse `name=value`, reading the value as JSON when possible"""
        name, sep, raw_value = text.partition("=")
        if not sep:
            raise ValueError(f'input {text!r} must have form "key=value"')
        try:
            value = json.loads(raw_value)
        except json.JSONDecodeError as e:
            logger.warning(f"could not parse input {text!r} as JSON (treating as string): {e}")
            value = raw_value
        return cls(name=name, value=value)


class ExecutionArgs(BaseModel):
    """Arguments used to create one remote script execution"""

    model_config = ConfigDict(frozen=True)

    script: str
    name: Optional[str] = None
    inputs: Tuple[Tuple[str, Any], ...] = ()
    outputs: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()

    def request_body(self) -> dict:
        body: dict = {"script": self.script}
        if self.name is not None:
            body["name"] = self.name
        if self.inputs:
            body["inputs"] = [[name, value] for name, value in self.inputs]
        if self.outputs:
            body["outputs"] = list(self.outputs)
        if self.tags:
            body["tags"] = list(self.tags)
        return body


class WorkItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    resource: str
    args: ExecutionArgs


class ExecutionTemplate(BaseModel):
    """Settings shared by every execution, turned into one WorkItem per resource"""

    script: str
    name: Optional[str] = None
    resource_input_name: str = "resource"
    inputs: List[ExecutionInput] = Field(default_factory=list)
    outputs: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)

    def work_item(self, resource: str) -> WorkItem:
        inputs = [(self.resource_input_name, resource)]
        # The remote service rejects null inputs, so they are left out.
        inputs.extend((i.name, i.value) for i in self.inputs if i.value is not None)
        args = ExecutionArgs(
            script=self.script,
            name=self.name,
            inputs=tuple(inputs),
            outputs=tuple(self.outputs),
            tags=tuple(self.tags),
        )
        return WorkItem(resource=resource, args=args)


class OutcomeStatus(str, Enum):
    success = "success"
    permanent_failure = "permanent_failure"
    exhausted_retries = "exhausted_retries"


class Outcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    resource: str
    status: OutcomeStatus
    attempts: int
    result: Optional[dict] = None
    error: Optional[FailureDetail] = None

    @property
    def failed(self) -> bool:
        return self.status is not OutcomeStatus.success
