import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Tuple, Union

from loguru import logger
from parallel_execution_client.errors import (
    JobFailedError,
    JobTimeoutError,
    TransportError,
    is_transient,
)
from parallel_execution_client.execution_client import RemoteJobClient
from parallel_execution_client.models import (
    FailureDetail,
    JobHandle,
    JobStatus,
    StatusResponse,
    WaitPolicy,
)


class _PollOutcome(Enum):
    still_waiting = "still_waiting"
    terminal = "terminal"
    transient_error = "transient_error"


class JobWaiter:
    def __init__(
        self,
        client: RemoteJobClient,
        policy: Optional[WaitPolicy] = None,
        on_status_change: Optional[Callable[[StatusResponse], Awaitable[Any]]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.client = client
        self.policy = policy or WaitPolicy()
        self.on_status_change = on_status_change
        self.logger = logger
        self._sleep = sleep
        self._clock = clock

    def _now(self) -> float:
        if self._clock is not None:
            return self._clock()
        return asyncio.get_running_loop().time()

    async def _handle_status_change(
        self, status_response: StatusResponse, last_status: Optional[JobStatus]
    ) -> None:
        """Invoke the status change callback if the status has changed"""
        if last_status != status_response.status and self.on_status_change is not None:
            self.logger.debug(f"Job status changed to {status_response.status.value}")
            await self.on_status_change(status_response)

    async def _poll_once(
        self, handle: JobHandle, policy: WaitPolicy
    ) -> Tuple[_PollOutcome, Union[StatusResponse, TransportError]]:
        try:
            status_response = await self.client.poll(handle)
        except TransportError as e:
            classify = policy.is_transient or is_transient
            if not classify(e):
                self.logger.error(f"Giving up on {handle}: {e}")
                raise
            self.logger.warning(f"Temporary error polling {handle}, will retry: {e}")
            return _PollOutcome.transient_error, e

        if status_response.status is JobStatus.waiting:
            return _PollOutcome.still_waiting, status_response
        return _PollOutcome.terminal, status_response

    async def _wait_before_retry(self, handle: JobHandle, delay: float) -> None:
        self.logger.debug(f"{handle} not finished, waiting {delay:.2f}s before next attempt")
        await self._sleep(delay)

    async def wait(self, handle: JobHandle, policy: Optional[WaitPolicy] = None) -> dict:
        """Poll `handle` until it finishes, returning the finished job's payload.

        Temporary transport errors and `waiting` statuses are both answered by
        sleeping and polling again, with the delay growing by
        `policy.backoff_factor` up to `policy.max_delay`. The time budget is
        checked before each poll, so a request already in flight may overshoot
        `policy.timeout` slightly.

        Raises:
            JobFailedError: the job reported a failed status.
            JobTimeoutError: `policy.timeout` seconds passed without a result.
            TransportError: a poll failed with an error that is not transient.
        """
        policy = policy or self.policy
        started = self._now()
        delay = policy.initial_delay
        last_status: Optional[JobStatus] = None

        while True:
            waited = self._now() - started
            if waited >= policy.timeout:
                self.logger.error(f"Timed out waiting for {handle} after {waited:.1f}s")
                raise JobTimeoutError(handle, waited)

            outcome, value = await self._poll_once(handle, policy)

            if isinstance(value, StatusResponse):
                await self._handle_status_change(value, last_status)
                last_status = value.status

            if outcome is _PollOutcome.terminal:
                if value.status is JobStatus.ready:
                    self.logger.debug(f"{handle} finished after {waited:.1f}s")
                    return value.payload
                failure = value.error or FailureDetail(
                    code="job_failed", message="", resource=handle.id
                )
                self.logger.error(f"{handle} failed: {failure.full_message()}")
                raise JobFailedError(handle, failure)

            await self._wait_before_retry(handle, delay)
            delay = policy.next_delay(delay)
