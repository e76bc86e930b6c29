import asyncio
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable, Iterable, Optional, Set, Union

from loguru import logger
from parallel_execution_client.errors import ExecutionError
from parallel_execution_client.execution_client import RemoteJobClient
from parallel_execution_client.job_waiter import JobWaiter
from parallel_execution_client.models import Outcome, OutcomeStatus, RetryPolicy, WorkItem

SubmitAndWait = Callable[[WorkItem], Awaitable[dict]]
WorkItems = Union[Iterable[WorkItem], AsyncIterable[WorkItem]]

_DONE = object()


def submit_and_wait_with(client: RemoteJobClient, waiter: JobWaiter) -> SubmitAndWait:
    """Build the per-item operation run by the scheduler: create an execution, then wait for it"""

    async def submit_and_wait(item: WorkItem) -> dict:
        handle = await client.submit(item.args)
        logger.info(f"Submitted {handle} for {item.resource}")
        return await waiter.wait(handle)

    return submit_and_wait


async def _aiter(items: WorkItems) -> AsyncIterator[WorkItem]:
    if hasattr(items, "__aiter__"):
        async for item in items:
            yield item
    else:
        for item in items:
            yield item


class ExecutionScheduler:
    """Runs one execution per work item with at most `max_tasks` in flight.

    Each admitted item holds its slot until it has a final outcome, including
    while it is being retried, and outcomes are yielded in the order they
    complete rather than the order items were read.
    """

    def __init__(
        self,
        submit_and_wait: SubmitAndWait,
        max_tasks: int = 2,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_tasks < 1:
            raise ValueError("max_tasks must be >= 1")
        self.submit_and_wait = submit_and_wait
        self.max_tasks = max_tasks
        self.retry_policy = retry_policy or RetryPolicy()
        self.logger = logger
        self._sleep = sleep

    async def _process(self, item: WorkItem) -> Outcome:
        policy = self.retry_policy
        attempt = 1
        delay = policy.initial_delay
        while True:
            try:
                result = await self.submit_and_wait(item)
            except ExecutionError as e:
                failure = e.detail
                if policy.should_retry(failure, attempt):
                    self.logger.warning(
                        f"{item.resource} failed with temporary error, retrying in {delay}s "
                        f"({attempt}/{policy.retry_count}): {failure.message}"
                    )
                    # The slot stays taken while waiting to resubmit.
                    await self._sleep(delay)
                    delay = policy.next_delay(delay)
                    attempt += 1
                    continue
                status = OutcomeStatus.permanent_failure if attempt == 1 else OutcomeStatus.exhausted_retries
                self.logger.error(f"{item.resource} failed after {attempt} attempt(s): {e}")
                return Outcome(resource=item.resource, status=status, attempts=attempt, error=failure)

            self.logger.info(f"{item.resource} finished after {attempt} attempt(s)")
            return Outcome(
                resource=item.resource,
                status=OutcomeStatus.success,
                attempts=attempt,
                result=result,
            )

    async def run(self, items: WorkItems) -> AsyncIterator[Outcome]:
        """Yield one Outcome per item, as soon as each one is known"""
        slots = asyncio.Semaphore(self.max_tasks)
        finished: asyncio.Queue = asyncio.Queue()
        tasks: Set[asyncio.Task] = set()

        async def run_item(item: WorkItem) -> None:
            try:
                await finished.put(await self._process(item))
            except Exception as e:
                await finished.put(e)
            finally:
                slots.release()

        async def admit() -> None:
            iterator = _aiter(items)
            try:
                while True:
                    # Take a slot before reading, so read-ahead never exceeds max_tasks.
                    await slots.acquire()
                    try:
                        item = await iterator.__anext__()
                    except StopAsyncIteration:
                        slots.release()
                        break
                    self.logger.debug(f"Admitting {item.resource}")
                    task = asyncio.create_task(run_item(item))
                    tasks.add(task)
                    task.add_done_callback(tasks.discard)
                if tasks:
                    await asyncio.gather(*list(tasks))
            except Exception as e:
                await finished.put(e)
                return
            await finished.put(_DONE)

        producer = asyncio.create_task(admit())
        try:
            while True:
                entry = await finished.get()
                if entry is _DONE:
                    break
                if isinstance(entry, Exception):
                    raise entry
                yield entry
        finally:
            if tasks:
                self.logger.warning(f"Stopping with {len(tasks)} execution(s) still in flight")
            producer.cancel()
            for task in list(tasks):
                task.cancel()
            await asyncio.gather(producer, *tasks, return_exceptions=True)
