import asyncio

from execution_server import ExecutionServer
from parallel_execution_client.execution_client import ExecutionClient
from parallel_execution_client.execution_scheduler import ExecutionScheduler, submit_and_wait_with
from parallel_execution_client.job_waiter import JobWaiter
from parallel_execution_client.models import ExecutionTemplate, RetryPolicy, WaitPolicy


async def status_changed(status_response):
    print(f"{status_response.raw_response['resource']} is now {status_response.status.value}")


async def main():
    PORT = 8000
    server = ExecutionServer(
        completion_time=3.0,
        error_rate=0.3,
        error_message="Rate limit exceeded",
        unavailable_rate=0.1,
    )
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    wait_policy = WaitPolicy(initial_delay=0.5, max_delay=4.0, backoff_factor=2.0, timeout=60.0)
    retry_policy = RetryPolicy(retry_on="rate.?limit", retry_count=2, initial_delay=1.0, max_delay=4.0)
    template = ExecutionTemplate(script="script/example", outputs=["score"], tags=["example"])

    try:
        async with ExecutionClient(f"http://localhost:{PORT}", server.username, server.api_key) as client:
            waiter = JobWaiter(client, wait_policy, on_status_change=status_changed)
            scheduler = ExecutionScheduler(
                submit_and_wait_with(client, waiter), max_tasks=3, retry_policy=retry_policy
            )
            work = (template.work_item(f"dataset/{i}") for i in range(8))
            async for outcome in scheduler.run(work):
                print(f"{outcome.resource}: {outcome.status.value} after {outcome.attempts} attempt(s)")
    finally:
        await server.stop()

    print(f"At most {server.max_in_flight} executions ran at once")


if __name__ == "__main__":
    asyncio.run(main())
