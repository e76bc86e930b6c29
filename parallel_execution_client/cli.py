"""Command-line tool to run a script over many resources in parallel.

Resource ids come from `--resource` options or, failing that, one per line on
standard input. Results are written to standard output as line-delimited JSON
in the order the executions finish; logs go to standard error.
"""

import asyncio
import concurrent.futures
import sys
import threading
from typing import AsyncIterator, List, Optional, TextIO, Tuple

import click
from loguru import logger
from parallel_execution_client.execution_client import ExecutionClient
from parallel_execution_client.execution_scheduler import ExecutionScheduler, submit_and_wait_with
from parallel_execution_client.job_waiter import JobWaiter
from parallel_execution_client.models import (
    ExecutionInput,
    ExecutionTemplate,
    RetryPolicy,
    WaitPolicy,
    WorkItem,
)
from parallel_execution_client.result_sink import LineDelimitedJsonSink
from pydantic import ValidationError

DEFAULT_BASE_URL = "http://localhost:8000"


def _parse_inputs(ctx, param, values: Tuple[str, ...]) -> List[ExecutionInput]:
    try:
        return [ExecutionInput.parse(value) for value in values]
    except ValueError as e:
        raise click.BadParameter(str(e), ctx=ctx, param=param) from e


async def read_resources(stream: TextIO) -> AsyncIterator[str]:
    """Yield resource ids from `stream` one line at a time, skipping blank lines.

    Lines are read on a daemon thread and handed over one at a time, so a read
    blocked on an idle terminal or pipe never holds up shutdown after Ctrl-C.
    """
    loop = asyncio.get_running_loop()
    lines: asyncio.Queue = asyncio.Queue(maxsize=1)

    def hand_over(entry) -> bool:
        if loop.is_closed():
            return False
        try:
            asyncio.run_coroutine_threadsafe(lines.put(entry), loop).result()
        except (RuntimeError, concurrent.futures.CancelledError):
            # The event loop is gone; nobody is reading any more.
            return False
        return True

    def pump() -> None:
        try:
            for line in iter(stream.readline, ""):
                if not hand_over(line):
                    return
        except Exception as e:
            hand_over(e)
            return
        hand_over(None)

    threading.Thread(target=pump, name="resource-reader", daemon=True).start()
    while True:
        entry = await lines.get()
        if entry is None:
            return
        if isinstance(entry, Exception):
            raise entry
        resource = entry.strip()
        if resource:
            yield resource


async def run_executions(
    client: ExecutionClient,
    template: ExecutionTemplate,
    resources,
    sink: LineDelimitedJsonSink,
    max_tasks: int,
    retry_policy: RetryPolicy,
    wait_policy: WaitPolicy,
) -> int:
    """Run every resource through the scheduler, returning the number of failed items"""

    async def work_items() -> AsyncIterator[WorkItem]:
        if hasattr(resources, "__aiter__"):
            async for resource in resources:
                yield template.work_item(resource)
        else:
            for resource in resources:
                yield template.work_item(resource)

    async with client:
        waiter = JobWaiter(client, wait_policy)
        scheduler = ExecutionScheduler(
            submit_and_wait_with(client, waiter),
            max_tasks=max_tasks,
            retry_policy=retry_policy,
        )
        async for outcome in scheduler.run(work_items()):
            sink.write(outcome)

    for outcome in sink.failures:
        logger.error(f"{outcome.resource}: {outcome.status.value} ({outcome.error.message if outcome.error else ''})")
    return len(sink.failures)


@click.command(
    name="parallel-execution",
    help="Execute a script in parallel over one or more remote resources.",
)
@click.option("--script", "-s", required=True, help="The script ID to run.")
@click.option("--name", "-n", default=None, help="The name to use for our execution objects.")
@click.option(
    "--resource",
    "-r",
    "resources",
    multiple=True,
    help="A resource ID to process. (Alternatively, pipe resource IDs on standard input, one per line.)",
)
@click.option(
    "--resource-input-name",
    "-R",
    default="resource",
    show_default=True,
    help="The input name used to pass the resource.",
)
@click.option(
    "--input",
    "-i",
    "inputs",
    multiple=True,
    callback=_parse_inputs,
    help='Extra script input as "name=value", parsed as JSON if possible.',
)
@click.option("--output", "-o", "outputs", multiple=True, help="Expected script output name.")
@click.option(
    "--max-tasks",
    "-J",
    type=click.IntRange(min=1),
    default=2,
    show_default=True,
    help="How many executions to run at a time.",
)
@click.option("--tag", "tags", multiple=True, help="Apply a tag to the executions we create.")
@click.option("--retry-on", default=None, help="A regular expression matching execution errors to retry.")
@click.option(
    "--retry-count",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="How many times to retry a failed execution matching --retry-on.",
)
@click.option(
    "--retry-delay",
    type=click.FloatRange(min=0),
    default=120.0,
    show_default=True,
    help="Seconds to wait before the first retry; each later retry waits twice as long, up to an hour.",
)
@click.option(
    "--timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=600.0,
    show_default=True,
    help="Seconds to wait for each execution to finish.",
)
@click.option("--base-url", envvar="EXECUTION_SERVICE_URL", default=DEFAULT_BASE_URL, show_default=True)
@click.option("--username", envvar="EXECUTION_USERNAME", required=True)
@click.option("--api-key", envvar="EXECUTION_API_KEY", required=True)
@click.option(
    "--log-level",
    envvar="PARALLEL_EXECUTION_LOG",
    type=click.Choice(["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
)
@click.pass_context
def main(
    ctx: click.Context,
    script: str,
    name: Optional[str],
    resources: Tuple[str, ...],
    resource_input_name: str,
    inputs: List[ExecutionInput],
    outputs: Tuple[str, ...],
    max_tasks: int,
    tags: Tuple[str, ...],
    retry_on: Optional[str],
    retry_count: int,
    retry_delay: float,
    timeout: float,
    base_url: str,
    username: str,
    api_key: str,
    log_level: str,
) -> None:
    logger.remove()
    logger.add(sys.stderr, level=log_level.upper())

    try:
        retry_policy = RetryPolicy(
            retry_on=retry_on,
            retry_count=retry_count,
            initial_delay=retry_delay,
            max_delay=max(retry_delay, 3600.0),
        )
    except ValidationError as e:
        raise click.BadParameter(str(e), param_hint="--retry-on") from e
    wait_policy = WaitPolicy(timeout=timeout)
    template = ExecutionTemplate(
        script=script,
        name=name,
        resource_input_name=resource_input_name,
        inputs=inputs,
        outputs=list(outputs),
        tags=list(tags),
    )
    client = ExecutionClient(base_url, username, api_key)
    source = list(resources) if resources else read_resources(sys.stdin)
    sink = LineDelimitedJsonSink(sys.stdout)

    try:
        failures = asyncio.run(
            run_executions(client, template, source, sink, max_tasks, retry_policy, wait_policy)
        )
    except KeyboardInterrupt:
        logger.warning("Interrupted, abandoning executions still in flight")
        ctx.exit(130)

    if failures:
        logger.error(f"{failures} of {sink.written} execution(s) failed")
        ctx.exit(1)


if __name__ == "__main__":
    main()
