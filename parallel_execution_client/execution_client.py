import asyncio
import json
from typing import Any, Awaitable, Callable, Optional, Protocol

import aiohttp
from loguru import logger
from parallel_execution_client.errors import SubmissionError, TransportError, is_transient
from parallel_execution_client.models import (
    ExecutionArgs,
    FailureDetail,
    JobHandle,
    JobStatus,
    StatusResponse,
    SubmitPolicy,
    job_status_from_code,
)


class RemoteJobClient(Protocol):
    async def submit(self, args: ExecutionArgs) -> JobHandle: ...

    async def poll(self, handle: JobHandle) -> StatusResponse: ...


class ExecutionClient:
    """Creates and fetches script executions on the remote execution service.

    Must be entered with `async with` so that every request shares one
    `aiohttp.ClientSession`.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        api_key: str,
        submit_policy: Optional[SubmitPolicy] = None,
        request_timeout: float = 60.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if not username:
            raise ValueError("username must not be blank")
        if not api_key:
            raise ValueError("api_key must not be blank")
        self.base_url = base_url.rstrip("/")
        self.username = username
        self._api_key = api_key
        self.submit_policy = submit_policy or SubmitPolicy()
        self.request_timeout = request_timeout
        self.logger = logger
        self._sleep = sleep
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "ExecutionClient":
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.request_timeout)
        )
        return self

    async def __aexit__(self, *exc_info) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("ExecutionClient must be used with `async with`")
        return self._session

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def redacted_url(self, path: str) -> str:
        """The URL for `path` with credentials masked, safe to log"""
        return f"{self._url(path)}?username={self.username}&api_key=*****"

    async def _request_json(self, method: str, path: str, body: Optional[dict] = None) -> dict:
        url = self._url(path)
        shown_url = self.redacted_url(path)
        params = {"username": self.username, "api_key": self._api_key}
        self.logger.debug(f"{method} {shown_url} {json.dumps(body) if body else ''}")

        try:
            async with self.session.request(method, url, params=params, json=body) as response:
                raw = await response.read()
                charset = response.charset or "utf-8"
                if response.status >= 400:
                    text = raw.decode("utf-8", errors="replace")
                    self.logger.error(f"HTTP error {response.status} at {shown_url}: {text}")
                    raise TransportError(
                        f"{response.status} for {shown_url} ({text})",
                        url=shown_url,
                        status=response.status,
                        body=text,
                    )
        except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, asyncio.TimeoutError) as e:
            self.logger.error(f"Error accessing {shown_url}: {e!r}")
            raise TransportError(
                f"error accessing {shown_url}: {e!r}", url=shown_url, connection=True
            ) from e
        except aiohttp.ClientError as e:
            raise TransportError(f"error accessing {shown_url}: {e!r}", url=shown_url) from e

        try:
            text = raw.decode(charset)
            data = json.loads(text)
        except (LookupError, ValueError) as e:
            # UnicodeDecodeError is a ValueError
            text = raw.decode("utf-8", errors="replace")
            raise TransportError(f"malformed response from {shown_url}: {e}", url=shown_url, body=text) from e
        if not isinstance(data, dict):
            raise TransportError(f"expected a JSON object from {shown_url}", url=shown_url, body=text)
        return data

    async def submit(self, args: ExecutionArgs) -> JobHandle:
        """Create an execution, retrying transient failures with exponential backoff"""
        policy = self.submit_policy
        delay = policy.initial_delay
        errors_seen = 0

        while True:
            try:
                data = await self._request_json("POST", "execution", body=args.request_body())
                break
            except TransportError as e:
                if not is_transient(e):
                    raise SubmissionError(f"could not create execution: {e}", cause=e) from e
                if errors_seen >= policy.allowed_errors:
                    raise SubmissionError(
                        f"could not create execution after {errors_seen + 1} attempts: {e}", cause=e
                    ) from e
                errors_seen += 1
                self.logger.error(f"got error, will retry ({errors_seen}/{policy.allowed_errors}): {e}")
                await self._sleep(delay)
                delay = min(delay * policy.backoff_factor, policy.max_delay)

        resource = data.get("resource")
        if not isinstance(resource, str) or not resource:
            raise SubmissionError(f"execution service returned no resource id: {data!r}")
        self.logger.debug(f"Created {resource}")
        return JobHandle(id=resource)

    async def poll(self, handle: JobHandle) -> StatusResponse:
        """Fetches the current status of an execution"""
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        data = await self._request_json("GET", handle.id)

        try:
            status_data = data["status"]
            code = int(status_data["code"])
            status = job_status_from_code(code)
        except (KeyError, TypeError, ValueError) as e:
            raise TransportError(
                f"malformed status for {handle}: {e!r}", url=self.redacted_url(handle.id)
            ) from e

        error = None
        if status is JobStatus.failed:
            cause = status_data.get("cause")
            if cause is not None and not isinstance(cause, str):
                cause = json.dumps(cause)
            error = FailureDetail(
                code="job_failed",
                message=str(status_data.get("message", "")),
                status_code=code,
                cause=cause,
                resource=handle.id,
            )

        return StatusResponse(
            status=status,
            raw_response=data,
            elapsed_time=loop.time() - start_time,
            error=error,
        )
