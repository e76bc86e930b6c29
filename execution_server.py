import itertools
import random
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from aiohttp import web
from loguru import logger

WAITING_CODES = (1, 2, 3)  # queued, started, in progress
FINISHED = 5
FAULTY = -1


class ExecutionServer:
    """In-process stand-in for the remote execution service.

    Executions finish `completion_time` seconds after they are created. The
    first `fail_first` executions created for a resource fail with
    `error_message`, every execution fails with probability `error_rate`, and
    fetches answer 503 with probability `unavailable_rate`. Fetches for
    executions of a resource in `garbled_resources` return a body that is
    not valid UTF-8.

    The resource of an execution is read from the input named
    `resource_input_name`.
    """

    def __init__(
        self,
        completion_time: float = 10.0,
        error_rate: float = 0.0,
        error_message: str = "Script execution failed",
        fail_first: int = 0,
        unavailable_rate: float = 0.0,
        username: str = "alice",
        api_key: str = "secret",
        resource_input_name: str = "resource",
        garbled_resources: Iterable[str] = (),
    ):
        self.completion_time = completion_time
        self.error_rate = error_rate
        self.error_message = error_message
        self.fail_first = fail_first
        self.unavailable_rate = unavailable_rate
        self.username = username
        self.api_key = api_key
        self.resource_input_name = resource_input_name
        self.garbled_resources = set(garbled_resources)
        self.executions: Dict[str, dict] = {}
        self.submissions: List[dict] = []
        self.max_in_flight = 0
        self._ids = itertools.count(1)
        self._failures_by_resource: Dict[str, int] = {}
        self.runner: Optional[web.AppRunner] = None
        self.app = web.Application()
        self.app.router.add_post("/execution", self.handle_create)
        self.app.router.add_get("/execution/{id}", self.handle_fetch)
        self.logger = logger

    def _authorized(self, request: web.Request) -> bool:
        return (
            request.query.get("username") == self.username
            and request.query.get("api_key") == self.api_key
        )

    def _in_flight(self) -> int:
        return sum(1 for e in self.executions.values() if not e["done"])

    def _resource_input(self, body: dict) -> Optional[str]:
        for name, value in body.get("inputs", []):
            if name == self.resource_input_name:
                return value
        return None

    async def handle_create(self, request: web.Request) -> web.Response:
        if not self._authorized(request):
            return web.json_response({"code": 401, "message": "Unauthorized"}, status=401)

        body = await request.json()
        self.submissions.append(body)
        resource_id = f"execution/{next(self._ids):024x}"
        resource = self._resource_input(body) or ""

        failures = self._failures_by_resource.get(resource, 0)
        if failures < self.fail_first:
            self._failures_by_resource[resource] = failures + 1
            fails = True
        else:
            fails = random.random() < self.error_rate

        self.executions[resource_id] = {
            "started": datetime.now(),
            "fails": fails,
            "done": False,
            "body": body,
        }
        self.max_in_flight = max(self.max_in_flight, self._in_flight())
        self.logger.info(f"Created {resource_id} for {resource!r}")
        return web.json_response(
            {"resource": resource_id, "status": {"code": 1, "message": "The execution has been queued"}},
            status=201,
        )

    async def handle_fetch(self, request: web.Request) -> web.Response:
        if not self._authorized(request):
            return web.json_response({"code": 401, "message": "Unauthorized"}, status=401)

        resource_id = f"execution/{request.match_info['id']}"
        execution = self.executions.get(resource_id)
        if execution is None:
            return web.json_response({"code": 404, "message": "Not found"}, status=404)

        if random.random() < self.unavailable_rate:
            self.logger.info("Returning service unavailable")
            return web.json_response({"code": 503, "message": "Service unavailable"}, status=503)

        if self._resource_input(execution["body"]) in self.garbled_resources:
            self.logger.info("Returning a body that is not UTF-8")
            return web.Response(body=b'{"resource": "\xff\xfe"}', content_type="application/json", charset="utf-8")

        elapsed = (datetime.now() - execution["started"]).total_seconds()
        data = {"resource": resource_id, "tags": execution["body"].get("tags", [])}

        if elapsed < self.completion_time:
            self.logger.info(f"Returning pending status (elapsed: {elapsed:.1f}s)")
            code = WAITING_CODES[min(int(elapsed), len(WAITING_CODES) - 1)]
            data["status"] = {"code": code, "message": "The execution is in progress"}
            return web.json_response(data)

        execution["done"] = True
        if execution["fails"]:
            self.logger.info("Returning faulty status")
            data["status"] = {
                "code": FAULTY,
                "message": self.error_message,
                "cause": {"code": -1, "message": "script error"},
            }
        else:
            self.logger.info("Returning finished status")
            data["status"] = {"code": FINISHED, "message": "The execution has been completed"}
            data["execution"] = {
                "outputs": [[name, None, "unknown"] for name in execution["body"].get("outputs", [])],
                "result": self._resource_input(execution["body"]),
            }
        return web.json_response(data)

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self) -> None:
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
