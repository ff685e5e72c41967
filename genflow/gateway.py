from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from .accounts import AccountStore
from .errors import GenflowError, InvalidActionError, MethodNotAllowedError
from .supervisor import JobConfig, JobSupervisor


logger = logging.getLogger("genflow.gateway")

CORS_HEADERS: Dict[str, str] = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Content-Type",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Content-Type": "application/json",
}


@dataclass
class Response:
    status: int
    payload: Any = None
    headers: Dict[str, str] = field(default_factory=lambda: dict(CORS_HEADERS))

    def body(self) -> bytes:
        if self.payload is None:
            return b""
        return json.dumps(self.payload, ensure_ascii=False).encode()


class TelemetryGateway:
    """Stateless translation of control and polling requests.

    Holds references to the supervisor and account store only; every request
    reads or drives them and returns a `Response`. `handle` never raises.
    """

    def __init__(
        self,
        supervisor: JobSupervisor,
        accounts: Optional[AccountStore] = None,
        log_limit: int = 50,
        accounts_limit: int = 100,
    ):
        self.supervisor = supervisor
        self.accounts = accounts
        self.log_limit = log_limit
        self.accounts_limit = accounts_limit

    def get_stats(self) -> Dict[str, Any]:
        return self.supervisor.stats.to_dict()

    def get_recent_logs(self, n: Optional[int] = None) -> List[Dict[str, Any]]:
        return self.supervisor.logs.to_dicts(self.log_limit if n is None else n)

    def list_accounts(self, tab: Optional[str]) -> List[Any]:
        if self.accounts is None or not tab:
            return []
        return self.accounts.list_accounts(tab, limit=self.accounts_limit)

    async def start(self, config: Any) -> Dict[str, str]:
        await self.supervisor.start(JobConfig.from_dict(config))
        return {"status": "success", "message": "Generator started"}

    def stop(self) -> Dict[str, str]:
        self.supervisor.stop()
        return {"status": "success", "message": "Generator stopped"}

    async def handle(self, method: str, query: Optional[Dict[str, str]] = None,
                     body: Union[bytes, str, None] = None) -> Response:
        try:
            return await self._dispatch((method or "").upper(), query or {}, body)
        except GenflowError as e:
            return Response(e.status, {"error": str(e)})
        except Exception as e:
            logger.error(f"Unhandled error for {method} request: {e}", exc_info=True)
            return Response(500, {"error": "Internal server error"})

    async def _dispatch(self, method: str, query: Dict[str, str], body: Union[bytes, str, None]) -> Response:
        if method == "OPTIONS":
            return Response(200)
        if method == "GET":
            return self._get(query)
        if method == "POST":
            return await self._post(body)
        raise MethodNotAllowedError("Method not allowed")

    def _get(self, query: Dict[str, str]) -> Response:
        action = query.get("action")
        if action == "stats":
            return Response(200, self.get_stats())
        if action == "logs":
            return Response(200, self.get_recent_logs())
        if action == "accounts":
            return Response(200, self.list_accounts(query.get("tab")))
        raise InvalidActionError("Invalid action")

    async def _post(self, body: Union[bytes, str, None]) -> Response:
        if isinstance(body, bytes):
            body = body.decode(errors="ignore")
        try:
            data = json.loads(body) if body else {}
        except ValueError:
            raise InvalidActionError("Invalid JSON body")
        if not isinstance(data, dict):
            raise InvalidActionError("Invalid JSON body")
        action = data.get("action")
        if action == "start":
            return Response(200, await self.start(data.get("config")))
        if action == "stop":
            return Response(200, self.stop())
        raise InvalidActionError("Invalid action")
