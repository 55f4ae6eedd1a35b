"""HTTP trigger surface for the audit worker, built on aiohttp.

Every response uses the envelope ``{success, data|error, timestamp}``.
``/health`` is open; all ``/api/*`` routes require the shared secret in the
``X-API-Key`` header (POST bodies may carry it as ``apiKey`` instead).
"""

from __future__ import annotations

import hmac
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from aiohttp import web

from ..orchestrator.exceptions import (
    ClientNotFoundError,
    PersistenceError,
    UnknownAuditTypeError,
)
from ..orchestrator.models import job_key
from ..orchestrator.queue import JobQueue
from ..storage.store import AuditStore
from .triggers import AuditTrigger, NoActiveIntegrationsError


logger = logging.getLogger(__name__)

SERVICE_NAME = "asymaudit-worker"
API_KEY_HEADER = "X-API-Key"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Render unknown routes and unhandled errors in the JSON envelope."""
    try:
        return await handler(request)
    except web.HTTPNotFound:
        return web.json_response(
            {"success": False, "error": "Endpoint not found", "timestamp": _utcnow().isoformat()},
            status=404,
        )
    except web.HTTPException:
        raise
    except Exception:  # noqa: BLE001 - last-resort handler for request errors
        logger.exception(
            "Unhandled request error",
            extra={"method": request.method, "path": request.path},
        )
        return web.json_response(
            {"success": False, "error": "Internal server error", "timestamp": _utcnow().isoformat()},
            status=500,
        )


def _is_priority(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


class TriggerServer:
    """Serves health, queue status, run status and manual triggers.

    Args:
        store: Audit record store
        queue: Durable job queue
        triggers: Admission logic for manual triggers
        api_key: Shared secret; every ``/api/*`` request is refused while unset
        host: Bind address
        port: Bind port
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        store: AuditStore,
        queue: JobQueue,
        triggers: AuditTrigger,
        *,
        api_key: Optional[str],
        host: str = "0.0.0.0",
        port: int = 3001,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._queue = queue
        self._triggers = triggers
        self._api_key = api_key
        self.host = host
        self.port = port
        self._clock = clock

        self.app = web.Application(middlewares=[error_middleware])
        self._setup_routes()

        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

    def _setup_routes(self) -> None:
        self.app.router.add_get("/health", self.health_check)
        self.app.router.add_get("/api/queue/status", self.queue_status)
        self.app.router.add_get("/api/audit/status/{run_id}", self.audit_status)
        self.app.router.add_post("/api/audit/trigger", self.trigger_audit)
        self.app.router.add_post("/api/audit/trigger-all", self.trigger_all)

    # Envelope ----------------------------------------------------------------

    def _ok(self, data: Any) -> web.Response:
        return web.json_response(
            {"success": True, "data": data, "timestamp": self._clock().isoformat()}
        )

    def _error(self, message: str, status: int) -> web.Response:
        return web.json_response(
            {"success": False, "error": message, "timestamp": self._clock().isoformat()},
            status=status,
        )

    def _authorized(self, request: web.Request, body: Optional[Dict[str, Any]] = None) -> bool:
        if not self._api_key:
            return False
        supplied = request.headers.get(API_KEY_HEADER)
        if not supplied and body is not None:
            supplied = body.get("apiKey")
        if not isinstance(supplied, str) or not supplied:
            return False
        return hmac.compare_digest(supplied.encode("utf-8"), self._api_key.encode("utf-8"))

    def _unauthorized(self, request: web.Request) -> web.Response:
        logger.warning("Rejected unauthenticated request", extra={"path": request.path})
        return self._error("Unauthorized: Invalid API key", 401)

    @staticmethod
    async def _read_body(request: web.Request) -> Optional[Dict[str, Any]]:
        try:
            body = await request.json()
        except ValueError:
            return None
        return body if isinstance(body, dict) else None

    # Handlers ----------------------------------------------------------------

    async def health_check(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "status": "ok",
                "service": SERVICE_NAME,
                "timestamp": self._clock().isoformat(),
            }
        )

    async def queue_status(self, request: web.Request) -> web.Response:
        if not self._authorized(request):
            return self._unauthorized(request)
        try:
            counts = self._queue.counts()
        except PersistenceError:
            logger.exception("Failed to get queue status")
            return self._error("Failed to get queue status", 500)
        return self._ok(counts)

    async def audit_status(self, request: web.Request) -> web.Response:
        if not self._authorized(request):
            return self._unauthorized(request)
        run_id = request.match_info.get("run_id", "")
        try:
            run = self._store.get_run(run_id)
            if run is None:
                return self._error("Audit run not found", 404)
            job = None
            if not run.status.is_terminal:
                job = self._queue.get_job_status(job_key(run.client_id, run.audit_type, run.id))
        except PersistenceError:
            logger.exception("Failed to get audit status", extra={"run_id": run_id})
            return self._error("Failed to get audit status", 500)
        return self._ok({"run": run.to_dict(), "job": job})

    async def trigger_audit(self, request: web.Request) -> web.Response:
        body = await self._read_body(request)
        if not self._authorized(request, body):
            return self._unauthorized(request)
        if body is None:
            return self._error("Invalid JSON payload", 400)

        client_id = body.get("clientId")
        audit_type = body.get("auditType")
        if not client_id or not audit_type:
            return self._error("Missing required fields: clientId and auditType", 400)
        priority = body.get("priority")
        if priority is not None and not _is_priority(priority):
            return self._error("priority must be a non-negative integer", 400)
        metadata = body.get("metadata")
        if metadata is not None and not isinstance(metadata, dict):
            return self._error("metadata must be an object", 400)

        try:
            result = self._triggers.trigger(
                str(client_id), str(audit_type), priority=priority, metadata=metadata
            )
        except ClientNotFoundError:
            return self._error("Client not found or inactive", 404)
        except UnknownAuditTypeError as exc:
            return self._error(str(exc), 400)
        except PersistenceError:
            logger.exception("Failed to trigger audit", extra={"client_id": client_id})
            return self._error("Failed to trigger audit", 500)
        return self._ok(result.to_dict())

    async def trigger_all(self, request: web.Request) -> web.Response:
        body = await self._read_body(request)
        if not self._authorized(request, body):
            return self._unauthorized(request)
        if body is None:
            return self._error("Invalid JSON payload", 400)

        client_id = body.get("clientId")
        if not client_id:
            return self._error("Missing required field: clientId", 400)
        priority = body.get("priority")
        if priority is not None and not _is_priority(priority):
            return self._error("priority must be a non-negative integer", 400)

        try:
            suite = self._triggers.trigger_all(str(client_id), priority=priority)
        except ClientNotFoundError:
            return self._error("Client not found or inactive", 404)
        except NoActiveIntegrationsError:
            return self._error("No active integrations found for client", 404)
        except PersistenceError:
            logger.exception("Failed to trigger full audit suite", extra={"client_id": client_id})
            return self._error("Failed to trigger full audit suite", 500)
        return self._ok(suite.to_dict())

    # Lifecycle ---------------------------------------------------------------

    async def start(self) -> None:
        if not self._api_key:
            logger.warning("No API key configured; authenticated endpoints will refuse requests")
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, self.host, self.port)
        await self.site.start()
        logger.info(
            "Trigger API listening",
            extra={"host": self.host, "port": self.port},
        )

    async def stop(self) -> None:
        if self.site is not None:
            await self.site.stop()
            self.site = None
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
            logger.info("Trigger API stopped")
