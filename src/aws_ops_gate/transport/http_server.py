"""Starlette HTTP app exposing the gate under ``/aws``."""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import secrets
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from aws_ops_gate.app import AppContext, get_app_context
from aws_ops_gate.audit.models import AuditQuery
from aws_ops_gate.domain.models import ExecutionPlan, ParsedIntent
from aws_ops_gate.errors import AdminRequiredError, GateError, PlanValidationError
from aws_ops_gate.middleware.request_log import RequestLogMiddleware, mask_exception_message

logger = logging.getLogger(__name__)

_MAX_BODY_BYTES = 1024 * 1024

Handler = Callable[[Request], Awaitable[Response]]


def _error_response(exc: GateError) -> JSONResponse:
    return JSONResponse(exc.to_payload(), status_code=exc.status_code)


def _endpoint(handler: Handler) -> Handler:
    """Map gate refusals to their status codes and anything else to a 500."""

    @functools.wraps(handler)
    async def wrapped(request: Request) -> Response:
        try:
            return await handler(request)
        except GateError as exc:
            return _error_response(exc)
        except Exception as exc:
            logger.exception(
                "Unhandled error on %s %s: %s",
                request.method,
                request.url.path,
                mask_exception_message(str(exc)),
            )
            return JSONResponse(
                {"error": "internal_error", "message": "Internal server error"},
                status_code=500,
            )

    return wrapped


async def _json_body(request: Request) -> dict[str, Any]:
    raw = await request.body()
    if len(raw) > _MAX_BODY_BYTES:
        raise PlanValidationError("Request body too large")
    try:
        body = json.loads(raw or b"{}")
    except json.JSONDecodeError as exc:
        raise PlanValidationError("Request body must be valid JSON") from exc
    if not isinstance(body, dict):
        raise PlanValidationError("Request body must be a JSON object")
    return body


def _required_str(body: dict[str, Any], key: str) -> str:
    value = body.get(key)
    if not isinstance(value, str) or not value.strip():
        raise PlanValidationError(f"'{key}' is required")
    return value.strip()


def _optional_str(body: dict[str, Any], key: str) -> str | None:
    value = body.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise PlanValidationError(f"'{key}' must be a string")
    return value.strip() or None


def _parse_model(model: type, value: Any, name: str):
    if not isinstance(value, dict):
        raise PlanValidationError(f"'{name}' must be an object")
    try:
        return model.model_validate(value)
    except ValidationError as exc:
        raise PlanValidationError(
            f"Invalid {name}",
            details={"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc


def _query_int(request: Request, key: str, default: int | None) -> int | None:
    value = request.query_params.get(key)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise PlanValidationError(f"'{key}' must be an integer") from exc


def _require_admin(request: Request, admin_token: str | None) -> str:
    if not admin_token:
        raise AdminRequiredError("Kill-switch changes are disabled: no admin token configured")
    header = request.headers.get("authorization", "")
    if not header.lower().startswith("bearer "):
        raise AdminRequiredError("Authorization header with Bearer token required")
    if not secrets.compare_digest(header[7:].strip(), admin_token):
        raise AdminRequiredError("Invalid admin token")
    return "admin"


def create_http_app(context: AppContext | None = None) -> Starlette:
    """Create the HTTP application around ``context`` (the process context by default)."""
    ctx = context or get_app_context()
    settings = ctx.settings

    middleware: list[Middleware] = [
        Middleware(
            RequestLogMiddleware,
            enabled=settings.server.request_logging,
            trust_forwarded_headers=settings.server.http_trust_forwarded_headers,
        ),
    ]

    # CORS is outermost so preflight requests get headers before anything rejects them.
    if settings.server.http_enable_cors and settings.server.http_allowed_origins:
        from starlette.middleware.cors import CORSMiddleware

        middleware.insert(
            0,
            Middleware(
                CORSMiddleware,
                allow_origins=list(settings.server.http_allowed_origins),
                allow_methods=["POST", "GET", "OPTIONS"],
                allow_headers=["Authorization", "Content-Type", "Accept", "X-Request-Id"],
            ),
        )

    @_endpoint
    async def intent_handler(request: Request) -> Response:
        body = await _json_body(request)
        text = body.get("request")
        if not isinstance(text, str):
            raise PlanValidationError("'request' is required")
        intent = await asyncio.to_thread(
            ctx.parser.parse, text, _optional_str(body, "connectionId")
        )
        return JSONResponse({"intent": intent.to_wire()})

    @_endpoint
    async def plan_handler(request: Request) -> Response:
        body = await _json_body(request)
        intent = _parse_model(ParsedIntent, body.get("intent"), "intent")
        connection_id = _required_str(body, "connectionId")
        resources = body.get("resources")
        if resources is not None and (
            not isinstance(resources, list) or not all(isinstance(r, str) for r in resources)
        ):
            raise PlanValidationError("'resources' must be a list of strings")
        plan = await asyncio.to_thread(ctx.generator.generate, intent, connection_id, resources)
        return JSONResponse({"plan": plan.to_wire()})

    @_endpoint
    async def simulate_handler(request: Request) -> Response:
        body = await _json_body(request)
        plan = _parse_model(ExecutionPlan, body.get("plan"), "plan")
        connection_id = _required_str(body, "connectionId")
        result = await asyncio.to_thread(ctx.simulator.simulate, plan, connection_id)
        return JSONResponse({"simulation": result.to_wire()})

    @_endpoint
    async def approve_handler(request: Request) -> Response:
        body = await _json_body(request)
        grant = await asyncio.to_thread(
            ctx.approvals.approve,
            _required_str(body, "planId"),
            _required_str(body, "connectionId"),
        )
        return JSONResponse(grant.to_wire())

    @_endpoint
    async def execute_handler(request: Request) -> Response:
        body = await _json_body(request)
        plan = _parse_model(ExecutionPlan, body.get("plan"), "plan")
        result = await asyncio.to_thread(
            ctx.executor.execute,
            plan,
            _required_str(body, "connectionId"),
            _required_str(body, "approvalToken"),
        )
        return JSONResponse({"result": result.to_wire()})

    @_endpoint
    async def audit_handler(request: Request) -> Response:
        params = request.query_params
        query = AuditQuery(
            connection_id=params.get("connectionId") or None,
            event_type=params.get("eventType") or None,
            start_date=params.get("startDate") or None,
            end_date=params.get("endDate") or None,
            limit=_query_int(request, "limit", 50),
            offset=_query_int(request, "offset", 0),
        )
        page = await asyncio.to_thread(ctx.audit.query, query)
        return JSONResponse(page.to_wire())

    @_endpoint
    async def anchor_handler(request: Request) -> Response:
        return JSONResponse(await asyncio.to_thread(ctx.audit.anchor_status))

    @_endpoint
    async def verify_handler(request: Request) -> Response:
        verification = await asyncio.to_thread(
            ctx.audit.verify_chain,
            _query_int(request, "startPosition", None),
            _query_int(request, "endPosition", None),
        )
        return JSONResponse({"verification": verification.to_wire()})

    @_endpoint
    async def actions_handler(request: Request) -> Response:
        return JSONResponse({"actions": ctx.boundary.catalog()})

    @_endpoint
    async def boundaries_handler(request: Request) -> Response:
        return JSONResponse(ctx.boundary.describe())

    @_endpoint
    async def kill_switch_get(request: Request) -> Response:
        return JSONResponse({"state": ctx.kill_switch.state()})

    @_endpoint
    async def kill_switch_post(request: Request) -> Response:
        actor = _require_admin(request, settings.server.admin_token)
        body = await _json_body(request)
        activate = body.get("activate", True)
        if not isinstance(activate, bool):
            raise PlanValidationError("'activate' must be a boolean")
        changed = await asyncio.to_thread(
            functools.partial(
                ctx.kill_switch.set,
                _required_str(body, "scope"),
                _optional_str(body, "id"),
                reason=_optional_str(body, "reason"),
                activate=activate,
                actor=actor,
            )
        )
        return JSONResponse({"changed": changed, "state": ctx.kill_switch.state()})

    @_endpoint
    async def emergency_stop_handler(request: Request) -> Response:
        connection_id = request.path_params["connection_id"]
        instructions = ctx.connections.emergency_stop_instructions(connection_id)
        return JSONResponse({"connectionId": connection_id, "instructions": instructions})

    async def health_handler(request: Request) -> Response:
        return JSONResponse({"status": "healthy"})

    @_endpoint
    async def ready_handler(request: Request) -> Response:
        await asyncio.to_thread(ctx.store.fetch_one, "SELECT 1", ())
        return JSONResponse({"status": "ready", "chainPosition": ctx.audit.chain_position})

    routes = [
        Route("/aws/intent", endpoint=intent_handler, methods=["POST"]),
        Route("/aws/plan", endpoint=plan_handler, methods=["POST"]),
        Route("/aws/simulate", endpoint=simulate_handler, methods=["POST"]),
        Route("/aws/approve", endpoint=approve_handler, methods=["POST"]),
        Route("/aws/execute", endpoint=execute_handler, methods=["POST"]),
        Route("/aws/audit", endpoint=audit_handler, methods=["GET"]),
        Route("/aws/audit/anchor", endpoint=anchor_handler, methods=["GET"]),
        Route("/aws/audit/verify", endpoint=verify_handler, methods=["GET"]),
        Route("/aws/actions", endpoint=actions_handler, methods=["GET"]),
        Route("/aws/boundaries", endpoint=boundaries_handler, methods=["GET"]),
        Route("/aws/kill-switch", endpoint=kill_switch_get, methods=["GET"]),
        Route("/aws/kill-switch", endpoint=kill_switch_post, methods=["POST"]),
        Route(
            "/aws/emergency-stop/{connection_id}",
            endpoint=emergency_stop_handler,
            methods=["GET"],
        ),
        Route("/health", endpoint=health_handler, methods=["GET"]),
        Route("/ready", endpoint=ready_handler, methods=["GET"]),
    ]

    @asynccontextmanager
    async def lifespan(app: Starlette):
        logger.info(
            "Starting AWS operations gate on %s:%d", settings.server.host, settings.server.port
        )
        try:
            yield
        finally:
            logger.info("Stopping AWS operations gate...")

    app = Starlette(routes=routes, middleware=middleware, lifespan=lifespan)
    app.state.context = ctx
    return app
