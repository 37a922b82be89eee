"""
Intent Engine API — FastAPI endpoints.

Exposes the engine via a REST API for:
- Interpretation of free-text utterances
- Confirmed action execution
- History and analytics queries
- Liveness and provider readiness
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import Field

from intent_engine.config.log_setup import configure_logging
from intent_engine.config.settings import EngineSettings, get_settings
from intent_engine.identity.provider import IdentityProvider, build_identity_provider
from intent_engine.models.action import ActionCommand
from intent_engine.models.errors import (
    EngineError,
    ErrorKind,
    ExecutionFailed,
    InvalidParameters,
    RateLimited,
)
from intent_engine.models.intent import UtteranceRequest
from intent_engine.models.limits import RateLimitDecision
from intent_engine.models.wire import WireModel
from intent_engine.pipeline.engine import InterpretationEngine, build_engine


STATUS_BY_KIND = {
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.CONFIRMATION_MISMATCH: 409,
    ErrorKind.IDENTITY_MISMATCH: 403,
    ErrorKind.INVALID_PARAMETERS: 422,
    ErrorKind.EXECUTION_FAILED: 502,
    ErrorKind.TENANT_ISOLATION_VIOLATION: 500,
}


# --- Request Models ---

class ActRequest(WireModel):
    action_command: ActionCommand
    tenant_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    confirmed: bool = False


def _error_content(exc: EngineError) -> dict:
    return {"error": exc.to_body().model_dump(mode="json")}


def _rate_limit_headers(decision: RateLimitDecision) -> dict:
    return {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(int(decision.reset_at.timestamp())),
    }


# --- Application Factory ---

def create_app(
    engine: Optional[InterpretationEngine] = None,
    settings: Optional[EngineSettings] = None,
    identity_provider: Optional[IdentityProvider] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    eng = engine or build_engine(settings)
    identity = identity_provider or build_identity_provider(settings.identity_mode)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # Let in-flight audit writes land before shutdown
        await eng.recorder.drain()

    app = FastAPI(
        title="Intent Engine API",
        description="Natural-language intent interpretation and action orchestration",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Store components on app state for access in endpoints
    app.state.engine = eng
    app.state.identity = identity
    app.state.settings = settings

    # === ERRORS ===

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError):
        headers = {}
        if isinstance(exc, RateLimited):
            headers["Retry-After"] = str(exc.retry_after_seconds())
            headers.update(_rate_limit_headers(RateLimitDecision(
                allowed=False, limit=exc.limit, remaining=0, reset_at=exc.reset_at,
            )))
        return JSONResponse(
            status_code=STATUS_BY_KIND.get(exc.kind, 500),
            content=_error_content(exc),
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        content = _error_content(InvalidParameters("Request body failed validation"))
        content["detail"] = jsonable_errors(exc)
        return JSONResponse(status_code=422, content=content)

    # === INTERPRET / ACT ===

    @app.post("/v1/interpret")
    async def interpret(
        body: UtteranceRequest,
        request: Request,
        response: Response,
        disable_llm: bool = Query(False, alias="disableLlm"),
    ):
        """Translate an utterance into an intent, candidates and a draft action."""
        caller = identity.resolve(request.headers, body.tenant_id, body.user_id)
        body = body.model_copy(update={"tenant_id": caller.tenant_id, "user_id": caller.user_id})

        outcome = await eng.interpret(body, disable_llm=disable_llm)
        response.headers.update(_rate_limit_headers(outcome.rate_limit))

        payload = outcome.result.model_dump(mode="json", by_alias=True)
        payload["state"] = outcome.state.value
        payload["interactionId"] = outcome.interaction_id
        if outcome.action_result is not None:
            payload["actionResult"] = outcome.action_result.model_dump(mode="json", by_alias=True)
        return payload

    @app.post("/v1/act")
    async def act(body: ActRequest, request: Request):
        """Execute a drafted action command after confirmation checks."""
        caller = identity.resolve(request.headers, body.tenant_id, body.user_id)
        outcome = await eng.act(
            body.action_command, caller.tenant_id, caller.user_id, confirmed=body.confirmed
        )

        result = outcome.result
        content = result.model_dump(mode="json", by_alias=True)
        status_code = 200
        if not result.success:
            error_cls = (
                InvalidParameters
                if result.kind == ErrorKind.INVALID_PARAMETERS
                else ExecutionFailed
            )
            status_code = STATUS_BY_KIND[error_cls.kind]
            content.update(_error_content(error_cls(result.message)))
        return JSONResponse(
            status_code=status_code,
            content=content,
            headers=_rate_limit_headers(outcome.rate_limit),
        )

    # === HISTORY ===

    @app.get("/v1/history")
    async def get_history(
        request: Request,
        tenant_id: Optional[str] = Query(None, alias="tenantId"),
        user_id: Optional[str] = Query(None, alias="userId"),
        limit: int = Query(50, ge=1, le=500),
    ):
        """The caller's most recent interpret/act records."""
        caller = identity.resolve(request.headers, tenant_id, user_id)
        await eng.recorder.drain()
        records = eng.recorder.store.query_recent(caller.tenant_id, caller.user_id, limit)
        return [r.model_dump(mode="json") for r in records]

    @app.get("/v1/history/analytics")
    async def get_analytics(
        request: Request,
        tenant_id: Optional[str] = Query(None, alias="tenantId"),
        user_id: Optional[str] = Query(None, alias="userId"),
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ):
        """Aggregates for the caller's tenant over a time range."""
        caller = identity.resolve(request.headers, tenant_id, user_id)
        await eng.recorder.drain()
        analytics = eng.recorder.store.analytics(caller.tenant_id, start, end)
        return analytics.model_dump(mode="json")

    @app.get("/v1/history/verify")
    async def verify_history(
        request: Request,
        tenant_id: Optional[str] = Query(None, alias="tenantId"),
        user_id: Optional[str] = Query(None, alias="userId"),
    ):
        """Verify the history hash chain; counts cover the caller's tenant only."""
        caller = identity.resolve(request.headers, tenant_id, user_id)
        await eng.recorder.drain()
        store = eng.recorder.store
        return {
            "valid": store.verify_chain_integrity(),
            "recordCount": store.count(caller.tenant_id),
        }

    # === HEALTH ===

    @app.get("/health")
    async def health():
        """Liveness only. Provider outages do not make the service unhealthy."""
        return {"status": "ok", "service": settings.service_name}

    @app.get("/ready")
    async def ready():
        """Provider reachability, reported independently."""
        return await eng.readiness()

    return app


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]


# Default application instance
app = create_app()
