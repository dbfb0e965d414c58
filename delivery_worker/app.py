"""FastAPI application for the delivery worker.

``create_app`` builds the HTTP surface a scheduler calls:

* ``POST /api/worker/check-deliveries``: one dispatch run, guarded by
  ``Authorization: Bearer <CRON_SECRET>``.
* ``GET /api/worker/diag``: environment presence flags and a database ping.
* ``GET /api/ping``: liveness.

The Supabase client and the Resend mailer are built once here and kept on
``app.state`` for the life of the process; tests inject fakes instead.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from supabase import create_client

from .auth import is_authorized
from .config import Settings
from .log import get_logger, setup_logging
from .mailer import ResendMailer
from .results import (
    AuthErrorResult,
    ConfigErrorResult,
    DiagResult,
    FatalErrorResult,
    MethodNotAllowedResult,
    PingResult,
)
from .store import ping_database
from .worker import error_text, run_worker

logger = get_logger(__name__)

DIAG_NOTE = "Set the missing environment variables for the worker deployment."

HTTP_METHODS = ("GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS")


def _methods_except(*allowed: str) -> list[str]:
    return [method for method in HTTP_METHODS if method not in allowed]


def json_result(result: BaseModel) -> JSONResponse:
    return JSONResponse(
        status_code=result.status_code,
        content=result.model_dump(mode="json", exclude_none=True),
    )


def build_supabase_client(settings: Settings):
    return create_client(settings.supabase_url, settings.supabase_service_role_key)


def create_app(
    settings: Settings | None = None,
    *,
    client=None,
    mailer=None,
) -> FastAPI:
    settings = settings or Settings.from_env()

    client_error = None
    if client is None and settings.database_configured:
        try:
            client = build_supabase_client(settings)
        except Exception as exc:  # noqa: BLE001
            client_error = error_text(exc)
            logger.error(f"Failed to create Supabase client: {client_error}")
    if mailer is None and settings.resend_api_key:
        mailer = ResendMailer(api_key=settings.resend_api_key, from_email=settings.from_email)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(debug=settings.debug)
        logger.info("Delivery worker started")
        yield
        logger.info("Delivery worker stopped")

    app = FastAPI(title="Echo Delivery Worker", lifespan=lifespan)
    app.state.settings = settings
    app.state.client = client
    app.state.mailer = mailer
    app.state.client_error = client_error

    @app.post("/api/worker/check-deliveries")
    def check_deliveries(request: Request):
        state = request.app.state
        if not is_authorized(request.headers.get("authorization"), state.settings.cron_secret):
            return json_result(AuthErrorResult())

        missing = state.settings.missing_required()
        if missing:
            logger.error(f"Worker misconfigured, missing: {', '.join(missing)}")
            return json_result(ConfigErrorResult(missing=missing))
        if state.client_error is not None:
            return json_result(FatalErrorResult(fatal=state.client_error))

        try:
            result = run_worker(
                state.client,
                state.mailer,
                batch_size=state.settings.batch_size,
                deadline_seconds=state.settings.run_deadline_seconds,
                stale_minutes=state.settings.stale_processing_minutes,
                media_bucket=state.settings.media_bucket,
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unhandled error in check-deliveries")
            result = FatalErrorResult(fatal=error_text(exc))
        return json_result(result)

    @app.api_route("/api/worker/check-deliveries", methods=_methods_except("POST"))
    def check_deliveries_wrong_method():
        return json_result(MethodNotAllowedResult(error="Use POST"))

    @app.get("/api/worker/diag")
    def diag(request: Request):
        state = request.app.state
        env = state.settings.env_presence()
        if not state.settings.database_configured:
            return json_result(DiagResult(ok=False, env=env, note=DIAG_NOTE))
        if state.client_error is not None:
            return json_result(DiagResult(ok=False, env=env, fatal=state.client_error))
        try:
            ping_database(state.client)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Diag database ping failed: {exc}")
            return json_result(DiagResult(ok=False, env=env, db="error", error=error_text(exc)))
        return json_result(DiagResult(ok=True, env=env, db="ok"))

    @app.api_route("/api/worker/diag", methods=_methods_except("GET"))
    def diag_wrong_method():
        return json_result(MethodNotAllowedResult(error="Use GET"))

    @app.get("/api/ping")
    def ping():
        return json_result(PingResult(now=datetime.now(timezone.utc).isoformat()))

    return app
