"""Command line entry point.

    python -m delivery_worker serve [--host 0.0.0.0] [--port 8000]
    python -m delivery_worker run-once

``run-once`` performs a single dispatch run without the HTTP layer (for a
plain cron job) and prints the run result as JSON.
"""

import argparse
import json
import sys
import time

import uvicorn
from supabase import create_client

from .config import Settings
from .log import get_logger, setup_logging
from .mailer import ResendMailer
from .results import ConfigErrorResult, FatalErrorResult, FetchErrorResult, RunReport
from .worker import run_worker

logger = get_logger("delivery_worker")

TRANSIENT_RETRY_DELAYS_SECONDS = (15, 45)


def is_transient_error_message(message: str) -> bool:
    lowered = message.lower()
    return any(
        token in lowered
        for token in (
            "500",
            "502",
            "503",
            "504",
            "429",
            "connectionerror",
            "timeout",
            "temporar",
            "network",
        )
    )


def _result_error_text(result) -> str:
    if isinstance(result, FatalErrorResult):
        return result.fatal
    if isinstance(result, FetchErrorResult):
        return result.error
    return ""


def run_once(settings: Settings) -> int:
    # No bearer check here: whoever can run the process already holds the env.
    missing = [name for name in settings.missing_required() if name != "CRON_SECRET"]
    if missing:
        print(json.dumps(ConfigErrorResult(missing=missing).model_dump()))
        return 1

    client = create_client(settings.supabase_url, settings.supabase_service_role_key)
    mailer = ResendMailer(api_key=settings.resend_api_key, from_email=settings.from_email)

    for attempt in range(len(TRANSIENT_RETRY_DELAYS_SECONDS) + 1):
        result = run_worker(
            client,
            mailer,
            batch_size=settings.batch_size,
            deadline_seconds=settings.run_deadline_seconds,
            stale_minutes=settings.stale_processing_minutes,
            media_bucket=settings.media_bucket,
        )
        error = _result_error_text(result)
        if (
            error
            and is_transient_error_message(error)
            and attempt < len(TRANSIENT_RETRY_DELAYS_SECONDS)
        ):
            delay = TRANSIENT_RETRY_DELAYS_SECONDS[attempt]
            logger.warning(
                f"Transient error (attempt {attempt + 1}/{len(TRANSIENT_RETRY_DELAYS_SECONDS) + 1}), "
                f"retrying in {delay}s: {error}"
            )
            time.sleep(delay)
            continue
        break

    print(json.dumps(result.model_dump(mode="json")))
    return 0 if isinstance(result, RunReport) else 1


def serve(host: str, port: int) -> int:
    uvicorn.run(
        "delivery_worker.app:create_app",
        factory=True,
        host=host,
        port=port,
        log_config=None,
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="delivery_worker")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="run the HTTP worker")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)

    subparsers.add_parser("run-once", help="dispatch one batch and exit")

    args = parser.parse_args(argv)
    settings = Settings.from_env()
    setup_logging(debug=settings.debug)

    if args.command == "serve":
        return serve(args.host, args.port)
    return run_once(settings)


if __name__ == "__main__":
    sys.exit(main())
