import os
from dataclasses import dataclass


DEFAULT_FROM_EMAIL = "Echo <no-reply@echo.local>"

DEFAULT_MEDIA_BUCKET = "echo-uploads"

DEFAULT_BATCH_SIZE = 50

DEFAULT_RUN_DEADLINE_SECONDS = 60

DEFAULT_STALE_PROCESSING_MINUTES = 30

REQUIRED_ENV = (
    "SUPABASE_URL",
    "SUPABASE_SERVICE_ROLE_KEY",
    "RESEND_API_KEY",
    "CRON_SECRET",
)



def get_env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name, default)
    if value is None or value == "":
        return default
    return value


def get_int_env(name: str, default: int) -> int:
    try:
        parsed = int(get_env(name) or default)
    except (TypeError, ValueError):
        parsed = default
    return max(1, parsed)


def get_bool_env(name: str, default: bool = False) -> bool:
    value = get_env(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    supabase_url: str | None = None
    supabase_service_role_key: str | None = None
    resend_api_key: str | None = None
    cron_secret: str | None = None
    from_email: str = DEFAULT_FROM_EMAIL
    media_bucket: str = DEFAULT_MEDIA_BUCKET
    batch_size: int = DEFAULT_BATCH_SIZE
    run_deadline_seconds: int = DEFAULT_RUN_DEADLINE_SECONDS
    stale_processing_minutes: int = DEFAULT_STALE_PROCESSING_MINUTES
    debug: bool = False
    from_email_configured: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            supabase_url=get_env("SUPABASE_URL"),
            supabase_service_role_key=get_env("SUPABASE_SERVICE_ROLE_KEY"),
            resend_api_key=get_env("RESEND_API_KEY"),
            cron_secret=get_env("CRON_SECRET"),
            from_email=get_env("FROM_EMAIL", DEFAULT_FROM_EMAIL),
            media_bucket=get_env("MEDIA_BUCKET", DEFAULT_MEDIA_BUCKET),
            batch_size=get_int_env("WORKER_BATCH_SIZE", DEFAULT_BATCH_SIZE),
            run_deadline_seconds=get_int_env(
                "WORKER_RUN_DEADLINE_SECONDS", DEFAULT_RUN_DEADLINE_SECONDS
            ),
            stale_processing_minutes=get_int_env(
                "STALE_PROCESSING_MINUTES", DEFAULT_STALE_PROCESSING_MINUTES
            ),
            debug=get_bool_env("DEBUG"),
            from_email_configured=bool(get_env("FROM_EMAIL")),
        )

    @property
    def database_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_role_key)

    def env_presence(self) -> dict[str, bool]:
        """Present/absent flags for the diag endpoint. Never the values."""
        return {
            "SUPABASE_URL": bool(self.supabase_url),
            "SUPABASE_SERVICE_ROLE_KEY": bool(self.supabase_service_role_key),
            "RESEND_API_KEY": bool(self.resend_api_key),
            "CRON_SECRET": bool(self.cron_secret),
            "FROM_EMAIL": self.from_email_configured,
        }

    def missing_required(self) -> list[str]:
        """Names of required settings that are unset, in a stable order."""
        presence = self.env_presence()
        return [name for name in REQUIRED_ENV if not presence[name]]
