import os
from dataclasses import dataclass


def _int_env(name: "str", default: "int") -> "int":
    value = os.environ.get(name, "")
    return int(value) if value.strip() else default


def _float_env(name: "str", default: "float") -> "float":
    value = os.environ.get(name, "")
    return float(value) if value.strip() else default


@dataclass
class Config:
    # listen_address: format ":8000" or
    # "0.0.0.0:8000"
    listen_address: "str" = ":8000"
    log_level: "str" = "info"
    # "console" or "json"
    log_format: "str" = "console"

    supabase_url: "str" = ""
    supabase_service_role_key: "str" = ""
    supabase_anon_key: "str" = ""

    cron_secret: "str" = ""
    # accept the hosting platform's x-vercel-cron marker as cron auth
    trust_platform_cron_header: "bool" = True

    # accounts verified more recently than this are skipped by the cron run
    sync_interval_seconds: "int" = 3600
    max_accounts_per_run: "int" = 3
    delay_between_accounts_seconds: "float" = 10.0
    http_timeout_seconds: "float" = 10.0

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            log_format=os.environ.get("LOG_FORMAT", "console"),
            supabase_url=os.environ.get("SUPABASE_URL", ""),
            supabase_service_role_key=os.environ.get("SUPABASE_SERVICE_ROLE_KEY", ""),
            supabase_anon_key=os.environ.get("SUPABASE_ANON_KEY", ""),
            cron_secret=os.environ.get("CRON_SECRET", ""),
            trust_platform_cron_header=os.environ.get(
                "TRUST_PLATFORM_CRON_HEADER", "true"
            ).lower()
            in ("1", "true", "yes"),
            sync_interval_seconds=_int_env("SYNC_INTERVAL_SECONDS", 3600),
            max_accounts_per_run=_int_env("MAX_ACCOUNTS_PER_RUN", 3),
            delay_between_accounts_seconds=_float_env(
                "DELAY_BETWEEN_ACCOUNTS_SECONDS", 10.0
            ),
            http_timeout_seconds=_float_env("HTTP_TIMEOUT_SECONDS", 10.0),
        )

    @property
    def supabase_enabled(self) -> "bool":
        return bool(self.supabase_url and self.supabase_service_role_key)
