from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("PRR_DB_PATH", "prr.db")
    poll_interval_s: int = _env_int("PRR_POLL_INTERVAL_S", 5)
    retry_delay_s: int = _env_int("PRR_RETRY_DELAY_S", 5)
    workers: int = _env_int("PRR_WORKERS", 1)
    backoff_base_s: int = _env_int("PRR_BACKOFF_BASE_S", 1)
    backoff_max_s: int = _env_int("PRR_BACKOFF_MAX_S", 60)
    run_controller: bool = _env_bool("PRR_RUN_CONTROLLER", True)

    # Workload backend: "kubernetes" or "memory"
    backend: str = os.getenv("PRR_BACKEND", "kubernetes")
    kubeconfig: str | None = os.getenv("PRR_KUBECONFIG")
    # Empty namespace means every namespace the credentials can list.
    namespace: str = os.getenv("PRR_NAMESPACE", "")
    label_selector: str = os.getenv("PRR_LABEL_SELECTOR", "app.kubernetes.io/managed-by=annotationscale")
    # Server-side timeout of one watch request; the stream is reopened after it.
    watch_timeout_s: int = _env_int("PRR_WATCH_TIMEOUT_S", 300)

    # API auth (optional)
    # Mutating routes require basic auth only when a password is configured.
    admin_user: str = os.getenv("PRR_ADMIN_USER", "admin")
    admin_password: str | None = os.getenv("PRR_ADMIN_PASSWORD")


settings = Settings()
