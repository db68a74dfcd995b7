"""Runtime configuration helpers."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv
from platformdirs import user_data_dir

APP_NAME = "ClinicaVoice"

load_dotenv()


@dataclass(frozen=True)
class Settings:
    """Resolved application configuration."""

    database_url: str
    database_echo: bool = False
    jwt_secret: str = "dev-secret"
    jwt_algorithm: str = "HS256"
    frontend_url: str = "http://localhost:5173"
    allowed_origins: Tuple[str, ...] = ("*",)
    log_level: str = "INFO"
    upload_bucket: str = "clinicavoice-audio"
    upload_base_url: str = "http://localhost:8000/uploads"
    upload_signing_secret: str = "dev-upload-secret"
    notification_webhook_url: Optional[str] = None
    notification_sender: str = "noreply@clinicavoice.local"
    internal_api_token: Optional[str] = None
    task_workers: int = 4
    inline_tasks: bool = False

    def engine_options(self) -> Dict[str, object]:
        """Return keyword arguments for :func:`sqlalchemy.create_engine`."""

        options: Dict[str, object] = {"echo": self.database_echo}
        connect_args: Dict[str, object] = {}
        pool_size = _get_int_env("DB_POOL_SIZE")
        if pool_size is not None:
            options["pool_size"] = pool_size
        if self.is_sqlite:
            connect_args["check_same_thread"] = False
        if connect_args:
            options["connect_args"] = connect_args
        return options

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


def _default_sqlite_path() -> Path:
    data_dir = Path(user_data_dir(APP_NAME, APP_NAME))
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir / "clinicavoice.db"


def _get_int_env(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


def _get_bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _split_origins(raw: Optional[str]) -> Tuple[str, ...]:
    if not raw:
        return ("*",)
    return tuple(o.strip() for o in raw.split(",") if o.strip()) or ("*",)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the active settings derived from the environment."""

    url = os.getenv("CLINICAVOICE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        url = f"sqlite:///{_default_sqlite_path()}"

    return Settings(
        database_url=url,
        database_echo=_get_bool_env("CLINICAVOICE_DB_ECHO"),
        jwt_secret=os.getenv("JWT_SECRET", "dev-secret"),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
        frontend_url=os.getenv("FRONTEND_URL", "http://localhost:5173").rstrip("/"),
        allowed_origins=_split_origins(os.getenv("ALLOWED_ORIGINS")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        upload_bucket=os.getenv("UPLOAD_BUCKET", "clinicavoice-audio"),
        upload_base_url=os.getenv("UPLOAD_BASE_URL", "http://localhost:8000/uploads").rstrip("/"),
        upload_signing_secret=os.getenv("UPLOAD_SIGNING_SECRET", "dev-upload-secret"),
        notification_webhook_url=os.getenv("NOTIFICATION_WEBHOOK_URL") or None,
        notification_sender=os.getenv("NOTIFICATION_SENDER", "noreply@clinicavoice.local"),
        internal_api_token=os.getenv("INTERNAL_API_TOKEN") or None,
        task_workers=_get_int_env("TASK_WORKERS") or 4,
        inline_tasks=_get_bool_env("INLINE_TASKS"),
    )


__all__ = ["APP_NAME", "Settings", "get_settings"]
