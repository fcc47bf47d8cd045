"""
Workflow SLA Engine
Environment configuration.

``create_app`` loads one of the classes in ``config`` (keyed by APP_ENV) into
``app.config``. Engine settings are then read once into an immutable
``EngineConfig`` that the breach scanner and the notification dispatcher
receive at construction:

    engine_config = EngineConfig.from_app_config(app.config)
"""

import os
import secrets
from dataclasses import dataclass, field, fields
from typing import Mapping

_PROJECT_ROOT = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
_LOCAL_SQLITE = "sqlite:///" + os.path.join(_PROJECT_ROOT, "instance", "workflow_engine_dev.db")

_POOL_OPTIONS = {
    "pool_pre_ping": True,
    "pool_size": 5,
    "max_overflow": 10,
    "pool_recycle": 300,
    "pool_timeout": 20,
}


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _database_url(fallback=None):
    """DATABASE_URL normalised for SQLAlchemy 2.0 (no ``postgres://`` scheme)."""
    raw = os.getenv("DATABASE_URL", "")
    if not raw:
        return fallback
    return raw.replace("postgres://", "postgresql://", 1)


class Config:
    # Development falls back to a per-process random key
    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False

    LOG_LEVEL = os.getenv("LOG_LEVEL", "")
    LOG_FORMAT = os.getenv("LOG_FORMAT", "")

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = dict(_POOL_OPTIONS)

    # Real-time notification channel (redis://... or memory://)
    REALTIME_URL = os.getenv("REALTIME_URL", os.getenv("REDIS_URL", "memory://"))

    # SLA & breach scanning
    DEFAULT_SLA_HOURS = float(os.getenv("DEFAULT_SLA_HOURS", "24"))
    SLA_SCAN_INTERVAL_MINUTES = int(os.getenv("SLA_SCAN_INTERVAL_MINUTES", "15"))
    SLA_NOTIFY_ROLE = os.getenv("SLA_NOTIFY_ROLE", "hil_operator")
    SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", "false")

    # Notifications
    NOTIFICATION_RECENT_WINDOW_HOURS = int(os.getenv("NOTIFICATION_RECENT_WINDOW_HOURS", "24"))
    DIRECTORY_TIMEOUT_SECONDS = float(os.getenv("DIRECTORY_TIMEOUT_SECONDS", "5"))
    PUBLISH_TIMEOUT_SECONDS = float(os.getenv("PUBLISH_TIMEOUT_SECONDS", "5"))
    APP_BASE_URL = os.getenv("APP_BASE_URL", "")

    # External workflow orchestrator (n8n); disabled when base URL is unset
    ORCHESTRATOR_BASE_URL = os.getenv("ORCHESTRATOR_BASE_URL", "")
    ORCHESTRATOR_API_KEY = os.getenv("ORCHESTRATOR_API_KEY", "")
    ORCHESTRATOR_WEBHOOK_URL = os.getenv("ORCHESTRATOR_WEBHOOK_URL", "")
    ORCHESTRATOR_TIMEOUT_SECONDS = int(os.getenv("ORCHESTRATOR_TIMEOUT_SECONDS", "10"))
    ORCHESTRATOR_WORKFLOW_IDS = {
        "PAYOFF": os.getenv("ORCHESTRATOR_PAYOFF_WORKFLOW_ID", ""),
        "HOA_ACQUISITION": os.getenv("ORCHESTRATOR_HOA_WORKFLOW_ID", ""),
        "LIEN_SEARCH": os.getenv("ORCHESTRATOR_LIEN_WORKFLOW_ID", ""),
    }


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(_LOCAL_SQLITE)


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ENGINE_OPTIONS = {}
    REALTIME_URL = "memory://"
    SCHEDULER_ENABLED = False
    ORCHESTRATOR_BASE_URL = ""


class ProductionConfig(Config):
    SQLALCHEMY_DATABASE_URI = _database_url()
    SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", "true")
    SQLALCHEMY_ENGINE_OPTIONS = {
        **_POOL_OPTIONS,
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    @classmethod
    def validate(cls):
        """Refuse to boot production without a database and a stable secret."""
        missing = [name for name in ("DATABASE_URL", "SECRET_KEY") if not os.getenv(name)]
        if missing:
            raise RuntimeError(f"Production requires environment variables: {', '.join(missing)}")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}


# ── Engine configuration (explicit, passed at construction) ─────────────────


@dataclass(frozen=True)
class PopupDefaults:
    """Popup filter defaults for users without a stored preference row."""

    show_popups_for_urgent: bool = True
    show_popups_for_high: bool = True
    show_popups_for_normal: bool = False
    show_popups_for_low: bool = False
    enable_task_interrupts: bool = True
    enable_workflow_failures: bool = True
    enable_task_completions: bool = False
    enable_sla_warnings: bool = True

    def as_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class EngineConfig:
    """Settings consumed by the breach scanner and notification dispatcher."""

    default_sla_hours: float = 24.0
    scan_interval_minutes: int = 15
    sla_notify_role: str = "hil_operator"
    recent_window_hours: int = 24
    directory_timeout_seconds: float = 5.0
    publish_timeout_seconds: float = 5.0
    app_base_url: str = ""
    popup_defaults: PopupDefaults = field(default_factory=PopupDefaults)

    @classmethod
    def from_app_config(cls, cfg: Mapping) -> "EngineConfig":
        return cls(
            default_sla_hours=float(cfg.get("DEFAULT_SLA_HOURS", 24)),
            scan_interval_minutes=int(cfg.get("SLA_SCAN_INTERVAL_MINUTES", 15)),
            sla_notify_role=cfg.get("SLA_NOTIFY_ROLE", "hil_operator"),
            recent_window_hours=int(cfg.get("NOTIFICATION_RECENT_WINDOW_HOURS", 24)),
            directory_timeout_seconds=float(cfg.get("DIRECTORY_TIMEOUT_SECONDS", 5)),
            publish_timeout_seconds=float(cfg.get("PUBLISH_TIMEOUT_SECONDS", 5)),
            app_base_url=cfg.get("APP_BASE_URL", "") or "",
            popup_defaults=cfg.get("POPUP_DEFAULTS") or PopupDefaults(),
        )
