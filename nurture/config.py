from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from . import constants
from .utils.retry import RetryPolicy


class RunnerConfig(BaseModel):
    """Scheduling, retry and limit settings for workflow ticks."""

    batch_size: int = constants.DUE_CONTACTS_BATCH
    max_workflows: int = constants.MAX_WORKFLOWS_PER_TICK
    enroll_limit: int = constants.ENROLL_LIMIT_PER_RUN
    manual_enroll_limit: int = constants.MANUAL_ENROLL_LIMIT
    stale_lease_minutes: float = constants.STALE_LEASE_MINUTES
    wait_default_minutes: float = constants.WAIT_DEFAULT_MINUTES
    credit_cost_per_email: int = constants.CREDIT_COST_PER_EMAIL
    webhook_default_timeout_ms: int = constants.WEBHOOK_DEFAULT_TIMEOUT_MS
    webhook_max_timeout_ms: int = constants.WEBHOOK_MAX_TIMEOUT_MS
    preview_chars: int = constants.WEBHOOK_MAX_BODY_CHARS
    graph_step_limit: int = constants.GRAPH_STEP_LIMIT
    legacy_step_limit: int = constants.LEGACY_STEP_LIMIT
    retry: RetryPolicy = RetryPolicy()


class MailConfig(BaseModel):
    """Outbound mail transport settings."""

    backend: Literal["smtp", "inmemory"] = "smtp"
    timeout_seconds: float = 60.0
    mailer_name: str = constants.MAILER_NAME


class AuthConfig(BaseModel):
    """Credentials accepted by the service entrypoint."""

    service_key: Optional[str] = None
    jwt_secret: Optional[str] = None
    jwt_audience: Optional[str] = "authenticated"


class NurtureConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    runner: RunnerConfig = RunnerConfig()
    mail: MailConfig = MailConfig()
    auth: AuthConfig = AuthConfig()


def load_config(path: Optional[str] = None) -> NurtureConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to NURTURE_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("NURTURE_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = NurtureConfig(**data)
    else:
        config = NurtureConfig()

    env_db_url = os.getenv("NURTURE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    if os.getenv("NURTURE_SERVICE_KEY"):
        config.auth.service_key = os.getenv("NURTURE_SERVICE_KEY")
    if os.getenv("NURTURE_JWT_SECRET"):
        config.auth.jwt_secret = os.getenv("NURTURE_JWT_SECRET")
    mail_backend = os.getenv("NURTURE_MAIL_BACKEND")
    if mail_backend in ("smtp", "inmemory"):
        config.mail.backend = mail_backend
    return config
