"""Tests for configuration loading."""

from nurture.config import load_config
from nurture.persistence import SQLiteAutomationRepository, get_repository
from nurture.transports import InMemoryMailTransport, SMTPMailTransport, get_mail_transport


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
runner:
  batch_size: 25
  retry:
    webhook_minutes: 3
mail:
  backend: inmemory
auth:
  service_key: from-file
"""
    )
    monkeypatch.setenv("NURTURE_CONFIG", str(config_path))

    config = load_config()
    assert config.runner.batch_size == 25
    assert config.runner.retry.webhook_minutes == 3
    assert config.runner.retry.send_minutes == 15
    assert config.runner.max_workflows == 40
    assert config.mail.backend == "inmemory"
    assert config.auth.service_key == "from-file"
    assert config.auth.jwt_audience == "authenticated"


def test_environment_overrides_file(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("auth:\n  service_key: from-file\n")
    monkeypatch.setenv("NURTURE_SERVICE_KEY", "from-env")
    monkeypatch.setenv("NURTURE_JWT_SECRET", "jwt-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite://{tmp_path / 'env.db'}")

    config = load_config(str(config_path))
    assert config.auth.service_key == "from-env"
    assert config.auth.jwt_secret == "jwt-secret"
    assert config.database_url.startswith("sqlite://")


def test_missing_file_uses_defaults(tmp_path):
    config = load_config(str(tmp_path / "absent.yaml"))
    assert config.database_url is None
    assert config.runner.batch_size == 80
    assert config.runner.stale_lease_minutes == 15
    assert config.mail.backend == "smtp"


def test_get_repository_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(f"database_url: sqlite://{tmp_path / 'nurture.db'}\n")
    monkeypatch.setenv("NURTURE_CONFIG", str(config_path))

    repo = get_repository()
    assert isinstance(repo, SQLiteAutomationRepository)
    assert repo.db_path == str(tmp_path / "nurture.db")


def test_get_mail_transport_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("mail:\n  backend: smtp\n  timeout_seconds: 5\n")
    monkeypatch.setenv("NURTURE_CONFIG", str(config_path))

    transport = get_mail_transport()
    assert isinstance(transport, SMTPMailTransport)
    assert transport.timeout == 5

    monkeypatch.setenv("NURTURE_MAIL_BACKEND", "inmemory")
    assert isinstance(get_mail_transport(), InMemoryMailTransport)
