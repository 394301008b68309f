import importlib.util
import smtplib
from datetime import timedelta
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from korella.service.email import EmailService
from korella.storage.errors import StoreUnavailable
from korella.storage.memory import MemoryStore
from korella.storage.models import AccountStatus, AuthEventType, AuthLog, User

SCRIPTS = Path(__file__).resolve().parent.parent / "scripts"


def _load_script(name):
    spec = importlib.util.spec_from_file_location(name, SCRIPTS / f"{name}.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestEmailService:
    def test_unconfigured_service_logs_instead_of_sending(self, settings):
        mailer = EmailService.from_settings(settings)
        assert not mailer.is_configured
        with patch("korella.service.email.smtplib.SMTP") as smtp:
            assert mailer.send_password_reset_email(User.new("a@example.com"), "tok")
        smtp.assert_not_called()

    def test_reset_link_points_at_app(self, settings_factory):
        mailer = EmailService.from_settings(
            settings_factory(smtp_host="smtp.test", email_from_address="noreply@korella.test")
        )
        server = MagicMock()
        with patch("korella.service.email.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value = server
            assert mailer.send_password_reset_email(User.new("a@example.com"), "tok en")
        sender, recipient, body = server.sendmail.call_args[0]
        assert sender == "noreply@korella.test"
        assert recipient == "a@example.com"
        assert "https://app.korella.test/reset-password?token=tok+en" in body
        server.starttls.assert_called_once()

    def test_smtp_failure_is_reported_not_raised(self, settings_factory):
        mailer = EmailService.from_settings(
            settings_factory(smtp_host="smtp.test", email_from_address="noreply@korella.test")
        )
        with patch("korella.service.email.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value.sendmail.side_effect = (
                smtplib.SMTPException("boom")
            )
            assert mailer.send_verification_email(User.new("a@example.com"), "tok") is False


class TestAuditLog:
    def test_write_failure_does_not_raise(self, auth_service, memory_store, monkeypatch):
        def broken(entry):
            raise StoreUnavailable("database unavailable")

        monkeypatch.setattr(memory_store, "append_auth_log", broken)
        auth_service.audit.record(AuthEventType.LOGOUT, success=True, user_id="u-1")

    def test_purge_uses_retention_window(self, auth_service, memory_store, clock, settings):
        auth_service.audit.record(AuthEventType.LOGOUT, success=True)
        clock.advance(days=settings.auth_log_retention_days, seconds=1)
        auth_service.audit.record(AuthEventType.LOGOUT, success=True)
        assert auth_service.audit.purge() == {"auth_logs": 1, "tokens": 0}
        assert len(memory_store.list_auth_logs()) == 1


class TestOperatorScripts:
    @pytest.fixture
    def state_env(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("STATE_DIR", str(tmp_path))
        monkeypatch.setenv("USE_MEMORY_STORE", "true")
        monkeypatch.setenv("TEST_MODE", "true")
        monkeypatch.setenv("REDIS_URL", "")
        return tmp_path

    def test_suspend_and_reactivate(self, state_env, capsys):
        store = MemoryStore(fs_root=str(state_env))
        user = store.create_user(
            User.new("ops@example.com", account_status=AccountStatus.ACTIVE, email_verified=True)
        )
        script = _load_script("manage_account")

        assert script.main(["suspend", "OPS@example.com", "--reason", "chargeback"]) == 0
        assert MemoryStore(fs_root=str(state_env)).get_user(user.id).account_status == (
            AccountStatus.SUSPENDED
        )
        assert "Status: suspended" in capsys.readouterr().out

        assert script.main(["reactivate", "ops@example.com"]) == 0
        assert MemoryStore(fs_root=str(state_env)).get_user(user.id).account_status == (
            AccountStatus.ACTIVE
        )

    def test_invalid_transition_exits_non_zero(self, state_env, capsys):
        store = MemoryStore(fs_root=str(state_env))
        store.create_user(User.new("pending@example.com"))
        script = _load_script("manage_account")
        assert script.main(["suspend", "pending@example.com"]) == 1
        assert capsys.readouterr().out.startswith("Error:")

    def test_purge_script(self, state_env, capsys):
        store = MemoryStore(fs_root=str(state_env))
        user = store.create_user(User.new("old@example.com"))
        entry_time = user.created_at - timedelta(days=30)
        store.append_auth_log(
            AuthLog(event_type=AuthEventType.LOGOUT, success=True, created_at=entry_time)
        )
        script = _load_script("purge_auth_logs")
        assert script.main([]) == 0
        assert "Removed 1 auth log rows" in capsys.readouterr().out
