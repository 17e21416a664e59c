import pytest
from pydantic import ValidationError

from authcore.config import (
    AppEnv,
    AuthBackend,
    MailProvider,
    Settings,
    get_settings,
    reset_settings_cache,
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for field in Settings.model_fields.values():
        env_name = (field.json_schema_extra or {}).get("env")
        if env_name:
            monkeypatch.delenv(env_name, raising=False)
    reset_settings_cache()
    yield tmp_path
    reset_settings_cache()


class TestSettingsFromEnv:
    def test_defaults(self, clean_env):
        settings = Settings.from_env()

        assert settings.app_env == AppEnv.DEVELOPMENT
        assert settings.auth_backend == AuthBackend.DELEGATED
        assert settings.mail_provider == MailProvider.SMTP
        assert settings.email_role_map == {"student": "mahasiswa", "teacher": "dosen"}
        assert settings.self_registration_roles == ["mahasiswa"]
        assert settings.otp_settings == {
            "length": 6,
            "expiry_minutes": 10,
            "max_attempts": 5,
            "resend_max_times": 5,
            "resend_cooldown_seconds": 60,
        }

    def test_environment_values(self, clean_env, monkeypatch):
        monkeypatch.setenv("AUTH_BACKEND", "local")
        monkeypatch.setenv("OTP_LENGTH", "8")
        monkeypatch.setenv("EMAIL_DOMAIN", ".Campus.AC.ID")
        monkeypatch.setenv("EMAIL_ROLE_MAP", "student:mahasiswa, Lecturer:dosen")
        monkeypatch.setenv("SELF_REGISTRATION_ROLES", "mahasiswa,dosen")

        settings = Settings.from_env()

        assert settings.auth_backend == AuthBackend.LOCAL
        assert settings.otp_length == 8
        assert settings.email_domain == "campus.ac.id"
        assert settings.email_role_map == {"student": "mahasiswa", "lecturer": "dosen"}
        assert settings.self_registration_roles == ["mahasiswa", "dosen"]

    def test_dotenv_file_is_read(self, clean_env, monkeypatch):
        (clean_env / ".env").write_text("TOKEN_PEPPER=from-dotenv\nOTP_MAX_ATTEMPTS=3\n")
        monkeypatch.setenv("OTP_MAX_ATTEMPTS", "7")

        settings = Settings.from_env()

        assert settings.token_pepper == "from-dotenv"
        assert settings.otp_max_attempts == 7

    def test_invalid_role_map(self, clean_env, monkeypatch):
        monkeypatch.setenv("EMAIL_ROLE_MAP", "student-mahasiswa")

        with pytest.raises(ValidationError):
            Settings.from_env()

    def test_get_settings_is_cached(self, clean_env, monkeypatch):
        first = get_settings()
        monkeypatch.setenv("OTP_LENGTH", "9")

        assert get_settings() is first
        reset_settings_cache()
        assert get_settings().otp_length == 9


class TestDerivedSettings:
    def test_non_positive_otp_values_fall_back(self):
        settings = Settings(otp_length=0, otp_expiry_minutes=-5, otp_resend_cooldown_seconds=0)

        assert settings.otp_settings["length"] == 6
        assert settings.otp_settings["expiry_minutes"] == 10
        assert settings.otp_settings["resend_cooldown_seconds"] == 60

    def test_password_reset_redirect_by_environment(self):
        development = Settings()
        production = Settings(
            app_env=AppEnv.PRODUCTION,
            frontend_url_production="https://app.example.edu/",
            password_reset_path="auth/reset",
        )

        assert development.password_reset_redirect == "http://localhost:5173/reset-password"
        assert production.password_reset_redirect == "https://app.example.edu/auth/reset"

    def test_otp_template_ids(self):
        settings = Settings(mailtrap_template_register="uuid-reg")

        assert settings.otp_template_ids == {
            "register": "uuid-reg",
            "reset_password": "reset_password",
        }
