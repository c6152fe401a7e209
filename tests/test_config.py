import pytest
from pydantic import ValidationError

from idbridge.config import Settings, get_settings, reset_settings_cache

ACCESS = "Access-Secret_for-Automation-Only-123456"
REFRESH = "Refresh-Secret_for-Automation-Only-654321"


def test_defaults():
    settings = Settings(jwt_access_secret=ACCESS, jwt_refresh_secret=REFRESH)

    assert settings.access_token_ttl_minutes == 15
    assert settings.refresh_token_ttl_minutes == 7 * 24 * 60
    assert settings.frontend_url == "http://localhost:3000"
    assert settings.allow_signup is True


def test_missing_secrets_rejected():
    with pytest.raises(ValidationError):
        Settings()
    with pytest.raises(ValidationError):
        Settings(jwt_access_secret=ACCESS)


def test_identical_secrets_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_access_secret=ACCESS, jwt_refresh_secret=ACCESS)


def test_non_positive_ttl_rejected():
    with pytest.raises(ValidationError):
        Settings(
            jwt_access_secret=ACCESS,
            jwt_refresh_secret=REFRESH,
            access_token_ttl_minutes=0,
        )


def test_derived_secrets_fall_back():
    settings = Settings(jwt_access_secret=ACCESS, jwt_refresh_secret=REFRESH)

    assert settings.state_secret == ACCESS
    assert settings.encryption_key_material == REFRESH

    explicit = settings.model_copy(
        update={"oauth_state_secret": "state", "secret_encryption_key": "enc"}
    )
    assert explicit.state_secret == "state"
    assert explicit.encryption_key_material == "enc"


def test_github_configuration_needs_all_three_values():
    settings = Settings(
        jwt_access_secret=ACCESS,
        jwt_refresh_secret=REFRESH,
        oauth_github_client_id="id",
        oauth_github_client_secret="secret",
    )

    assert settings.github_oauth_configured is False
    assert settings.model_copy(
        update={"oauth_redirect_uri": "http://localhost/cb"}
    ).github_oauth_configured is True


def test_from_env_reads_named_variables(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("JWT_ACCESS_SECRET", ACCESS)
    monkeypatch.setenv("JWT_REFRESH_SECRET", REFRESH)
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
    monkeypatch.setenv("GITHUB_CALLBACK_URL", "https://app.example/cb")
    monkeypatch.setenv("ALLOW_SIGNUP", "false")

    settings = Settings.from_env()

    assert settings.access_token_ttl_minutes == 5
    assert settings.oauth_redirect_uri == "https://app.example/cb"
    assert settings.allow_signup is False


def test_from_env_reads_dotenv_file(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("FRONTEND_URL", raising=False)
    (tmp_path / ".env").write_text("FRONTEND_URL=https://app.example\n")

    assert Settings.from_env().frontend_url == "https://app.example"


def test_environment_wins_over_dotenv(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("FRONTEND_URL", "https://env.example")
    (tmp_path / ".env").write_text("FRONTEND_URL=https://file.example\n")

    assert Settings.from_env().frontend_url == "https://env.example"


def test_settings_cache_reset(monkeypatch):
    first = get_settings()
    assert get_settings() is first

    monkeypatch.setenv("FRONTEND_URL", "https://changed.example")
    reset_settings_cache()

    assert get_settings().frontend_url == "https://changed.example"
    reset_settings_cache()
