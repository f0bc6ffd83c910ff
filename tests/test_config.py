import pytest

from selfhosted.config import Settings

ENV_VARS = [
    "SELFHOSTED_HOST",
    "SELFHOSTED_PORT",
    "SELFHOSTED_BACKEND_URL",
    "SELFHOSTED_PROVISION_TIMEOUT",
    "SELFHOSTED_SSH_TIMEOUT",
    "SELFHOSTED_TERRAFORM_DIR",
    "SELFHOSTED_LOG_LEVEL",
    "CLOUDFLARE_API_TOKEN",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    # setenv first so anything .env loads is undone after the test
    for var in ENV_VARS:
        monkeypatch.setenv(var, "")
        monkeypatch.delenv(var)
    monkeypatch.chdir(tmp_path)


def test_defaults():
    settings = Settings.from_env()
    assert settings == Settings()
    assert settings.base_url == "http://127.0.0.1:8080"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("SELFHOSTED_PORT", "9000")
    monkeypatch.setenv("SELFHOSTED_BACKEND_URL", "https://deploy.example.com/")
    monkeypatch.setenv("SELFHOSTED_SSH_TIMEOUT", "60")
    monkeypatch.setenv("SELFHOSTED_LOG_LEVEL", "debug")
    settings = Settings.from_env(dotenv=False)
    assert settings.port == 9000
    assert settings.ssh_timeout == 60
    assert settings.log_level == "DEBUG"
    assert settings.base_url == "https://deploy.example.com"


def test_dotenv_file_is_loaded(tmp_path):
    (tmp_path / ".env").write_text("SELFHOSTED_PROVISION_TIMEOUT=120\nCLOUDFLARE_API_TOKEN=cf-token\n")
    settings = Settings.from_env()
    assert settings.provision_timeout == 120
    assert settings.cloudflare_token == "cf-token"


def test_dotenv_is_found_from_a_subdirectory(tmp_path, monkeypatch):
    (tmp_path / ".env").write_text("SELFHOSTED_PORT=9100\n")
    nested = tmp_path / "project" / "src"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)
    assert Settings.from_env().port == 9100


def test_invalid_integer(monkeypatch):
    monkeypatch.setenv("SELFHOSTED_PORT", "eighty")
    with pytest.raises(ValueError, match="SELFHOSTED_PORT must be an integer"):
        Settings.from_env(dotenv=False)
