import pytest
from typer.testing import CliRunner

from mediajobs import cli as cli_module
from mediajobs.config import Settings
from mediajobs.errors import ConfigurationError


def test_settings_read_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("CDN_AUTH_SECRET", "from-env")
    monkeypatch.setenv("JOB_LEASE_SECONDS", "120")
    monkeypatch.setenv("DATA_DIR", str(tmp_path))

    settings = Settings(_env_file=None)

    assert settings.cdn_auth_secret.get_secret_value() == "from-env"
    assert settings.lease_enabled
    assert settings.sqlite_path == str(tmp_path / "media.db")


def test_secret_is_masked_in_repr(settings):
    assert "test-signing-secret" not in repr(settings)


def test_duration_worker_only_needs_signing_secret():
    settings = Settings(_env_file=None, cdn_auth_secret="s")

    settings.require_worker_settings("duration")


@pytest.mark.parametrize("job_type", ["thumbnail", "transcription"])
def test_upload_workers_need_content_store_credentials(job_type):
    settings = Settings(_env_file=None, cdn_auth_secret="s")

    with pytest.raises(ConfigurationError) as excinfo:
        settings.require_worker_settings(job_type)

    message = str(excinfo.value)
    assert "B2_KEY_ID" in message
    assert "B2_APPLICATION_KEY" in message
    assert "B2_BUCKET_ID" in message


def test_missing_signing_secret_is_reported():
    settings = Settings(_env_file=None, cdn_auth_secret=None)

    with pytest.raises(ConfigurationError, match="CDN_AUTH_SECRET"):
        settings.require_worker_settings("duration")


def test_worker_command_exits_when_misconfigured(monkeypatch):
    monkeypatch.setattr(
        cli_module, "default_settings", Settings(_env_file=None, cdn_auth_secret=None)
    )

    result = CliRunner().invoke(cli_module.cli, ["worker", "--type", "duration"])

    assert result.exit_code == 2


def test_worker_command_rejects_unknown_type():
    result = CliRunner().invoke(cli_module.cli, ["worker", "--type", "transcode"])

    assert result.exit_code != 0
