"""Tests for the .env bootstrap command."""
import re

import pytest

from lightning_out_host.config import Settings
from lightning_out_host.setup_env import main, write_env_file


class TestWriteEnvFile:
    def test_writes_template_with_generated_secret(self, tmp_path):
        path = write_env_file(tmp_path / ".env")

        content = path.read_text(encoding="utf-8")
        secret = re.search(r"^SESSION_SECRET=([0-9a-f]+)$", content, re.MULTILINE).group(1)
        assert len(secret) == 64
        assert "SF_CLIENT_ID=\n" in content
        assert "SF_LOGIN_URL=https://login.salesforce.com" in content

    def test_secret_differs_per_run(self, tmp_path):
        first = write_env_file(tmp_path / "a.env").read_text(encoding="utf-8")
        second = write_env_file(tmp_path / "b.env").read_text(encoding="utf-8")
        pattern = re.compile(r"^SESSION_SECRET=(.*)$", re.MULTILINE)
        assert pattern.search(first).group(1) != pattern.search(second).group(1)

    def test_refuses_to_overwrite(self, tmp_path):
        path = tmp_path / ".env"
        path.write_text("SESSION_SECRET=keep-me\n", encoding="utf-8")

        with pytest.raises(FileExistsError):
            write_env_file(path)

        assert path.read_text(encoding="utf-8") == "SESSION_SECRET=keep-me\n"

    def test_generated_file_loads_as_settings(self, tmp_path, monkeypatch):
        monkeypatch.delenv("SESSION_SECRET", raising=False)
        path = write_env_file(tmp_path / ".env")

        settings = Settings(_env_file=str(path))

        assert len(settings.SESSION_SECRET) == 64
        assert settings.SF_CLIENT_ID is None


class TestMain:
    def test_creates_file_and_prints_next_steps(self, tmp_path, capsys):
        path = tmp_path / ".env"

        assert main([str(path)]) == 0

        assert path.exists()
        assert "Next steps" in capsys.readouterr().out

    def test_existing_file_exits_non_zero(self, tmp_path, capsys):
        path = tmp_path / ".env"
        path.write_text("x", encoding="utf-8")

        assert main([str(path)]) == 1
        assert "already exists" in capsys.readouterr().err
        assert path.read_text(encoding="utf-8") == "x"
