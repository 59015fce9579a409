"""Tests for the voice-gateway-agent-config command."""

import json

import pytest

from voice_gateway.cli.agent_config import EXIT_INVALID, EXIT_OK, EXIT_USAGE, main
from voice_gateway.infra.crypto import decrypt_envelope, parse_encryption_key

HEX_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"

AGENT = {
    "agentId": "agent_1",
    "bearerToken": "bearer-1",
    "squareAccessToken": "EAAA" + "x" * 40,
    "squareLocationId": "LOC1",
    "squareApplicationId": "sq0idp-app",
    "timezone": "America/Chicago",
}


@pytest.fixture(autouse=True)
def no_env_key(monkeypatch):
    monkeypatch.delenv("AGENT_CONFIG_ENCRYPTION_KEY", raising=False)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "agents.json"
    path.write_text(json.dumps([AGENT]))
    return path


class TestUpload:
    def test_encrypts_and_uploads(self, config_file, tmp_path, capsys):
        store = tmp_path / "store"
        code = main(["--file", str(config_file), "--key", HEX_KEY, "--store", str(store)])

        assert code == EXIT_OK
        stored = (store / "AGENT_CONFIGS").read_text()
        assert "agent_1" not in stored
        assert json.loads(decrypt_envelope(stored, parse_encryption_key(HEX_KEY))) == [AGENT]
        assert "Uploaded 1 agent config(s)" in capsys.readouterr().out

    def test_custom_secret_name(self, config_file, tmp_path):
        store = tmp_path / "store"
        code = main(["--file", str(config_file), "--key", HEX_KEY, "--store", str(store), "--secret", "AGENTS_V2"])
        assert code == EXIT_OK
        assert (store / "AGENTS_V2").is_file()

    def test_key_from_environment(self, config_file, tmp_path, monkeypatch):
        monkeypatch.setenv("AGENT_CONFIG_ENCRYPTION_KEY", HEX_KEY)
        assert main(["--file", str(config_file), "--store", str(tmp_path / "store")]) == EXIT_OK

    def test_dry_run_writes_nothing(self, config_file, tmp_path):
        store = tmp_path / "store"
        code = main(["--file", str(config_file), "--key", HEX_KEY, "--store", str(store), "--dry-run"])
        assert code == EXIT_OK
        assert not store.exists()

    def test_no_upload_with_output(self, config_file, tmp_path):
        output = tmp_path / "envelope.json"
        code = main(["--file", str(config_file), "--key", HEX_KEY, "--no-upload", "--output", str(output)])
        assert code == EXIT_OK
        assert json.loads(output.read_text())["algorithm"] == "AES-256-GCM"


class TestFailures:
    def test_missing_file(self, tmp_path):
        assert main(["--file", str(tmp_path / "nope.json"), "--key", HEX_KEY]) == EXIT_USAGE

    @pytest.mark.parametrize("content", ["{not json", '{"agentId": "a"}', "[]"])
    def test_unusable_file(self, tmp_path, content):
        path = tmp_path / "agents.json"
        path.write_text(content)
        assert main(["--file", str(path), "--key", HEX_KEY]) == EXIT_INVALID

    def test_validation_errors_listed(self, tmp_path, capsys):
        path = tmp_path / "agents.json"
        path.write_text(json.dumps([AGENT, dict(AGENT, squareAccessToken="short")]))
        assert main(["--file", str(path), "--key", HEX_KEY]) == EXIT_INVALID
        assert "Validation failed" in capsys.readouterr().err

    def test_missing_key(self, config_file):
        assert main(["--file", str(config_file)]) == EXIT_USAGE

    def test_bad_key(self, config_file):
        assert main(["--file", str(config_file), "--key", "not-a-key"]) == EXIT_USAGE

    def test_no_store(self, config_file):
        assert main(["--file", str(config_file), "--key", HEX_KEY]) == EXIT_USAGE

    def test_required_file_argument(self):
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == 2
