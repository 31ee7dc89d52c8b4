"""
Unit tests for the command-line entry point.
"""

import json
import logging
from datetime import datetime, timezone
from unittest.mock import patch

import httpx
import pytest

from authguard.app import main as cli
from authguard.app.adapters.iot_client import IotCredentialsClient
from authguard.app.test_helpers import CredentialFactory, json_response, write_config
from authguard.shared.circuit_breaker import BreakerRecord, CircuitBreakerState


class TestMain:
    """Test cases for authguard.app.main.main."""

    @pytest.fixture
    def config_path(self, tmp_path):
        return write_config(tmp_path)

    @pytest.fixture
    def requests(self):
        return []

    @pytest.fixture
    def endpoint(self, requests):
        """Patch the mTLS client with one backed by a mock transport."""
        def handler(request):
            requests.append(request)
            return json_response(200, CredentialFactory.payload("2030-01-01T00:00:00Z"))

        def build(profile, **kwargs):
            return IotCredentialsClient(profile, transport=httpx.MockTransport(handler))

        with patch("authguard.app.main.IotCredentialsClient", side_effect=build):
            yield

    def test_prints_credential_process_json(self, config_path, endpoint, requests, capsys):
        exit_code = cli.main(["--config", str(config_path)])

        captured = capsys.readouterr()
        assert exit_code == 0
        assert captured.out.count("\n") == 1
        assert json.loads(captured.out) == {
            "Version": 1,
            "AccessKeyId": "ASIAEXAMPLEKEY",
            "SecretAccessKey": "wJalrXUtnFEMI/K7MDENG/bPxRfiCYEXAMPLEKEY",
            "SessionToken": "IQoJb3JpZ2luX2VjEXAMPLETOKEN",
            "Expiration": "2030-01-01T00:00:00Z",
        }
        assert len(requests) == 1

    def test_second_run_served_from_cache(self, config_path, endpoint, requests, capsys):
        assert cli.main(["--config", str(config_path)]) == 0
        first = capsys.readouterr().out
        assert cli.main(["--config", str(config_path)]) == 0
        second = capsys.readouterr().out

        assert first == second
        assert len(requests) == 1

    def test_no_cache_flag_forces_fetch(self, config_path, endpoint, requests, capsys):
        cli.main(["--config", str(config_path)])
        cli.main(["--config", str(config_path), "--no-cache"])

        assert len(requests) == 2

    def test_missing_config_reports_error_on_stderr(self, tmp_path, capsys):
        exit_code = cli.main(["--config", str(tmp_path / "missing.toml")])

        captured = capsys.readouterr()
        assert exit_code == 1
        assert captured.out == ""
        error_line = [line for line in captured.err.splitlines() if '"code"' in line and '"message"' in line][-1]
        assert json.loads(error_line)["code"] == "CONFIGURATION_ERROR"

    def test_missing_tls_files_fail_before_network(self, tmp_path, endpoint, requests, capsys):
        config_path = write_config(tmp_path, create_tls_files=False)

        assert cli.main(["--config", str(config_path)]) == 1
        assert requests == []
        assert "Client certificate not found" in capsys.readouterr().err

    def test_open_breaker_fails_fast(self, tmp_path, config_path, endpoint, requests, capsys):
        state_file = tmp_path / "cache" / "cb_state.json"
        state_file.parent.mkdir(parents=True)
        now = datetime.now(timezone.utc)
        state_file.write_text(BreakerRecord(
            state=CircuitBreakerState.OPEN, opened_at=now, failure_count=3, last_failure=now
        ).to_json())

        exit_code = cli.main(["--config", str(config_path)])

        captured = capsys.readouterr()
        assert exit_code == 1
        assert captured.out == ""
        assert "CIRCUIT_BREAKER_OPEN" in captured.err
        assert requests == []

    def test_breaker_status(self, config_path, capsys):
        assert cli.main(["--config", str(config_path), "--breaker-status"]) == 0

        status = json.loads(capsys.readouterr().out)
        assert status["state"] == "Closed"
        assert status["allows_requests"] is True
        assert status["failure_threshold"] == 3

    def test_reset_breaker(self, tmp_path, config_path, capsys):
        state_file = tmp_path / "cache" / "cb_state.json"
        state_file.parent.mkdir(parents=True)
        now = datetime.now(timezone.utc)
        state_file.write_text(BreakerRecord(
            state=CircuitBreakerState.OPEN, opened_at=now, failure_count=3, last_failure=now
        ).to_json())

        assert cli.main(["--config", str(config_path), "--reset-breaker"]) == 0
        assert json.loads(state_file.read_text())["state"] == "Closed"

    def test_log_file_written(self, tmp_path, config_path, endpoint, capsys):
        cli.main(["--config", str(config_path)])

        assert (tmp_path / "log" / "authguard.log").exists()

    def test_trace_log_level_from_config(self, tmp_path, capsys):
        config_path = write_config(tmp_path, extra='log_level = "trace"')

        assert cli.main(["--config", str(config_path), "--breaker-status"]) == 0
        assert logging.getLogger().level == logging.DEBUG
        assert json.loads(capsys.readouterr().out)["state"] == "Closed"

    def test_invalid_log_level_in_config_reports_error(self, tmp_path, capsys):
        config_path = write_config(tmp_path, extra='log_level = "verbose"')

        exit_code = cli.main(["--config", str(config_path), "--breaker-status"])

        captured = capsys.readouterr()
        assert exit_code == 1
        assert captured.out == ""
        assert "CONFIGURATION_ERROR" in captured.err

    def test_log_level_flag(self, config_path, capsys):
        assert cli.main(["--config", str(config_path), "--log-level", "warn", "--breaker-status"]) == 0
        assert logging.getLogger().level == logging.WARNING

    def test_invalid_log_level_flag_rejected(self, config_path, capsys):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["--config", str(config_path), "--log-level", "verbose"])

        assert exc_info.value.code == 2
        assert "--log-level" in capsys.readouterr().err
