"""Tests for SSH provisioning and script output parsing."""
import json
import socket
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import paramiko
import pytest

from vpn_store.provisioning import (
    DUPLICATE_EXIT_CODE,
    ProvisionRequest,
    ProvisioningError,
    SSHScriptProvisioner,
    parse_script_output,
)


@pytest.fixture
def request_():
    server = {"domain": "sg.example.com", "auth": "secret", "quota": 100, "iplimit": 2}
    return ProvisionRequest(action="create", protocol="vmess", username="alice", days=30, server=server)


def _ssh_client(output, exit_code=0, stderr=b""):
    client = MagicMock()
    stdout = MagicMock()
    stdout.read.return_value = output
    stdout.channel.recv_exit_status.return_value = exit_code
    err = MagicMock()
    err.read.return_value = stderr
    client.exec_command.return_value = (MagicMock(), stdout, err)
    return client


class TestParseScriptOutput:
    """Test how helper script output becomes a result."""

    def test_success(self, request_):
        """Test the last JSON line supplies the account details."""
        output = "working...\n" + json.dumps({"status": "ok", "expired": "2030-01-01", "link": "vmess://x"})
        result = parse_script_output(request_, 0, output)
        assert result.ok is True
        assert result.expires_at == "2030-01-01"
        assert result.details == {"link": "vmess://x"}

    def test_duplicate_exit_code(self, request_):
        """Test the duplicate exit code is recognised."""
        result = parse_script_output(request_, DUPLICATE_EXIT_CODE, "")
        assert result.ok is False
        assert result.duplicate_username is True

    def test_duplicate_marker(self, request_):
        """Test the duplicate marker is recognised with any exit code."""
        result = parse_script_output(request_, 1, "ERROR:User already exists\n")
        assert result.duplicate_username is True

    def test_script_error_status(self, request_):
        """Test an error status carries the script message."""
        result = parse_script_output(request_, 0, json.dumps({"status": "error", "message": "disk full"}))
        assert result.ok is False
        assert result.error == "disk full"
        assert result.duplicate_username is False

    def test_non_json(self, request_):
        """Test unparseable output is a failure."""
        assert parse_script_output(request_, 0, "done").ok is False
        assert parse_script_output(request_, 0, "").ok is False

    def test_non_zero_exit(self, request_):
        """Test other exit codes are failures."""
        assert parse_script_output(request_, 1, json.dumps({"status": "ok"})).ok is False

    def test_trial_expiry_defaults_to_minutes(self, request_):
        """Test a trial without an expiry is given its lifetime from now."""
        request_.action = "trial"
        request_.minutes = 60
        before = datetime.utcnow()
        result = parse_script_output(request_, 0, json.dumps({"status": "ok"}))
        expires = datetime.fromisoformat(result.expires_at)
        assert before + timedelta(minutes=58) < expires <= before + timedelta(minutes=61)

    def test_missing_expiry_defaults(self, request_):
        """Test a missing expiry is computed from the duration."""
        result = parse_script_output(request_, 0, json.dumps({"status": "success"}))
        assert result.ok is True
        assert result.expires_at


class TestSSHScriptProvisioner:
    """Test the SSH provisioner."""

    def test_build_command_quotes(self, request_):
        """Test arguments are shell quoted."""
        provisioner = SSHScriptProvisioner("/opt/scripts/")
        request_.password = "p w"
        command = provisioner.build_command(request_)
        assert command == "/opt/scripts/create-vmess alice 30 100 2 'p w'"

    def test_trial_command_uses_minutes(self, request_):
        """Test trial scripts receive the lifetime in minutes."""
        request_.action = "trial"
        request_.minutes = 60
        command = SSHScriptProvisioner("/opt/scripts").build_command(request_)
        assert command == "/opt/scripts/trial-vmess alice 60 100 2"

    def test_runs_script(self, request_):
        """Test the script runs on the server and its output is parsed."""
        client = _ssh_client(json.dumps({"status": "ok", "expired": "2030-02-02"}).encode())
        with patch("vpn_store.provisioning.paramiko.SSHClient", return_value=client):
            result = SSHScriptProvisioner("/opt/scripts").run(request_)

        assert result.ok is True
        assert result.expires_at == "2030-02-02"
        assert client.connect.call_args.kwargs["hostname"] == "sg.example.com"
        assert client.connect.call_args.kwargs["password"] == "secret"
        client.close.assert_called_once()

    def test_connection_failure(self, request_):
        """Test SSH errors raise ProvisioningError."""
        client = MagicMock()
        client.connect.side_effect = paramiko.SSHException("auth failed")
        with patch("vpn_store.provisioning.paramiko.SSHClient", return_value=client):
            with pytest.raises(ProvisioningError):
                SSHScriptProvisioner("/opt/scripts").run(request_)
        client.close.assert_called_once()

    def test_socket_failure(self, request_):
        """Test network errors raise ProvisioningError."""
        client = MagicMock()
        client.connect.side_effect = socket.timeout("timed out")
        with patch("vpn_store.provisioning.paramiko.SSHClient", return_value=client):
            with pytest.raises(ProvisioningError):
                SSHScriptProvisioner("/opt/scripts").renew(request_)

    def test_unknown_action(self, request_):
        """Test unknown actions are refused."""
        request_.action = "delete"
        with pytest.raises(ValueError):
            SSHScriptProvisioner("/opt/scripts").run(request_)
