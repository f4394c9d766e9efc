#!/usr/bin/env python3
"""
Unit tests for the SSH Remote Command Executor
"""

import logging
import sys
import pytest
from pathlib import Path
from unittest.mock import patch, MagicMock

import paramiko

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from droplet.errors import SSHConnectionError
from droplet.ssh import RemoteExecutor, SSHSession, ExecResult


def mock_client(stdout=b"", stderr=b"", exit_code=0):
    """An SSHClient whose exec_command returns canned channels."""
    client = MagicMock()
    mock_stdout = MagicMock()
    mock_stderr = MagicMock()
    mock_stdout.read.return_value = stdout
    mock_stderr.read.return_value = stderr
    mock_stdout.channel.recv_exit_status.return_value = exit_code
    client.exec_command.return_value = (MagicMock(), mock_stdout, mock_stderr)
    return client


@pytest.fixture
def executor():
    with patch.object(RemoteExecutor, "_load_key", return_value=MagicMock()):
        yield RemoteExecutor(username="root", timeout=10)


# ── ExecResult Tests ─────────────────────────────────────────────

class TestExecResult:

    def test_defaults(self):
        r = ExecResult(
            command="ls", exit_code=0, stdout="file.txt",
            stderr="", success=True, duration_ms=12.5,
        )
        assert r.transport_error is False
        assert r.host == ""

    def test_to_dict(self):
        r = ExecResult("ls", 2, "", "nope", False, 1.0, host="1.2.3.4")
        d = r.to_dict()
        assert d["command"] == "ls"
        assert d["exit_code"] == 2
        assert d["host"] == "1.2.3.4"


# ── Key Loading ──────────────────────────────────────────────────

class TestKeyLoading:

    def test_no_key_anywhere(self, monkeypatch, tmp_path):
        monkeypatch.setenv("HOME", str(tmp_path))
        monkeypatch.delenv("SSH_PRIVATE_KEY_PATH", raising=False)
        monkeypatch.delenv("SSH_PRIVATE_KEY", raising=False)

        executor = RemoteExecutor(key_path=str(tmp_path / "missing"))
        assert executor._key is None

    def test_rsa_key_file(self, tmp_path):
        path = tmp_path / "id_rsa"
        paramiko.RSAKey.generate(2048).write_private_key_file(str(path))

        executor = RemoteExecutor(key_path=str(path))
        assert isinstance(executor._key, paramiko.RSAKey)

    def test_key_from_env_content(self, monkeypatch, tmp_path):
        path = tmp_path / "id_rsa"
        paramiko.RSAKey.generate(2048).write_private_key_file(str(path))
        monkeypatch.delenv("SSH_PRIVATE_KEY_PATH", raising=False)
        monkeypatch.setenv("SSH_PRIVATE_KEY", path.read_text())

        executor = RemoteExecutor()
        assert isinstance(executor._key, paramiko.RSAKey)

    def test_garbage_key_string(self):
        assert RemoteExecutor._parse_key_string("not a key") is None

    def test_defaults(self, executor):
        assert executor.username == "root"
        assert executor.port == 22
        assert executor.timeout == 10


# ── Sessions ─────────────────────────────────────────────────────

class TestOpenSession:

    def test_no_host(self, executor):
        with pytest.raises(SSHConnectionError):
            executor.open_session("")

    def test_no_key(self, executor):
        executor._key = None
        with pytest.raises(SSHConnectionError):
            executor.open_session("1.2.3.4")

    @patch("droplet.ssh.paramiko.SSHClient")
    def test_success(self, mock_ssh_client, executor):
        session = executor.open_session("1.2.3.4")

        assert isinstance(session, SSHSession)
        assert session.host == "1.2.3.4"
        kwargs = mock_ssh_client.return_value.connect.call_args.kwargs
        assert kwargs["hostname"] == "1.2.3.4"
        assert kwargs["username"] == "root"
        assert kwargs["pkey"] is executor._key

    @patch("droplet.ssh.paramiko.SSHClient")
    def test_auth_failure(self, mock_ssh_client, executor):
        client = mock_ssh_client.return_value
        client.connect.side_effect = paramiko.AuthenticationException("denied")

        with pytest.raises(SSHConnectionError, match="auth failed"):
            executor.open_session("1.2.3.4")
        client.close.assert_called_once()

    @patch("droplet.ssh.paramiko.SSHClient")
    def test_unreachable(self, mock_ssh_client, executor):
        mock_ssh_client.return_value.connect.side_effect = OSError("No route to host")
        with pytest.raises(SSHConnectionError, match="No route"):
            executor.open_session("1.2.3.4")


class TestSSHSession:

    def test_close_once(self):
        client = MagicMock()
        session = SSHSession(client, "1.2.3.4")
        session.close()
        session.close()
        client.close.assert_called_once()
        assert session.closed

    def test_context_manager(self):
        client = MagicMock()
        with SSHSession(client, "1.2.3.4") as session:
            assert not session.closed
        assert session.closed

    def test_closes_on_error(self):
        client = MagicMock()
        with pytest.raises(RuntimeError):
            with SSHSession(client, "1.2.3.4"):
                raise RuntimeError("boom")
        client.close.assert_called_once()

    def test_run_on_closed_session(self):
        session = SSHSession(MagicMock(), "1.2.3.4")
        session.close()
        with pytest.raises(SSHConnectionError):
            session.run("ls", timeout=5)

    def test_repr(self):
        assert "open" in repr(SSHSession(MagicMock(), "1.2.3.4"))


# ── Execution ────────────────────────────────────────────────────

class TestExecute:

    def test_reuses_given_session(self, executor):
        client = mock_client(stdout=b"ok\n")
        session = SSHSession(client, "1.2.3.4")

        with patch.object(executor, "open_session") as mock_open:
            result = executor.execute("uptime", session=session)
            mock_open.assert_not_called()

        assert result.success is True
        assert result.stdout == "ok"
        assert result.host == "1.2.3.4"
        assert not session.closed
        client.close.assert_not_called()

    def test_opens_and_closes_own_session(self, executor):
        client = mock_client()
        with patch.object(executor, "open_session", return_value=SSHSession(client, "5.6.7.8")) as mock_open:
            result = executor.execute("systemctl stop minecraft", host="5.6.7.8")

        mock_open.assert_called_once_with("5.6.7.8")
        assert result.success is True
        client.close.assert_called_once()

    def test_closes_own_session_on_transport_error(self, executor):
        client = MagicMock()
        client.exec_command.side_effect = paramiko.SSHException("channel closed")
        with patch.object(executor, "open_session", return_value=SSHSession(client, "5.6.7.8")):
            result = executor.execute("ls", host="5.6.7.8")

        assert result.transport_error is True
        assert "channel closed" in result.stderr
        client.close.assert_called_once()

    def test_connection_failure_reported(self, executor):
        with patch.object(executor, "open_session", side_effect=SSHConnectionError("auth rejected")):
            result = executor.execute("ls", host="5.6.7.8")

        assert result.success is False
        assert result.transport_error is True
        assert result.exit_code == -1
        assert "auth rejected" in result.stderr

    def test_nonzero_exit_not_interpreted(self, executor):
        session = SSHSession(mock_client(stderr=b"command not found", exit_code=127), "1.2.3.4")
        result = executor.execute("nonexistent", session=session)

        assert result.success is False
        assert result.transport_error is False
        assert result.exit_code == 127
        assert "not found" in result.stderr

    def test_transport_error_leaves_given_session_open(self, executor):
        client = MagicMock()
        client.exec_command.side_effect = EOFError()
        session = SSHSession(client, "1.2.3.4")

        result = executor.execute("ls", session=session)
        assert result.transport_error is True
        assert not session.closed

    def test_log_output(self, executor, caplog):
        session = SSHSession(mock_client(stdout=b"hello", stderr=b"warn"), "1.2.3.4")
        with caplog.at_level(logging.INFO, logger="droplet.ssh"):
            executor.execute("echo hello", session=session, log_output=True)
        assert "hello" in caplog.text
        assert "warn" in caplog.text

    def test_no_output_logged_by_default(self, executor, caplog):
        session = SSHSession(mock_client(stdout=b"secret-output"), "1.2.3.4")
        with caplog.at_level(logging.INFO, logger="droplet.ssh"):
            result = executor.execute("cat token", session=session)
        assert "secret-output" not in caplog.text
        assert result.stdout == "secret-output"

    def test_passes_timeout(self, executor):
        client = mock_client()
        executor.execute("ls", session=SSHSession(client, "1.2.3.4"))
        assert client.exec_command.call_args.kwargs["timeout"] == 10


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
