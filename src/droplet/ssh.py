#!/usr/bin/env python3
"""
Remote Command Executor — SSH access to the game droplet

Runs shell commands on the droplet over SSH. Used twice in a droplet's
life: the provisioning script right after boot (many commands over one
shared session) and the graceful service stop before deletion (one
command over a throwaway session).

Semantics:
- No session passed: open one, run the command, close it on every path
- Session passed: reuse it and leave closing to the caller
- Exit codes are reported, never interpreted
- Connection and transport failures come back as results, not exceptions

Usage:
    executor = RemoteExecutor(username="root", key_path="~/.ssh/id_ed25519")
    with executor.open_session("1.2.3.4") as session:
        executor.execute("systemctl daemon-reload", session=session)
    executor.execute("systemctl stop minecraft", host="1.2.3.4", log_output=True)
"""

import io
import logging
import os
import time
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any

import paramiko

from .errors import SSHConnectionError

logger = logging.getLogger(__name__)

KEY_CLASSES = (paramiko.Ed25519Key, paramiko.RSAKey, paramiko.ECDSAKey)


@dataclass
class ExecResult:
    """Result of a remote command execution."""
    command: str
    exit_code: int
    stdout: str
    stderr: str
    success: bool
    duration_ms: float
    transport_error: bool = False
    host: str = ""
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SSHSession:
    """One authenticated SSH connection. Closes exactly once."""

    def __init__(self, client: "paramiko.SSHClient", host: str):
        self._client = client
        self.host = host

    @property
    def closed(self) -> bool:
        return self._client is None

    def run(self, command: str, timeout: int):
        """Run a command and return (exit_code, stdout, stderr)."""
        if self._client is None:
            raise SSHConnectionError(f"Session to {self.host} is closed")
        _, stdout_ch, stderr_ch = self._client.exec_command(command, timeout=timeout)
        exit_code = stdout_ch.channel.recv_exit_status()
        stdout = stdout_ch.read().decode("utf-8", errors="replace").strip()
        stderr = stderr_ch.read().decode("utf-8", errors="replace").strip()
        return exit_code, stdout, stderr

    def close(self):
        if self._client is None:
            return
        client, self._client = self._client, None
        try:
            client.close()
        except (OSError, paramiko.SSHException) as e:
            logger.debug(f"Ignoring error while closing SSH to {self.host}: {e}")
        logger.info(f"SSH connection to {self.host} closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __repr__(self) -> str:
        status = "closed" if self.closed else "open"
        return f"SSHSession({self.host}, {status})"


class RemoteExecutor:
    """
    SSH command executor for the droplet.

    Key priority:
    1. Explicit key_path parameter
    2. SSH_PRIVATE_KEY_PATH env var
    3. SSH_PRIVATE_KEY env var (key content as string)
    4. Default ~/.ssh/id_ed25519 or ~/.ssh/id_rsa
    """

    DEFAULT_TIMEOUT = 30
    DEFAULT_PORT = 22

    def __init__(
        self,
        username: str = "root",
        key_path: str = None,
        key_content: str = None,
        port: int = None,
        timeout: int = None,
    ):
        self.username = username or "root"
        self.port = port or self.DEFAULT_PORT
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self._key = self._load_key(key_path, key_content)

        logger.info(
            f"RemoteExecutor initialized (user={self.username}, port={self.port}, "
            f"key={'loaded' if self._key else 'none'})"
        )

    def _load_key(self, key_path: str = None, key_content: str = None):
        """Load SSH private key from file or string."""
        if key_path:
            expanded = os.path.expanduser(key_path)
            if os.path.isfile(expanded):
                return self._read_key_file(expanded)
            logger.warning(f"SSH key path does not exist: {key_path}")

        env_path = os.environ.get("SSH_PRIVATE_KEY_PATH", "")
        if env_path and os.path.isfile(env_path):
            return self._read_key_file(env_path)

        content = key_content or os.environ.get("SSH_PRIVATE_KEY", "")
        if content:
            return self._parse_key_string(content)

        for default in ["~/.ssh/id_ed25519", "~/.ssh/id_rsa"]:
            expanded = os.path.expanduser(default)
            if os.path.isfile(expanded):
                return self._read_key_file(expanded)

        logger.warning("No SSH private key found")
        return None

    @staticmethod
    def _read_key_file(path: str):
        for key_class in KEY_CLASSES:
            try:
                return key_class.from_private_key_file(path)
            except (paramiko.SSHException, ValueError):
                continue
        logger.error(f"Could not parse SSH key: {path}")
        return None

    @staticmethod
    def _parse_key_string(content: str):
        key_file = io.StringIO(content)
        for key_class in KEY_CLASSES:
            try:
                key_file.seek(0)
                return key_class.from_private_key(key_file)
            except (paramiko.SSHException, ValueError):
                continue
        logger.error("Could not parse SSH key from string")
        return None

    # ── Sessions ─────────────────────────────────────────────────

    def open_session(self, host: str) -> SSHSession:
        """
        Connect to ``host`` and return an authenticated session.

        Raises:
            SSHConnectionError: no host/key, host unreachable or auth rejected.
        """
        if not host:
            raise SSHConnectionError("No host given for SSH session")
        if not self._key:
            raise SSHConnectionError("No SSH key available for authentication")

        client = paramiko.SSHClient()
        # Every droplet is fresh, so there is never a known host key to check
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=host,
                port=self.port,
                username=self.username,
                pkey=self._key,
                timeout=self.timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except paramiko.AuthenticationException as e:
            client.close()
            raise SSHConnectionError(f"SSH auth failed for {self.username}@{host}") from e
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise SSHConnectionError(f"SSH connection failed to {host}: {e}") from e

        logger.info(f"SSH connected to {self.username}@{host}:{self.port}")
        return SSHSession(client, host)

    # ── Command Execution ────────────────────────────────────────

    def execute(
        self,
        command: str,
        session: Optional[SSHSession] = None,
        log_output: bool = False,
        host: str = None,
    ) -> ExecResult:
        """
        Execute a command on the droplet.

        Args:
            command: Shell command to execute.
            session: Open session to reuse. Its lifecycle stays with the caller.
            log_output: Emit stdout/stderr to the log.
            host: Target host when no session is given.

        Returns:
            ExecResult; ``transport_error`` is set when the command never ran.
        """
        target = session.host if session is not None else (host or "")
        start = time.time()

        if session is None:
            try:
                owned = self.open_session(target)
            except SSHConnectionError as e:
                logger.warning(f"[SSH] {command[:80]} -> {e}")
                return ExecResult(
                    command=command, exit_code=-1, stdout="", stderr=str(e),
                    success=False, duration_ms=0, transport_error=True, host=target,
                )
            with owned:
                return self._run(owned, command, log_output, start)

        return self._run(session, command, log_output, start)

    def _run(self, session: SSHSession, command: str, log_output: bool, start: float) -> ExecResult:
        try:
            exit_code, stdout, stderr = session.run(command, timeout=self.timeout)
            result = ExecResult(
                command=command,
                exit_code=exit_code,
                stdout=stdout,
                stderr=stderr,
                success=exit_code == 0,
                duration_ms=round((time.time() - start) * 1000, 1),
                host=session.host,
            )
        except (paramiko.SSHException, SSHConnectionError, OSError, EOFError) as e:
            result = ExecResult(
                command=command, exit_code=-1, stdout="", stderr=str(e),
                success=False, duration_ms=round((time.time() - start) * 1000, 1),
                transport_error=True, host=session.host,
            )

        level = logging.INFO if result.success else logging.WARNING
        logger.log(
            level,
            f"[SSH] {command[:80]} -> exit={result.exit_code} "
            f"({result.duration_ms:.0f}ms)"
        )
        if log_output:
            logger.info(f"Command: {command}, Output:\n{result.stdout}\n{result.stderr}")

        return result

    def __repr__(self) -> str:
        return f"RemoteExecutor({self.username}@*:{self.port})"
