"""Account provisioning on the VPN servers.

The bot never edits server configuration itself. It calls a provisioner
that creates or renews an account and reports back a structured
:class:`ProvisionResult`. The stock implementation logs into the server over
SSH and runs one helper script per action and protocol; each script prints a
JSON object describing the account on its last line of output.
"""
from __future__ import annotations

import json
import logging
import shlex
import socket
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import paramiko

LOGGER = logging.getLogger(__name__)

PROTOCOLS = ("ssh", "vmess", "vless", "trojan", "shadowsocks")
BUNDLE_PROTOCOLS = ("vmess", "vless", "trojan")

ACTION_TRIAL = "trial"

DUPLICATE_EXIT_CODE = 3
DUPLICATE_MARKER = "ERROR:User already exists"


class ProvisioningError(RuntimeError):
    """Raised when a server cannot be reached or answers with garbage."""


@dataclass
class ProvisionRequest:
    action: str
    protocol: str
    username: str
    days: int
    server: Dict[str, Any]
    password: Optional[str] = None
    # Trials run for minutes instead of days.
    minutes: int = 0

    @property
    def quota(self) -> int:
        return int(self.server.get("quota") or 0)

    @property
    def ip_limit(self) -> int:
        return int(self.server.get("iplimit") or 0)

    @property
    def duration(self) -> int:
        return self.minutes if self.action == ACTION_TRIAL else self.days

    def fallback_expiry(self, now: Optional[datetime] = None) -> str:
        if self.action == ACTION_TRIAL:
            now = now or datetime.utcnow()
            return (now + timedelta(minutes=self.minutes)).isoformat(timespec="minutes")
        return default_expiry(self.days, now)


@dataclass
class ProvisionResult:
    ok: bool
    username: str
    protocol: str
    expires_at: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    duplicate_username: bool = False

    @classmethod
    def failure(cls, request: ProvisionRequest, error: str, *, duplicate: bool = False) -> "ProvisionResult":
        return cls(
            ok=False,
            username=request.username,
            protocol=request.protocol,
            error=error,
            duplicate_username=duplicate,
        )


class ProtocolProvisioner:
    """Interface for anything that can create, renew or hand out trial accounts."""

    def create(self, request: ProvisionRequest) -> ProvisionResult:
        raise NotImplementedError

    def renew(self, request: ProvisionRequest) -> ProvisionResult:
        raise NotImplementedError

    def trial(self, request: ProvisionRequest) -> ProvisionResult:
        raise NotImplementedError

    def run(self, request: ProvisionRequest) -> ProvisionResult:
        if request.action == "create":
            return self.create(request)
        if request.action == "renew":
            return self.renew(request)
        if request.action == ACTION_TRIAL:
            return self.trial(request)
        raise ValueError(f"unknown action {request.action!r}")


def default_expiry(days: int, now: Optional[datetime] = None) -> str:
    now = now or datetime.utcnow()
    return (now + timedelta(days=days)).strftime("%Y-%m-%d")


def parse_script_output(request: ProvisionRequest, exit_code: int, output: str) -> ProvisionResult:
    """Turn a helper script's exit code and stdout into a result."""

    if exit_code == DUPLICATE_EXIT_CODE or DUPLICATE_MARKER in output:
        return ProvisionResult.failure(request, "Username sudah digunakan.", duplicate=True)
    if exit_code != 0:
        LOGGER.warning("%s %s for %s failed with exit code %s", request.action, request.protocol, request.username, exit_code)
        return ProvisionResult.failure(request, f"Script exited with code {exit_code}")

    lines = [line for line in output.strip().splitlines() if line.strip()]
    if not lines:
        return ProvisionResult.failure(request, "Script produced no output")
    try:
        payload = json.loads(lines[-1])
    except json.JSONDecodeError:
        return ProvisionResult.failure(request, "Script output is not JSON")
    if not isinstance(payload, dict):
        return ProvisionResult.failure(request, "Script output is not a JSON object")
    if payload.get("status") not in ("ok", "success"):
        return ProvisionResult.failure(request, str(payload.get("message") or "Script reported an error"))

    details = {k: v for k, v in payload.items() if k not in ("status", "message", "expired", "username")}
    return ProvisionResult(
        ok=True,
        username=str(payload.get("username") or request.username),
        protocol=request.protocol,
        expires_at=payload.get("expired") or request.fallback_expiry(),
        details=details,
    )


class SSHScriptProvisioner(ProtocolProvisioner):
    """Runs ``{script_dir}/{action}-{protocol}`` on the target server as root.

    The server row supplies the host (``domain``) and root password
    (``auth``). Scripts receive ``username days quota iplimit [password]``;
    trial scripts get the lifetime in minutes in place of days.
    """

    def __init__(self, script_dir: str, *, timeout: float = 45.0, port: int = 22, user: str = "root") -> None:
        self.script_dir = script_dir.rstrip("/")
        self.timeout = timeout
        self.port = port
        self.user = user

    def create(self, request: ProvisionRequest) -> ProvisionResult:
        return self._execute(request)

    def renew(self, request: ProvisionRequest) -> ProvisionResult:
        return self._execute(request)

    def trial(self, request: ProvisionRequest) -> ProvisionResult:
        return self._execute(request)

    def build_command(self, request: ProvisionRequest) -> str:
        args = [
            f"{self.script_dir}/{request.action}-{request.protocol}",
            request.username,
            str(request.duration),
            str(request.quota),
            str(request.ip_limit),
        ]
        if request.password:
            args.append(request.password)
        return " ".join(shlex.quote(arg) for arg in args)

    def _execute(self, request: ProvisionRequest) -> ProvisionResult:
        command = self.build_command(request)
        host = request.server.get("domain")
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            LOGGER.info("running %s %s for %s on %s", request.action, request.protocol, request.username, host)
            client.connect(
                hostname=host,
                port=self.port,
                username=self.user,
                password=request.server.get("auth"),
                timeout=self.timeout,
                banner_timeout=self.timeout,
                auth_timeout=self.timeout,
            )
            _, stdout, stderr = client.exec_command(command, timeout=self.timeout)
            output = stdout.read().decode("utf-8", errors="replace")
            exit_code = stdout.channel.recv_exit_status()
            error_output = stderr.read().decode("utf-8", errors="replace").strip()
            if error_output:
                LOGGER.warning("provisioning stderr from %s: %s", host, error_output)
        except (paramiko.SSHException, socket.error) as exc:
            raise ProvisioningError(f"could not reach {host}: {exc}") from exc
        finally:
            client.close()
        return parse_script_output(request, exit_code, output)
