"""
fleet_ssh.py — remote command dispatch to fleet VMs over OpenSSH.

Each call opens its own ssh (or scp) subprocess with the fleet key and
bounded timeouts. Connection problems never raise: they come back as a
CommandResult with success=False and a readable error. Fan-out across
several targets goes through fan_out(), which isolates every target.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from fleet_config import FleetConfig
from fleet_errors import ConfigurationError, FleetError, RemoteConnectionError, ValidationError

logger = logging.getLogger("fleet.ssh")

T = TypeVar("T")
R = TypeVar("R")

SESSION_FAILED_EXIT_CODE = -1
SSH_ERROR_EXIT_CODE = 255

# ssh exits 255 for its own errors; these stderr fragments tell us the
# session never got as far as running the command.
CONNECTION_INDICATORS = [
    "Connection refused", "Connection timed out", "Connection reset",
    "Connection closed by", "Broken pipe", "No route to host",
    "Network is unreachable", "Could not resolve hostname",
    "ssh_exchange_identification", "kex_exchange_identification",
    "Operation timed out", "Host key verification failed",
    "Permission denied", "closed by remote host",
]

Runner = Callable[..., Awaitable[tuple[int, str, str]]]


@dataclass(frozen=True)
class CommandResult:
    target: str
    command: str
    exit_code: int
    stdout: str
    stderr: str
    success: bool
    error: str | None = None
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "target": self.target,
            "command": self.command,
            "exitCode": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "success": self.success,
        }
        if self.error is not None:
            d["error"] = self.error
            d["errorType"] = self.error_type
        return d


@dataclass(frozen=True)
class MultiCommandResult:
    command: str
    results: list[CommandResult]

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for r in self.results if not r.success)

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "results": [r.to_dict() for r in self.results],
            "successCount": self.success_count,
            "failureCount": self.failure_count,
        }


# ---------------------------------------------------------------------------
# Async subprocess primitive
# ---------------------------------------------------------------------------

async def run_process(
    args: list[str],
    timeout: float,
    stdin_data: str | None = None,
) -> tuple[int, str, str]:
    """Run a subprocess to completion; the process is always reaped."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            stdin=asyncio.subprocess.PIPE if stdin_data else asyncio.subprocess.DEVNULL,
        )
    except FileNotFoundError as e:
        return SESSION_FAILED_EXIT_CODE, "", f"binary not found: {e}"

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            proc.communicate(input=stdin_data.encode() if stdin_data else None),
            timeout=timeout,
        )
        rc = proc.returncode if proc.returncode is not None else SESSION_FAILED_EXIT_CODE
        return (
            rc,
            stdout_bytes.decode(errors="replace"),
            stderr_bytes.decode(errors="replace"),
        )
    except asyncio.TimeoutError:
        return SESSION_FAILED_EXIT_CODE, "", f"timeout after {timeout}s"
    finally:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()


# ---------------------------------------------------------------------------
# Fan-out with isolated failures
# ---------------------------------------------------------------------------

async def fan_out(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    on_error: Callable[[T, Exception], R],
) -> list[R]:
    """Run worker over every item concurrently and join all of them.

    A worker that raises is turned into a result by on_error; it never
    cancels or affects its siblings. Results line up with items.
    """
    outcomes = await asyncio.gather(*(worker(item) for item in items), return_exceptions=True)
    results: list[R] = []
    for item, outcome in zip(items, outcomes):
        if isinstance(outcome, Exception):
            results.append(on_error(item, outcome))
        elif isinstance(outcome, BaseException):
            raise outcome
        else:
            results.append(outcome)
    return results


# ---------------------------------------------------------------------------
# Command helpers
# ---------------------------------------------------------------------------

def wrap_command(command: str, sudo: bool) -> str:
    """Apply the elevation prefix exactly once; the command body is untouched."""
    return f"sudo {command}" if sudo else command


def is_connection_failure(returncode: int, stderr: str) -> bool:
    if returncode not in (SESSION_FAILED_EXIT_CODE, SSH_ERROR_EXIT_CODE):
        return False
    return any(ind in stderr for ind in CONNECTION_INDICATORS)


def _first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return text.strip()


class RemoteDispatcher:
    """Runs commands on fleet VMs by alias or literal address."""

    def __init__(self, config: FleetConfig, runner: Runner = run_process):
        self.config = config
        self._run = runner

    def _ssh_options(self) -> list[str]:
        return [
            "-i", str(self.config.ssh_key_path),
            "-o", "BatchMode=yes",
            "-o", "StrictHostKeyChecking=no",
            "-o", "UserKnownHostsFile=/dev/null",
            "-o", "LogLevel=ERROR",
            "-o", f"ConnectTimeout={self.config.connect_timeout}",
        ]

    @property
    def _session_timeout(self) -> int:
        return self.config.connect_timeout + self.config.command_timeout

    def _missing_key_error(self) -> ConfigurationError | None:
        key = self.config.ssh_key_path
        if not key.exists():
            return ConfigurationError(f"connection not attempted: SSH key not found at {key}")
        return None

    async def _exec_one(self, target: str, command: str, sudo: bool) -> CommandResult:
        address = self.config.resolve_target(target)
        full_cmd = wrap_command(command, sudo)

        def failed(error: FleetError) -> CommandResult:
            logger.warning(f"{address}: {error}")
            return CommandResult(
                target=address, command=full_cmd, exit_code=SESSION_FAILED_EXIT_CODE,
                stdout="", stderr="", success=False, error=str(error), error_type=error.kind,
            )

        key_error = self._missing_key_error()
        if key_error:
            return failed(key_error)

        args = [
            "ssh", *self._ssh_options(),
            "--", f"{self.config.ssh_username}@{address}", full_cmd,
        ]
        logger.debug(f"{address}: exec {full_cmd!r}")
        rc, stdout, stderr = await self._run(args, timeout=self._session_timeout)

        if rc == SESSION_FAILED_EXIT_CODE:
            cause = stderr.strip() or "session failed"
            if cause.startswith("timeout"):
                return failed(RemoteConnectionError(f"connection or command timeout on {address}: {cause}"))
            return failed(RemoteConnectionError(f"connection to {address} failed: {cause}"))
        if is_connection_failure(rc, stderr):
            return failed(RemoteConnectionError(f"connection to {address} failed: {_first_line(stderr)}"))

        return CommandResult(
            target=address, command=full_cmd, exit_code=rc,
            stdout=stdout, stderr=stderr, success=rc == 0,
        )

    def _exec_crashed(self, command: str, sudo: bool) -> Callable[[str, Exception], CommandResult]:
        def on_error(target: str, e: Exception) -> CommandResult:
            logger.exception(f"{target}: dispatch crashed", exc_info=e)
            return CommandResult(
                target=self.config.resolve_target(target),
                command=wrap_command(command, sudo),
                exit_code=SESSION_FAILED_EXIT_CODE,
                stdout="", stderr="", success=False,
                error=f"connection to {target} aborted: {e}",
                error_type=RemoteConnectionError.kind,
            )
        return on_error

    async def exec(self, target: str, command: str, sudo: bool = False) -> CommandResult:
        results = await fan_out(
            [target],
            lambda t: self._exec_one(t, command, sudo),
            self._exec_crashed(command, sudo),
        )
        return results[0]

    async def multi_exec(self, targets: Sequence[str], command: str, sudo: bool = False) -> MultiCommandResult:
        results = await fan_out(
            list(targets),
            lambda t: self._exec_one(t, command, sudo),
            self._exec_crashed(command, sudo),
        )
        multi = MultiCommandResult(command=command, results=results)
        logger.info(f"multi_exec: {multi.success_count}/{len(results)} targets succeeded")
        return multi

    # -----------------------------------------------------------------------
    # File transfer (scp)
    # -----------------------------------------------------------------------

    async def _scp(self, target: str, source: str, destination: str, upload: bool) -> dict[str, Any]:
        address = self.config.resolve_target(target)
        remote = f"{self.config.ssh_username}@{address}"
        if upload:
            local_path, remote_path = source, destination
            scp_args = [source, f"{remote}:{destination}"]
        else:
            remote_path, local_path = source, destination
            scp_args = [f"{remote}:{source}", destination]
        record: dict[str, Any] = {"target": address, "localPath": local_path, "remotePath": remote_path}

        def failed(error: FleetError) -> dict[str, Any]:
            logger.warning(f"{address}: {error}")
            return {**record, "success": False, "error": str(error), "errorType": error.kind}

        key_error = self._missing_key_error()
        if key_error:
            return failed(key_error)
        if upload and not Path(local_path).is_file():
            return failed(ValidationError(f"local file not found: {local_path}"))
        if not upload:
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)

        rc, _, stderr = await self._run(
            ["scp", *self._ssh_options(), "--", *scp_args],
            timeout=self._session_timeout,
        )
        if rc == 0:
            message = (
                f"File uploaded successfully to {address}:{remote_path}" if upload
                else f"File downloaded successfully to {local_path}"
            )
            logger.info(message)
            return {**record, "success": True, "message": message}
        if rc == SESSION_FAILED_EXIT_CODE or is_connection_failure(rc, stderr):
            return failed(RemoteConnectionError(
                f"connection to {address} failed: {_first_line(stderr) or 'session failed'}"
            ))
        error = f"scp failed on {address} (exit {rc}): {_first_line(stderr)}"
        logger.warning(error)
        return {**record, "success": False, "error": error, "errorType": "CommandFailure"}

    async def upload(self, target: str, local_path: str, remote_path: str) -> dict[str, Any]:
        return await self._scp(target, local_path, remote_path, upload=True)

    async def download(self, target: str, remote_path: str, local_path: str) -> dict[str, Any]:
        return await self._scp(target, remote_path, local_path, upload=False)
