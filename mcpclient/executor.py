"""Run an MCP server entrypoint as a child process wired to this process's STDIO."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping

from mcpclient.manifest import Entrypoint, PermissionsInfo, is_system_command

__all__ = ["ExecutorError", "ExecutionLimits", "STDIOExecutor"]


class ExecutorError(RuntimeError):
    """Raised when an executor cannot be built or a process cannot run to success."""

    def __init__(self, message: str, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


@dataclass(frozen=True)
class ExecutionLimits:
    """Resource limits applied to a server process."""

    max_cpu: int = 0  # millicores
    max_memory: str = ""  # e.g. "512M"
    max_pids: int = 0
    max_fds: int = 0
    timeout: timedelta = timedelta(0)


def _format_duration(duration: timedelta) -> str:
    """Render a duration the way durations appear in log and error text (e.g. 5m0s)."""
    total = duration.total_seconds()
    if total == 0:
        return "0s"
    sign = "-" if total < 0 else ""
    total = abs(total)
    if total < 1:
        return f"{sign}{total * 1000:g}ms"
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    seconds_text = f"{round(seconds, 6):g}s"
    if hours:
        return f"{sign}{int(hours)}h{int(minutes)}m{seconds_text}"
    if minutes:
        return f"{sign}{int(minutes)}m{seconds_text}"
    return f"{sign}{seconds_text}"


def _check_limits(limits: ExecutionLimits | None) -> ExecutionLimits:
    if limits is None:
        raise ExecutorError(
            "CRITICAL: limits cannot be nil - execution without resource limits is forbidden"
        )
    if limits.max_cpu <= 0:
        raise ExecutorError(
            f"CRITICAL: MaxCPU must be > 0 (got {limits.max_cpu}) - "
            "execution without CPU limits is forbidden"
        )
    if not limits.max_memory:
        raise ExecutorError(
            "CRITICAL: MaxMemory must be set (got empty string) - "
            "execution without memory limits is forbidden"
        )
    if limits.max_pids <= 0:
        raise ExecutorError(
            f"CRITICAL: MaxPIDs must be > 0 (got {limits.max_pids}) - "
            "execution without PID limits is forbidden"
        )
    if limits.max_fds <= 0:
        raise ExecutorError(
            f"CRITICAL: MaxFDs must be > 0 (got {limits.max_fds}) - "
            "execution without file descriptor limits is forbidden"
        )
    if limits.timeout <= timedelta(0):
        raise ExecutorError(
            f"CRITICAL: Timeout must be > 0 (got {_format_duration(limits.timeout)}) - "
            "execution without timeout is forbidden"
        )
    return limits


class STDIOExecutor:
    """Starts an MCP server with STDIO transport and waits for it to finish.

    Construction refuses missing or incomplete limits: running without
    resource limits is never allowed.
    """

    def __init__(
        self,
        work_dir: str,
        limits: ExecutionLimits | None,
        perms: PermissionsInfo | None = None,
        env: Mapping[str, str] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if not work_dir:
            raise ExecutorError("work directory cannot be empty")
        self.limits = _check_limits(limits)
        self.work_dir = work_dir
        self.perms = perms
        self.env = env
        self.logger = logger if logger is not None else logging.getLogger(__name__)

    def _resolve_command(self, command: str, bundle_path: str) -> str:
        if is_system_command(command):
            found = shutil.which(command)
            if found is None:
                raise ExecutorError(f"system command {command!r} not found on PATH")
            return found

        command_path = os.path.join(bundle_path, command)
        clean_command = os.path.normpath(command_path)
        clean_bundle = os.path.normpath(bundle_path)
        try:
            relative = os.path.relpath(clean_command, clean_bundle)
        except ValueError:
            relative = ".."
        if relative.startswith(".."):
            raise ExecutorError(
                f"path traversal detected: entrypoint {command!r} escapes bundle directory"
            )

        try:
            os.stat(command_path)
        except FileNotFoundError:
            raise ExecutorError(f"command not found: {command_path}") from None
        except OSError as exc:
            raise ExecutorError(f"failed to stat command: {exc}") from exc
        return command_path

    def execute(self, entrypoint: Entrypoint | None, bundle_path: str) -> None:
        """Run the entrypoint from the bundle; raise ExecutorError unless it exits cleanly."""
        if entrypoint is None:
            raise ExecutorError("entrypoint cannot be None")
        if not bundle_path:
            raise ExecutorError("bundle path cannot be empty")

        command_path = self._resolve_command(entrypoint.command, bundle_path)
        timeout_text = _format_duration(self.limits.timeout)
        self.logger.info(
            "starting STDIO executor command=%s workdir=%s max_cpu=%d "
            "max_memory=%s timeout=%s",
            command_path,
            self.work_dir,
            self.limits.max_cpu,
            self.limits.max_memory,
            timeout_text,
        )

        try:
            process = subprocess.Popen(
                [command_path, *entrypoint.args],
                cwd=self.work_dir,
                env=self.build_env(),
            )
        except OSError as exc:
            raise ExecutorError(f"failed to start process: {exc}") from exc

        self.logger.debug("process started pid=%d", process.pid)
        try:
            exit_code = process.wait(timeout=self.limits.timeout.total_seconds())
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
            self.logger.warning("process timeout exceeded timeout=%s", timeout_text)
            raise ExecutorError(
                f"execution timeout exceeded: {timeout_text}"
            ) from None

        if exit_code != 0:
            self.logger.info("process exited with error exit_code=%d", exit_code)
            raise ExecutorError(f"process exited with code {exit_code}", exit_code)

        self.logger.info("process completed successfully")

    def build_env(self) -> dict[str, str]:
        """Current environment with the executor's variables laid over it."""
        merged = {key: value for key, value in os.environ.items() if key}
        if self.env:
            merged.update(self.env)
        return merged