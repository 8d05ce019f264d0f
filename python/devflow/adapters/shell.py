"""Shell command execution with a hard timeout and an optional auto-debug loop."""

import asyncio
import logging
import os
import signal
import time
from typing import Awaitable, Callable, Dict, Optional

from devflow.interfaces.collaborators import CommandResult, DebugResult

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
KILL_GRACE_SECONDS = 2.0

# debugger(command, failed_result, context) -> replacement command, or None to give up
Debugger = Callable[[str, CommandResult, Optional[str]], Awaitable[Optional[str]]]


class ShellCommandExecutor:
    def __init__(
        self,
        timeout_seconds: float = 300,
        max_attempts: int = 3,
        debugger: Optional[Debugger] = None,
        env: Optional[Dict[str, str]] = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.debugger = debugger
        self.env = env

    async def run(self, command: str, work_dir: str, timeout: Optional[float] = None) -> CommandResult:
        """Run one command; its whole process group is killed when the timeout expires."""
        limit = timeout or self.timeout_seconds
        started = time.monotonic()
        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=work_dir,
            env=self.env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=limit)
        except asyncio.TimeoutError:
            _kill_group(proc)
            try:
                stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=KILL_GRACE_SECONDS)
            except asyncio.TimeoutError:
                stdout, stderr = b"", b""
            logger.warning("Command timed out after %.1fs: %s", limit, command)
            return CommandResult(
                stdout=stdout.decode(errors="replace"),
                stderr=(stderr.decode(errors="replace") + f"\nTimed out after {limit:g}s").strip(),
                exit_code=TIMEOUT_EXIT_CODE,
                duration_ms=int((time.monotonic() - started) * 1000),
                timed_out=True,
            )
        except asyncio.CancelledError:
            _kill_group(proc)
            raise

        return CommandResult(
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            exit_code=proc.returncode if proc.returncode is not None else -1,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    async def run_with_auto_debug(
        self,
        task_id: str,
        command: str,
        work_dir: str,
        context: Optional[str] = None,
    ) -> DebugResult:
        current = command
        fixes = []
        result = CommandResult()
        for attempt in range(1, self.max_attempts + 1):
            result = await self.run(current, work_dir)
            if result.exit_code == 0:
                return DebugResult(success=True, final_output=result, attempts=attempt, fixes=fixes)

            logger.info(
                "Task %s: command failed (exit %d, attempt %d/%d): %s",
                task_id, result.exit_code, attempt, self.max_attempts, current,
            )
            if self.debugger is None or attempt == self.max_attempts:
                return DebugResult(success=False, final_output=result, attempts=attempt, fixes=fixes)

            try:
                replacement = await self.debugger(current, result, context)
            except Exception:
                logger.warning("Debugger failed for task %s", task_id, exc_info=True)
                replacement = None
            if not replacement:
                return DebugResult(success=False, final_output=result, attempts=attempt, fixes=fixes)
            fixes.append({"attempt": attempt, "command": current, "replacement": replacement})
            current = replacement

        return DebugResult(success=False, final_output=result, attempts=self.max_attempts, fixes=fixes)


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    """SIGKILL the shell and everything it spawned, even after the shell itself exited."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
