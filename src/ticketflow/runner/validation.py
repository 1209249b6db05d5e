"""Build and test command execution.

Runs the configured build and test commands as async subprocesses in the
workspace, enforces a timeout, and turns their output into BuildResult
and TestResult models.

Test summaries are recognized in two shapes:
- "Passed: 5", "Failed: 1", "Skipped: 0", "Total: 6" counters
- pytest's closing line, e.g. "2 failed, 10 passed, 1 skipped in 0.52s"
"""

import asyncio
import logging
import re
import shlex
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ticketflow.config import TicketflowSettings
from ticketflow.implementation.models import BuildResult, FailedTest, TestResult

logger = logging.getLogger(__name__)

DEFAULT_VALIDATION_TIMEOUT_SECONDS = 900

# Failed test name used when the test process itself could not complete
PROCESS_FAILURE_TEST_NAME = "TestExecution"

_COUNTER_PATTERNS = {
    "passed": re.compile(r"Passed:\s*(\d+)"),
    "failed": re.compile(r"Failed:\s*(\d+)"),
    "skipped": re.compile(r"Skipped:\s*(\d+)"),
    "total": re.compile(r"Total:\s*(\d+)"),
}

_PYTEST_SUMMARY_PATTERN = re.compile(
    r"(\d+) (passed|failed|skipped|errors?)\b"
)

_PYTEST_FAILED_LINE = re.compile(r"^(?:FAILED|ERROR) (\S+?)(?:::(\S+))?(?: - (.*))?$")


@dataclass
class CommandResult:
    """Captured outcome of one command.

    Attributes:
        exit_code: Process exit code (-1 for timeout/OS errors).
        stdout: Captured standard output.
        stderr: Captured standard error.
        duration_seconds: Wall-clock execution time.
        process_error: Set when the process timed out or could not start.
    """

    exit_code: int
    stdout: str
    stderr: str
    duration_seconds: float
    process_error: Optional[str] = None

    @property
    def output(self) -> str:
        if self.stderr:
            return f"{self.stdout}\n{self.stderr}" if self.stdout else self.stderr
        return self.stdout


def extract_diagnostics(output: str) -> tuple[list[str], list[str]]:
    """Pick error and warning lines out of build output.

    A line counts when it contains "error" (or "warning") and a colon,
    compared case-insensitively.

    Returns:
        (errors, warnings)
    """
    errors: list[str] = []
    warnings: list[str] = []
    for line in output.splitlines():
        stripped = line.strip()
        if ":" not in stripped:
            continue
        lowered = stripped.lower()
        if "error" in lowered:
            errors.append(stripped)
        elif "warning" in lowered:
            warnings.append(stripped)
    return errors, warnings


def parse_test_output(output: str) -> TestResult:
    """Parse test counts and failed test details from runner output."""
    counts = {"passed": 0, "failed": 0, "skipped": 0}
    total: Optional[int] = None
    matched = False

    for key, pattern in _COUNTER_PATTERNS.items():
        found = pattern.findall(output)
        if not found:
            continue
        matched = True
        value = int(found[-1])
        if key == "total":
            total = value
        else:
            counts[key] = value

    if not matched:
        for line in reversed(output.splitlines()):
            pairs = _PYTEST_SUMMARY_PATTERN.findall(line)
            if not pairs:
                continue
            for number, label in pairs:
                if label.startswith("error"):
                    counts["failed"] += int(number)
                else:
                    counts[label] += int(number)
            break

    failed_details: list[FailedTest] = []
    for line in output.splitlines():
        match = _PYTEST_FAILED_LINE.match(line.strip())
        if match:
            module, name, message = match.groups()
            failed_details.append(
                FailedTest(
                    test_name=name or module,
                    class_name=module if name else "",
                    error_message=message or "",
                )
            )

    if total is None:
        total = counts["passed"] + counts["failed"] + counts["skipped"]

    return TestResult(
        total_tests=total,
        passed_tests=counts["passed"],
        failed_tests=counts["failed"],
        skipped_tests=counts["skipped"],
        failed_test_details=failed_details,
    )


class CommandValidationRunner:
    """Runs build and test commands in a workspace.

    Attributes:
        build_command: Shell-style build command line.
        test_command: Shell-style test command line.
        timeout_seconds: Maximum execution time before the process is killed.
    """

    def __init__(
        self,
        build_command: str,
        test_command: str,
        timeout_seconds: int = DEFAULT_VALIDATION_TIMEOUT_SECONDS,
    ):
        self.build_command = build_command
        self.test_command = test_command
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: TicketflowSettings) -> "CommandValidationRunner":
        return cls(
            build_command=settings.build_command,
            test_command=settings.test_command,
            timeout_seconds=settings.validation_timeout_seconds,
        )

    async def run_build(self, path: str) -> BuildResult:
        """Run the build command and collect diagnostics."""
        result = await self._run_command(self.build_command, Path(path))
        output = result.output
        errors, warnings = extract_diagnostics(output)

        is_success = result.exit_code == 0
        if result.process_error:
            errors.append(result.process_error)
        elif not is_success and not errors:
            errors.append(f"Build failed with exit code {result.exit_code}")

        logger.info(
            "Build finished",
            extra={
                "path": path,
                "success": is_success,
                "error_count": len(errors),
                "warning_count": len(warnings),
                "duration_seconds": round(result.duration_seconds, 2),
            },
        )
        return BuildResult(
            is_success=is_success,
            errors=errors,
            warnings=warnings,
            output=output,
            duration_seconds=result.duration_seconds,
        )

    async def run_tests(self, path: str) -> TestResult:
        """Run the test command and parse its summary.

        A process that times out, cannot start, or exits non-zero without
        reporting a failure counts as one failed test.
        """
        result = await self._run_command(self.test_command, Path(path))
        test_result = parse_test_output(result.output)
        test_result.duration_seconds = result.duration_seconds

        process_failed = result.process_error is not None or (
            result.exit_code != 0 and test_result.failed_tests == 0
        )
        if process_failed:
            message = result.process_error or (
                f"Test command exited with code {result.exit_code}"
            )
            test_result.failed_tests += 1
            test_result.total_tests += 1
            test_result.failed_test_details.append(
                FailedTest(
                    test_name=PROCESS_FAILURE_TEST_NAME,
                    error_message=message,
                    stack_trace=result.stderr[-2000:] or None,
                )
            )

        logger.info(
            "Tests finished",
            extra={
                "path": path,
                "total": test_result.total_tests,
                "passed": test_result.passed_tests,
                "failed": test_result.failed_tests,
                "skipped": test_result.skipped_tests,
            },
        )
        return test_result

    async def _run_command(self, command: str, cwd: Path) -> CommandResult:
        start_time = time.monotonic()
        args = shlex.split(command)

        logger.info(
            "Starting validation command",
            extra={"command": command, "cwd": str(cwd), "timeout": self.timeout_seconds},
        )

        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.error("Failed to start command %s: %s", command, exc)
            return CommandResult(
                exit_code=-1,
                stdout="",
                stderr="",
                duration_seconds=time.monotonic() - start_time,
                process_error=f"Failed to start {args[0]}: {exc}",
            )

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.error("%s timed out after %ds", command, self.timeout_seconds)
            return CommandResult(
                exit_code=-1,
                stdout="",
                stderr="",
                duration_seconds=time.monotonic() - start_time,
                process_error=f"Process timed out after {self.timeout_seconds}s",
            )

        return CommandResult(
            exit_code=process.returncode or 0,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            duration_seconds=time.monotonic() - start_time,
        )
