from __future__ import annotations

import asyncio
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
OUTPUT_TAIL_CHARS = 1000


@dataclass(slots=True)
class CommandResult:
    command: str
    exit_code: int
    stdout_tail: str = ""
    stderr_tail: str = ""
    used_shell: bool = False
    timed_out: bool = False

    @property
    def passed(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "exit_code": self.exit_code,
            "stdout_tail": self.stdout_tail,
            "stderr_tail": self.stderr_tail,
            "used_shell": self.used_shell,
            "timed_out": self.timed_out,
        }


@dataclass(slots=True)
class VerificationResult:
    feature_id: str
    cwd: Path
    results: list[CommandResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(result.passed for result in self.results)

    def failure_summary(self) -> str:
        failed = [result for result in self.results if not result.passed]
        if not failed:
            return ""
        first = failed[0]
        detail = first.stderr_tail or first.stdout_tail
        if first.timed_out:
            detail = "timed out"
        return f"Verification failed: `{first.command}` exited {first.exit_code}: {detail}".strip()


async def run_command(command: str, cwd: Path, timeout_seconds: float) -> CommandResult:
    command_text = command.strip()
    if not command_text:
        return CommandResult(command=command, exit_code=1, stderr_tail="Command is empty.")

    used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
    argv: list[str] = []
    if not used_shell:
        try:
            argv = shlex.split(command_text)
        except ValueError:
            used_shell = True

    try:
        if used_shell:
            process = await asyncio.create_subprocess_shell(
                command_text,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        else:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
    except FileNotFoundError as exc:
        return CommandResult(command=command, exit_code=127, stderr_tail=str(exc))

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
    except TimeoutError:
        process.kill()
        await process.wait()
        logger.warning("Verification command timed out after {}s: {}", timeout_seconds, command)
        return CommandResult(
            command=command, exit_code=-1, used_shell=used_shell, timed_out=True
        )

    return CommandResult(
        command=command,
        exit_code=process.returncode if process.returncode is not None else -1,
        stdout_tail=stdout.decode("utf-8", errors="replace").strip()[-OUTPUT_TAIL_CHARS:],
        stderr_tail=stderr.decode("utf-8", errors="replace").strip()[-OUTPUT_TAIL_CHARS:],
        used_shell=used_shell,
    )


async def run_verification(
    feature_id: str, commands: list[str], cwd: Path, timeout_seconds: float
) -> VerificationResult:
    """Run commands in order, stopping at the first failure."""
    verification = VerificationResult(feature_id=feature_id, cwd=cwd)
    for command in commands:
        logger.info("Verifying {}: {}", feature_id, command)
        result = await run_command(command, cwd, timeout_seconds)
        verification.results.append(result)
        if not result.passed:
            break
    return verification
