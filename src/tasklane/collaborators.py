"""Narrow boundaries to the outside world: backlog, verification and version control."""
from __future__ import annotations

import json
import logging
import re
import shlex
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from tasklane.errors import CollaboratorError

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")


def run_command(command: str, cwd: Path, *, stdin: str | None = None) -> dict[str, Any]:
    command_text = command.strip()
    if not command_text:
        return {
            "command": command,
            "exit_code": 1,
            "stdout_tail": "",
            "stderr_tail": "Command is empty.",
            "used_shell": False,
        }

    used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
    command_payload: str | list[str] = command_text
    if not used_shell:
        try:
            command_payload = shlex.split(command_text)
        except ValueError:
            used_shell = True
            command_payload = command_text

    try:
        proc = subprocess.run(
            command_payload,
            cwd=cwd,
            shell=used_shell,
            text=True,
            input=stdin,
            capture_output=True,
        )
    except FileNotFoundError as exc:
        raise CollaboratorError(f"Command not found: {command_text}") from exc
    return {
        "command": command,
        "exit_code": proc.returncode,
        "stdout_tail": proc.stdout.strip()[-1000:],
        "stderr_tail": proc.stderr.strip()[-1000:],
        "used_shell": used_shell,
    }


class Backlog(ABC):
    @abstractmethod
    def append_backlog_item(self, item: Mapping[str, Any]) -> None:
        """Store a deferred item verbatim in the long-term backlog."""


@dataclass(slots=True)
class VerificationResult:
    passed: bool
    details: dict[str, Any] = field(default_factory=dict)


class Verifier(ABC):
    @abstractmethod
    def run_full_verification(self) -> VerificationResult:
        """Run the project's full build/test suite."""


class VersionControl(ABC):
    @abstractmethod
    def current_revision(self) -> str:
        """Opaque pointer to the current revision, or "none"."""

    @abstractmethod
    def commit_and_open_request(self, summary: Mapping[str, Any]) -> str | None:
        """Hand the finished work off; returns a reference id when one was created."""


class CommandVerifier(Verifier):
    def __init__(self, command: str, repo_root: Path) -> None:
        self.command = command
        self.repo_root = repo_root

    def run_full_verification(self) -> VerificationResult:
        if not self.command.strip():
            return VerificationResult(passed=True, details={"skipped": True})
        details = run_command(self.command, self.repo_root)
        passed = details["exit_code"] == 0
        if not passed:
            logger.warning("Verification command failed with exit code %s", details["exit_code"])
        return VerificationResult(passed=passed, details=details)


class GitVersionControl(VersionControl):
    def __init__(self, repo_root: Path, handoff_command: str = "") -> None:
        self.repo_root = repo_root
        self.handoff_command = handoff_command

    def current_revision(self) -> str:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", "rev-parse", "HEAD"],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError:
            return "none"
        if proc.returncode != 0:
            return "none"
        return proc.stdout.strip() or "none"

    def commit_and_open_request(self, summary: Mapping[str, Any]) -> str | None:
        if not self.handoff_command.strip():
            return None
        details = run_command(
            self.handoff_command,
            self.repo_root,
            stdin=json.dumps(dict(summary), ensure_ascii=False),
        )
        if details["exit_code"] != 0:
            raise CollaboratorError(
                f"Hand-off command failed with exit code {details['exit_code']}: "
                f"{details['stderr_tail']}"
            )
        lines = [line for line in details["stdout_tail"].splitlines() if line.strip()]
        return lines[-1].strip() if lines else None
