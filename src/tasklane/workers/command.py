from __future__ import annotations

import asyncio
import json
import shlex
from pathlib import Path
from typing import Any

from tasklane.workers.base import (
    ContextBundle,
    Worker,
    WorkerExecutionError,
    WorkerProcessError,
    WorkerResult,
)


class CommandWorker(Worker):
    """Runs an external command per task.

    The bundle contract is written to the process stdin as JSON; the last JSON
    object printed on stdout is taken as the worker result.
    """

    name = "command"

    def __init__(self, command: str | list[str], working_directory: Path | None = None) -> None:
        self.command = shlex.split(command) if isinstance(command, str) else list(command)
        if not self.command:
            raise WorkerProcessError("Worker command is empty.", worker=self.name, retriable=False)
        self.working_directory = working_directory

    @staticmethod
    def _last_json_object(raw: str) -> dict[str, Any] | None:
        for line in reversed(raw.splitlines()):
            candidate = line.strip()
            if not candidate.startswith("{"):
                continue
            try:
                payload = json.loads(candidate)
            except json.JSONDecodeError:
                continue
            if isinstance(payload, dict):
                return payload
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return payload if isinstance(payload, dict) else None

    async def execute(self, bundle: ContextBundle) -> WorkerResult:
        stdin_payload = json.dumps(bundle.to_contract(), ensure_ascii=False).encode("utf-8")
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise WorkerProcessError(
                f"Worker binary not found: {self.command[0]}",
                worker=self.name,
                retriable=False,
            ) from exc

        try:
            stdout, stderr = await process.communicate(stdin_payload)
        except asyncio.CancelledError:
            # Timeouts cancel us; the child must not outlive the attempt.
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        stdout_text = stdout.decode("utf-8", errors="replace")
        stderr_text = stderr.decode("utf-8", errors="replace").strip()
        payload = self._last_json_object(stdout_text)
        if payload is None:
            raise WorkerExecutionError(
                f"Worker exited with code {process.returncode} without a JSON result: "
                f"{stderr_text[-500:]}",
                worker=self.name,
                exit_code=process.returncode,
                retriable=True,
            )
        return WorkerResult.from_contract(payload)
