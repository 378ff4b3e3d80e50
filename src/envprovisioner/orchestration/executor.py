"""Runs the external infrastructure tool against isolated per-environment workspaces."""
from __future__ import annotations

import json
import logging
import os
import re
import shutil
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List

from ..config import TerraformConfig
from ..errors import ExecutionError, ValidationError

LOGGER = logging.getLogger(__name__)

SAFE_KEY = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


@dataclass(frozen=True)
class WorkspaceHandle:
    """Identifies the working directory owned by one environment and module."""

    environment_id: str
    module: str
    path: Path


@dataclass
class CommandResult:
    args: List[str]
    returncode: int
    stdout: str
    stderr: str


class WorkspaceExecutor:
    """Drive a terraform-compatible binary through init/apply/destroy/output.

    Workspaces live at ``<state_path>/<module>/<environment_id>``, so two
    environments using the same module never share state or outputs.
    Commands against the same workspace are serialised; different
    workspaces run concurrently. No step is retried here.
    """

    VARS_FILE = "terraform.tfvars.json"

    def __init__(self, config: TerraformConfig) -> None:
        self._binary = config.binary
        self._modules_path = Path(config.modules_path)
        self._state_path = Path(config.state_path)
        self._timeout = config.command_timeout_seconds
        self._locks: Dict[Path, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def handle_for(self, environment_id: str, module: str) -> WorkspaceHandle:
        """Return the handle owned by ``environment_id`` for ``module``."""

        for label, value in (("environment id", environment_id), ("module", module)):
            if not SAFE_KEY.match(value):
                raise ValidationError(f"Invalid {label} for workspace key: {value!r}")
        return WorkspaceHandle(
            environment_id=environment_id,
            module=module,
            path=self._state_path / module / environment_id,
        )

    def apply(self, module: str, variables: Dict[str, Any], environment_id: str) -> WorkspaceHandle:
        """Write variables, run init then apply, and return the workspace handle."""

        handle = self.handle_for(environment_id, module)
        with self._lock_for(handle):
            self._prepare(handle, variables)
            self._run(handle, "init", "init", "-no-color", str(self._module_path(module)))
            self._run(handle, "apply", "apply", "-no-color", "-auto-approve", f"-var-file={self.VARS_FILE}")
        LOGGER.info("Workspace applied", extra={"environment_id": environment_id, "tf_module": module})
        return handle

    def destroy(self, module: str, variables: Dict[str, Any], handle: WorkspaceHandle) -> None:
        """Write variables, run init then destroy in the handle's workspace."""

        if handle.module != module:
            raise ValidationError(f"Handle for module {handle.module} cannot destroy module {module}")
        with self._lock_for(handle):
            self._prepare(handle, variables)
            self._run(handle, "init", "init", "-no-color", str(self._module_path(module)))
            self._run(handle, "destroy", "destroy", "-no-color", "-auto-approve", f"-var-file={self.VARS_FILE}")
        LOGGER.info(
            "Workspace destroyed", extra={"environment_id": handle.environment_id, "tf_module": module}
        )

    def get_outputs(self, handle: WorkspaceHandle) -> Dict[str, Any]:
        """Return the tool's outputs for this workspace as a flat ``name -> value`` map."""

        if not handle.path.is_dir():
            raise ExecutionError(
                f"No workspace found for environment {handle.environment_id} and module {handle.module}",
                step="output",
            )
        with self._lock_for(handle):
            result = self._run(handle, "output", "output", "-no-color", "-json")
        try:
            raw = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as exc:
            raise ExecutionError(f"failed to parse outputs: {exc}", step="output") from exc
        if not isinstance(raw, dict):
            raise ExecutionError("failed to parse outputs: expected a JSON object", step="output")
        return {
            name: entry.get("value") if isinstance(entry, dict) else entry
            for name, entry in raw.items()
        }

    def release(self, handle: WorkspaceHandle) -> None:
        """Remove the workspace directory once its infrastructure is gone."""

        with self._lock_for(handle):
            shutil.rmtree(handle.path, ignore_errors=True)
        with self._locks_guard:
            self._locks.pop(handle.path, None)
        LOGGER.debug("Workspace released", extra={"environment_id": handle.environment_id})

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _lock_for(self, handle: WorkspaceHandle) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(handle.path, threading.Lock())

    def _module_path(self, module: str) -> Path:
        path = (self._modules_path / module).resolve()
        if not path.is_dir():
            raise ExecutionError(f"module {module} not found at {path}", step="init")
        return path

    def _prepare(self, handle: WorkspaceHandle, variables: Dict[str, Any]) -> None:
        try:
            handle.path.mkdir(parents=True, exist_ok=True)
            payload = json.dumps(variables, indent=2, default=str)
            (handle.path / self.VARS_FILE).write_text(payload, encoding="utf-8")
        except (OSError, TypeError, ValueError) as exc:
            raise ExecutionError(f"failed to prepare workspace {handle.path}: {exc}", step="prepare") from exc

    def _run(self, handle: WorkspaceHandle, step: str, *args: str) -> CommandResult:
        command = [self._binary, *args]
        LOGGER.info(
            "Running infrastructure command",
            extra={"command": " ".join(command), "environment_id": handle.environment_id},
        )
        try:
            completed = subprocess.run(
                command,
                cwd=handle.path,
                env=os.environ.copy(),
                capture_output=True,
                text=True,
                timeout=self._timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise ExecutionError(f"{self._binary} {step} failed: binary not found", step=step) from exc
        except subprocess.TimeoutExpired as exc:
            stderr = exc.stderr.decode() if isinstance(exc.stderr, bytes) else (exc.stderr or "")
            raise ExecutionError(
                f"{self._binary} {step} timed out after {self._timeout}s", step=step, stderr=stderr
            ) from exc
        result = CommandResult(
            args=command, returncode=completed.returncode, stdout=completed.stdout, stderr=completed.stderr
        )
        if result.returncode != 0:
            LOGGER.error(
                "Infrastructure command failed",
                extra={"step": step, "returncode": result.returncode, "stderr": result.stderr},
            )
            raise ExecutionError(
                f"{self._binary} {step} failed with exit code {result.returncode}",
                step=step,
                returncode=result.returncode,
                stderr=result.stderr,
            )
        LOGGER.debug("Infrastructure command succeeded", extra={"step": step, "stdout": result.stdout})
        return result


__all__ = ["WorkspaceExecutor", "WorkspaceHandle", "CommandResult"]
