from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from pathlib import Path
import subprocess
from typing import Protocol

from release_guard.core.config import Settings
from release_guard.domain.deployment_state_machine import ExternalActionError
from release_guard.services.observability import emit_structured_log


class Deployer(Protocol):
    """The one place that makes a revision live; used by webhook deploys and rollbacks alike."""

    def checkout(self, revision: str) -> None: ...

    def deploy(self, *, revision: str, ref: str, initiated_by: str, extra_env: dict[str, str] | None = None) -> None: ...


@dataclass(frozen=True)
class CommandResult:
    exit_code: int | None
    timed_out: bool
    output: str


def _run_command(
    command: list[str],
    *,
    cwd: Path,
    timeout_seconds: int,
    env: dict[str, str] | None = None,
) -> CommandResult:
    try:
        proc = subprocess.run(
            command,
            cwd=str(cwd),
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout_seconds,
            env=env,
        )
        return CommandResult(exit_code=proc.returncode, timed_out=False, output=f"{proc.stdout}{proc.stderr}")
    except subprocess.TimeoutExpired as exc:
        output = exc.output if isinstance(exc.output, str) else ""
        return CommandResult(exit_code=None, timed_out=True, output=output)


def _tail(output: str, lines: int = 20) -> str:
    return "\n".join(output.strip().splitlines()[-lines:])


class ScriptDeployer:
    def __init__(
        self,
        *,
        repo_root: Path,
        deploy_script: Path,
        checkout_timeout_seconds: int = 120,
        deploy_timeout_seconds: int = 900,
    ) -> None:
        self.repo_root = repo_root
        self.deploy_script = deploy_script
        self.checkout_timeout_seconds = checkout_timeout_seconds
        self.deploy_timeout_seconds = deploy_timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> ScriptDeployer:
        repo_root = Path(settings.repo_root_path).expanduser().resolve()
        script = settings.deploy_docker_script_path if settings.use_docker else settings.deploy_script_path
        script_path = Path(script).expanduser()
        if not script_path.is_absolute():
            script_path = repo_root / script_path
        return cls(
            repo_root=repo_root,
            deploy_script=script_path,
            checkout_timeout_seconds=max(15, settings.git_checkout_timeout_seconds),
            deploy_timeout_seconds=max(30, settings.deploy_command_timeout_seconds),
        )

    def checkout(self, revision: str) -> None:
        if not (self.repo_root / ".git").exists():
            raise ExternalActionError("checkout", "repo_root_not_found")

        result = _run_command(
            ["git", "-C", str(self.repo_root), "checkout", revision],
            cwd=self.repo_root,
            timeout_seconds=self.checkout_timeout_seconds,
        )
        self._raise_for_result("checkout", result, revision=revision)

    def deploy(self, *, revision: str, ref: str, initiated_by: str, extra_env: dict[str, str] | None = None) -> None:
        if not self.deploy_script.is_file():
            raise ExternalActionError("deploy", f"deploy_script_not_found:{self.deploy_script}")

        env = dict(os.environ)
        env.update(
            {
                "DEPLOY_COMMIT": revision,
                "DEPLOY_REF": ref,
                "DEPLOY_USER": initiated_by,
            }
        )
        env.update(extra_env or {})

        emit_structured_log(
            component="deployer",
            event="deploy_script_started",
            revision=revision,
            ref=ref,
            initiated_by=initiated_by,
            script=str(self.deploy_script),
        )
        result = _run_command(
            ["bash", str(self.deploy_script)],
            cwd=self.repo_root,
            timeout_seconds=self.deploy_timeout_seconds,
            env=env,
        )
        self._raise_for_result("deploy", result, revision=revision)

    def _raise_for_result(self, action: str, result: CommandResult, *, revision: str) -> None:
        if result.timed_out:
            detail = "timeout"
        elif result.exit_code != 0:
            detail = f"exit_{result.exit_code}"
        else:
            emit_structured_log(component="deployer", event=f"{action}_finished", revision=revision)
            return

        emit_structured_log(
            component="deployer",
            event=f"{action}_failed",
            level=logging.ERROR,
            revision=revision,
            detail=detail,
            output_tail=_tail(result.output),
        )
        raise ExternalActionError(action, detail)
