# executor.py
from __future__ import annotations

import io
import os
import shutil
import signal
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

from .model import ExpandedJob
from .variables import expand

POLL_INTERVAL = 0.2     # seconds between cancel checks while a command runs
KILL_GRACE = 5.0        # seconds between SIGTERM and SIGKILL
LOG_TAIL = 4000

TOOL_HINTS = {
    "docker": "Install Docker and ensure the daemon is running.",
}


@dataclass
class ExecutionResult:
    exit_code: int
    log: str
    failed_step: Optional[str] = None
    phase: Optional[str] = None          # "before_script" | "script"
    canceled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.canceled

    @property
    def log_tail(self) -> str:
        return self.log[-LOG_TAIL:]


def _terminate(proc: subprocess.Popen) -> None:
    """SIGTERM the command's process group, escalating to SIGKILL."""
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGTERM)
        else:
            proc.terminate()
        proc.wait(timeout=KILL_GRACE)
    except subprocess.TimeoutExpired:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass


class Executor:
    """
    Runs an expanded job's commands: before_script first, then script, each
    list halting at the first non-zero exit.

    `tags` is the capability set this executor offers; None accepts any job.
    """

    name = "base"

    def __init__(self, tags: Optional[Iterable[str]] = None):
        self.tags = set(tags) if tags is not None else None

    def supports(self, tags: Iterable[str]) -> bool:
        return self.tags is None or set(tags) <= self.tags

    def command(
        self,
        job: ExpandedJob,
        cmd: str,
        workspace: Path,
        variables: Dict[str, str],
    ) -> Tuple[Union[str, List[str]], bool, Dict[str, str]]:
        """Return (argv or shell string, use shell, environment) for one command."""
        raise NotImplementedError

    def preflight(self, job: ExpandedJob) -> Optional[str]:
        """Reason the job cannot run here, or None."""
        return None

    def execute(
        self,
        job: ExpandedJob,
        workspace: str | Path,
        variables: Dict[str, str],
        cancel_event: Optional[threading.Event] = None,
    ) -> ExecutionResult:
        ws = Path(workspace).resolve()
        log = io.StringIO()

        problem = self.preflight(job)
        if problem:
            log.write(f"{problem}\n")
            return ExecutionResult(exit_code=127, log=log.getvalue(), phase="setup")

        for phase, steps in (("before_script", job.before_script), ("script", job.script)):
            for cmd in steps:
                if cancel_event is not None and cancel_event.is_set():
                    return ExecutionResult(exit_code=-1, log=log.getvalue(), phase=phase, canceled=True)

                log.write(f"$ {cmd}\n")
                code, output = self._run_command(job, cmd, ws, variables, cancel_event)
                log.write(output)

                if cancel_event is not None and cancel_event.is_set() and code != 0:
                    log.write("\n[canceled]\n")
                    return ExecutionResult(exit_code=code, log=log.getvalue(), failed_step=cmd, phase=phase, canceled=True)
                if code != 0:
                    log.write(f"\n[exit {code}]\n")
                    return ExecutionResult(exit_code=code, log=log.getvalue(), failed_step=cmd, phase=phase)

        return ExecutionResult(exit_code=0, log=log.getvalue())

    def _run_command(
        self,
        job: ExpandedJob,
        cmd: str,
        workspace: Path,
        variables: Dict[str, str],
        cancel_event: Optional[threading.Event],
    ) -> Tuple[int, str]:
        argv, shell, env = self.command(job, cmd, workspace, variables)
        try:
            proc = subprocess.Popen(
                argv,
                shell=shell,
                cwd=str(workspace),
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                start_new_session=(os.name == "posix"),
            )
        except OSError as e:
            return 127, f"{e}\n"

        chunks: List[str] = []
        while True:
            try:
                out, _ = proc.communicate(timeout=POLL_INTERVAL)
                chunks.append(out or "")
                return proc.returncode, "".join(chunks)
            except subprocess.TimeoutExpired:
                if cancel_event is not None and cancel_event.is_set():
                    _terminate(proc)
                    out, _ = proc.communicate()
                    chunks.append(out or "")
                    return proc.returncode if proc.returncode != 0 else -1, "".join(chunks)


class ShellExecutor(Executor):
    """Runs commands through the local shell, inside the workspace."""

    name = "shell"

    def command(self, job, cmd, workspace, variables):
        env = os.environ.copy()
        env.update(variables)
        return cmd, True, env


class DockerExecutor(Executor):
    """
    Runs each command in a throwaway container of the job's image with the
    workspace mounted at /builds.
    """

    name = "docker"
    container_workdir = "/builds"

    def __init__(self, tags: Optional[Iterable[str]] = None, *, default_image: Optional[str] = None):
        super().__init__(tags)
        self.default_image = default_image

    def _image(self, job: ExpandedJob) -> Optional[str]:
        return job.image or self.default_image

    def preflight(self, job: ExpandedJob) -> Optional[str]:
        if shutil.which("docker") is None:
            return f"docker is not available. {TOOL_HINTS['docker']}"
        if not self._image(job):
            return f"[{job.name}] no image set and no default image configured"
        return None

    def command(self, job, cmd, workspace, variables):
        argv = ["docker", "run", "--rm", "-v", f"{workspace}:{self.container_workdir}", "-w", self.container_workdir]
        container_vars = dict(variables)
        container_vars["CI_PROJECT_DIR"] = self.container_workdir
        # job variables were expanded against the host workspace; redo them
        # against the mount point (CARGO_HOME: $CI_PROJECT_DIR/cargo)
        predefined = {k: v for k, v in container_vars.items() if k not in job.variables}
        for key, template in job.variables.items():
            container_vars[key] = expand(template, predefined)
        for key, value in container_vars.items():
            argv.extend(["-e", f"{key}={value}"])
        argv.append(self._image(job))
        argv.extend(["sh", "-c", cmd])
        return argv, False, os.environ.copy()
