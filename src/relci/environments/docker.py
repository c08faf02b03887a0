# environments/docker.py
from __future__ import annotations

import subprocess
import uuid
from pathlib import Path
from typing import Dict, Optional

from ..cancel import CancelToken
from .local import ProcessResult, run_process

CONTAINER_WORKDIR = "/workspace"
# per-job home inside the mounted workspace, so ~/.cargo survives between steps
HOME_DIRNAME = ".relci-home"
CONTAINER_PREFIX = "relci-"
KILL_TIMEOUT = 30


def check_docker_available() -> None:
    """Check if Docker is available, raise helpful error if not."""
    # Import here to avoid circular import
    from ..runner import TOOL_HINTS, CIError

    try:
        subprocess.run(
            ["docker", "--version"],
            capture_output=True,
            check=True,
        )
    except (subprocess.CalledProcessError, FileNotFoundError):
        hint = TOOL_HINTS.get("docker", "Install Docker and ensure the daemon is running.")
        raise CIError(
            kind="docker_unavailable",
            job="",
            step=None,
            message="Docker is not available",
            details={"hint": hint},
        )


class DockerEnvironment:
    """Runs each step in a fresh container of the job's runner image."""

    kind = "container"

    def __init__(self, workspace: Path, image: str, *, shell: str = "bash", docker: str = "docker"):
        self.workspace = workspace
        self.image = image
        self.shell = shell
        self.docker = docker

    @property
    def home(self) -> Path:
        return self.workspace / HOME_DIRNAME

    def resolve_path(self, path: str) -> Path:
        if path == "~" or path.startswith("~/"):
            return self.home / path[2:]
        p = Path(path)
        if p.is_absolute():
            raise ValueError(f"Absolute cache paths are not reachable from a container job: {path}")
        return self.workspace / p

    def docker_command(self, command: str, *, cwd: str | None, env: Dict[str, str], name: str | None = None) -> list[str]:
        ws = self.workspace.resolve()
        # --init reaps and forwards signals; the name lets a timeout kill the container itself
        cmd = [self.docker, "run", "--rm", "--init"]
        if name:
            cmd.extend(["--name", name])

        # Volume mount: workspace -> /workspace
        cmd.extend(["-v", f"{ws}:{CONTAINER_WORKDIR}"])

        # Working directory: /workspace/<relative_cwd>
        step_cwd = cwd or "."
        container_cwd = f"{CONTAINER_WORKDIR}/{step_cwd}".replace("//", "/")
        cmd.extend(["-w", container_cwd])

        # only the job's env crosses into the container, never the host's
        merged = {"HOME": f"{CONTAINER_WORKDIR}/{HOME_DIRNAME}"}
        merged.update(env)
        for key, value in merged.items():
            cmd.extend(["-e", f"{key}={value}"])

        cmd.append(self.image)
        cmd.extend([self.shell, "-c", command])
        return cmd

    def run(
        self,
        command: str,
        *,
        cwd: str | None,
        env: Dict[str, str],
        log_path: Path,
        timeout: Optional[float] = None,
        cancel: CancelToken | None = None,
    ) -> ProcessResult:
        self.home.mkdir(parents=True, exist_ok=True)
        name = f"{CONTAINER_PREFIX}{uuid.uuid4().hex[:16]}"
        return run_process(
            self.docker_command(command, cwd=cwd, env=env, name=name),
            cwd=None,
            env=None,
            log_path=log_path,
            timeout=timeout,
            cancel=cancel,
            on_stop=lambda: self.kill(name),
        )

    def kill(self, name: str) -> None:
        """Kill a step container; killing the docker client alone leaves it running."""
        try:
            subprocess.run(
                [self.docker, "kill", name],
                capture_output=True,
                timeout=KILL_TIMEOUT,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass
