from __future__ import annotations

import abc
import logging
import shlex
import shutil
import signal
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

import click


LOGGER = logging.getLogger("telnet_docker")
LOGGER.addHandler(logging.NullHandler())

DEFAULT_ENGINE = "docker"
# Exit status the docker/podman CLI reserves for "the engine itself failed to start the container".
ENGINE_LAUNCH_ERROR_EXIT_CODE = 125
FORWARDED_SIGNALS = (signal.SIGTERM, signal.SIGHUP)


class LauncherError(click.ClickException):
    """Base class for fatal launcher errors rendered by click as ``Error: ...``."""


class RuntimeUnavailable(LauncherError):
    pass


class BuildFailure(LauncherError):
    pass


class LaunchFailure(LauncherError):
    exit_code = ENGINE_LAUNCH_ERROR_EXIT_CODE


@dataclass(frozen=True)
class ImageReference:
    name: str
    tag: str = "latest"

    def __str__(self) -> str:
        return f"{self.name}:{self.tag}"


def exit_code_for_returncode(returncode: int) -> int:
    # subprocess reports death-by-signal as -signum; shells report 128 + signum.
    if returncode < 0:
        return 128 + -returncode
    return returncode


class ContainerRuntime(abc.ABC):
    @abc.abstractmethod
    def ensure_available(self) -> None:
        """Raises RuntimeUnavailable when the engine cannot be reached."""
        pass

    @abc.abstractmethod
    def image_exists(self, image: ImageReference) -> bool:
        """Returns True when ``name:tag`` is present in the local image store."""
        pass

    @abc.abstractmethod
    def build(self, image: ImageReference, *, context_dir: Path, dockerfile: Path) -> None:
        """Builds ``dockerfile`` in ``context_dir`` and tags the result as ``image``."""
        pass

    @abc.abstractmethod
    def run(self, image: ImageReference, args: Iterable[str], *, container_name: str, tty: bool) -> int:
        """Runs ``image`` attached to the current terminal and returns the process exit code."""
        pass

    @abc.abstractmethod
    def remove_container(self, container_name: str) -> None:
        """Force-removes ``container_name``; a missing container is not an error."""
        pass


class DockerRuntime(ContainerRuntime):
    def __init__(self, engine: str = DEFAULT_ENGINE) -> None:
        self.engine = str(engine or "").strip() or DEFAULT_ENGINE

    def _command(self, *args: str) -> list[str]:
        return [self.engine, *args]

    def ensure_available(self) -> None:
        if shutil.which(self.engine) is None:
            raise RuntimeUnavailable(f"{self.engine} command not found in PATH")
        cmd = self._command("info", "--format", "{{.ServerVersion}}")
        LOGGER.debug("Checking container engine: %s", shlex.join(cmd))
        try:
            result = subprocess.run(cmd, check=False, text=True, capture_output=True)
        except OSError as exc:
            raise RuntimeUnavailable(f"Unable to execute {self.engine}: {exc}") from exc
        if result.returncode != 0:
            detail = (result.stderr or "").strip() or f"exit code {result.returncode}"
            raise RuntimeUnavailable(f"Container engine '{self.engine}' is not reachable: {detail}")

    def image_exists(self, image: ImageReference) -> bool:
        cmd = self._command("image", "inspect", str(image))
        LOGGER.debug("Checking for image: %s", shlex.join(cmd))
        try:
            result = subprocess.run(
                cmd,
                check=False,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as exc:
            raise RuntimeUnavailable(f"Unable to execute {self.engine}: {exc}") from exc
        return result.returncode == 0

    def build(self, image: ImageReference, *, context_dir: Path, dockerfile: Path) -> None:
        if not context_dir.is_dir():
            raise BuildFailure(f"Image build context does not exist: {context_dir}")
        if not dockerfile.is_file():
            raise BuildFailure(f"Dockerfile not found: {dockerfile}")
        cmd = self._command("build", "--file", str(dockerfile), "--tag", str(image), str(context_dir))
        LOGGER.debug("Building image: %s", shlex.join(cmd))
        try:
            subprocess.run(cmd, cwd=str(context_dir), check=True, stdout=sys.stderr)
        except subprocess.CalledProcessError as exc:
            raise BuildFailure(
                f"Command failed with exit code {exc.returncode}: {shlex.join(cmd)}"
            ) from exc
        except OSError as exc:
            raise RuntimeUnavailable(f"Unable to execute {self.engine}: {exc}") from exc

    def run(self, image: ImageReference, args: Iterable[str], *, container_name: str, tty: bool) -> int:
        cmd = self._command("run", "--rm", "--name", container_name, "--interactive")
        if tty:
            cmd.append("--tty")
        cmd.append(str(image))
        cmd.extend(args)
        LOGGER.debug("Running container: %s", shlex.join(cmd))

        process: subprocess.Popen[bytes] | None = None
        pending_signals: list[int] = []

        def forward_signal(signum: int, _frame: object) -> None:
            if process is None:
                pending_signals.append(signum)
                return
            LOGGER.debug("Forwarding signal %d to container %s", signum, container_name)
            process.send_signal(signum)

        # Installed before the spawn so a signal arriving mid-spawn is delivered, not fatal.
        previous_handlers = {signum: signal.signal(signum, forward_signal) for signum in FORWARDED_SIGNALS}
        try:
            try:
                process = subprocess.Popen(cmd)
            except OSError as exc:
                raise RuntimeUnavailable(f"Unable to execute {self.engine}: {exc}") from exc
            for signum in pending_signals:
                LOGGER.debug("Forwarding early signal %d to container %s", signum, container_name)
                process.send_signal(signum)
            try:
                returncode = process.wait()
            except KeyboardInterrupt:
                # The engine client shares our process group and already received SIGINT.
                LOGGER.debug("Interrupted; waiting for container %s to stop", container_name)
                returncode = process.wait()
        finally:
            for signum, handler in previous_handlers.items():
                # None means the previous handler was not installed from Python.
                signal.signal(signum, signal.SIG_DFL if handler is None else handler)

        LOGGER.debug("Container %s exited with status %d", container_name, returncode)
        if returncode == ENGINE_LAUNCH_ERROR_EXIT_CODE:
            raise LaunchFailure(f"{self.engine} failed to start a container from image '{image}'")
        return exit_code_for_returncode(returncode)

    def remove_container(self, container_name: str) -> None:
        cmd = self._command("rm", "--force", container_name)
        LOGGER.debug("Removing container: %s", shlex.join(cmd))
        try:
            subprocess.run(
                cmd,
                check=False,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as exc:
            LOGGER.warning("Unable to remove container %s: %s", container_name, exc)
