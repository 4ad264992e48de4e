from __future__ import annotations

import enum
import os
import sys
import uuid
from contextlib import contextmanager, nullcontext
from pathlib import Path
from typing import ContextManager, Iterator, Sequence

import click

from telnet_docker.runtime import LOGGER, BuildFailure, ContainerRuntime, ImageReference


IMAGE_NAME = "telnet_docker"
IMAGE_TAG = "latest"
TELNET_IMAGE = ImageReference(IMAGE_NAME, IMAGE_TAG)
IMAGE_DIR_NAME = "image"
DOCKERFILE_NAME = "Dockerfile"


class BuildMode(enum.Enum):
    ALWAYS_BUILD = "always"
    BUILD_IF_MISSING = "if-missing"


def image_dir() -> Path:
    return Path(__file__).resolve().parent / IMAGE_DIR_NAME


@contextmanager
def working_directory(path: Path) -> Iterator[Path]:
    """Switch the process working directory to ``path`` and always switch back."""
    original = Path.cwd()
    LOGGER.debug("Entering %s (from %s)", path, original)
    os.chdir(path)
    try:
        yield path
    finally:
        os.chdir(original)
        LOGGER.debug("Restored working directory %s", original)


def _container_name(image: ImageReference) -> str:
    return f"{image.name}-{uuid.uuid4().hex[:12]}"


class ImageResolver:
    def __init__(
        self,
        runtime: ContainerRuntime,
        *,
        image: ImageReference = TELNET_IMAGE,
        context_dir: Path | None = None,
    ) -> None:
        self.runtime = runtime
        self.image = image
        self.context_dir = context_dir or image_dir()

    @property
    def dockerfile(self) -> Path:
        return self.context_dir / DOCKERFILE_NAME

    def resolve(self, mode: BuildMode) -> ImageReference:
        if mode is BuildMode.BUILD_IF_MISSING and self.runtime.image_exists(self.image):
            click.echo(f"Using cached image '{self.image}'", err=True)
            return self.image

        if not self.context_dir.is_dir():
            raise BuildFailure(f"Image build context does not exist: {self.context_dir}")
        click.echo(f"Building image '{self.image}' from {self.dockerfile}", err=True)
        self.runtime.build(self.image, context_dir=self.context_dir, dockerfile=self.dockerfile)
        return self.image


class InteractiveRunner:
    def __init__(self, runtime: ContainerRuntime, *, tty: bool | None = None) -> None:
        self.runtime = runtime
        self.tty = tty

    def _attach_tty(self) -> bool:
        if self.tty is not None:
            return self.tty
        return sys.stdin.isatty()

    def run(self, image: ImageReference, args: Sequence[str]) -> int:
        container_name = _container_name(image)
        try:
            return self.runtime.run(image, list(args), container_name=container_name, tty=self._attach_tty())
        finally:
            self.runtime.remove_container(container_name)


def launch(
    runtime: ContainerRuntime,
    mode: BuildMode,
    args: Sequence[str],
    *,
    context_dir: Path | None = None,
    tty: bool | None = None,
) -> int:
    """Ensure the telnet image exists according to ``mode``, then run it with ``args``.

    Returns the exit code of the contained process. Any failure raises a
    ``LauncherError`` before or instead of the run; nothing is retried.
    """
    resolver = ImageResolver(runtime, context_dir=context_dir)
    runner = InteractiveRunner(runtime, tty=tty)
    runtime.ensure_available()
    if resolver.context_dir.is_dir():
        scope: ContextManager[object] = working_directory(resolver.context_dir)
    else:
        # Only fatal once a build is needed; a cached image still runs.
        LOGGER.debug("Build context %s is missing; staying in %s", resolver.context_dir, Path.cwd())
        scope = nullcontext()
    with scope:
        image = resolver.resolve(mode)
        LOGGER.debug("Resolved image %s (mode=%s)", image, mode.value)
        return runner.run(image, args)
