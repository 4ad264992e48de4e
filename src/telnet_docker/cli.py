from __future__ import annotations

import logging
import os
import sys
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

import click

from telnet_docker.launcher import BuildMode, launch
from telnet_docker.runtime import DEFAULT_ENGINE, LOGGER, DockerRuntime


CONFIG_FILE_ENV = "TELNET_DOCKER_CONFIG"
ENGINE_ENV = "TELNET_DOCKER_ENGINE"
LOG_LEVEL_ENV = "TELNET_DOCKER_LOG_LEVEL"
LOG_LEVEL_CHOICES = ("critical", "error", "warning", "info", "debug")
DEFAULT_LOG_LEVEL = "warning"
INTERRUPTED_EXIT_CODE = 130


@dataclass(frozen=True)
class LauncherSettings:
    engine: str = DEFAULT_ENGINE
    log_level: str = DEFAULT_LOG_LEVEL


def _default_config_file(env: Mapping[str, str] | None = None) -> Path:
    source = os.environ if env is None else env
    override = str(source.get(CONFIG_FILE_ENV, "")).strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "telnet-docker" / "config.toml"


def _normalize_log_level(value: object) -> str:
    normalized = str(value or "").strip().lower()
    if normalized in LOG_LEVEL_CHOICES:
        return normalized
    return DEFAULT_LOG_LEVEL


def _read_config_file(config_path: Path) -> dict[str, object]:
    try:
        raw = config_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except (OSError, UnicodeError) as exc:
        click.echo(f"Warning: unable to read launcher config file {config_path}: {exc}", err=True)
        return {}

    try:
        parsed = tomllib.loads(raw)
    except tomllib.TOMLDecodeError as exc:
        click.echo(f"Warning: unable to parse launcher config file {config_path}: {exc}", err=True)
        return {}
    return parsed


def load_settings(config_path: Path | None = None, env: Mapping[str, str] | None = None) -> LauncherSettings:
    """Merge defaults, the optional TOML config file and environment overrides."""
    source = os.environ if env is None else env
    parsed = _read_config_file(config_path or _default_config_file(source))

    engine = str(parsed.get("engine") or "").strip() or DEFAULT_ENGINE
    log_level = parsed.get("log_level", DEFAULT_LOG_LEVEL)

    engine_override = str(source.get(ENGINE_ENV, "")).strip()
    if engine_override:
        engine = engine_override
    log_level_override = str(source.get(LOG_LEVEL_ENV, "")).strip()
    if log_level_override:
        log_level = log_level_override

    return LauncherSettings(engine=engine, log_level=_normalize_log_level(log_level))


def _configure_logging(level: str) -> None:
    normalized = _normalize_log_level(level)
    handler = logging.StreamHandler(sys.__stderr__)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    LOGGER.handlers.clear()
    LOGGER.addHandler(handler)
    LOGGER.setLevel(getattr(logging, normalized.upper(), logging.WARNING))
    LOGGER.propagate = False


class PassthroughCommand(click.Command):
    """A command that hands every argument to the container untouched.

    Click's parser would consume ``--``, ``--help`` and option-looking tokens;
    the launcher interprets none of them.
    """

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        ctx.params["container_args"] = tuple(args)
        return []


def _launch_command(mode: BuildMode, container_args: tuple[str, ...]) -> None:
    settings = load_settings()
    _configure_logging(settings.log_level)
    LOGGER.debug("Launching with engine=%s mode=%s args=%d", settings.engine, mode.value, len(container_args))

    ctx = click.get_current_context()
    try:
        exit_code = launch(DockerRuntime(settings.engine), mode, container_args)
    except KeyboardInterrupt:
        LOGGER.debug("Interrupted before the container exited")
        ctx.exit(INTERRUPTED_EXIT_CODE)
    ctx.exit(exit_code)


@click.command(
    cls=PassthroughCommand,
    help="Rebuild the telnet client image, then run it with all arguments forwarded.",
)
@click.argument("container_args", nargs=-1, type=click.UNPROCESSED)
def main(container_args: tuple[str, ...]) -> None:
    _launch_command(BuildMode.ALWAYS_BUILD, container_args)


@click.command(
    cls=PassthroughCommand,
    help="Build the telnet client image only if it is missing, then run it with all arguments forwarded.",
)
@click.argument("container_args", nargs=-1, type=click.UNPROCESSED)
def main_cached(container_args: tuple[str, ...]) -> None:
    _launch_command(BuildMode.BUILD_IF_MISSING, container_args)


if __name__ == "__main__":
    main()
