from __future__ import annotations

import enum
import itertools
import os
import socketserver
import threading
from typing import Sequence

import click

from telnet_docker.cli import LOG_LEVEL_CHOICES, LOG_LEVEL_ENV, _configure_logging
from telnet_docker.runtime import LOGGER


SERVER_LOGGER = LOGGER.getChild("server")

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 9000
MAX_MESSAGE_SIZE = 4096
DEFAULT_SERVER_LOG_LEVEL = "info"

# RFC 854 command bytes and the option codes the session understands.
ECHO = 1
SUPPRESS_GO_AHEAD = 3
BACK_SPACE = 8
ESCAPE = 27
LINEMODE = 34
DELETE = 127
SE = 240
EC = 247
EL = 248
GA = 249
SB = 250
WILL = 251
WONT = 252
DO = 253
DONT = 254
IAC = 255

# IAC DO LINEMODE, IAC SB LINEMODE MODE EDIT IAC SE, IAC WON'T GA
HANDSHAKE_COMMAND = bytes([IAC, DO, LINEMODE, IAC, SB, LINEMODE, 1, IAC, SE, IAC, WONT, GA])

LINE_BREAK = b"\r\n"
ESCAPE_SEQUENCE_END = frozenset(b"ABCDEFGHJKSTfminsuhl")

COMMAND_NAMES = {
    ECHO: "ECHO",
    SUPPRESS_GO_AHEAD: "SUPPRESS-GO-AHEAD",
    LINEMODE: "LINEMODE",
    SE: "SE",
    241: "NOP",
    243: "BRK",
    244: "IP",
    245: "AO",
    246: "AYT",
    EC: "EC",
    EL: "EL",
    GA: "GA",
    SB: "SB",
    WILL: "WILL",
    WONT: "WON'T",
    DO: "DO",
    DONT: "DON'T",
    IAC: "IAC",
}


def contains_sequence(haystack: Sequence[int], needle: Sequence[int]) -> bool:
    """Return True when ``needle`` occurs contiguously anywhere in ``haystack``.

    An empty haystack never matches, not even an empty needle.
    """
    if len(needle) > len(haystack) or not haystack:
        return False
    needle = list(needle)
    window = len(needle)
    return any(list(haystack[start : start + window]) == needle for start in range(len(haystack) - window + 1))


def describe_command(data: bytes) -> str:
    """Render telnet command bytes by name, e.g. ``IAC DO ECHO``."""
    parts: list[str] = []
    in_sub_negotiation = False
    for index, value in enumerate(data):
        previous = data[index - 1] if index else None
        if previous == IAC and value == SB:
            in_sub_negotiation = True
            parts.append(COMMAND_NAMES[value])
            continue
        if previous == IAC and value == SE:
            in_sub_negotiation = False
        if in_sub_negotiation and value != IAC:
            parts.append(f"<{value}>")
        else:
            parts.append(COMMAND_NAMES.get(value, f"<{value}>"))
    return " ".join(parts)


class TelnetState(enum.Enum):
    IDLE = "idle"
    COMMAND = "command"
    WILL = "will"
    WONT = "wont"
    DO = "do"
    DONT = "dont"
    SUB_NEGOTIATION = "sub-negotiation"
    ESCAPE_SEQUENCE = "escape-sequence"


class TelnetSession:
    """Per-connection telnet protocol state.

    Feeds raw socket bytes through the RFC 854 command state machine, keeps the
    user's text in ``message`` and returns whatever must be sent back.
    """

    def __init__(self) -> None:
        self.message = bytearray()
        self.state = TelnetState.IDLE
        self.is_echoing = False

    def accept_data(self, data: bytes) -> bytes:
        response = bytearray()
        for value in data:
            reply = self._accept_byte(value)
            if reply:
                response.extend(reply)
        return bytes(response)

    def take_line(self) -> bytes | None:
        """Return and clear the buffered message once it ends with a newline."""
        if not self.message.endswith(b"\n"):
            return None
        line = bytes(self.message)
        self.message.clear()
        return line

    def _accept_byte(self, value: int) -> bytes | None:
        state = self.state
        if state is TelnetState.IDLE:
            return self._idle(value)
        if state is TelnetState.COMMAND:
            self._command(value)
            return None
        if state in (TelnetState.WILL, TelnetState.WONT):
            self.state = TelnetState.IDLE
            return None
        if state is TelnetState.DO:
            self.state = TelnetState.IDLE
            if value == ECHO:
                self.is_echoing = True
                return bytes([IAC, WILL, ECHO])
            return bytes([IAC, WONT, value])
        if state is TelnetState.DONT:
            self.state = TelnetState.IDLE
            if value == ECHO:
                self.is_echoing = False
            return bytes([IAC, WONT, value])
        if state is TelnetState.SUB_NEGOTIATION:
            if value == SE:
                self.state = TelnetState.IDLE
            return None
        if value in ESCAPE_SEQUENCE_END:
            self.state = TelnetState.IDLE
        return None

    def _idle(self, value: int) -> bytes | None:
        if value == IAC:
            self.state = TelnetState.COMMAND
        elif value in (DELETE, BACK_SPACE, EC):
            if self.message:
                self.message.pop()
            if self.is_echoing:
                return bytes([BACK_SPACE, ord(" "), BACK_SPACE])
        elif value == EL:
            self._erase_current_line()
        elif value == ESCAPE:
            self.state = TelnetState.ESCAPE_SEQUENCE
        else:
            self.message.append(value)
            if self.is_echoing:
                return bytes([value])
        return None

    def _command(self, value: int) -> None:
        transitions = {
            WILL: TelnetState.WILL,
            WONT: TelnetState.WONT,
            DO: TelnetState.DO,
            DONT: TelnetState.DONT,
            SB: TelnetState.SUB_NEGOTIATION,
        }
        if value in transitions:
            self.state = transitions[value]
            return
        SERVER_LOGGER.debug("Ignoring unsupported telnet command %s", describe_command(bytes([IAC, value])))
        self.state = TelnetState.IDLE

    def _erase_current_line(self) -> None:
        # RFC 854: erase back to, but not including, the last CRLF.
        while True:
            if len(self.message) < 2:
                self.message.clear()
                return
            if contains_sequence(self.message[-2:], LINE_BREAK):
                return
            self.message.pop()


class TelnetRequestHandler(socketserver.BaseRequestHandler):
    server: TelnetServer

    def setup(self) -> None:
        self.connection_id = self.server.next_connection_id()
        self.session = TelnetSession()

    def handle(self) -> None:
        SERVER_LOGGER.info("Client %d connected from %s:%s", self.connection_id, *self.client_address[:2])
        try:
            self.request.sendall(HANDSHAKE_COMMAND)
            while True:
                data = self.request.recv(MAX_MESSAGE_SIZE)
                if not data:
                    break
                SERVER_LOGGER.debug("Client %d sent %r", self.connection_id, data)
                response = bytearray(self.session.accept_data(data))
                line = self.session.take_line()
                if line is not None:
                    response.extend(self.reply_for(line))
                if response:
                    self.request.sendall(bytes(response))
                if len(self.session.message) > MAX_MESSAGE_SIZE:
                    SERVER_LOGGER.warning(
                        "Client %d exceeded %d bytes without a line break; dropping connection",
                        self.connection_id,
                        MAX_MESSAGE_SIZE,
                    )
                    break
        except OSError as exc:
            SERVER_LOGGER.info("Client %d dropped: %s", self.connection_id, exc)
        finally:
            SERVER_LOGGER.info("Client %d disconnected", self.connection_id)

    def reply_for(self, line: bytes) -> bytes:
        return b"You [%d] sent: %s\r\n" % (self.connection_id, line.rstrip(LINE_BREAK))


class TelnetServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, server_address: tuple[str, int]) -> None:
        self._connection_ids = itertools.count()
        self._connection_lock = threading.Lock()
        super().__init__(server_address, TelnetRequestHandler)

    def next_connection_id(self) -> int:
        with self._connection_lock:
            return next(self._connection_ids)


@click.command(help="Run a line-echoing telnet server for exercising the telnet client.")
@click.option("--host", default=DEFAULT_HOST, show_default=True, help="Address to bind.")
@click.option("--port", default=DEFAULT_PORT, show_default=True, type=click.IntRange(0, 65535), help="TCP port to bind.")
@click.option(
    "--log-level",
    default=os.environ.get(LOG_LEVEL_ENV, DEFAULT_SERVER_LOG_LEVEL),
    show_default=True,
    type=click.Choice(LOG_LEVEL_CHOICES, case_sensitive=False),
    help=f"Log verbosity (env: {LOG_LEVEL_ENV}).",
)
def main(host: str, port: int, log_level: str) -> None:
    _configure_logging(log_level)
    try:
        server = TelnetServer((host, port))
    except OSError as exc:
        raise click.ClickException(f"Unable to bind telnet server to {host}:{port}: {exc}") from exc

    with server:
        bound_host, bound_port = server.server_address[:2]
        click.echo(f"Telnet server listening on {bound_host}:{bound_port}", err=True)
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            SERVER_LOGGER.info("Shutting down telnet server")


if __name__ == "__main__":
    main()
