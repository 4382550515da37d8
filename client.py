"""
client.py
----------
dotchat client.

Reads lines from the user and sends each one to the server:
- plain text is sent as a chat message
- '.<command> <args>' is sent as a command; '.file <path>' and '.image <path>'
  attach the local file's content
- '.quit', end of input or Ctrl-C closes the connection

Exactly one request is in flight at a time; every request waits for its response.
"""

import argparse
import asyncio
import os
import socket
import sys
import threading
from dataclasses import replace
from pathlib import Path
from typing import Awaitable, Callable, Optional

from protocol import (
    COMMAND_PREFIX,
    MAX_FRAME_SIZE,
    Command,
    FrameError,
    Message,
    Response,
    TransportError,
    encode,
    parse_line,
    read_response,
    write_frame,
)
from settings import Recorder, add_common_arguments, configure_logging, settings_from_args

FILE_COMMANDS = {"file", "image"}
INFO = "info"
QUIT = "quit"

CLIENT_COMMANDS = {
    "file": "Sends a file for storing into files/ (.file <path>)",
    "image": "Sends an image for storing into images/ as PNG (.image <path>)",
    "info": "Sends an info text to the server (.info <text>)",
    "help": "Prints the commands supported by the server",
    "quit": "Terminates the client",
}


class LocalIOError(OSError):
    """A local file named by a command could not be read; nothing was sent."""


def print_commands(display: Callable[[str], None] = print) -> None:
    width = max(len(name) for name in CLIENT_COMMANDS) + 1
    display("Available commands (anything else is sent as a chat message):")
    for name in sorted(CLIENT_COMMANDS):
        display(f"  {COMMAND_PREFIX}{name:<{width}} {CLIENT_COMMANDS[name]}")


def build_message(line: str) -> Message:
    """Parse a line; for file-carrying commands read the local file into the payload."""
    message = parse_line(line)
    if not isinstance(message, Command):
        return message
    if message.name == INFO:
        return replace(message, hostname=socket.gethostname())
    if message.name not in FILE_COMMANDS:
        return message

    path = message.args.strip()
    if not path:
        raise LocalIOError(f"usage: {COMMAND_PREFIX}{message.name} <path>")
    try:
        data = Path(path).read_bytes()
    except OSError as e:
        raise LocalIOError(f"cannot read {path}: {e.strerror or e}") from e

    return Command(
        name=message.name,
        args=os.path.basename(path),
        payload=data,
        msg_id=message.msg_id,
    )


class StdinReader:
    """
    Reads stdin lines on a daemon thread and hands them to the event loop.

    A pending readline() is an ordinary queue wait, so Ctrl-C cancels it
    right away. The thread reads the raw descriptor, holding no lock of
    sys.stdin, and simply dies with the process.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, fd: Optional[int] = None):
        self.loop = loop
        self.fd = sys.stdin.fileno() if fd is None else fd
        self.encoding = getattr(sys.stdin, "encoding", None) or "utf-8"
        self.queue: asyncio.Queue = asyncio.Queue()
        self.thread = threading.Thread(target=self._pump, name="dotchat-stdin", daemon=True)
        self.thread.start()

    def _deliver(self, line: Optional[str]) -> bool:
        try:
            self.loop.call_soon_threadsafe(self.queue.put_nowait, line)
        except RuntimeError:
            return False  # loop already closed
        return True

    def _pump(self) -> None:
        pending = b""
        while True:
            try:
                chunk = os.read(self.fd, 4096)
            except OSError:
                chunk = b""
            if not chunk:
                break
            *lines, pending = (pending + chunk).split(b"\n")
            for raw in lines:
                if not self._deliver(raw.decode(self.encoding, errors="replace")):
                    return
        if pending:
            self._deliver(pending.decode(self.encoding, errors="replace"))
        self._deliver(None)

    async def readline(self) -> Optional[str]:
        return await self.queue.get()


class ClientSession:
    """Sequential send/receive loop over one server connection."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 recorder: Optional[Recorder] = None,
                 read_line: Optional[Callable[[], Awaitable[Optional[str]]]] = None,
                 display: Callable[[str], None] = print,
                 max_frame_size: int = MAX_FRAME_SIZE):
        self.reader = reader
        self.writer = writer
        self.recorder = recorder or Recorder(name="dotchat.client")
        self.read_line = read_line
        self.display = display
        self.max_frame_size = max_frame_size
        self._stdin: Optional[StdinReader] = None

    async def next_line(self) -> Optional[str]:
        """Next input line, or None at end of input."""
        if self.read_line is not None:
            return await self.read_line()
        if self._stdin is None:
            self._stdin = StdinReader(asyncio.get_running_loop())
        return await self._stdin.readline()

    async def exchange(self, message: Message) -> Optional[Response]:
        await write_frame(self.writer, encode(message))
        self.recorder.record("debug", f"[send] {message!r}")
        response = await read_response(self.reader, self.max_frame_size)
        self.recorder.record("debug", f"[recv] {response!r}")
        return response

    async def run(self) -> None:
        try:
            while True:
                line = await self.next_line()
                if line is None:
                    break
                line = line.rstrip("\r\n")
                if not line.strip():
                    continue
                if line.strip() == COMMAND_PREFIX + QUIT:
                    self.display("Closing connection.")
                    break

                try:
                    message = build_message(line)
                except LocalIOError as e:
                    self.display(f"[local] {e}")
                    continue

                response = await self.exchange(message)
                if response is None:
                    self.display("Server closed connection.")
                    break
                self.display(str(response))

        except (FrameError, TransportError) as e:
            self.recorder.record("error", f"[session] {e}")
            self.display(f"Connection error: {e}")
        finally:
            await self.close()

    async def close(self) -> None:
        if self.writer.is_closing():
            return
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass


async def run_client(host: str, port: int, recorder: Optional[Recorder] = None,
                     read_line=None, display: Callable[[str], None] = print) -> None:
    reader, writer = await asyncio.open_connection(host, port)
    display(f"Connected to {host}:{port}")
    print_commands(display)
    session = ClientSession(reader, writer, recorder=recorder, read_line=read_line, display=display)
    await session.run()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="dotchat client")
    add_common_arguments(parser)
    args = parser.parse_args(argv)
    try:
        settings = settings_from_args(args)
    except (OSError, ValueError, TypeError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2
    configure_logging(settings.log_level)

    try:
        asyncio.run(run_client(settings.host, settings.port))
    except KeyboardInterrupt:
        print("\nClient interrupted.")
    except OSError as e:
        print(f"Failed to connect to {settings.host}:{settings.port}: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
