"""
server.py
----------
dotchat server.

Responsibilities:
- Listen on host:port and run one asyncio task per accepted TCP connection
- Read length-prefixed frames, decode them into messages
- Dispatch every message through the command table and send back exactly one response
- Keep failures (bad frames, handler errors, dropped peers) inside their own connection
"""

import argparse
import asyncio
import sys
from typing import Optional, Set, Tuple

from commands import CommandRegistry, build_registry
from protocol import (
    ERROR,
    FrameError,
    Response,
    TransportError,
    decode_content,
    encode_response,
    read_frame,
    write_frame,
)
from settings import Recorder, Settings, add_common_arguments, configure_logging, settings_from_args

OPEN = "OPEN"
READING = "READING"
DISPATCHING = "DISPATCHING"
WRITING = "WRITING"
CLOSED = "CLOSED"


# ---------------------------------------------------------------------------
# Per-connection handler
# ---------------------------------------------------------------------------
class ConnectionHandler:
    """
    Owns one accepted connection for its whole lifetime.

    OPEN -> (READING -> DISPATCHING -> WRITING)* -> CLOSED
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 registry: CommandRegistry, recorder: Recorder, max_frame_size: int):
        self.reader = reader
        self.writer = writer
        self.registry = registry
        self.recorder = recorder
        self.max_frame_size = max_frame_size
        self.peer = writer.get_extra_info("peername")
        self.state = OPEN

    async def run(self) -> None:
        self.recorder.record("info", f"[accept] connection from {self.peer}")
        try:
            while True:
                self.state = READING
                content = await read_frame(self.reader, self.max_frame_size)
                if content is None:
                    self.recorder.record("info", f"[close] {self.peer} disconnected")
                    break

                self.state = DISPATCHING
                message = decode_content(content)
                response = await self.dispatch(message)

                self.state = WRITING
                await write_frame(self.writer, encode_response(response))

        except FrameError as e:
            self.recorder.record("warning", f"[frame] bad frame from {self.peer}: {e}")
            await self.notify(Response(ERROR, f"bad frame: {e}"))
        except TransportError as e:
            self.recorder.record("info", f"[close] transport error with {self.peer}: {e}")
        except asyncio.CancelledError:
            self.recorder.record("info", f"[close] connection with {self.peer} cancelled")
            raise
        finally:
            self.state = CLOSED
            await self.close()

    async def dispatch(self, message) -> Response:
        """Run the (blocking) command in the default executor."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self.registry.dispatch, message)
        except Exception as e:
            self.recorder.record("error", f"[dispatch] unexpected failure for {self.peer}: {e!r}")
            return Response(ERROR, f"internal error: {type(e).__name__}", ref=message.msg_id)

    async def notify(self, response: Response) -> None:
        """Best-effort response on a connection that is about to close."""
        try:
            await write_frame(self.writer, encode_response(response))
        except TransportError:
            pass

    async def close(self) -> None:
        if self.writer.is_closing():
            return
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass


# ---------------------------------------------------------------------------
# Listener
# ---------------------------------------------------------------------------
class ChatServer:
    """Accepts connections and spawns a ConnectionHandler task for each one."""

    def __init__(self, settings: Settings, registry: Optional[CommandRegistry] = None,
                 recorder: Optional[Recorder] = None):
        self.settings = settings
        self.recorder = recorder or Recorder(name="dotchat.server")
        self.registry = registry or build_registry(settings, self.recorder.child("commands"))
        self._server: Optional[asyncio.AbstractServer] = None
        self._tasks: Set[asyncio.Task] = set()

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._accept, self.settings.host, self.settings.port)
        self.recorder.record("info", f"[listen] listening on {self.address[0]}:{self.address[1]}")

    @property
    def address(self) -> Tuple[str, int]:
        if self._server is None or not self._server.sockets:
            raise RuntimeError("server is not started")
        host, port = self._server.sockets[0].getsockname()[:2]
        return host, port

    async def _accept(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        handler = ConnectionHandler(
            reader, writer, self.registry,
            self.recorder.child("conn"), self.settings.max_frame_size,
        )
        task = asyncio.current_task()
        self._tasks.add(task)
        try:
            await handler.run()
        finally:
            self._tasks.discard(task)

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        async with self._server:
            await self._server.serve_forever()

    async def close(self) -> None:
        if self._server is None:
            return
        self._server.close()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        await self._server.wait_closed()
        self.recorder.record("info", "[listen] server closed")

    async def __aenter__(self) -> "ChatServer":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()


# ------------------------------------------------------------
# Program entry point
# ------------------------------------------------------------
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="dotchat server")
    add_common_arguments(parser)
    parser.add_argument("--files-dir", "-f", dest="files_dir", default=None, help="Directory for .file uploads")
    parser.add_argument("--images-dir", "-i", dest="images_dir", default=None, help="Directory for .image uploads")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = settings_from_args(args)
    except (OSError, ValueError, TypeError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2
    configure_logging(settings.log_level)

    server = ChatServer(settings)
    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        print("\nServer shutting down gracefully...")
    except OSError as e:
        print(f"Fatal error starting server: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
