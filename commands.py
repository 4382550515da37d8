"""
commands.py
-----------
Server-side command table for dotchat.

The table maps a keyword (without the '.' prefix) to a CommandSpec. It is
built once at startup by build_registry() and only read afterwards, so every
connection shares it without locking.

Commands:
- file  <name>   store the attached bytes verbatim under files/
- image <name>   decode the attached image, store it as PNG under images/
- info  <text>   log an info note for the operator, tagged with the sender's hostname
- help           list the commands above (takes no arguments)
Plain text lines are logged as chat messages and never reach the table.

Stored images are named <stem>.png, so photo.jpg and photo.gif both end up
as images/photo.png and the later upload replaces the earlier one.
"""

import contextlib
import io
import os
import uuid
from dataclasses import dataclass, replace
from functools import partial
from pathlib import Path, PurePosixPath
from types import MappingProxyType
from typing import Callable, Iterable, Mapping, Optional, Tuple

from PIL import Image, UnidentifiedImageError

from protocol import ERROR, OK, Command, Message, Response, Text
from settings import Recorder, Settings

# Modes Pillow can write as PNG without conversion
PNG_MODES = {"1", "L", "LA", "I", "I;16", "P", "RGB", "RGBA"}

# Regular file mode before the process umask is applied
FILE_MODE = 0o666


class CommandError(Exception):
    """A command could not be carried out; reported back as an ERROR response."""


Handler = Callable[[Command], Response]


@dataclass(frozen=True)
class CommandSpec:
    keyword: str
    description: str
    handler: Handler
    needs_payload: bool = False


# ---------------------------------------------------------------------------
# Artifact storage
# ---------------------------------------------------------------------------

def safe_name(file_name: str) -> str:
    """Reduce a client supplied name to a bare file name."""
    name = PurePosixPath(file_name.strip().replace("\\", "/")).name
    if name in ("", ".", ".."):
        raise CommandError(f"invalid file name: {file_name!r}")
    return name


def write_atomic(path: Path, data: bytes) -> None:
    """
    Write via a temporary sibling and os.replace(), so readers never see a
    partial file and two writers of the same name resolve to last-writer-wins.
    The file is created with FILE_MODE, so it ends up with the usual umask mode.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.part")
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_EXCL | getattr(os, "O_BINARY", 0), FILE_MODE)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp)
        raise


def to_png(data: bytes) -> Tuple[bytes, bool]:
    """Return (png_bytes, converted). PNG input is passed through untouched."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            if img.format == "PNG":
                return data, False
            if img.mode not in PNG_MODES:
                img = img.convert("RGBA")
            out = io.BytesIO()
            img.save(out, format="PNG")
            return out.getvalue(), True
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise CommandError(f"failed to decode image: {e}") from e


class ArtifactStore:
    def __init__(self, settings: Settings, recorder: Recorder):
        self.files_dir = settings.files_path
        self.images_dir = settings.images_path
        self.recorder = recorder

    def _write(self, path: Path, data: bytes) -> None:
        try:
            write_atomic(path, data)
        except OSError as e:
            raise CommandError(f"failed to store {path}: {e.strerror or e}") from e

    def store_file(self, command: Command) -> Response:
        path = self.files_dir / safe_name(command.args)
        payload = command.payload
        self._write(path, payload)
        self.recorder.record("info", f"[file] stored {len(payload)} bytes in {path}")
        return Response(OK, f"Stored {len(payload)} bytes in {path}")

    def store_image(self, command: Command) -> Response:
        path = (self.images_dir / safe_name(command.args)).with_suffix(".png")
        payload = command.payload
        png, converted = to_png(payload)
        self._write(path, png)
        if converted:
            self.recorder.record("info", f"[image] converted {len(payload)} -> {len(png)} bytes in {path}")
            return Response(OK, f"Received {len(payload)} bytes and converted to {len(png)} bytes in {path}")
        self.recorder.record("info", f"[image] stored {len(png)} bytes in {path}")
        return Response(OK, f"Stored {len(png)} bytes in {path}")


def handle_info(recorder: Recorder, command: Command) -> Response:
    if command.hostname:
        recorder.record("info", f"[info] from {command.hostname}: {command.args}")
    else:
        recorder.record("info", f"[info] {command.args}")
    return Response(OK, f"Info received: {command.args}")


def handle_help(help_text: str, command: Command) -> Response:
    if command.args.strip():
        raise CommandError(f"command '.{command.name}' has no arguments")
    return Response(OK, help_text)


def format_help(entries: Iterable[Tuple[str, str]]) -> str:
    entries = sorted(entries)
    width = max(len(keyword) for keyword, _ in entries) + 1
    lines = [f"  .{keyword:<{width}} {description}" for keyword, description in entries]
    return "Available commands:\n" + "\n".join(lines)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class CommandRegistry:
    """Read-only keyword -> CommandSpec table plus the dispatch rule."""

    def __init__(self, specs: Iterable[CommandSpec], recorder: Recorder):
        table = {}
        for spec in specs:
            if spec.keyword in table:
                raise ValueError(f"duplicate command keyword: {spec.keyword}")
            table[spec.keyword] = spec
        self._commands = MappingProxyType(table)
        self.recorder = recorder

    @property
    def commands(self) -> Mapping[str, CommandSpec]:
        return self._commands

    def lookup(self, name: str) -> Optional[CommandSpec]:
        return self._commands.get(name)

    def dispatch(self, message: Message) -> Response:
        """Produce exactly one Response for a Message. Handler failures become ERROR."""
        try:
            response = self._route(message)
        except CommandError as e:
            self.recorder.record("warning", f"[command] {e}")
            response = Response(ERROR, str(e))
        return replace(response, ref=message.msg_id)

    def _route(self, message: Message) -> Response:
        if isinstance(message, Text):
            self.recorder.record("info", f"[chat] {message.body}")
            return Response(OK, f"Message received: {message.body}")

        if not isinstance(message, Command):
            raise CommandError(f"unsupported message: {type(message).__name__}")

        spec = self.lookup(message.name)
        if spec is None:
            raise CommandError(f"unknown command: {message.name}")
        if spec.needs_payload and message.payload is None:
            raise CommandError(f"command '{message.name}' requires file content")
        return spec.handler(message)


def build_registry(settings: Settings, recorder: Recorder) -> CommandRegistry:
    store = ArtifactStore(settings, recorder)
    specs = [
        CommandSpec("file", "Stores a file into files/", store.store_file, needs_payload=True),
        CommandSpec("image", "Stores an image into images/ (converted to PNG)", store.store_image, needs_payload=True),
        CommandSpec("info", "Logs an info text on the server", partial(handle_info, recorder)),
    ]
    help_description = "Lists all commands"
    help_text = format_help([(s.keyword, s.description) for s in specs] + [("help", help_description)])
    specs.append(CommandSpec("help", help_description, partial(handle_help, help_text)))
    return CommandRegistry(specs, recorder)
