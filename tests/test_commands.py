"""
test_commands.py
----------------
Tests for the `commands` module: registry construction, the dispatch rule,
and each handler's side effects (files/, images/, operator log).
"""

import io
import os
import stat
import sys
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from PIL import Image

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, ROOT)

import commands
from commands import CommandError, CommandRegistry, CommandSpec, build_registry
from protocol import Command, Response, Text
from settings import Settings


def image_bytes(fmt: str, mode: str = "RGB", size=(4, 3)) -> bytes:
    color = {"CMYK": (255, 0, 0, 0), "P": 1}.get(mode, (255, 0, 0))
    buf = io.BytesIO()
    Image.new(mode, size, color).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def registry(settings, recorder):
    return build_registry(settings, recorder)


# -------------------------
# Registry
# -------------------------

# The four server commands are registered under their exact keywords
def test_registry_keywords(registry):
    assert set(registry.commands) == {"file", "image", "info", "help"}
    assert registry.commands["file"].needs_payload
    assert registry.commands["image"].needs_payload
    assert not registry.commands["info"].needs_payload


# The table cannot be modified after construction
def test_registry_is_read_only(registry):
    with pytest.raises(TypeError):
        registry.commands["evil"] = registry.commands["help"]


# Duplicate keywords are a construction error
def test_registry_rejects_duplicates(recorder):
    spec = CommandSpec("x", "x", lambda command: Response("OK", ""))
    with pytest.raises(ValueError):
        CommandRegistry([spec, spec], recorder)


# Lookup is exact-match and case-sensitive
def test_lookup_case_sensitive(registry):
    assert registry.lookup("help") is not None
    assert registry.lookup("HELP") is None
    assert registry.lookup("Help") is None


# -------------------------
# Dispatch rule
# -------------------------

# Unknown keywords yield an ERROR response naming the command
@pytest.mark.parametrize("name", ["nope", "HELP", "", "file2", "msg"])
def test_unknown_command(registry, name):
    msg = Command(name, "whatever")
    resp = registry.dispatch(msg)
    assert resp.status == "ERROR"
    assert resp.body == f"unknown command: {name}"
    assert resp.ref == msg.msg_id


# Plain text is acknowledged and recorded as chat, never routed to a handler
def test_text_is_chat(settings, recorder):
    called = []
    spec = CommandSpec("hello", "trap", lambda command: called.append(command))
    registry = CommandRegistry([spec], recorder)
    msg = Text("hello world")
    resp = registry.dispatch(msg)
    assert resp == Response("OK", "Message received: hello world", msg.msg_id)
    assert recorder.messages("[chat]") == ["[chat] hello world"]
    assert called == []


# Commands that need content fail cleanly without it
@pytest.mark.parametrize("name", ["file", "image"])
def test_missing_payload(registry, settings, name):
    resp = registry.dispatch(Command(name, "x.txt"))
    assert resp.status == "ERROR"
    assert "requires file content" in resp.body
    assert not os.path.exists(settings.files_dir)


# A CommandError raised by any handler becomes an ERROR response
def test_handler_error_is_response(recorder):
    def boom(command):
        raise CommandError("bad things")
    registry = CommandRegistry([CommandSpec("boom", "", boom)], recorder)
    resp = registry.dispatch(Command("boom"))
    assert resp.status == "ERROR"
    assert resp.body == "bad things"
    assert recorder.messages("[command]") == ["[command] bad things"]


# -------------------------
# help / info
# -------------------------

# help returns the same fixed listing regardless of prior commands
def test_help_is_fixed(registry):
    first = registry.dispatch(Command("help"))
    registry.dispatch(Command("info", "something"))
    registry.dispatch(Command("unknown"))
    registry.dispatch(Text("chatter"))
    second = registry.dispatch(Command("help"))
    assert first.status == "OK"
    assert first.body == second.body
    assert first.body.startswith("Available commands:")
    for keyword in ("file", "image", "info", "help"):
        assert f".{keyword}" in first.body


# Two registries built from different settings produce the same help text
def test_help_independent_of_state(tmp_path, recorder, settings):
    other = build_registry(Settings(files_dir=str(tmp_path / "x")), recorder)
    assert other.dispatch(Command("help")).body == build_registry(settings, recorder).dispatch(Command("help")).body


# info is acknowledged and recorded for the operator
def test_info(registry, recorder):
    resp = registry.dispatch(Command("info", "build 42 finished"))
    assert resp.status == "OK"
    assert resp.body == "Info received: build 42 finished"
    assert "[info] build 42 finished" in recorder.messages("[info]")


# help takes no arguments
@pytest.mark.parametrize("args", ["all", "  file  "])
def test_help_rejects_arguments(registry, args):
    resp = registry.dispatch(Command("help", args))
    assert resp.status == "ERROR"
    assert resp.body == "command '.help' has no arguments"


# Whitespace after .help is not an argument
def test_help_blank_arguments(registry):
    assert registry.dispatch(Command("help", "   ")).ok


# The sender's hostname is recorded with the info text
def test_info_with_hostname(registry, recorder):
    resp = registry.dispatch(Command("info", "disk almost full", hostname="build-box"))
    assert resp.body == "Info received: disk almost full"
    assert recorder.messages("[info]") == ["[info] from build-box: disk almost full"]


# -------------------------
# file
# -------------------------

# The payload is written verbatim under files/<name>
def test_file_stored(registry, settings):
    resp = registry.dispatch(Command("file", "report.txt", b"hello"))
    path = os.path.join(settings.files_dir, "report.txt")
    assert resp.status == "OK"
    assert path in resp.body
    with open(path, "rb") as f:
        assert f.read() == b"hello"


# Binary content and empty content are stored exactly
@pytest.mark.parametrize("payload", [bytes(range(256)) * 4, b""])
def test_file_binary_and_empty(registry, settings, payload):
    assert registry.dispatch(Command("file", "blob.bin", payload)).ok
    with open(os.path.join(settings.files_dir, "blob.bin"), "rb") as f:
        assert f.read() == payload


# Directory components in the name are stripped
@pytest.mark.parametrize("name", ["../../escape.txt", "/etc/passwd2", "a/b/c.txt", "..\\win.txt"])
def test_file_name_is_reduced_to_basename(registry, settings, tmp_path, name):
    resp = registry.dispatch(Command("file", name, b"data"))
    assert resp.ok
    stored = os.listdir(settings.files_dir)
    assert len(stored) == 1
    assert stored[0] == os.path.basename(name.replace("\\", "/"))


# Names that reduce to nothing are rejected
@pytest.mark.parametrize("name", ["", "   ", ".", "..", "dir/.."])
def test_file_invalid_name(registry, name):
    resp = registry.dispatch(Command("file", name, b"data"))
    assert resp.status == "ERROR"
    assert "invalid file name" in resp.body


# An existing directory is fine; storing twice overwrites
def test_file_overwrite(registry, settings):
    os.makedirs(settings.files_dir)
    assert registry.dispatch(Command("file", "a.txt", b"first")).ok
    assert registry.dispatch(Command("file", "a.txt", b"second")).ok
    with open(os.path.join(settings.files_dir, "a.txt"), "rb") as f:
        assert f.read() == b"second"
    assert os.listdir(settings.files_dir) == ["a.txt"]


# Stored artifacts get the regular umask-derived mode, not a private temp-file mode
@pytest.mark.skipif(os.name != "posix", reason="POSIX file modes")
@pytest.mark.parametrize("umask, expected", [(0o022, 0o644), (0o077, 0o600), (0o002, 0o664)])
def test_stored_file_mode_follows_umask(registry, settings, umask, expected):
    previous = os.umask(umask)
    try:
        assert registry.dispatch(Command("file", "r.txt", b"hi")).ok
        assert registry.dispatch(Command("image", "p.png", image_bytes("PNG"))).ok
    finally:
        os.umask(previous)
    assert stat.S_IMODE(os.stat(os.path.join(settings.files_dir, "r.txt")).st_mode) == expected
    assert stat.S_IMODE(os.stat(os.path.join(settings.images_dir, "p.png")).st_mode) == expected


# No temporary files are left next to the stored artifact
def test_no_temp_files_left(registry, settings):
    for i in range(3):
        assert registry.dispatch(Command("file", "log.txt", bytes([i]) * 10)).ok
    assert os.listdir(settings.files_dir) == ["log.txt"]


# Filesystem failures become ERROR responses, not exceptions
def test_file_write_failure(tmp_path, recorder):
    blocker = tmp_path / "files"
    blocker.write_text("not a directory")
    settings = Settings(files_dir=str(blocker), images_dir=str(tmp_path / "images"))
    registry = build_registry(settings, recorder)
    resp = registry.dispatch(Command("file", "a.txt", b"data"))
    assert resp.status == "ERROR"
    assert "failed to store" in resp.body


# Concurrent writers of different names never corrupt each other
def test_file_concurrent_distinct_names(registry, settings):
    payloads = {f"f{i}.bin": bytes([i]) * 50_000 for i in range(16)}
    barrier = threading.Barrier(len(payloads))

    def store(name):
        barrier.wait()
        return registry.dispatch(Command("file", name, payloads[name]))

    with ThreadPoolExecutor(max_workers=len(payloads)) as pool:
        results = list(pool.map(store, payloads))

    assert all(r.ok for r in results)
    for name, payload in payloads.items():
        with open(os.path.join(settings.files_dir, name), "rb") as f:
            assert f.read() == payload
    assert sorted(os.listdir(settings.files_dir)) == sorted(payloads)


# Same-name writers: one complete payload wins, nothing partial remains
def test_file_concurrent_same_name(registry, settings):
    payloads = [bytes([i]) * 100_000 for i in range(8)]
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda p: registry.dispatch(Command("file", "same.bin", p)), payloads))
    assert all(r.ok for r in results)
    with open(os.path.join(settings.files_dir, "same.bin"), "rb") as f:
        assert f.read() in payloads
    assert os.listdir(settings.files_dir) == ["same.bin"]


# -------------------------
# image
# -------------------------

# Non-PNG input is converted and stored as <stem>.png
def test_image_converted_to_png(registry, settings):
    data = image_bytes("JPEG")
    resp = registry.dispatch(Command("image", "photo.jpg", data))
    path = os.path.join(settings.images_dir, "photo.png")
    assert resp.status == "OK"
    assert "converted" in resp.body
    assert path in resp.body
    with Image.open(path) as img:
        assert img.format == "PNG"
        assert img.size == (4, 3)


# A name without extension just gains .png
def test_image_name_without_extension(registry, settings):
    assert registry.dispatch(Command("image", "cat", image_bytes("GIF", mode="P"))).ok
    assert os.listdir(settings.images_dir) == ["cat.png"]


# PNG input is stored untouched
def test_image_png_passthrough(registry, settings):
    data = image_bytes("PNG")
    resp = registry.dispatch(Command("image", "pic.png", data))
    assert resp.ok
    assert "converted" not in resp.body
    with open(os.path.join(settings.images_dir, "pic.png"), "rb") as f:
        assert f.read() == data


# Modes PNG cannot hold are converted first
def test_image_cmyk_jpeg(registry, settings):
    assert registry.dispatch(Command("image", "print.jpg", image_bytes("JPEG", mode="CMYK"))).ok
    with Image.open(os.path.join(settings.images_dir, "print.png")) as img:
        assert img.format == "PNG"


# Undecodable data is an ERROR and nothing is written
@pytest.mark.parametrize("data", [b"definitely not an image", b"", image_bytes("PNG")[:20]])
def test_image_decode_failure(registry, settings, data):
    resp = registry.dispatch(Command("image", "broken.jpg", data))
    assert resp.status == "ERROR"
    assert "failed to decode image" in resp.body
    assert not os.path.exists(os.path.join(settings.images_dir, "broken.png"))


# to_png reports whether a conversion happened
def test_to_png_flags():
    png = image_bytes("PNG")
    assert commands.to_png(png) == (png, False)
    converted, flag = commands.to_png(image_bytes("BMP"))
    assert flag and converted.startswith(b"\x89PNG")
