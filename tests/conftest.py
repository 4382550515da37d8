import logging
import os
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, ROOT)

from settings import Recorder, Settings


class MemoryRecorder(Recorder):
    """Keeps (level, message) pairs instead of logging them."""

    def __init__(self):
        super().__init__(logging.getLogger("dotchat.test"))
        self.records = []

    def record(self, level, message):
        self.records.append((str(level).lower(), message))

    def child(self, suffix):
        return self

    def messages(self, tag=""):
        return [m for _, m in self.records if m.startswith(tag)]


@pytest.fixture
def recorder():
    return MemoryRecorder()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        host="127.0.0.1",
        port=0,
        files_dir=str(tmp_path / "files"),
        images_dir=str(tmp_path / "images"),
    )
