# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Build-scoped log sink.

Every provisioning and execution step writes human-readable status
lines to a sink supplied by the caller. The sink is write-only; nothing
reads it back. Process output is forwarded as it is produced.
"""

from __future__ import annotations

import sys
import threading
from typing import Protocol, TextIO

from dockins.logging import SecretFilter


class LogSink(Protocol):
    """Anything that accepts streamed text."""

    def write(self, text: str) -> None: ...


class BuildLog:
    """Line-oriented build log writing to a text stream.

    All text passes through ``SecretFilter.redact`` before it is written.

    Thread Safety:
        Writes are serialized, so output forwarded from a process and
        status lines from a cleanup thread do not interleave mid-line.
    """

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream if stream is not None else sys.stdout
        self._lock = threading.Lock()

    def write(self, text: str) -> None:
        """Write raw text (process output) and flush immediately."""
        if not text:
            return
        with self._lock:
            self._stream.write(SecretFilter.redact(text))
            self._stream.flush()

    def println(self, message: str) -> None:
        """Write a status line."""
        self.write(f"{message}\n")

    def error(self, message: str) -> None:
        """Write an error line."""
        self.write(f"ERROR: {message}\n")
