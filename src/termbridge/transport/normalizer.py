"""
transport/normalizer.py — Output Normalizer

Turns an unbounded raw byte stream from a transport into discrete lines that
can be written straight to a terminal:

  - chunks are reassembled into lines; nothing is emitted before its "\\n"
  - (shell) everything before the login banner marker is discarded
  - a prompt line is emitted only if it differs from the previous prompt line
  - any other line is emitted only if it differs from the previous emitted line
  - (serial) segments are trimmed, non-printable bytes dropped, empties skipped

Every emitted line carries a trailing "\\n".
"""

from __future__ import annotations

import codecs
import re
from typing import Optional

_ANSI_SGR = re.compile(r"\x1B\[[0-9;]*m")
_NON_PRINTABLE = re.compile(r"[^\x20-\x7E\n\r\t]")


class OutputNormalizer:
    """Line reassembly plus prompt/echo deduplication for one transport."""

    def __init__(
        self,
        prompt_pattern: re.Pattern[str],
        *,
        banner_marker: Optional[str] = None,
        strip_segments: bool = False,
        printable_only: bool = False,
    ):
        self._prompt = prompt_pattern
        self._banner_marker = banner_marker or None
        self._strip = strip_segments
        self._printable_only = printable_only

        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._banner_seen = self._banner_marker is None
        self._last_prompt: Optional[str] = None
        self._last_emitted: Optional[str] = None

    @property
    def banner_seen(self) -> bool:
        return self._banner_seen

    @property
    def pending(self) -> str:
        """Bytes received but not yet terminated by a newline."""
        return self._buffer

    def feed(self, chunk: bytes) -> list[str]:
        """Append a raw chunk and return the lines it completed."""
        text = self._decoder.decode(chunk)
        if self._printable_only:
            text = _NON_PRINTABLE.sub("", text)
        self._buffer += text

        lines: list[str] = []
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            emitted = self._process(line)
            if emitted is not None:
                lines.append(emitted)
        return lines

    def flush(self) -> list[str]:
        """Process whatever is buffered as a final line (transport ended)."""
        self._buffer += self._decoder.decode(b"", final=True)
        if not self._buffer:
            return []
        line, self._buffer = self._buffer, ""
        emitted = self._process(line)
        return [emitted] if emitted is not None else []

    def _process(self, line: str) -> Optional[str]:
        if not self._banner_seen:
            if self._banner_marker not in line:
                return None
            self._banner_seen = True

        if self._strip:
            line = line.strip()
            if not line:
                return None

        if self.is_prompt(line):
            if line == self._last_prompt:
                return None
            self._last_prompt = line
        elif line == self._last_emitted:
            return None

        self._last_emitted = line
        return line + "\n"

    def is_prompt(self, line: str) -> bool:
        text = line.strip()
        return bool(self._prompt.match(text) or self._prompt.match(_ANSI_SGR.sub("", text)))
