"""
Content-Length framing for the adapter's protocol stream.

The core treats payloads as opaque bytes. Its only job here is to notice when
something other than a frame shows up on the reserved stream.
"""

import io
import re
import threading
from typing import IO, Optional
from vulnera_launcher.exceptions import ProtocolStreamCorruption

_HEADER_PATTERN = re.compile(rb"^[A-Za-z][A-Za-z0-9-]*:[ \t]*[^\r\n]*\r?\n$")
MAX_HEADER_LINE = 8192


class ProtocolReader:
    """Reads framed messages from the adapter's standard output."""

    def __init__(self, stream: IO[bytes]) -> None:
        # Raw pipes from bufsize=0 would otherwise be read byte by byte.
        if isinstance(stream, io.RawIOBase):
            stream = io.BufferedReader(stream)
        self.stream = stream

    def _read_header_line(self) -> bytes:
        line = self.stream.readline(MAX_HEADER_LINE + 1)
        if len(line) > MAX_HEADER_LINE:
            raise ProtocolStreamCorruption(f"Header line exceeds {MAX_HEADER_LINE} bytes.")
        return line

    def read_frame(self) -> Optional[bytes]:
        """
        Reads the next message body.

        :return: The payload bytes, or None on a clean end of stream between frames.
        :raises ProtocolStreamCorruption: If non-header bytes or a truncated frame are seen.
        """
        content_length: Optional[int] = None
        seen_header = False
        while True:
            line = self._read_header_line()
            if not line:
                if seen_header:
                    raise ProtocolStreamCorruption("Stream ended inside a frame header.")
                return None
            if line in (b"\r\n", b"\n"):
                if not seen_header:
                    raise ProtocolStreamCorruption("Empty line where a frame header was expected.")
                break
            if not _HEADER_PATTERN.match(line):
                preview = line[:80].decode("utf-8", errors="replace").rstrip()
                raise ProtocolStreamCorruption(f"Non-protocol output on the protocol stream: {preview!r}")
            seen_header = True
            name, _, value = line.partition(b":")
            if name.strip().lower() == b"content-length":
                try:
                    content_length = int(value.strip())
                except ValueError:
                    raise ProtocolStreamCorruption(f"Invalid Content-Length header: {value.strip()!r}")

        if content_length is None or content_length < 0:
            raise ProtocolStreamCorruption("Frame is missing a valid Content-Length header.")

        body = bytearray()
        while len(body) < content_length:
            chunk = self.stream.read(content_length - len(body))
            if not chunk:
                raise ProtocolStreamCorruption(
                    f"Stream ended after {len(body)} of {content_length} body bytes."
                )
            body.extend(chunk)
        return bytes(body)


class ProtocolWriter:
    """Writes framed messages; serializes writers sharing one stream."""

    def __init__(self, stream: IO[bytes]) -> None:
        # A raw pipe write may be partial; the buffered writer loops until done.
        if isinstance(stream, io.RawIOBase):
            stream = io.BufferedWriter(stream)
        self.stream = stream
        self._lock = threading.Lock()

    def write_frame(self, payload: bytes) -> None:
        header = f"Content-Length: {len(payload)}\r\n\r\n".encode("ascii")
        with self._lock:
            self.stream.write(header + payload)
            self.stream.flush()


def write_frame(stream: IO[bytes], payload: bytes) -> None:
    ProtocolWriter(stream).write_frame(payload)
