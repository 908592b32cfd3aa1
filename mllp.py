"""MLLP framing: <VT> payload <FS><CR>."""

from __future__ import annotations

import logging
import time
from typing import List, Optional

from hl7_parser import SEGMENT_TERMINATOR, decompose, iter_lines, parse_delimiters

logger = logging.getLogger(__name__)

START_BLOCK = b"\x0b"
END_BLOCK = b"\x1c"
CARRIAGE_RETURN = b"\x0d"
END_SEQUENCE = END_BLOCK + CARRIAGE_RETURN

DEFAULT_MAX_PENDING_BYTES = 1024 * 1024


class BufferOverflowError(Exception):
    """More bytes pending on a connection than the cap, with no frame terminator."""

    def __init__(self, pending: int, limit: int, messages: Optional[List[bytes]] = None):
        super().__init__(f"{pending} bytes pending without a frame terminator (limit {limit})")
        self.pending = pending
        self.limit = limit
        # complete frames decoded from the same read, ahead of the overflow
        self.messages = messages or []


def encode(payload: bytes) -> bytes:
    return START_BLOCK + payload + END_SEQUENCE


def decode(buffer: bytearray) -> List[bytes]:
    """Pull every complete frame out of ``buffer``, consuming it in place.

    Bytes ahead of a start marker are noise and are dropped. A started frame
    with no terminator yet stays in the buffer for the next read.
    """
    messages = []
    while True:
        start = buffer.find(START_BLOCK)
        if start == -1:
            if buffer:
                logger.debug("discarding %d bytes outside a frame", len(buffer))
            del buffer[:]
            return messages
        if start:
            logger.debug("discarding %d bytes before start block", start)
            del buffer[:start]
        end = buffer.find(END_SEQUENCE, 1)
        if end == -1:
            return messages
        messages.append(bytes(buffer[1:end]))
        del buffer[:end + len(END_SEQUENCE)]


class MLLPDecoder:
    """Per-connection reassembly buffer with a pending-byte cap."""

    def __init__(self, max_pending_bytes: int = DEFAULT_MAX_PENDING_BYTES):
        self.max_pending_bytes = max_pending_bytes
        self.buffer = bytearray()

    def feed(self, data: bytes) -> List[bytes]:
        self.buffer.extend(data)
        messages = decode(self.buffer)
        if len(self.buffer) > self.max_pending_bytes:
            pending = len(self.buffer)
            self.reset()
            raise BufferOverflowError(pending, self.max_pending_bytes, messages)
        return messages

    @property
    def pending(self) -> int:
        return len(self.buffer)

    def reset(self) -> None:
        self.buffer.clear()


def to_segment_terminators(message: str, eol: Optional[str] = None) -> str:
    """Replace the editor's end-of-line marker with bare CR segment terminators."""
    if eol:
        return message.replace(eol, SEGMENT_TERMINATOR)
    return SEGMENT_TERMINATOR.join(line.text for line in iter_lines(message)) + (
        SEGMENT_TERMINATOR if message.endswith(("\r", "\n")) else ""
    )


def wrap(message: str, encoding: str = "utf-8") -> bytes:
    return encode(to_segment_terminators(message).encode(encoding))


def build_ack(message: str, code: str = "AA", text: str = "") -> str:
    """Minimal ACK for ``message``: sender and receiver swapped, MSA echoes the control ID."""
    delimiters = parse_delimiters(message)
    fs = delimiters.field
    msh_fields = {}
    for line in iter_lines(message):
        if line.text[:3].upper() == "MSH" and len(line.text) > 3:
            segment = decompose(line.text, delimiters)
            msh_fields = {f.index: f.text(line.text) for f in segment.fields}
            break

    def get(index: int) -> str:
        return msh_fields.get(index, "")

    trigger = get(9).split(delimiters.component)
    message_type = "ACK" + (delimiters.component + trigger[1] if len(trigger) > 1 and trigger[1] else "")
    ts = time.strftime("%Y%m%d%H%M%S")
    msh = fs.join([
        "MSH",
        delimiters.encoding_characters,
        get(5),
        get(6),
        get(3),
        get(4),
        ts,
        "",
        message_type,
        f"ACK{ts}",
        get(11) or "P",
        get(12) or "2.5",
    ])
    msa = fs.join(["MSA", code, get(10)] + ([text] if text else []))
    return msh + SEGMENT_TERMINATOR + msa + SEGMENT_TERMINATOR
