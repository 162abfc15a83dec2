"""Reassembly of byte-level model output into complete UTF-8 text.

The engine emits one token piece per step, and a piece can end in the middle
of a multi-byte code point. `Utf8Reassembler` holds such bytes back until the
code point is complete, so everything handed to the caller is valid text.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


def _sequence_length(lead: int) -> int:
    """Expected encoded length for a lead byte, or 0 if it cannot start a sequence."""
    if lead & 0x80 == 0x00:
        return 1
    if lead & 0xE0 == 0xC0:
        return 2
    if lead & 0xF0 == 0xE0:
        return 3
    if lead & 0xF8 == 0xF0:
        return 4
    return 0


class Utf8Reassembler:
    """Incremental UTF-8 validator over a pending byte buffer.

    State is either empty (`awaiting == 0`, nothing pending) or waiting for
    `awaiting` more continuation bytes of the sequence that starts at
    `_seq_start`. Each `feed` only scans the new bytes, which is observably
    the same as re-validating the whole buffer.

    Valid input is flushed all at once or held back entirely. When invalid
    bytes show up, everything before a still-incomplete trailing sequence is
    flushed with replacement characters and that tail stays pending. Bytes
    are never dropped.
    """

    def __init__(self) -> None:
        self._pending = bytearray()
        self._awaiting = 0
        self._seq_start = 0

    @property
    def awaiting(self) -> int:
        """Continuation bytes still expected (0 when nothing is pending)."""
        return self._awaiting

    @property
    def pending(self) -> bytes:
        return bytes(self._pending)

    def reset(self) -> None:
        self._pending.clear()
        self._awaiting = 0
        self._seq_start = 0

    def feed(self, raw: bytes | None) -> str | None:
        """Add a fragment; return the buffered text once it is complete."""
        if not raw:
            return None

        offset = len(self._pending)
        self._pending.extend(raw)
        awaiting = self._awaiting
        seq_start = self._seq_start
        invalid = False
        for pos in range(offset, len(self._pending)):
            byte = self._pending[pos]
            if awaiting:
                if byte & 0xC0 == 0x80:
                    awaiting -= 1
                    continue
                # Truncated sequence; this byte may still start a new one.
                invalid = True
                awaiting = 0
            length = _sequence_length(byte)
            if length == 0:
                invalid = True
                continue
            seq_start = pos
            awaiting = length - 1

        self._awaiting = awaiting
        self._seq_start = seq_start
        if not awaiting:
            if invalid:
                self._warn_invalid(len(self._pending))
            return self._flush()
        if not invalid:
            return None

        head = bytes(self._pending[:seq_start])
        del self._pending[:seq_start]
        self._seq_start = 0
        self._warn_invalid(len(head))
        return head.decode("utf-8", errors="replace")

    def _flush(self) -> str:
        # Structurally valid, but may still hold overlong forms or surrogates.
        text = self._pending.decode("utf-8", errors="replace")
        self.reset()
        return text

    @staticmethod
    def _warn_invalid(n_bytes: int) -> None:
        logger.warning("Invalid UTF-8 in model output, flushing %d bytes with replacement", n_bytes)
