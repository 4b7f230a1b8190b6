"""
Rolling transcript buffer with a processed cursor.

Finalized segments are appended as they arrive. The buffer keeps only the
most recent suffix once it grows past the trim threshold, and tracks how much
of the text has already been sent for extraction.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

TRIM_THRESHOLD_CHARS = 50_000
KEEP_SUFFIX_CHARS = 40_000


@dataclass(frozen=True)
class Checkpoint:
    """Position of the buffer end at the moment an extraction was issued."""

    epoch: int
    appended_total: int


class TranscriptBuffer:
    """Append-only transcript text with a capped size and a processed cursor."""

    def __init__(self, trim_threshold: int = TRIM_THRESHOLD_CHARS, keep_suffix: int = KEEP_SUFFIX_CHARS):
        if keep_suffix > trim_threshold:
            raise ValueError("keep_suffix must not exceed trim_threshold")
        self.text = ""
        self.processed_cursor = 0
        self.trim_threshold = trim_threshold
        self.keep_suffix = keep_suffix
        # Monotonic count of characters ever appended; survives trims.
        self._appended_total = 0
        # Bumped on every cursor reset so in-flight extractions can tell
        # their checkpoint is stale.
        self._epoch = 0

    def __len__(self) -> int:
        return len(self.text)

    def append(self, segment: str) -> None:
        """Append a finalized segment, separated by a space, then trim if needed."""
        piece = " " + segment
        self.text += piece
        self._appended_total += len(piece)
        self.trim(self.trim_threshold, self.keep_suffix)

    def delta(self, cursor: int | None = None) -> str:
        """Return the text after ``cursor`` (the processed cursor by default)."""
        if cursor is None:
            cursor = self.processed_cursor
        return self.text[cursor:]

    def trim(self, threshold: int, keep_suffix: int) -> bool:
        """Keep only the last ``keep_suffix`` characters once the text exceeds ``threshold``."""
        if len(self.text) <= threshold:
            return False
        dropped = len(self.text) - keep_suffix
        self.text = self.text[-keep_suffix:] if keep_suffix > 0 else ""
        self.processed_cursor = min(self.processed_cursor, keep_suffix)
        logger.info("Transcript buffer trimmed: dropped %d chars, kept %d", dropped, len(self.text))
        return True

    def reset_cursor(self) -> None:
        """Mark the whole buffer as unprocessed."""
        self.processed_cursor = 0
        self._epoch += 1

    def checkpoint(self) -> Checkpoint:
        return Checkpoint(epoch=self._epoch, appended_total=self._appended_total)

    def advance_to(self, checkpoint: Checkpoint) -> bool:
        """Move the cursor to where the buffer ended when ``checkpoint`` was taken.

        Text appended after the checkpoint stays unprocessed, and trims in
        between are accounted for. A cursor reset since the checkpoint wins:
        the cursor is left untouched and False is returned.
        """
        if checkpoint.epoch != self._epoch:
            logger.info("Cursor was reset during extraction; not advancing")
            return False
        appended_since = self._appended_total - checkpoint.appended_total
        target = max(0, len(self.text) - appended_since)
        if target > self.processed_cursor:
            self.processed_cursor = target
        return True
