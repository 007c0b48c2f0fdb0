"""
Legal Text Chunker

Splits long judicial texts (repetitive-appeal theses, binding holdings) into
pieces small enough to embed. Texts usually enumerate their theses ("1) ...",
"2ª) ...", "a) ..."), so those markers are tried first; anything else falls
back to fixed-size overlapping windows.
"""

import re
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

# Numbered or lettered thesis marker at line start: "1)", "2ª)", "3. ", "4) ", "a)"
THESIS_MARKER = re.compile(r"(?:^|\n)\s*(?:\d+[ªº°]?\)|\d+\s*[\.\)]\s|[a-z]\)\s)")


@dataclass
class TextChunk:
    """One piece of a chunked text."""
    text: str
    chunk_index: int
    total_chunks: int

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "chunkIndex": self.chunk_index,
            "totalChunks": self.total_chunks,
        }


@dataclass
class ChunkConfig:
    """Configuration for chunking parameters (characters)."""
    # Texts shorter than this are embedded whole
    threshold: int = 1500
    chunk_size: int = 1200
    overlap: int = 200
    # Stop windowing when less than this remains after the next start
    min_remainder: int = 50
    # Thesis segments must be longer than this after trimming
    min_segment: int = 50


class TextChunker:
    """Thesis-aware chunker with a sliding-window fallback."""

    def __init__(self, config: Optional[ChunkConfig] = None):
        self.config = config or ChunkConfig()

    def chunk(self, text: str) -> list[TextChunk]:
        """
        Chunk a text for embedding.

        Returns:
            List of TextChunk; a single chunk equal to the input when the
            text is empty or below the threshold.
        """
        if not text or len(text) < self.config.threshold:
            return [TextChunk(text=text, chunk_index=0, total_chunks=1)]

        segments = self._split_on_markers(text)
        if len(segments) > 1:
            logger.debug(f"Split text into {len(segments)} theses")
            return [
                TextChunk(text=segment, chunk_index=i, total_chunks=len(segments))
                for i, segment in enumerate(segments)
            ]

        windows = self._split_on_windows(text)
        logger.debug(f"Split text into {len(windows)} windows")
        return [
            TextChunk(text=window, chunk_index=i, total_chunks=len(windows))
            for i, window in enumerate(windows)
        ]

    def _split_on_markers(self, text: str) -> list[str]:
        """Split on thesis markers, keeping trimmed segments that are long enough."""
        parts = THESIS_MARKER.split(text)
        return [
            part.strip()
            for part in parts
            if part and len(part.strip()) > self.config.min_segment
        ]

    def _split_on_windows(self, text: str) -> list[str]:
        """Fixed-size windows with overlap."""
        size = self.config.chunk_size
        step_back = min(self.config.overlap, size - 1)
        windows = []
        start = 0

        while start < len(text):
            end = min(start + size, len(text))
            windows.append(text[start:end])
            if end >= len(text):
                break
            start = end - step_back
            if start >= len(text) - self.config.min_remainder:
                break

        return windows


def chunk_text(text: str, config: Optional[ChunkConfig] = None) -> list[TextChunk]:
    """Convenience wrapper around TextChunker.chunk."""
    return TextChunker(config).chunk(text)
