from typing import List

from ragchat.config.settings import ChunkingConfig

def chunk_text(text: str, size: int = 1000, overlap: int = 200, boundary_window: float = 0.2) -> List[str]:
    """
    Splits text into overlapping, boundary-aware segments.

    Windows of `size` characters start every `size - overlap` characters. A window that
    does not reach the end of the text is cut after the last period in its trailing
    `boundary_window` fraction, else at the last space in that region, else at the raw
    boundary. The start pointer advances by a fixed step whatever the cut, so overlap
    near cut points is uneven. Scanning stops at the first window that reaches the end.
    """
    if size < 1:
        raise ValueError(f"chunk size must be >= 1, got {size}")
    if overlap < 0:
        raise ValueError(f"chunk overlap must be >= 0, got {overlap}")
    step = size - overlap
    if step < 1:
        raise ValueError(f"chunk overlap ({overlap}) must be smaller than chunk size ({size})")

    chunks = []
    threshold = size * (1 - boundary_window)
    length = len(text)
    i = 0
    while i < length:
        end = min(i + size, length)
        window = text[i:end]

        if end < length:
            last_period = window.rfind(".")
            if last_period > threshold:
                window = window[:last_period + 1]
            else:
                last_space = window.rfind(" ")
                if last_space > threshold:
                    window = window[:last_space]

        trimmed = window.strip()
        if trimmed:
            chunks.append(trimmed)
        if end >= length:
            break
        i += step

    return chunks

class Chunker:
    """Character-window chunker configured from ChunkingConfig."""

    def __init__(self, config: ChunkingConfig):
        self.config = config
        # Fail at construction rather than on the first document
        chunk_text("", config.chunk_size, config.chunk_overlap)

    def chunk(self, text: str) -> List[str]:
        return chunk_text(
            text,
            size=self.config.chunk_size,
            overlap=self.config.chunk_overlap,
            boundary_window=self.config.boundary_window
        )
