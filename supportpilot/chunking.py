"""
Document chunking.
Splits normalized content into overlapping chunks for embedding and retrieval.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .text_extraction import clean_text, estimate_token_count

DEFAULT_CHUNK_SIZE = 4000
DEFAULT_CHUNK_OVERLAP = 800
DEFAULT_SEPARATORS = ("\n\n", "\n", ". ", " ", "")


@dataclass
class ChunkedDocument:
    content: str
    token_count: int
    metadata: Dict[str, Any] = field(default_factory=dict)


class RecursiveTextSplitter:
    """
    Recursively split text on a priority list of separators.

    The coarsest separator present in the text is tried first; pieces that are
    still longer than `chunk_size` are split again with the next separator.
    Adjacent small pieces are merged back up to `chunk_size`, carrying up to
    `chunk_overlap` characters from the end of one chunk into the next.
    Separators stay attached to the start of the piece that follows them.
    """

    def __init__(
        self,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
        separators: Sequence[str] = DEFAULT_SEPARATORS,
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise ValueError("chunk_overlap must be in [0, chunk_size)")
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.separators = list(separators)

    def split_text(self, text: str) -> List[str]:
        return self._split(text, self.separators)

    def _split(self, text: str, separators: List[str]) -> List[str]:
        separator = separators[-1]
        remaining: List[str] = []
        for i, candidate in enumerate(separators):
            if candidate == "":
                separator = candidate
                break
            if candidate in text:
                separator = candidate
                remaining = separators[i + 1:]
                break

        chunks: List[str] = []
        pending: List[str] = []
        for piece in self._split_keeping_separator(text, separator):
            if len(piece) < self.chunk_size:
                pending.append(piece)
                continue

            if pending:
                chunks.extend(self._merge(pending))
                pending = []
            if remaining:
                chunks.extend(self._split(piece, remaining))
            else:
                chunks.append(piece)

        if pending:
            chunks.extend(self._merge(pending))
        return chunks

    @staticmethod
    def _split_keeping_separator(text: str, separator: str) -> List[str]:
        if separator == "":
            return list(text)
        parts = text.split(separator)
        pieces = [parts[0]] + [separator + part for part in parts[1:]]
        return [piece for piece in pieces if piece]

    def _merge(self, pieces: List[str]) -> List[str]:
        merged: List[str] = []
        window: List[str] = []
        total = 0

        for piece in pieces:
            size = len(piece)
            if window and total + size > self.chunk_size:
                chunk = "".join(window).strip()
                if chunk:
                    merged.append(chunk)
                # Drop from the front until only the overlap tail is left
                while window and (
                    total > self.chunk_overlap or total + size > self.chunk_size
                ):
                    total -= len(window[0])
                    window.pop(0)
            window.append(piece)
            total += size

        chunk = "".join(window).strip()
        if chunk:
            merged.append(chunk)
        return merged


def chunk_document_content(
    content: str,
    source_type: str,
    metadata: Optional[Dict[str, Any]] = None,
    splitter: Optional[RecursiveTextSplitter] = None,
) -> List[ChunkedDocument]:
    """
    Split content into ordered chunks that inherit the source metadata.

    Args:
        content: Raw or extracted document text
        source_type: Source kind recorded on every chunk
        metadata: Provenance copied into each chunk's metadata
        splitter: Override for the default 4000/800 splitter

    Returns:
        Non-empty chunks with monotonically increasing `chunk_index`
    """
    splitter = splitter or RecursiveTextSplitter()
    base_metadata = dict(metadata or {})

    chunks: List[ChunkedDocument] = []
    for piece in splitter.split_text(clean_text(content)):
        text = clean_text(piece)
        if not text:
            continue
        chunks.append(
            ChunkedDocument(
                content=text,
                token_count=estimate_token_count(text),
                metadata={
                    **base_metadata,
                    "source_type": source_type,
                    "chunk_index": len(chunks),
                },
            )
        )
    return chunks
