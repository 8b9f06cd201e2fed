"""
Deterministic sentence-based chunking for document indexing.

Chunking is designed to be:
- Deterministic: Same input always produces same chunks and chunk IDs
- Token-bounded: Sentences accumulate until the estimated token budget is hit
- Overlap-aware: Each chunk is seeded with the tail of the previous one
- Offset-exact: Every chunk's text is text[start_offset:end_offset]

Fenced code blocks are treated as a single sentence, and an overlap tail
never starts inside one, so fence markers always stay paired.
"""
import math
import re
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import List, NamedTuple, Optional, Tuple

from django.conf import settings

logger = logging.getLogger(__name__)

# Default chunking parameters (in estimated tokens)
DEFAULT_CHUNK_SIZE = 512
DEFAULT_CHUNK_OVERLAP = 50

SENTENCE_BOUNDARY = re.compile(r'[.!?]\s+')
CODE_FENCE_BLOCK = re.compile(r'```[\s\S]*?```')
WHITESPACE = re.compile(r'\s+')


class TokenEstimator(ABC):
    """Strategy for estimating how many tokens a piece of text costs."""

    @abstractmethod
    def estimate(self, text: str) -> int:
        pass


class WordCountEstimator(TokenEstimator):
    """
    Whitespace word-count approximation: tokens = ceil(words / 1.3).

    Not a real tokenizer. Any empty split segment counts as a word, so
    the estimate is at least 1 for every string.
    """

    def __init__(self, words_per_token: float = 1.3):
        self.words_per_token = words_per_token

    def estimate(self, text: str) -> int:
        word_count = len(WHITESPACE.split(text))
        return math.ceil(word_count / self.words_per_token)


DEFAULT_ESTIMATOR = WordCountEstimator()


def estimate_token_count(text: str) -> int:
    """Estimate tokens with the default word-count estimator."""
    return DEFAULT_ESTIMATOR.estimate(text)


@dataclass(frozen=True)
class DocumentMetadata:
    """Document-level metadata supplied at ingestion."""
    source: Optional[str] = None
    category: Optional[str] = None
    url: Optional[str] = None
    org_scope: Optional[str] = None
    heading: Optional[str] = None


@dataclass(frozen=True)
class Document:
    """Raw text handed over by the (external) ingestion layer."""
    id: str
    title: str
    raw_text: str
    metadata: DocumentMetadata = field(default_factory=DocumentMetadata)


@dataclass(frozen=True)
class ChunkMetadata:
    """Metadata copied identically onto every chunk of a document."""
    heading: Optional[str] = None
    url: Optional[str] = None
    category: Optional[str] = None
    org_scope: Optional[str] = None


@dataclass(frozen=True)
class Chunk:
    """A retrievable slice of a document."""
    id: str
    document_id: str
    text: str
    index: int
    start_offset: int
    end_offset: int
    metadata: ChunkMetadata = field(default_factory=ChunkMetadata)

    def to_dict(self) -> dict:
        """Convert to JSON-serializable dict."""
        return {
            "id": self.id,
            "documentId": self.document_id,
            "text": self.text,
            "index": self.index,
            "startOffset": self.start_offset,
            "endOffset": self.end_offset,
            "metadata": {
                "heading": self.metadata.heading,
                "url": self.metadata.url,
                "category": self.metadata.category,
                "orgScope": self.metadata.org_scope,
            },
        }


@dataclass
class ChunkConfig:
    """Chunking parameters, in estimated tokens."""
    chunk_size: int = DEFAULT_CHUNK_SIZE
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP
    min_tokens: int = 0  # 0 disables merging of small chunks

    @classmethod
    def from_settings(cls) -> "ChunkConfig":
        return cls(
            chunk_size=getattr(settings, 'RAG_CHUNK_SIZE', DEFAULT_CHUNK_SIZE),
            chunk_overlap=getattr(settings, 'RAG_CHUNK_OVERLAP', DEFAULT_CHUNK_OVERLAP),
            min_tokens=getattr(settings, 'RAG_MIN_CHUNK_TOKENS', 0),
        )


class Sentence(NamedTuple):
    text: str
    start: int
    end: int


def chunk_id(document_id: str, index: int) -> str:
    return f"{document_id}_chunk_{index}"


def _fence_spans(text: str) -> List[Tuple[int, int]]:
    return [(m.start(), m.end()) for m in CODE_FENCE_BLOCK.finditer(text)]


def _enclosing_fence(pos: int, spans: List[Tuple[int, int]]) -> Optional[Tuple[int, int]]:
    for start, end in spans:
        if start < pos < end:
            return start, end
    return None


def _append_sentence(sentences: List[Sentence], text: str, start: int, end: int) -> None:
    segment = text[start:end]
    stripped = segment.strip()
    if not stripped:
        return
    lead = len(segment) - len(segment.lstrip())
    s = start + lead
    sentences.append(Sentence(stripped, s, s + len(stripped)))


def split_into_sentences(text: str) -> List[Sentence]:
    """
    Split text into sentences at '.', '!' or '?' followed by whitespace.

    Punctuation stays with its sentence. Boundaries inside a fenced code
    block are ignored. Text without any boundary is a single sentence.

    Args:
        text: Raw document text

    Returns:
        Sentences with their character offsets in the original text
    """
    spans = _fence_spans(text)
    sentences: List[Sentence] = []
    pos = 0

    for match in SENTENCE_BOUNDARY.finditer(text):
        cut = match.start() + 1
        if _enclosing_fence(cut, spans):
            continue
        _append_sentence(sentences, text, pos, cut)
        pos = match.end()

    _append_sentence(sentences, text, pos, len(text))
    return sentences


def _overlap_start(
    text: str,
    start: int,
    end: int,
    current_tokens: int,
    chunk_overlap: int,
    spans: List[Tuple[int, int]],
    estimator: TokenEstimator,
) -> Optional[int]:
    """
    Find where the overlap tail of text[start:end] begins.

    The tail length is proportional to the share of the buffer's tokens
    that the overlap represents. The tail is then moved forward to a word
    boundary and past any fenced block it would cut into.

    Returns:
        Offset of the tail, or None when there is no overlap
    """
    if chunk_overlap <= 0 or end <= start:
        return None

    buffer_len = end - start
    overlap_tokens = min(chunk_overlap, estimator.estimate(text[start:end]))
    overlap_chars = math.ceil(overlap_tokens / max(current_tokens, 1) * buffer_len)
    if overlap_chars <= 0:
        return None

    tail_start = max(start, end - overlap_chars)

    # Don't begin mid-word
    if tail_start > start and not text[tail_start - 1].isspace():
        gap = WHITESPACE.search(text, tail_start, end)
        if gap is None:
            return None
        tail_start = gap.end()

    fence = _enclosing_fence(tail_start, spans)
    if fence:
        tail_start = fence[1]

    while tail_start < end and text[tail_start].isspace():
        tail_start += 1

    if tail_start >= end:
        return None
    return tail_start


def chunk_text(
    text: str,
    document_id: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
    metadata: Optional[ChunkMetadata] = None,
    estimator: Optional[TokenEstimator] = None,
) -> List[Chunk]:
    """
    Split text into overlapping, token-bounded chunks.

    Sentences are appended to a buffer until the next one would push the
    buffer's estimated token count past chunk_size. The buffer is then
    emitted and a new one is seeded with its tail (about chunk_overlap
    tokens) followed by the sentence that triggered the cut. A sentence
    larger than chunk_size becomes its own chunk, untruncated. The last
    buffer is always emitted.

    Args:
        text: The text to chunk
        document_id: Parent document ID, used to derive chunk IDs
        chunk_size: Target chunk size in estimated tokens
        chunk_overlap: Target overlap between adjacent chunks in estimated tokens
        metadata: Document-level metadata copied onto every chunk
        estimator: Token estimation strategy (word-count by default)

    Returns:
        List of Chunk objects in document order
    """
    estimator = estimator or DEFAULT_ESTIMATOR
    metadata = metadata or ChunkMetadata()

    sentences = split_into_sentences(text)
    if not sentences:
        logger.warning(f"Empty text provided for chunking (document {document_id})")
        return []

    spans = _fence_spans(text)
    chunks: List[Chunk] = []
    buffer_start: Optional[int] = None
    buffer_end = 0
    current_tokens = 0

    def emit(start: int, end: int) -> None:
        index = len(chunks)
        chunks.append(Chunk(
            id=chunk_id(document_id, index),
            document_id=document_id,
            text=text[start:end],
            index=index,
            start_offset=start,
            end_offset=end,
            metadata=metadata,
        ))

    for sentence in sentences:
        sentence_tokens = estimator.estimate(sentence.text)

        if buffer_start is not None and current_tokens + sentence_tokens > chunk_size:
            emit(buffer_start, buffer_end)

            tail_start = _overlap_start(
                text, buffer_start, buffer_end, current_tokens,
                chunk_overlap, spans, estimator,
            )
            buffer_start = tail_start if tail_start is not None else sentence.start
            buffer_end = sentence.end
            current_tokens = estimator.estimate(text[buffer_start:buffer_end])
        else:
            if buffer_start is None:
                buffer_start = sentence.start
            buffer_end = sentence.end
            current_tokens += sentence_tokens

    if buffer_start is not None:
        emit(buffer_start, buffer_end)

    logger.info(
        f"Created {len(chunks)} chunks from {len(text)} characters "
        f"({len(sentences)} sentences, document {document_id})"
    )
    return chunks


def chunk_document(
    document: Document,
    config: Optional[ChunkConfig] = None,
    estimator: Optional[TokenEstimator] = None,
) -> List[Chunk]:
    """
    Chunk a document, propagating its metadata onto every chunk.

    The document title stands in for a missing heading. Small chunks are
    merged when config.min_tokens is set.
    """
    config = config or ChunkConfig()
    meta = document.metadata
    chunk_meta = ChunkMetadata(
        heading=meta.heading or document.title or None,
        url=meta.url,
        category=meta.category,
        org_scope=meta.org_scope,
    )

    chunks = chunk_text(
        document.raw_text,
        document.id,
        chunk_size=config.chunk_size,
        chunk_overlap=config.chunk_overlap,
        metadata=chunk_meta,
        estimator=estimator,
    )

    if config.min_tokens > 0:
        chunks = merge_small_chunks(chunks, config.min_tokens, estimator)
    return chunks


def is_valid_chunk(
    chunk: Chunk,
    min_tokens: int = 10,
    estimator: Optional[TokenEstimator] = None,
) -> bool:
    """Check that a chunk carries at least min_tokens estimated tokens."""
    estimator = estimator or DEFAULT_ESTIMATOR
    return bool(chunk.text.strip()) and estimator.estimate(chunk.text) >= min_tokens


def merge_small_chunks(
    chunks: List[Chunk],
    min_tokens: int = 10,
    estimator: Optional[TokenEstimator] = None,
) -> List[Chunk]:
    """
    Fold chunks below min_tokens into the chunk before them.

    Only the part of a small chunk that does not overlap its predecessor is
    appended. The first chunk is never dropped. Indices and IDs are
    renumbered so they stay contiguous.
    """
    merged: List[Chunk] = []

    for chunk in chunks:
        if merged and not is_valid_chunk(chunk, min_tokens, estimator):
            prev = merged[-1]
            overlap = max(0, prev.end_offset - chunk.start_offset)
            addition = chunk.text[overlap:].lstrip()
            if addition:
                merged[-1] = replace(
                    prev,
                    text=f"{prev.text} {addition}",
                    end_offset=chunk.end_offset,
                )
        else:
            merged.append(chunk)

    if len(merged) != len(chunks):
        logger.debug(f"Merged {len(chunks)} chunks down to {len(merged)}")

    return [
        replace(c, index=i, id=chunk_id(c.document_id, i))
        for i, c in enumerate(merged)
    ]
