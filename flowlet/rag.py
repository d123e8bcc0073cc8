"""Document chunking and similarity retrieval helpers for RAG pipelines."""
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Sequence, Tuple

from .errors import RAGError

SENTENCE_ENDINGS = ".!?"


@dataclass
class Chunk:
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    embedding: List[float] = field(default_factory=list)
    index: int = 0


class ChunkingStrategy(str, Enum):
    FIXED_SIZE = "fixed_size"
    SENTENCES = "sentences"
    PARAGRAPHS = "paragraphs"
    SEMANTIC = "semantic"


@dataclass
class ChunkingOptions:
    """``chunk_size``/``chunk_overlap`` are in characters; sentence and paragraph
    strategies scale them down to sentence (1/100) and paragraph (1/500) counts."""
    strategy: ChunkingStrategy = ChunkingStrategy.FIXED_SIZE
    chunk_size: int = 1000
    chunk_overlap: int = 200
    preserve_structure: bool = True


def _windows(units: Sequence[Any], size: int, overlap: int) -> List[Tuple[int, int]]:
    if size <= 0:
        raise RAGError(f"chunk size must be positive, got {size}")
    if overlap < 0 or overlap >= size:
        raise RAGError(f"chunk overlap must be in [0, {size}), got {overlap}")
    return [(start, min(start + size, len(units))) for start in range(0, len(units), size - overlap)]


def chunk_by_fixed_size(text: str, chunk_size: int, overlap: int) -> List[Chunk]:
    return [
        Chunk(text[start:end], {"start": start, "end": end}, index=i)
        for i, (start, end) in enumerate(_windows(text, chunk_size, overlap))
    ]


def split_sentences(text: str) -> List[str]:
    sentences, current = [], []
    for ch in text:
        current.append(ch)
        if ch in SENTENCE_ENDINGS:
            sentences.append("".join(current).strip())
            current = []
    sentences.append("".join(current).strip())
    return [s for s in sentences if s]


def chunk_by_sentences(text: str, max_sentences: int = 5, overlap: int = 1) -> List[Chunk]:
    sentences = split_sentences(text)
    return [
        Chunk(" ".join(sentences[start:end]), {"sentence_start": start, "sentence_end": end}, index=i)
        for i, (start, end) in enumerate(_windows(sentences, max_sentences, overlap))
    ]


def chunk_by_paragraphs(text: str, max_paragraphs: int = 3, overlap: int = 1) -> List[Chunk]:
    paragraphs = [p for p in text.split("\n\n") if p.strip()]
    return [
        Chunk("\n\n".join(paragraphs[start:end]), {"paragraph_start": start, "paragraph_end": end}, index=i)
        for i, (start, end) in enumerate(_windows(paragraphs, max_paragraphs, overlap))
    ]


def chunk_document(text: str, options: ChunkingOptions = None) -> List[Chunk]:
    options = options or ChunkingOptions()
    if options.strategy == ChunkingStrategy.SENTENCES:
        return chunk_by_sentences(text, max(options.chunk_size // 100, 1), options.chunk_overlap // 100)
    if options.strategy == ChunkingStrategy.PARAGRAPHS:
        return chunk_by_paragraphs(text, max(options.chunk_size // 500, 1), options.chunk_overlap // 500)
    # SEMANTIC needs embeddings at chunking time; it falls back to fixed-size windows
    return chunk_by_fixed_size(text, options.chunk_size, options.chunk_overlap)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """0.0 for empty, mismatched or zero-norm vectors."""
    if len(a) != len(b) or not a:
        return 0.0
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return sum(x * y for x, y in zip(a, b)) / (norm_a * norm_b)


def find_top_k(query: Sequence[float], chunks: Sequence[Chunk], k: int = 5) -> List[Tuple[Chunk, float]]:
    """Best ``k`` embedded chunks by cosine similarity, highest first. Unembedded chunks are skipped."""
    scored = [(chunk, cosine_similarity(query, chunk.embedding)) for chunk in chunks if chunk.embedding]
    scored.sort(key=lambda pair: pair[1], reverse=True)
    return scored[:max(k, 0)]


def rerank_chunks(chunks: Sequence[Chunk], query: str) -> List[Chunk]:
    """Order chunks by occurrences of the query's longer (>3 chars) words; ties keep input order."""
    words = [w for w in query.lower().split() if len(w) > 3]

    def score(chunk):
        lowered = chunk.text.lower()
        return sum(lowered.count(w) for w in words)

    return sorted(chunks, key=score, reverse=True)
