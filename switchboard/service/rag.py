"""Knowledge retrieval for flow system prompts.

Chunks attached to a flow are ranked with BM25 against the user's message;
the best matches are rendered into a block appended to the flow's prompt.
"""

from __future__ import annotations

import dataclasses
import math
import re
from collections import Counter
from typing import List, Optional, Protocol, Sequence

from switchboard.logging import get_logger
from switchboard.storage.models import KnowledgeChunk

logger = get_logger(__name__)

BM25_K1 = 1.5
BM25_B = 0.75
DEFAULT_MAX_CONTEXT_CHARS = 3000


class KnowledgeSource(Protocol):
    def list_knowledge_chunks(self, flow_id: str) -> List[KnowledgeChunk]:
        ...


def tokenize_text(text: str) -> List[str]:
    return re.findall(r"\w+", (text or "").lower())


def compute_bm25_scores(
    query_tokens: Sequence[str],
    documents: List[List[str]],
    k1: float = BM25_K1,
    b: float = BM25_B,
) -> List[float]:
    """Score tokenized documents against query tokens.

    Returns one score per document, zero for documents sharing no terms
    with the query.
    """
    if not query_tokens or not documents:
        return [0.0] * len(documents)

    total = len(documents)
    avg_len = sum(len(doc) for doc in documents) / float(total) or 1.0
    doc_freq: Counter = Counter()
    for doc in documents:
        doc_freq.update(set(doc))

    scores: List[float] = []
    for doc in documents:
        term_counts = Counter(doc)
        norm = k1 * (1 - b + b * len(doc) / avg_len)
        score = 0.0
        for term in query_tokens:
            df = doc_freq.get(term, 0)
            freq = term_counts.get(term, 0)
            if not df or not freq:
                continue
            idf = math.log(1 + (total - df + 0.5) / (df + 0.5))
            score += idf * freq * (k1 + 1) / (freq + norm)
        scores.append(score)
    return scores


class RAGService:
    """BM25 retriever over a flow's knowledge chunks."""

    def __init__(self, store: KnowledgeSource, *, max_context_chars: int = DEFAULT_MAX_CONTEXT_CHARS) -> None:
        self.store = store
        self.max_context_chars = max_context_chars

    def search(self, flow_id: str, query: Optional[str], limit: int = 4) -> List[KnowledgeChunk]:
        if not flow_id or not query or limit <= 0:
            return []
        chunks = self.store.list_knowledge_chunks(flow_id)
        if not chunks:
            return []
        query_tokens = tokenize_text(query)
        scores = compute_bm25_scores(query_tokens, [tokenize_text(chunk.content) for chunk in chunks])
        ranked = sorted(
            (
                dataclasses.replace(chunk, score=score)
                for chunk, score in zip(chunks, scores)
                if score > 0
            ),
            key=lambda chunk: chunk.score,
            reverse=True,
        )
        logger.debug("rag_search", flow_id=flow_id, candidates=len(chunks), hits=len(ranked))
        return ranked[:limit]

    def format_context_for_prompt(self, chunks: Sequence[KnowledgeChunk]) -> str:
        if not chunks:
            return ""
        parts: List[str] = []
        used = 0
        for idx, chunk in enumerate(chunks, start=1):
            header = f"[{idx}]" + (f" ({chunk.source})" if chunk.source else "")
            entry = f"{header}\n{chunk.content.strip()}"
            if parts and used + len(entry) > self.max_context_chars:
                break
            parts.append(entry[: self.max_context_chars])
            used += len(entry)
        return "RELEVANT KNOWLEDGE:\n" + "\n\n".join(parts)
