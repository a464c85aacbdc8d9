"""Hybrid retrieval: vector similarity fused with keyword rank."""

import logging
import time
from typing import Dict, List, Optional

from .config import RetrievalConfig, validate_search_params
from .logging_config import get_audit_logger, log_retrieval
from .models import KeywordHit, SearchResult, VectorHit
from .store import ChunkStore

logger = logging.getLogger(__name__)


def fuse_candidates(
    vector_hits: List[VectorHit],
    keyword_hits: List[KeywordHit],
    threshold: float,
    top_k: int,
    vector_weight: float,
    keyword_weight: float,
) -> List[SearchResult]:
    """
    Merge the two candidate lists by chunk id and rank the union.

    A chunk missing from one list scores 0 for that component. Rows survive
    when their similarity exceeds the threshold or they matched the keyword
    query at all.
    """
    rows: Dict[str, SearchResult] = {}

    for hit in vector_hits:
        rows[hit.chunk_id] = SearchResult(
            chunk_id=hit.chunk_id,
            content=hit.content,
            file_name=hit.file_name,
            similarity=hit.similarity,
            keyword_rank=0.0,
            combined_score=0.0,
        )

    for hit in keyword_hits:
        row = rows.get(hit.chunk_id)
        if row is None:
            rows[hit.chunk_id] = SearchResult(
                chunk_id=hit.chunk_id,
                content=hit.content,
                file_name=hit.file_name,
                similarity=0.0,
                keyword_rank=hit.rank,
                combined_score=0.0,
            )
        else:
            row.keyword_rank = hit.rank

    results = []
    for row in rows.values():
        if not (row.similarity > threshold or row.keyword_rank > 0):
            continue
        row.combined_score = row.similarity * vector_weight + row.keyword_rank * keyword_weight
        results.append(row)

    results.sort(key=lambda r: (-r.combined_score, r.chunk_id))
    return results[:top_k]


class HybridRetriever:
    """Tenant-scoped hybrid search over embedded chunks."""

    def __init__(self, store: ChunkStore, config: Optional[RetrievalConfig] = None):
        self.store = store
        self.config = config or RetrievalConfig()
        self.config.validate()
        self.audit = get_audit_logger("retrieval")

    def search(
        self,
        query_embedding: List[float],
        query_text: str,
        room_id: str,
        threshold: Optional[float] = None,
        top_k: Optional[int] = None,
        vector_weight: Optional[float] = None,
        keyword_weight: Optional[float] = None,
    ) -> List[SearchResult]:
        """
        Rank the room's embedded chunks against a query.

        Args:
            query_embedding: Vector for the query text
            query_text: Raw query for keyword matching
            room_id: Tenant scope
            threshold: Minimum similarity for vector-only hits
            top_k: Maximum number of results
            vector_weight: Weight of cosine similarity in the combined score
            keyword_weight: Weight of keyword rank in the combined score

        Returns:
            Results ordered by combined score, best first
        """
        threshold = self.config.match_threshold if threshold is None else threshold
        top_k = self.config.match_count if top_k is None else top_k
        vector_weight = self.config.vector_weight if vector_weight is None else vector_weight
        keyword_weight = self.config.keyword_weight if keyword_weight is None else keyword_weight
        validate_search_params(threshold, top_k, vector_weight, keyword_weight)

        start_time = time.time()
        results = self.store.hybrid_search(
            room_id, query_embedding, query_text, threshold, top_k, vector_weight, keyword_weight
        )
        if results is None:
            vector_hits = self.store.vector_candidates(room_id, query_embedding)
            keyword_hits = self.store.keyword_candidates(room_id, query_text)
            results = fuse_candidates(
                vector_hits, keyword_hits, threshold, top_k, vector_weight, keyword_weight
            )
            vector_count, keyword_count = len(vector_hits), len(keyword_hits)
        else:
            # Fused in the store; only the surviving rows are known
            vector_count = sum(1 for r in results if r.similarity > 0)
            keyword_count = sum(1 for r in results if r.keyword_rank > 0)

        log_retrieval(
            self.audit,
            room_id=room_id,
            query=query_text,
            vector_candidates=vector_count,
            keyword_candidates=keyword_count,
            results=len(results),
            execution_time_ms=(time.time() - start_time) * 1000,
            parameters={
                "threshold": threshold,
                "top_k": top_k,
                "vector_weight": vector_weight,
                "keyword_weight": keyword_weight,
            },
        )
        return results
