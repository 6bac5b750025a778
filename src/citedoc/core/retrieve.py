"""Tiered hybrid retrieval: vector similarity, then exact phrase, first word, unranked."""

import time
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

import psycopg

from .embed import OpenAIEmbedder
from .errors import EmbeddingError, RetrievalError, StoreError
from .logging_config import get_audit_logger, log_fragment_retrieval
from .models import Fragment
from .store import DocumentStore, FragmentSession

logger = logging.getLogger(__name__)
audit_logger = get_audit_logger("retrieval")

DEFAULT_TOP_K = 10
MIN_SIMILARITY_RESULTS = 3


@dataclass
class RetrievalRequest:
    """Inputs shared by every matcher for one question."""
    question: str
    document_ids: List[str]
    top_k: int = DEFAULT_TOP_K
    embed_query: Optional[Callable[[str], List[float]]] = None
    tiers_used: List[str] = field(default_factory=list)


Matcher = Callable[[FragmentSession, RetrievalRequest], List[Fragment]]


def first_significant_word(question: str) -> Optional[str]:
    """First word of the question longer than two characters, lowercased."""
    for term in question.lower().split(" "):
        if len(term) > 2:
            return term
    return None


def similarity_matcher(session: FragmentSession, request: RetrievalRequest) -> List[Fragment]:
    """Rank embedded fragments by distance to the question embedding.

    Any embedding or vector-query failure counts as zero results.
    """
    if request.embed_query is None:
        return []
    try:
        query_embedding = request.embed_query(request.question)
        return session.nearest(query_embedding, request.document_ids, request.top_k)
    except (EmbeddingError, psycopg.Error) as e:
        logger.warning(f"Vector search failed, falling back to keyword tiers: {e}")
        return []


def exact_phrase_matcher(session: FragmentSession, request: RetrievalRequest) -> List[Fragment]:
    return session.search_text(request.question, request.document_ids, request.top_k)


def first_word_matcher(session: FragmentSession, request: RetrievalRequest) -> List[Fragment]:
    word = first_significant_word(request.question)
    if not word:
        return []
    return session.search_text(word, request.document_ids, request.top_k)


def unranked_matcher(session: FragmentSession, request: RetrievalRequest) -> List[Fragment]:
    return session.sample(request.document_ids, request.top_k)


SIMILARITY_TIERS: Tuple[Tuple[str, Matcher], ...] = (
    ("similarity", similarity_matcher),
)

KEYWORD_TIERS: Tuple[Tuple[str, Matcher], ...] = (
    ("exact_phrase", exact_phrase_matcher),
    ("first_word", first_word_matcher),
    ("unranked", unranked_matcher),
)


def has_enough_results(results: Sequence[Fragment], top_k: int) -> bool:
    """Whether similarity results are sufficient to skip the keyword tiers."""
    return len(results) >= min(MIN_SIMILARITY_RESULTS, top_k)


def merge_unique(*groups: Sequence[Fragment], limit: Optional[int] = None) -> List[Fragment]:
    """Concatenate result groups in order, dropping repeated fragment ids."""
    seen = set()
    merged = []
    for group in groups:
        for fragment in group:
            if fragment.id in seen:
                continue
            seen.add(fragment.id)
            merged.append(fragment)
    return merged[:limit] if limit is not None else merged


def run_tiers(
    session: FragmentSession,
    request: RetrievalRequest,
    similarity_tiers: Sequence[Tuple[str, Matcher]] = SIMILARITY_TIERS,
    keyword_tiers: Sequence[Tuple[str, Matcher]] = KEYWORD_TIERS
) -> List[Fragment]:
    """
    Apply the tier chain once for a question.

    The similarity chain always runs. Only if it yields fewer than
    ``min(3, top_k)`` fragments are the keyword tiers tried, each one only
    while the previous keyword tier found nothing.
    """
    primary: List[Fragment] = []
    for name, matcher in similarity_tiers:
        request.tiers_used.append(name)
        primary = merge_unique(primary, matcher(session, request))

    if has_enough_results(primary, request.top_k):
        return primary[:request.top_k]

    fallback: List[Fragment] = []
    for name, matcher in keyword_tiers:
        request.tiers_used.append(name)
        fallback = matcher(session, request)
        if fallback:
            break

    return merge_unique(primary, fallback, limit=request.top_k)


class HybridRetriever:
    """Retrieve grounding fragments for a question from a set of documents."""

    def __init__(self, store: DocumentStore, embedder: Optional[OpenAIEmbedder] = None,
                 top_k: int = DEFAULT_TOP_K):
        self.store = store
        self.embedder = embedder
        self.top_k = top_k

    def retrieve(self, question: str, document_ids: Sequence[str], top_k: Optional[int] = None) -> List[Fragment]:
        """
        Return at most ``top_k`` fragments of the candidate documents.

        Args:
            question: The user's question
            document_ids: Documents in scope for the conversation
            top_k: Result cap (defaults to the retriever's)

        Returns:
            Fragments in tier order, deduplicated by id

        Raises:
            RetrievalError: if the fragment store itself fails
        """
        top_k = top_k if top_k is not None else self.top_k
        candidate_ids = list(dict.fromkeys(document_ids))
        if not candidate_ids:
            logger.info("No documents in scope, skipping retrieval")
            return []

        start_time = time.time()
        request = RetrievalRequest(
            question=question,
            document_ids=candidate_ids,
            top_k=top_k,
            embed_query=self.embedder.embed_query if self.embedder else None
        )

        try:
            with self.store.session() as session:
                results = run_tiers(session, request)
        except StoreError as e:
            raise RetrievalError(f"Fragment store unavailable: {e}") from e

        execution_time_ms = (time.time() - start_time) * 1000
        log_fragment_retrieval(
            audit_logger,
            question=question,
            document_ids=candidate_ids,
            fragment_ids=[f.id for f in results],
            tiers_used=request.tiers_used,
            execution_time_ms=execution_time_ms
        )
        logger.info(f"Retrieved {len(results)} fragments via {request.tiers_used}")
        return results
