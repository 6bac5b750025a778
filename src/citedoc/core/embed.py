"""OpenAI embedding helpers and the fragment indexer (batched, failure tolerant)."""

import time
import logging
from typing import List, Optional, Sequence

import openai

from .config import Settings, get_settings
from .errors import EmbeddingError
from .models import Fragment

logger = logging.getLogger(__name__)


class OpenAIEmbedder:
    """Thin wrapper around the OpenAI embeddings endpoint."""

    def __init__(self, settings: Optional[Settings] = None, client: Optional[openai.OpenAI] = None):
        self.settings = settings or get_settings()
        self._client = client

    @property
    def client(self) -> openai.OpenAI:
        if self._client is None:
            self.settings.require_credentials()
            self._client = openai.OpenAI(api_key=self.settings.openai_api_key)
        return self._client

    def embed_texts(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for a batch of texts.

        Raises:
            EmbeddingError: if the request fails or returns the wrong number of vectors
        """
        if not texts:
            return []
        try:
            response = self.client.embeddings.create(
                model=self.settings.embed_model,
                input=texts,
                dimensions=self.settings.embed_dimensions
            )
        except openai.OpenAIError as e:
            raise EmbeddingError(f"Embedding request failed: {e}") from e

        embeddings = [item.embedding for item in response.data]
        if len(embeddings) != len(texts):
            raise EmbeddingError(
                f"Expected {len(texts)} embeddings, got {len(embeddings)}"
            )
        return embeddings

    def embed_query(self, text: str) -> List[float]:
        """Embed a single question."""
        return self.embed_texts([text])[0]


class FragmentIndexer:
    """Compute fragment embeddings in paced batches and persist them."""

    def __init__(self, embedder: OpenAIEmbedder, store=None, settings: Optional[Settings] = None):
        self.embedder = embedder
        self.store = store
        self.settings = settings or embedder.settings

    def embed(self, fragments: Sequence[Fragment], document_title: str) -> List[Optional[List[float]]]:
        """
        Embed fragments batch by batch.

        A failed batch marks each of its fragments with ``None`` instead of
        aborting the document.

        Args:
            fragments: Fragments in document order
            document_title: Title of the owning document (for logging)

        Returns:
            One optional embedding per fragment, in fragment order
        """
        batch_size = self.settings.embed_batch_size
        embeddings: List[Optional[List[float]]] = []

        for i in range(0, len(fragments), batch_size):
            batch = fragments[i:i + batch_size]
            logger.info(
                f"Embedding batch {i // batch_size + 1} of '{document_title}': {len(batch)} fragments"
            )
            try:
                embeddings.extend(self.embedder.embed_texts([f.content for f in batch]))
            except EmbeddingError as e:
                logger.warning(f"Embedding batch failed, fragments stay keyword-only: {e}")
                embeddings.extend([None] * len(batch))

            if i + batch_size < len(fragments):
                time.sleep(self.settings.embed_batch_pause)

        return embeddings

    def index(self, document_id: str, fragments: Sequence[Fragment], document_title: str) -> List[Fragment]:
        """Embed fragments and durably write them (with possibly null vectors)."""
        embeddings = self.embed(fragments, document_title)
        indexed = [
            fragment.model_copy(update={"embedding": embedding})
            for fragment, embedding in zip(fragments, embeddings)
        ]
        if self.store is not None:
            self.store.replace_fragments(document_id, indexed)

        embedded = sum(1 for f in indexed if f.embedding is not None)
        logger.info(f"Indexed {len(indexed)} fragments for {document_id} ({embedded} with embeddings)")
        return indexed
