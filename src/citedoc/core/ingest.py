"""Text ingest pipeline: object store -> document row -> fragment -> align -> embed -> persist (PG)."""

import hashlib
import time
import logging
from pathlib import Path
from typing import List, Optional, Tuple

from .align import align_lines
from .config import Settings, get_settings
from .embed import FragmentIndexer, OpenAIEmbedder
from .errors import IngestionError
from .fragment import fragment_id, fragment_text, normalize_lines
from .logging_config import get_audit_logger, log_ingestion_event
from .models import Document, Fragment, IngestionResult
from .store import DocumentStore

# Configure logging
logger = logging.getLogger(__name__)
audit_logger = get_audit_logger("ingestion")

SUPPORTED_SUFFIXES = {".txt", ".md"}


def calculate_sha256(data: bytes) -> str:
    """Calculate SHA256 hash of raw content."""
    return hashlib.sha256(data).hexdigest()


def document_id_for(owner_id: str, raw_text: str) -> str:
    """Deterministic document id, so re-ingesting unchanged text is idempotent."""
    digest = hashlib.sha256(f"{owner_id}\x00{raw_text}".encode("utf-8")).hexdigest()
    return f"doc_{digest[:16]}"


def save_to_object_store(data: bytes, sha256: str, object_store_dir: Path,
                         suffix: str = ".txt") -> Tuple[Path, bool]:
    """
    Save the raw artifact to the object store using SHA256 as filename.

    Returns:
        The artifact path, and whether this call created the file
    """
    object_store_dir.mkdir(parents=True, exist_ok=True)

    dest_path = object_store_dir / f"{sha256}{suffix}"

    if not dest_path.exists():
        dest_path.write_bytes(data)
        logger.info(f"Saved raw artifact to object store: {dest_path}")
        return dest_path, True

    logger.info(f"Raw artifact already exists in object store: {dest_path}")
    return dest_path, False


def remove_from_object_store(path: Optional[Path]) -> None:
    if path is None:
        return
    try:
        path.unlink(missing_ok=True)
        logger.info(f"Removed raw artifact {path}")
    except OSError as e:
        logger.error(f"Could not remove raw artifact {path}: {e}")


def build_fragments(document_id: str, joined_text: str) -> List[Fragment]:
    """Fragment normalized text and assign deterministic ids."""
    return [
        Fragment(
            id=fragment_id(span.content, ordinal, document_id),
            document_id=document_id,
            content=span.content,
            start_offset=span.start,
            end_offset=span.end
        )
        for ordinal, span in enumerate(fragment_text(joined_text))
    ]


class IngestionPipeline:
    """Turn a document's plain text into stored, embedded, addressable fragments."""

    def __init__(self, store: DocumentStore, indexer: Optional[FragmentIndexer] = None,
                 settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()
        self.indexer = indexer or FragmentIndexer(
            OpenAIEmbedder(self.settings), store=store, settings=self.settings
        )

    def ingest_text(self, name: str, raw_text: str, owner_id: str) -> IngestionResult:
        """
        Ingest one document's extracted text.

        Args:
            name: Display name of the document
            raw_text: Plain text of the document
            owner_id: Identity of the uploading user

        Returns:
            IngestionResult with the document id, markup and fragments

        Raises:
            IngestionError: if any step fails; a raw artifact or document row
                created by this call is removed first, earlier ones are kept
        """
        start_time = time.time()
        document_id = document_id_for(owner_id, raw_text)
        logger.info(f"Ingesting document '{name}' as {document_id}")

        raw_bytes = raw_text.encode("utf-8")
        suffix = Path(name).suffix.lower() if Path(name).suffix.lower() in SUPPORTED_SUFFIXES else ".txt"
        created_path = None
        document_created = False

        try:
            raw_path, artifact_created = save_to_object_store(
                raw_bytes, calculate_sha256(raw_bytes), self.settings.object_store_path, suffix
            )
            if artifact_created:
                created_path = raw_path

            document_created = self.store.upsert_document(Document(
                id=document_id,
                owner_id=owner_id,
                name=name,
                raw_text=raw_text,
                raw_path=str(raw_path)
            ))

            lines, joined_text = normalize_lines(raw_text)
            fragments = build_fragments(document_id, joined_text)

            markup = align_lines(lines, joined_text, fragments, document_id)
            self.store.update_markup(document_id, markup)

            indexed = self.indexer.index(document_id, fragments, name)

        except Exception as e:
            logger.error(f"Failed to ingest '{name}': {e}")
            remove_from_object_store(created_path)
            if document_created:
                self._discard_document(document_id)
            raise IngestionError(f"Ingestion of '{name}' failed: {e}") from e

        processing_time_ms = (time.time() - start_time) * 1000
        log_ingestion_event(
            audit_logger,
            document_id=document_id,
            owner_id=owner_id,
            name=name,
            lines=len(lines),
            fragments_created=len(indexed),
            fragments_embedded=sum(1 for f in indexed if f.embedding is not None),
            processing_time_ms=processing_time_ms
        )
        logger.info(f"Successfully ingested '{name}': {len(indexed)} fragments, {len(lines)} lines")

        return IngestionResult(
            document_id=document_id,
            addressable_markup=markup,
            fragments=[f.model_copy(update={"embedding": None}) for f in indexed]
        )

    def ingest_file(self, path: Path, owner_id: str) -> IngestionResult:
        """Ingest a plain-text file from disk."""
        if path.suffix.lower() not in SUPPORTED_SUFFIXES:
            raise IngestionError(f"Unsupported file type: {path.suffix or path.name}")
        try:
            raw_text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise IngestionError(f"Could not read {path}: {e}") from e
        return self.ingest_text(path.name, raw_text, owner_id)

    def ingest_directory(self, directory_path: Path, owner_id: str) -> List[IngestionResult]:
        """
        Ingest every supported file in a directory.

        A failing file is logged and skipped; the others still complete.
        """
        results = []
        files = sorted(p for p in directory_path.iterdir() if p.suffix.lower() in SUPPORTED_SUFFIXES)

        if not files:
            logger.warning(f"No text files found in {directory_path}")
            return results

        logger.info(f"Found {len(files)} text files to ingest")

        for path in files:
            try:
                results.append(self.ingest_file(path, owner_id))
            except IngestionError as e:
                logger.error(f"Failed to ingest {path}: {e}")
                continue

        logger.info(f"Completed ingestion: {len(results)}/{len(files)} files processed")
        return results

    def _discard_document(self, document_id: str) -> None:
        try:
            self.store.delete_document(document_id)
        except Exception as e:
            logger.error(f"Cleanup of document {document_id} failed: {e}")
