"""Structured logging configuration and audit trail helpers."""

import logging
from typing import Any, Dict, List, Optional

import structlog
from structlog.stdlib import LoggerFactory


def configure_logging(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Configure structured logging with audit capabilities."""

    # Set log level
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]

    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        logger_factory=LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_audit_logger(component: str) -> structlog.BoundLogger:
    """Get a logger with audit context for a specific component."""
    logger = structlog.get_logger(component)
    return logger.bind(component=component, audit=True)


def log_ingestion_event(
    logger: structlog.BoundLogger,
    document_id: str,
    owner_id: str,
    name: str,
    lines: int,
    fragments_created: int,
    fragments_embedded: int,
    processing_time_ms: float
) -> None:
    """Log document ingestion for the audit trail."""
    logger.info(
        "document_ingested",
        document_id=document_id,
        owner_id=owner_id,
        name=name,
        lines=lines,
        fragments_created=fragments_created,
        fragments_embedded=fragments_embedded,
        processing_time_ms=processing_time_ms,
        event_type="document_ingestion"
    )


def log_fragment_retrieval(
    logger: structlog.BoundLogger,
    question: str,
    document_ids: List[str],
    fragment_ids: List[str],
    tiers_used: List[str],
    execution_time_ms: float
) -> None:
    """Log which fragments were used as grounding for a question."""
    logger.info(
        "fragments_retrieved",
        question=question,
        document_ids=document_ids,
        fragment_ids=fragment_ids,
        fragment_count=len(fragment_ids),
        tiers_used=tiers_used,
        execution_time_ms=execution_time_ms,
        event_type="fragment_retrieval"
    )


def log_answer_recorded(
    logger: structlog.BoundLogger,
    conversation_id: str,
    message_id: Optional[str],
    source_document_ids: List[str],
    fragment_ids: List[str],
    citations: List[Dict[str, Any]],
    generation_time_ms: float
) -> None:
    """Tie every citation of a stored answer back to its fragment."""
    logger.info(
        "answer_recorded",
        conversation_id=conversation_id,
        message_id=message_id,
        source_document_ids=source_document_ids,
        fragment_ids=fragment_ids,
        citations=citations,
        generation_time_ms=generation_time_ms,
        event_type="answer_generation"
    )
