"""Data models shared by ingestion, retrieval and answer streaming."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class TextSpan(BaseModel):
    """A piece of normalized text produced by the fragmenter."""
    content: str
    start: int
    end: int


class Fragment(BaseModel):
    """A bounded, addressable slice of a document's text."""
    id: str
    document_id: str
    content: str
    start_offset: int = 0
    end_offset: int = 0
    page: Optional[int] = None
    embedding: Optional[List[float]] = None


class Document(BaseModel):
    """Document metadata plus its addressable markup."""
    id: str
    owner_id: str
    name: str
    raw_text: str = ""
    addressable_markup: str = ""
    raw_path: Optional[str] = None
    created_at: Optional[datetime] = None


class IngestionResult(BaseModel):
    """What an ingestion run hands back to the caller."""
    document_id: str
    addressable_markup: str
    fragments: List[Fragment] = []


class Citation(BaseModel):
    """A citation span found in generated answer text."""
    cited_text: str
    fragment_id: Optional[str] = None
    document_id: Optional[str] = None
    page_number: Optional[int] = None
    ordinal: int


class ScrollTarget(BaseModel):
    """Block that holds the first highlighted match."""
    block_index: int
    fragment_id: Optional[str] = None


class HighlightResult(BaseModel):
    markup: str
    scroll_target: Optional[ScrollTarget] = None
    matched: bool = False


class Role(str, Enum):
    USER = "USER"
    ASSISTANT = "ASSISTANT"


class Message(BaseModel):
    id: str
    conversation_id: str
    role: Role
    content: str
    created_at: Optional[datetime] = None
    attached_document_ids: List[str] = []
    source_document_ids: List[str] = []


class Conversation(BaseModel):
    id: str
    owner_id: str
    title: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    message_count: int = 0
    messages: List[Message] = []


class StreamEventType(str, Enum):
    TEXT = "text"
    CONVERSATION_ID = "conversation_id"
    ERROR = "error"
    FINISH = "finish"


class StreamEvent(BaseModel):
    """One event of the answer stream."""
    type: StreamEventType
    delta: Optional[str] = None
    conversation_id: Optional[str] = Field(default=None, alias="chatId")
    error_text: Optional[str] = Field(default=None, alias="errorText")
    transient: bool = False

    model_config = {"populate_by_name": True}
