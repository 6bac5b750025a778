"""Conversation management and answer-turn orchestration."""

import logging
from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence

from .answer import AnswerStreamer, GENERATION_FAILED, store_recorder
from .config import Settings, get_settings
from .embed import OpenAIEmbedder
from .errors import RetrievalError
from .models import Conversation, Message, Role, StreamEvent, StreamEventType
from .retrieve import HybridRetriever
from .store import DocumentStore

logger = logging.getLogger(__name__)

TITLE_LENGTH = 50


def documents_in_scope(history: Sequence[Message], attached_document_ids: Sequence[str]) -> List[str]:
    """Documents attached anywhere in the conversation plus the new ones, first-seen order."""
    ids: List[str] = []
    for message in history:
        ids.extend(message.attached_document_ids)
    ids.extend(attached_document_ids)
    return list(dict.fromkeys(ids))


@dataclass
class PreparedTurn:
    """State fixed before streaming starts."""
    conversation: Conversation
    question: str
    history: List[Message]
    document_ids: List[str]


class ConversationService:
    """Owner-scoped chats and the question/answer turn."""

    def __init__(
        self,
        store: DocumentStore,
        settings: Optional[Settings] = None,
        retriever: Optional[HybridRetriever] = None,
        streamer: Optional[AnswerStreamer] = None
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.retriever = retriever or HybridRetriever(
            store, OpenAIEmbedder(self.settings), top_k=self.settings.retrieval_top_k
        )
        self.streamer = streamer or AnswerStreamer(self.settings, recorder=store_recorder(store))

    def list_chats(self, owner_id: str) -> List[Conversation]:
        return self.store.list_conversations(owner_id)

    def create_chat(self, owner_id: str, title: Optional[str] = None) -> Conversation:
        conversation = self.store.create_conversation(owner_id, title)
        logger.info(f"Created conversation {conversation.id} for {owner_id}")
        return conversation

    def get_chat(self, conversation_id: str, owner_id: str) -> Conversation:
        return self.store.get_conversation(conversation_id, owner_id, with_messages=True)

    def delete_chat(self, conversation_id: str, owner_id: str) -> None:
        self.store.delete_conversation(conversation_id, owner_id)
        logger.info(f"Deleted conversation {conversation_id}")

    def prepare_turn(
        self,
        owner_id: str,
        question: str,
        conversation_id: Optional[str] = None,
        attached_document_ids: Sequence[str] = ()
    ) -> PreparedTurn:
        """
        Validate and record the user's side of a turn.

        Raises:
            ConfigurationError: upstream credentials are missing (nothing is touched)
            NotFoundError: the conversation or an attached document does not
                exist or belongs to someone else
        """
        self.settings.require_credentials()

        conversation = self.store.get_conversation(conversation_id, owner_id) if conversation_id else None

        attached = list(dict.fromkeys(attached_document_ids))
        for document_id in attached:
            self.store.get_document(document_id, owner_id=owner_id)

        if conversation is None:
            conversation = self.create_chat(owner_id, question[:TITLE_LENGTH])

        # History is read before the new message lands so it only holds earlier turns
        history = self.store.list_messages(conversation.id)
        self.store.add_message(conversation.id, Role.USER, question, attached_document_ids=attached)

        return PreparedTurn(
            conversation=conversation,
            question=question,
            history=history,
            document_ids=documents_in_scope(history, attached)
        )

    def stream_turn(self, turn: PreparedTurn) -> Iterator[StreamEvent]:
        """Retrieve grounding fragments, then stream the answer."""
        try:
            fragments = self.retriever.retrieve(turn.question, turn.document_ids)
        except RetrievalError as e:
            logger.error(f"Retrieval failed for conversation {turn.conversation.id}: {e}")
            yield StreamEvent(type=StreamEventType.ERROR, error_text=GENERATION_FAILED)
            return

        yield from self.streamer.answer(turn.question, turn.history, fragments, turn.conversation.id)

    def ask(
        self,
        owner_id: str,
        question: str,
        conversation_id: Optional[str] = None,
        attached_document_ids: Sequence[str] = ()
    ) -> Iterator[StreamEvent]:
        """Prepare and stream a turn in one call."""
        turn = self.prepare_turn(owner_id, question, conversation_id, attached_document_ids)
        return self.stream_turn(turn)
