# app/rag/__init__.py
from .embeddings import EmbeddingClient, get_embedding_client
from .history import build_history, load_conversation_messages
from .indexer import index_messages, index_messages_in_session
from .retriever import RetrievedMessage, search_similar_messages

__all__ = [
    "EmbeddingClient",
    "RetrievedMessage",
    "build_history",
    "get_embedding_client",
    "index_messages",
    "index_messages_in_session",
    "load_conversation_messages",
    "search_similar_messages",
]
