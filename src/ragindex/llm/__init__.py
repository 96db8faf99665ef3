"""Chat-completion clients used for retrieval-augmented answers."""

from ragindex.llm.chat import ChatEndpointClient, ChatModel, create_chat_model

__all__ = ["ChatEndpointClient", "ChatModel", "create_chat_model"]
