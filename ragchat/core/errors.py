"""Exception taxonomy shared by the ingestion and chat paths."""


class RagChatError(Exception):
    pass


class UnsupportedFormat(RagChatError):
    def __init__(self, mime_type: str):
        super().__init__(f"Unsupported file type: {mime_type}")
        self.mime_type = mime_type


class ExtractionFailed(RagChatError):
    pass


class EmbeddingError(RagChatError):
    pass


class EmbeddingDimensionMismatch(EmbeddingError):
    """Provider returned vectors of the wrong size. Signals misconfiguration, never retried."""

    def __init__(self, expected: int, actual: int):
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}. "
            "Check embedding.model_name or embedding.vector_dim configuration."
        )
        self.expected = expected
        self.actual = actual


class EmptyConversation(RagChatError):
    pass


class InvalidStagePayload(RagChatError):
    pass


class GenerationError(RagChatError):
    pass


class NotFound(RagChatError):
    pass
