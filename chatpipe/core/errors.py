from __future__ import annotations


class ChatpipeError(Exception):
    """Base error for chatpipe."""


class ProviderConfigError(ChatpipeError):
    """Missing or invalid provider configuration."""


class CounterStoreError(ChatpipeError):
    """Shared counter store (Redis) unavailable or returned garbage."""


class QuotaLookupError(ChatpipeError):
    """Plan limits or daily usage could not be read."""


class RetrievalError(ChatpipeError):
    """Retrieval layer failure."""


class RetrievalTimeoutError(RetrievalError):
    """Similarity search exceeded its time budget."""


class GenerationError(ChatpipeError):
    """Reply generation failure."""


class GenerationTimeoutError(GenerationError):
    """Reply generation exceeded its time budget."""


class DeliveryError(ChatpipeError):
    """Outbound delivery failure."""


class DeliveryTimeoutError(DeliveryError):
    """Outbound delivery exceeded its time budget."""


class PersistenceError(ChatpipeError):
    """Database layer failure."""


class ConversationResolutionError(PersistenceError):
    """Conversation could not be resolved or created."""


class PipelineInvariantError(ChatpipeError):
    """A pipeline step was reached without the clearances it requires."""


class EventInFlightError(ChatpipeError):
    """Another execution currently holds the processing lease for this event."""


class EmbeddingError(RetrievalError):
    """Query or document embedding failure."""
