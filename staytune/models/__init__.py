"""ORM models package.

Import all models here so that SQLAlchemy's metadata is fully populated
when Alembic runs autogenerate. The order of imports matters for foreign
key resolution.
"""

from staytune.models.tenant import Tenant
from staytune.models.conversation import Conversation, Message, MessageRole
from staytune.models.feedback import FeedbackReaction, MessageFeedback
from staytune.models.provider import Provider, ProviderPreference
from staytune.models.vector_store import TenantVectorStore
from staytune.models.training import ExampleSource, TrainingExample, VectorStatus
from staytune.models.fine_tuning import (
    IN_FLIGHT_STATUSES,
    TERMINAL_STATUSES,
    FineTuneJob,
    FineTuneModel,
    FineTuneModelStatus,
    FineTuneStatus,
)

__all__ = [
    "Tenant",
    "Conversation",
    "Message",
    "MessageRole",
    "MessageFeedback",
    "FeedbackReaction",
    "Provider",
    "ProviderPreference",
    "TenantVectorStore",
    "TrainingExample",
    "ExampleSource",
    "VectorStatus",
    "FineTuneJob",
    "FineTuneModel",
    "FineTuneStatus",
    "FineTuneModelStatus",
    "IN_FLIGHT_STATUSES",
    "TERMINAL_STATUSES",
]
