"""State persistence layer using PostgreSQL (SQLite for local use)."""

from zeus_core.state.database import get_engine, get_session, get_session_factory
from zeus_core.state.repository import (
    AccountRepository,
    GoogleCredentialRepository,
    OutcomeRecordRepository,
    ProviderConnectionRepository,
)
from zeus_core.state.tables import OutcomeStatus

__all__ = [
    "AccountRepository",
    "GoogleCredentialRepository",
    "OutcomeRecordRepository",
    "OutcomeStatus",
    "ProviderConnectionRepository",
    "get_engine",
    "get_session",
    "get_session_factory",
]
