"""FastAPI dependencies shared by the route modules.

Overridden in tests through ``app.dependency_overrides``.
"""

from __future__ import annotations

from policyguard.config import get_settings
from policyguard.db.session import get_sessionmaker
from policyguard.repositories.processing_store import SqlAlchemyProcessingStore
from policyguard.services.storage import RedactedTextStorage


def get_processing_store() -> SqlAlchemyProcessingStore:
    return SqlAlchemyProcessingStore(get_sessionmaker())


def get_redacted_storage() -> RedactedTextStorage:
    return RedactedTextStorage.from_settings(get_settings())
