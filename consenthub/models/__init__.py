"""ORM models package.

Import all models here so that SQLAlchemy's metadata is fully populated
when Alembic runs autogenerate.
"""

from consenthub.models.dsar_request import (
    DSARCommunication,
    DSARProcessingNote,
    DSARRequest,
    DSARStatusChange,
)

__all__ = [
    "DSARRequest",
    "DSARProcessingNote",
    "DSARCommunication",
    "DSARStatusChange",
]
