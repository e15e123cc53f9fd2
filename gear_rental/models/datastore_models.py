from sqlalchemy import JSON, Column, DateTime, Index, Integer, String
from sqlalchemy.sql import func

from db.base import Base


class Entity(Base):
    """One document of any kind.

    Rentals and gear are addressed by the generated ``EntityID``; users and
    OAuth states by an externally supplied ``KeyName``.
    """

    __tablename__ = "Entities"
    __table_args__ = (
        Index("ix_entities_kind_entityid", "Kind", "EntityID"),
    )

    EntityID = Column(Integer, primary_key=True, autoincrement=True)
    Kind = Column(String(64), nullable=False)
    KeyName = Column(String(255))
    Payload = Column(JSON, nullable=False)
    Version = Column(Integer, nullable=False, default=1)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())


# Unique per kind for named rows only; unnamed rows share a NULL KeyName.
_NAMED_ROWS = Entity.KeyName.isnot(None)
Index(
    "uq_entities_kind_keyname",
    Entity.Kind,
    Entity.KeyName,
    unique=True,
    mssql_where=_NAMED_ROWS,
    postgresql_where=_NAMED_ROWS,
    sqlite_where=_NAMED_ROWS,
)
