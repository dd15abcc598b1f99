"""
SQLAlchemy models for build job records.
"""
from sqlalchemy import Column, Text, Integer, Index, ForeignKey
from sqlalchemy.orm import relationship

from appbuilder.db.database import Base


class Build(Base):
    """SQLite model for build jobs."""
    __tablename__ = "builds"

    id = Column(Text, primary_key=True, index=True)
    state = Column(Text, nullable=False, index=True)
    source_url = Column(Text, nullable=False)
    app_name = Column(Text, nullable=False)
    app_config = Column(Text, nullable=False)  # JSON string
    workspace_path = Column(Text, nullable=False)
    log_path = Column(Text, nullable=False)
    container_id = Column(Text, nullable=True)  # Cleared after teardown
    exit_code = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(Text, nullable=False, index=True)  # ISO timestamp
    started_at = Column(Text, nullable=True)
    completed_at = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    events = relationship(
        "BuildEvent",
        back_populates="build",
        cascade="all, delete-orphan",
        order_by="BuildEvent.sequence",
    )

    __table_args__ = (
        Index("ix_builds_state_created", "state", "created_at"),
    )


class BuildEvent(Base):
    """One state transition of a build, kept for observability."""
    __tablename__ = "build_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    build_id = Column(Text, ForeignKey("builds.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    state = Column(Text, nullable=False)
    detail = Column(Text, nullable=True)
    created_at = Column(Text, nullable=False)

    build = relationship("Build", back_populates="events")
