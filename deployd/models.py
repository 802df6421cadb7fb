"""
Database models for deployd.

Uses Peewee ORM with SQLite. Keeps the history of pipeline runs of one
deployment root; only the Processor daemon writes to it.
"""

import os
from datetime import datetime
from pathlib import Path

from peewee import (
    CharField,
    DatabaseProxy,
    DateTimeField,
    Model,
    SqliteDatabase,
    TextField,
)

database = DatabaseProxy()


def initialize_db(db_path: Path | str):
    """Initialize database connection and create tables."""
    os.makedirs(os.path.dirname(str(db_path)), exist_ok=True)
    db = SqliteDatabase(
        str(db_path),
        pragmas={
            "journal_mode": "wal",
            "cache_size": -16 * 1000,
            "busy_timeout": 5000,
        },
    )
    database.initialize(db)
    database.create_tables([PipelineRecord], safe=True)
    return db


class BaseModel(Model):
    """Base model with common configuration."""

    class Meta:
        database = database


class PipelineRecord(BaseModel):
    """Persisted state of a pipeline run."""

    id = CharField(primary_key=True)  # Sortable UTC timestamp
    source_ref = CharField(null=True)
    repository_path = CharField(null=True)
    state = CharField(default="queued", index=True)
    step = CharField(null=True)
    error = TextField(null=True)
    commit_hash = CharField(null=True)
    commit_message = TextField(null=True)
    started_at = DateTimeField(default=datetime.now, index=True)
    finished_at = DateTimeField(null=True)

    class Meta:
        table_name = "pipeline_runs"

    @classmethod
    def recent(cls, limit: int = 10) -> list["PipelineRecord"]:
        return list(cls.select().order_by(cls.id.desc()).limit(limit))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source_ref": self.source_ref,
            "repository_path": self.repository_path,
            "state": self.state,
            "step": self.step,
            "error": self.error,
            "commit_hash": self.commit_hash,
            "commit_message": self.commit_message,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": (
                (self.finished_at or datetime.now()) - self.started_at
            ).total_seconds()
            if self.started_at
            else None,
        }
