"""SQLModel ORM tables for task and agent storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_ready_order", "status", "priority", "created_at"),)

    task_id: str = Field(primary_key=True)
    title: str
    description: str = Field(sa_column=Column(Text, nullable=False))
    agent_type: str = Field(index=True)
    dependencies_json: str = Field(
        default="[]",
        sa_column=Column(Text, nullable=False, server_default="[]"),
    )
    priority: int = 0
    status: str = Field(index=True)
    metadata_json: str = Field(
        default="{}",
        sa_column=Column(Text, nullable=False, server_default="{}"),
    )
    assigned_agent: str | None = None
    result_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    metrics_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    assigned_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class TaskDependencyRow(SQLModel, table=True):
    __tablename__ = "task_dependencies"  # type: ignore[bad-override]

    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    depends_on: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            primary_key=True,
            index=True,
        ),
    )


class AgentRow(SQLModel, table=True):
    __tablename__ = "agents"  # type: ignore[bad-override]

    agent_id: str = Field(primary_key=True)
    agent_type: str = Field(index=True)
    capabilities_json: str = Field(
        default="[]",
        sa_column=Column(Text, nullable=False, server_default="[]"),
    )
    session_id: str | None = None
    metadata_json: str = Field(
        default="{}",
        sa_column=Column(Text, nullable=False, server_default="{}"),
    )
    status: str = Field(index=True)
    current_task: str | None = None
    metrics_json: str = Field(
        default="{}",
        sa_column=Column(Text, nullable=False, server_default="{}"),
    )
    registered_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
