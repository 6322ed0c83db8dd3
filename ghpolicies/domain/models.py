from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


REPOSITORY_STATUS_PENDING = "Pending"
REPOSITORY_STATUS_COMPLIANT = "Compliant"
REPOSITORY_STATUS_NON_COMPLIANT = "NonCompliant"

SCAN_STATUS_PENDING = "Pending"
SCAN_STATUS_IN_PROGRESS = "InProgress"
SCAN_STATUS_COMPLETED = "Completed"
SCAN_STATUS_FAILED = "Failed"

ACTION_STATUS_SUCCESS = "Success"
ACTION_STATUS_SKIPPED = "Skipped"
ACTION_STATUS_FAILED = "Failed"

# JSONB on Postgres, plain JSON elsewhere so tests can run on SQLite.
JsonColumn = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class Repository(Base):
    __tablename__ = "repositories"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # GitHub's numeric id is the stable identity; names change on rename/transfer.
    github_repository_id: Mapped[int] = mapped_column(BigInteger, unique=True, index=True)
    name: Mapped[str] = mapped_column(String)
    compliance_status: Mapped[str] = mapped_column(
        String, default=REPOSITORY_STATUS_PENDING, nullable=False
    )
    last_scanned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Policy(Base):
    __tablename__ = "policies"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    policy_key: Mapped[str] = mapped_column(String, unique=True, index=True)
    description: Mapped[str] = mapped_column(Text, default="")
    # Configured action identifiers in declaration order.
    actions_json: Mapped[list[Any]] = mapped_column(JsonColumn, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Scan(Base):
    __tablename__ = "scans"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    status: Mapped[str] = mapped_column(String, default=SCAN_STATUS_PENDING, index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Set when Completed; the compliance denominator for readers of this scan.
    repositories_scanned: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Short failure reason for operators; never carries credentials.
    error: Mapped[str | None] = mapped_column(Text, nullable=True)


class PolicyViolation(Base):
    __tablename__ = "policy_violations"
    __table_args__ = (
        UniqueConstraint("scan_id", "repository_id", "policy_id", name="uq_policy_violations_triple"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    scan_id: Mapped[str] = mapped_column(String, ForeignKey("scans.id", ondelete="CASCADE"), index=True)
    repository_id: Mapped[str] = mapped_column(
        String, ForeignKey("repositories.id", ondelete="CASCADE"), index=True
    )
    policy_id: Mapped[str] = mapped_column(String, ForeignKey("policies.id", ondelete="CASCADE"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ActionLog(Base):
    __tablename__ = "action_logs"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    repository_id: Mapped[str] = mapped_column(
        String, ForeignKey("repositories.id", ondelete="CASCADE"), index=True
    )
    policy_id: Mapped[str] = mapped_column(String, ForeignKey("policies.id", ondelete="CASCADE"), index=True)
    # Webhook-driven attempts have no persisted violation row.
    violation_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("policy_violations.id", ondelete="SET NULL"), nullable=True, index=True
    )
    action_type: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    details: Mapped[str] = mapped_column(Text, default="")
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
