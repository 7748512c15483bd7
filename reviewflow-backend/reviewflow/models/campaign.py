from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    true,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from reviewflow.db.base import Base, TimestampMixin


class CampaignSequence(TimestampMixin, Base):
    __tablename__ = "campaign_sequences"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    business_id: Mapped[str] = mapped_column(String(36), ForeignKey("businesses.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    # Mirrors business_id while is_default is true; unique so a business has one default.
    default_key: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())
    created_by_user_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("users.id"), nullable=True, index=True)
    steps: Mapped[list["CampaignStep"]] = relationship(
        back_populates="sequence",
        order_by="CampaignStep.step_number",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_campaign_sequences_business_active_created_at", "business_id", "is_active", "created_at"),
        UniqueConstraint("business_id", "name", name="uq_campaign_sequences_business_name"),
    )


class CampaignStep(TimestampMixin, Base):
    __tablename__ = "campaign_steps"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    sequence_id: Mapped[str] = mapped_column(String(36), ForeignKey("campaign_sequences.id"), nullable=False, index=True)
    step_number: Mapped[int] = mapped_column(Integer, nullable=False)
    delay_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    message_type: Mapped[str] = mapped_column(String(20), nullable=False)
    subject_template: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    body_template: Mapped[str] = mapped_column(String(4000), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())
    sequence: Mapped[CampaignSequence] = relationship(back_populates="steps")

    __table_args__ = (
        UniqueConstraint("sequence_id", "step_number", name="uq_campaign_steps_sequence_step_number"),
        CheckConstraint("step_number >= 1", name="ck_campaign_steps_step_number_positive"),
        CheckConstraint("delay_hours >= 0", name="ck_campaign_steps_delay_hours_non_negative"),
    )


class CampaignExecution(TimestampMixin, Base):
    __tablename__ = "campaign_executions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    business_id: Mapped[str] = mapped_column(String(36), ForeignKey("businesses.id"), nullable=False, index=True)
    review_request_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("review_requests.id"), nullable=False, index=True
    )
    sequence_id: Mapped[str] = mapped_column(String(36), ForeignKey("campaign_sequences.id"), nullable=False, index=True)
    current_step: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active", server_default="active")
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_step_fired_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    # Null once terminal; the run-due pass selects on it.
    next_fire_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    stop_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # Bumped by every step claim; a stale value means another worker owns the step.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    # Equals review_request_id while active, null once terminal.
    active_key: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, unique=True)
    __table_args__ = (
        Index("ix_campaign_executions_status_next_fire_at", "status", "next_fire_at"),
        Index("ix_campaign_executions_business_status_created_at", "business_id", "status", "created_at"),
    )


class CampaignStepExecution(TimestampMixin, Base):
    __tablename__ = "campaign_step_executions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    execution_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("campaign_executions.id"), nullable=False, index=True
    )
    step_id: Mapped[str] = mapped_column(String(36), ForeignKey("campaign_steps.id"), nullable=False, index=True)
    step_number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", server_default="pending")
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_error: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    __table_args__ = (
        UniqueConstraint("execution_id", "step_id", name="uq_campaign_step_executions_execution_step"),
    )
