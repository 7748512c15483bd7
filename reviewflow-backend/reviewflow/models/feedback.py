from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, false, func
from sqlalchemy.orm import Mapped, mapped_column

from reviewflow.db.base import Base


class FeedbackGateSubmission(Base):
    __tablename__ = "feedback_gate_submissions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    business_id: Mapped[str] = mapped_column(String(36), ForeignKey("businesses.id"), nullable=False, index=True)
    # One gate submission per customer.
    customer_id: Mapped[str] = mapped_column(String(36), ForeignKey("customers.id"), nullable=False, unique=True)
    review_request_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("review_requests.id"), nullable=True, index=True
    )
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    comment: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True)
    decision: Mapped[str] = mapped_column(String(20), nullable=False)
    platform: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    platform_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_feedback_gate_submissions_business_created_at", "business_id", "created_at"),
    )


class PrivateFeedback(Base):
    __tablename__ = "private_feedback"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    business_id: Mapped[str] = mapped_column(String(36), ForeignKey("businesses.id"), nullable=False, index=True)
    customer_id: Mapped[str] = mapped_column(String(36), ForeignKey("customers.id"), nullable=False, index=True)
    submission_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("feedback_gate_submissions.id"), nullable=True, index=True
    )
    comment: Mapped[str] = mapped_column(String(4000), nullable=False)
    contact_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
