from datetime import date, datetime
from typing import Optional

from sqlalchemy import CheckConstraint, Date, DateTime, ForeignKey, Index, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from reviewflow.db.base import Base, TimestampMixin


class Customer(TimestampMixin, Base):
    """Someone a business serviced and may ask for a review.

    ``phone`` is stored in E.164 when it parses so inbound STOP/START replies
    can be matched back to every customer sharing the number.
    """

    __tablename__ = "customers"
    __table_args__ = (
        Index("ix_customers_business_name_created_at", "business_id", "name", "created_at"),
        Index("ix_customers_business_email", "business_id", "email"),
        Index("ix_customers_business_phone", "business_id", "phone"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    business_id: Mapped[str] = mapped_column(ForeignKey("businesses.id"), index=True)
    name: Mapped[str] = mapped_column(String(120))
    phone: Mapped[Optional[str]] = mapped_column(String(40), index=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    service_type: Mapped[Optional[str]] = mapped_column(String(120))
    service_date: Mapped[Optional[date]] = mapped_column(Date)
    note: Mapped[Optional[str]] = mapped_column(String(255))

    consents: Mapped[list["CustomerConsent"]] = relationship(
        back_populates="customer", order_by="CustomerConsent.channel"
    )

    @property
    def display_name(self) -> str:
        return (self.name or "").strip() or "there"

    @property
    def first_name(self) -> str:
        return self.display_name.split(" ")[0]


class CustomerConsent(TimestampMixin, Base):
    """Opt-in state for one channel; a missing row means subscribed."""

    __tablename__ = "customer_consents"
    __table_args__ = (
        UniqueConstraint("business_id", "customer_id", "channel", name="uq_customer_consents_business_customer_channel"),
        CheckConstraint("channel IN ('email', 'sms')", name="ck_customer_consents_channel"),
        CheckConstraint("status IN ('subscribed', 'unsubscribed')", name="ck_customer_consents_status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    business_id: Mapped[str] = mapped_column(ForeignKey("businesses.id"), index=True)
    customer_id: Mapped[str] = mapped_column(ForeignKey("customers.id"), index=True)
    channel: Mapped[str] = mapped_column(String(30))
    status: Mapped[str] = mapped_column(String(20), default="subscribed", server_default="subscribed")
    # Who recorded the change: front_desk, sms_stop_reply, ...
    source: Mapped[Optional[str]] = mapped_column(String(60))
    note: Mapped[Optional[str]] = mapped_column(String(255))
    opted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    customer: Mapped[Customer] = relationship(back_populates="consents")
