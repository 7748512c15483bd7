from typing import Optional

from sqlalchemy import CheckConstraint, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from reviewflow.db.base import Base, TimestampMixin


class Business(TimestampMixin, Base):
    """A service business and how its review requests are routed.

    Ratings at or above ``public_rating_threshold`` are sent to the configured
    public platforms; lower ratings go to private feedback.
    """

    __tablename__ = "businesses"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    owner_user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id"), index=True, unique=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    website: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Review routing configuration.
    public_rating_threshold: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=4,
        server_default="4",
    )
    google_review_short_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    google_place_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    facebook_page_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    yelp_page_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "public_rating_threshold BETWEEN 1 AND 5",
            name="ck_businesses_public_rating_threshold",
        ),
    )
