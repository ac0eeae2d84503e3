import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, Index
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class ActiveCheckout(Base):
    """A book currently lent out. Inserted on checkout, deleted on return."""

    __tablename__ = "active_checkouts"

    __table_args__ = (
        Index("ix_active_checkouts_borrower", "borrower_id", "checked_out_at"),
    )

    checkout_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    # Unique as a last line of defence; the one-active-row-per-book rule is
    # enforced by the serializable checkout transaction.
    book_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("books.id", ondelete="RESTRICT"),
        unique=True,
        nullable=False,
    )
    borrower_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )
    checked_out_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<ActiveCheckout id={self.checkout_id} book_id={self.book_id}>"


class ReturnedCheckout(Base):
    """Append-only archive of completed loans."""

    __tablename__ = "returned_checkouts"

    __table_args__ = (Index("ix_returned_checkouts_book", "book_id", "returned_at"),)

    checkout_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    book_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("books.id", ondelete="RESTRICT"),
        nullable=False,
    )
    borrower_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )
    checked_out_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    returned_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<ReturnedCheckout id={self.checkout_id} book_id={self.book_id}>"
