"""checkout_schema

Revision ID: 7b41c0de
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "7b41c0de"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.execute("""
    DO $$
    BEGIN
        IF NOT EXISTS (SELECT 1 FROM pg_type WHERE typname = 'userrole') THEN
            CREATE TYPE userrole AS ENUM ('ADMIN', 'LIBRARIAN', 'MEMBER');
        END IF;
    END$$;
    """)

    # --- users / books: owned by other services, only read here ---
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column(
            "role",
            postgresql.ENUM("ADMIN", "LIBRARIAN", "MEMBER", name="userrole", create_type=False),
            server_default="MEMBER",
            nullable=False,
        ),
        sa.Column(
            "created_at",
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "books",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("author", sa.String(255), nullable=False),
        sa.Column("isbn", sa.String(20), server_default="", nullable=False),
        sa.Column(
            "created_at",
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )

    # --- active_checkouts: at most one row per lent book ---
    op.create_table(
        "active_checkouts",
        sa.Column("checkout_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("book_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("borrower_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("checked_out_at", postgresql.TIMESTAMP(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["book_id"], ["books.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["borrower_id"], ["users.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("checkout_id"),
        sa.UniqueConstraint("book_id"),
    )
    op.create_index(
        "ix_active_checkouts_borrower",
        "active_checkouts",
        ["borrower_id", "checked_out_at"],
    )

    # --- returned_checkouts: append-only history ---
    op.create_table(
        "returned_checkouts",
        sa.Column("checkout_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("book_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("borrower_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("checked_out_at", postgresql.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("returned_at", postgresql.TIMESTAMP(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["book_id"], ["books.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["borrower_id"], ["users.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("checkout_id"),
    )
    op.create_index(
        "ix_returned_checkouts_book",
        "returned_checkouts",
        ["book_id", "returned_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_returned_checkouts_book", table_name="returned_checkouts")
    op.drop_table("returned_checkouts")
    op.drop_index("ix_active_checkouts_borrower", table_name="active_checkouts")
    op.drop_table("active_checkouts")
    op.drop_table("books")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")

    op.execute("DROP TYPE IF EXISTS userrole")
