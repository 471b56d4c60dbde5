from alembic import op
import sqlalchemy as sa


revision = "0001_create_library"
down_revision = None
branch_labels = None
depends_on = None

availability_status = sa.Enum("available", "checked_out", "purchased", name="availability_status")
episode_status = sa.Enum("checked_out", "returned", "purchased", name="episode_status")
OPEN_EPISODE = sa.text("status = 'checked_out'")


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_users_id", "users", ["id"])

    op.create_table(
        "books",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("google_book_id", sa.String(length=64), nullable=False, unique=True),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("author", sa.String(length=500)),
        sa.Column("cover_image_url", sa.String(length=1000)),
        sa.Column("description", sa.Text()),
        sa.Column("categories", sa.JSON()),
        sa.Column("availability_status", availability_status, nullable=False, server_default="available"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_books_id", "books", ["id"])

    op.create_table(
        "checkouts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("book_id", sa.Integer(), sa.ForeignKey("books.id"), nullable=False),
        sa.Column("checkout_date", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("return_date", sa.DateTime()),
        sa.Column("status", episode_status, nullable=False),
    )
    op.create_index("ix_checkouts_id", "checkouts", ["id"])
    op.create_index("ix_checkouts_user_status", "checkouts", ["user_id", "status"])
    op.create_index(
        "uq_checkouts_open_per_book",
        "checkouts",
        ["book_id"],
        unique=True,
        postgresql_where=OPEN_EPISODE,
        sqlite_where=OPEN_EPISODE,
    )

    op.create_table(
        "reviews",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("book_id", sa.Integer(), sa.ForeignKey("books.id"), nullable=False),
        sa.Column("rating", sa.SmallInteger(), nullable=False),
        sa.Column("review_text", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("rating BETWEEN 1 AND 5", name="ck_reviews_rating"),
    )
    op.create_index("ix_reviews_id", "reviews", ["id"])
    op.create_index("ix_reviews_book_id", "reviews", ["book_id"])

    op.create_table(
        "favorites",
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), primary_key=True),
        sa.Column("book_id", sa.Integer(), sa.ForeignKey("books.id"), primary_key=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("favorites")
    op.drop_index("ix_reviews_book_id", table_name="reviews")
    op.drop_index("ix_reviews_id", table_name="reviews")
    op.drop_table("reviews")
    op.drop_index("uq_checkouts_open_per_book", table_name="checkouts")
    op.drop_index("ix_checkouts_user_status", table_name="checkouts")
    op.drop_index("ix_checkouts_id", table_name="checkouts")
    op.drop_table("checkouts")
    op.drop_index("ix_books_id", table_name="books")
    op.drop_table("books")
    op.drop_index("ix_users_id", table_name="users")
    op.drop_table("users")
    bind = op.get_bind()
    episode_status.drop(bind, checkfirst=True)
    availability_status.drop(bind, checkfirst=True)
