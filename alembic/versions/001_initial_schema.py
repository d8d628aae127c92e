"""Initial schema — sets, cards, variants, price_history, sync_runs

Revision ID: 001_initial_schema
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- sets ---
    op.create_table(
        "sets",
        sa.Column("id", sa.String(), primary_key=True, comment="JustTCG set id"),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("game_id", sa.String(), nullable=False, comment="JustTCG game id"),
        sa.Column("release_date", sa.String(), nullable=True),
        sa.Column("set_value_usd", sa.DECIMAL(12, 2), nullable=True),
        sa.Column(
            "last_updated",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=True,
        ),
    )
    op.create_index("ix_sets_game_id", "sets", ["game_id"])

    # --- cards ---
    op.create_table(
        "cards",
        sa.Column("id", sa.String(), primary_key=True, comment="JustTCG card id"),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("set_id", sa.String(), sa.ForeignKey("sets.id"), nullable=False),
        sa.Column("rarity", sa.String(), nullable=True),
        sa.Column("number", sa.String(), nullable=True),
        sa.Column("tcgplayer_id", sa.String(), nullable=True),
        sa.Column("image_url", sa.String(), nullable=True),
    )
    op.create_index("ix_cards_set_rarity", "cards", ["set_id", "rarity"])

    # --- variants (id = {card_id}-{condition}-{printing}) ---
    op.create_table(
        "variants",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("card_id", sa.String(), sa.ForeignKey("cards.id"), nullable=False),
        sa.Column("condition", sa.String(), nullable=False),
        sa.Column("printing", sa.String(), nullable=False),
        sa.Column("current_price", sa.DECIMAL(10, 2), nullable=True),
        sa.Column("avg_7d", sa.DECIMAL(10, 2), nullable=True),
        sa.Column("avg_30d", sa.DECIMAL(10, 2), nullable=True),
        sa.Column("avg_90d", sa.DECIMAL(10, 2), nullable=True),
        sa.Column("change_24h", sa.DECIMAL(10, 2), nullable=True, comment="Percent change over 24h"),
        sa.Column("change_7d", sa.DECIMAL(10, 2), nullable=True),
        sa.Column("change_30d", sa.DECIMAL(10, 2), nullable=True),
        sa.Column("last_updated", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "card_id", "condition", "printing", name="uq_variants_card_condition_printing"
        ),
    )
    op.create_index("ix_variants_card_id", "variants", ["card_id"])

    # --- price_history (append-only) ---
    op.create_table(
        "price_history",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("variant_id", sa.String(), nullable=False),
        sa.Column("price", sa.DECIMAL(10, 2), nullable=False),
        sa.Column(
            "recorded_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index(
        "ix_price_history_variant_recorded", "price_history", ["variant_id", "recorded_at"]
    )

    # --- sync_runs ---
    op.create_table(
        "sync_runs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("kind", sa.String(), nullable=False, comment="'sets' or 'cards:<set_id>'"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column(
            "started_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("records_synced", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error", sa.Text(), nullable=True),
    )
    op.create_index("ix_sync_runs_kind_status", "sync_runs", ["kind", "status"])


def downgrade() -> None:
    op.drop_index("ix_sync_runs_kind_status", table_name="sync_runs")
    op.drop_table("sync_runs")
    op.drop_index("ix_price_history_variant_recorded", table_name="price_history")
    op.drop_table("price_history")
    op.drop_index("ix_variants_card_id", table_name="variants")
    op.drop_table("variants")
    op.drop_index("ix_cards_set_rarity", table_name="cards")
    op.drop_table("cards")
    op.drop_index("ix_sets_game_id", table_name="sets")
    op.drop_table("sets")
