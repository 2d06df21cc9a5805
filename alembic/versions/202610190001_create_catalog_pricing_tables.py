"""create catalog product and price tier tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 00:00:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


# Runs at commit time, after every statement of the transaction, so a replace
# that deletes and reinserts a product's tiers is only checked in its final state.
_TIER_CHECK_FUNCTION = """
CREATE OR REPLACE FUNCTION validate_product_price_tiers() RETURNS trigger AS $$
DECLARE
    target_product uuid;
    unbounded_count integer;
BEGIN
    IF TG_OP = 'DELETE' THEN
        target_product := OLD.product_id;
    ELSE
        target_product := NEW.product_id;
    END IF;

    SELECT count(*) INTO unbounded_count
    FROM product_price_tiers
    WHERE product_id = target_product AND max_quantity IS NULL;

    IF unbounded_count > 1 THEN
        RAISE EXCEPTION 'price tiers for product % have more than one unbounded tier', target_product
            USING ERRCODE = 'check_violation';
    END IF;

    IF EXISTS (
        SELECT 1
        FROM product_price_tiers a
        JOIN product_price_tiers b
          ON a.product_id = b.product_id AND a.id < b.id
        WHERE a.product_id = target_product
          AND a.min_quantity <= COALESCE(b.max_quantity, 2147483647)
          AND b.min_quantity <= COALESCE(a.max_quantity, 2147483647)
    ) THEN
        RAISE EXCEPTION 'price tiers for product % overlap', target_product
            USING ERRCODE = 'check_violation';
    END IF;

    RETURN NULL;
END;
$$ LANGUAGE plpgsql
"""

_TIER_CHECK_TRIGGER = """
CREATE CONSTRAINT TRIGGER trg_product_price_tiers_valid
AFTER INSERT OR UPDATE OR DELETE ON product_price_tiers
DEFERRABLE INITIALLY DEFERRED
FOR EACH ROW EXECUTE FUNCTION validate_product_price_tiers()
"""


def upgrade() -> None:
    op.create_table(
        "catalog_product",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("seller_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=True),
        sa.Column("discounted_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("has_tiered_pricing", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_catalog_product_seller", "catalog_product", ["seller_id"], unique=False)
    op.create_index("ix_catalog_product_has_tiered_pricing", "catalog_product", ["has_tiered_pricing"], unique=False)

    op.create_table(
        "product_price_tiers",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("product_id", sa.Uuid(), nullable=False),
        sa.Column("min_quantity", sa.Integer(), nullable=False),
        sa.Column("max_quantity", sa.Integer(), nullable=True),
        sa.Column("unit_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("discounted_unit_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("min_quantity > 0", name="ck_product_price_tiers_min_positive"),
        sa.CheckConstraint(
            "max_quantity IS NULL OR max_quantity > min_quantity",
            name="ck_product_price_tiers_max_above_min",
        ),
        sa.CheckConstraint("unit_price > 0", name="ck_product_price_tiers_unit_price_positive"),
        sa.CheckConstraint(
            "discounted_unit_price IS NULL OR (discounted_unit_price > 0 AND discounted_unit_price < unit_price)",
            name="ck_product_price_tiers_discount_range",
        ),
        sa.ForeignKeyConstraint(["product_id"], ["catalog_product.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_product_price_tiers_product",
        "product_price_tiers",
        ["product_id", "min_quantity"],
        unique=False,
    )

    if op.get_bind().dialect.name == "postgresql":
        op.execute(_TIER_CHECK_FUNCTION)
        op.execute(_TIER_CHECK_TRIGGER)


def downgrade() -> None:
    if op.get_bind().dialect.name == "postgresql":
        op.execute("DROP TRIGGER IF EXISTS trg_product_price_tiers_valid ON product_price_tiers")
        op.execute("DROP FUNCTION IF EXISTS validate_product_price_tiers()")

    op.drop_index("ix_product_price_tiers_product", table_name="product_price_tiers")
    op.drop_table("product_price_tiers")
    op.drop_index("ix_catalog_product_has_tiered_pricing", table_name="catalog_product")
    op.drop_index("ix_catalog_product_seller", table_name="catalog_product")
    op.drop_table("catalog_product")
