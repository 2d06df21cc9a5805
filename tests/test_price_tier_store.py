from __future__ import annotations

import uuid
from collections.abc import Generator, Sequence
from decimal import Decimal

import pytest
from fastapi import HTTPException
from sqlalchemy import create_engine, func, insert, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from storefront import audit, events
from storefront.business.catalog.guard import is_tier_guard_suspended
from storefront.business.catalog.models import CatalogProduct, ProductPriceTier
from storefront.business.catalog.repository import PriceTierRepository
from storefront.business.catalog.schemas import CatalogProductCreate, PriceTierInput, PricingModeChangeRequest
from storefront.business.catalog.service import CatalogService
from storefront.core.config import get_settings
from storefront.core.database import Base
from storefront.pricing.errors import (
    EmptyInputError,
    ModeChangeConfirmationError,
    TierStoreUnavailableError,
    TierValidationError,
)
from storefront.pricing.validation import TierLike, TierValidationPolicy


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


class FailingTierRepository(PriceTierRepository):
    def __init__(self, message: str) -> None:
        self.message = message

    def add_many(self, session: Session, product_id: uuid.UUID, tiers: Sequence[TierLike]) -> list[ProductPriceTier]:
        super().add_many(session, product_id, tiers[:1])
        raise OperationalError("INSERT INTO product_price_tiers", {}, Exception(self.message))


def _tier(min_quantity: int, max_quantity: int | None, unit_price: str, discounted: str | None = None) -> PriceTierInput:
    return PriceTierInput(
        min_quantity=min_quantity,
        max_quantity=max_quantity,
        unit_price=Decimal(unit_price),
        discounted_unit_price=None if discounted is None else Decimal(discounted),
    )


def _standard_tiers() -> list[PriceTierInput]:
    return [_tier(1, 10, "100"), _tier(11, 50, "90"), _tier(51, None, "80")]


def _create_product(
    session: Session,
    *,
    price: str | None = "100",
    discounted_price: str | None = None,
    has_tiered_pricing: bool = True,
) -> uuid.UUID:
    created = CatalogService().create_product(
        session,
        CatalogProductCreate(
            seller_id="seller-1",
            name="Bulk Widget",
            price=None if price is None else Decimal(price),
            discounted_price=None if discounted_price is None else Decimal(discounted_price),
            has_tiered_pricing=has_tiered_pricing,
        ),
    )
    return created.id


def _stored_bounds(session: Session, product_id: uuid.UUID) -> list[tuple[int, int | None]]:
    rows = session.scalars(
        select(ProductPriceTier)
        .where(ProductPriceTier.product_id == product_id)
        .order_by(ProductPriceTier.min_quantity)
    ).all()
    return [(row.min_quantity, row.max_quantity) for row in rows]


def test_replace_round_trips_tiers_sorted(db_session: Session) -> None:
    service = CatalogService()
    product_id = _create_product(db_session)

    stored = service.replace_tiers(db_session, product_id, list(reversed(_standard_tiers())))
    assert [(tier.min_quantity, tier.max_quantity) for tier in stored] == [(1, 10), (11, 50), (51, None)]

    listed = service.list_tiers(db_session, product_id)
    assert [(tier.min_quantity, tier.max_quantity, tier.unit_price) for tier in listed] == [
        (1, 10, Decimal("100")),
        (11, 50, Decimal("90")),
        (51, None, Decimal("80")),
    ]
    assert all(tier.product_id == product_id for tier in listed)


def test_replace_discards_previous_set(db_session: Session) -> None:
    service = CatalogService()
    product_id = _create_product(db_session)

    service.replace_tiers(db_session, product_id, [_tier(1, 10, "100"), _tier(11, None, "90")])
    service.replace_tiers(db_session, product_id, _standard_tiers())

    count = db_session.scalar(
        select(func.count()).select_from(ProductPriceTier).where(ProductPriceTier.product_id == product_id)
    )
    assert count == 3


def test_replace_is_scoped_to_one_product(db_session: Session) -> None:
    service = CatalogService()
    first = _create_product(db_session)
    second = _create_product(db_session)

    service.replace_tiers(db_session, first, _standard_tiers())
    service.replace_tiers(db_session, second, [_tier(1, None, "10")])

    assert _stored_bounds(db_session, first) == [(1, 10), (11, 50), (51, None)]
    assert _stored_bounds(db_session, second) == [(1, None)]


def test_invalid_set_is_rejected_and_previous_tiers_survive(db_session: Session) -> None:
    service = CatalogService()
    product_id = _create_product(db_session)
    service.replace_tiers(db_session, product_id, _standard_tiers())

    with pytest.raises(TierValidationError) as exc_info:
        service.replace_tiers(db_session, product_id, [_tier(1, 20, "10"), _tier(15, 30, "9")])

    assert exc_info.value.rules == ["overlap"]
    assert exc_info.value.issues[0].tier_indexes == (0, 1)
    assert _stored_bounds(db_session, product_id) == [(1, 10), (11, 50), (51, None)]


def test_empty_set_is_rejected(db_session: Session) -> None:
    service = CatalogService()
    product_id = _create_product(db_session)
    service.replace_tiers(db_session, product_id, _standard_tiers())

    with pytest.raises(EmptyInputError):
        service.replace_tiers(db_session, product_id, [])

    assert len(_stored_bounds(db_session, product_id)) == 3


def test_unknown_product_is_not_found(db_session: Session) -> None:
    with pytest.raises(HTTPException) as exc_info:
        CatalogService().replace_tiers(db_session, uuid.uuid4(), _standard_tiers())
    assert exc_info.value.status_code == 404


def test_strict_policy_rejects_gaps(db_session: Session) -> None:
    service = CatalogService(policy=TierValidationPolicy.strict())
    product_id = _create_product(db_session)

    with pytest.raises(TierValidationError) as exc_info:
        service.replace_tiers(db_session, product_id, [_tier(1, 10, "10"), _tier(20, None, "9")])
    assert exc_info.value.rules == ["gap"]
    assert _stored_bounds(db_session, product_id) == []


def test_sub_cent_price_is_rejected_before_storage_rounds_it(db_session: Session) -> None:
    service = CatalogService()
    product_id = _create_product(db_session)
    service.replace_tiers(db_session, product_id, _standard_tiers())

    with pytest.raises(TierValidationError) as exc_info:
        service.replace_tiers(db_session, product_id, [_tier(1, None, "0.004")])
    assert exc_info.value.rules == ["invalid_price"]

    with pytest.raises(TierValidationError) as exc_info:
        service.replace_tiers(db_session, product_id, [_tier(1, None, "10", "9.999")])
    assert exc_info.value.rules == ["invalid_discount"]

    assert _stored_bounds(db_session, product_id) == [(1, 10), (11, 50), (51, None)]
    quote = service.quote_price(db_session, product_id, 60)
    assert quote.unit_price == Decimal("80")


def test_oversized_bound_is_rejected_and_session_stays_usable(db_session: Session) -> None:
    service = CatalogService()
    product_id = _create_product(db_session)

    with pytest.raises(TierValidationError) as exc_info:
        service.replace_tiers(db_session, product_id, [_tier(10**20, None, "10")])
    assert exc_info.value.rules == ["invalid_min"]

    service.replace_tiers(db_session, product_id, [_tier(1, None, "10")])
    assert _stored_bounds(db_session, product_id) == [(1, None)]


def test_storage_failure_rolls_back_partial_write(db_session: Session) -> None:
    product_id = _create_product(db_session)
    CatalogService().replace_tiers(db_session, product_id, _standard_tiers())

    failing = CatalogService(tier_repository=FailingTierRepository("connection reset by peer"))
    with pytest.raises(TierStoreUnavailableError) as exc_info:
        failing.replace_tiers(db_session, product_id, [_tier(1, 5, "70"), _tier(6, None, "60")])

    assert exc_info.value.timed_out is False
    assert _stored_bounds(db_session, product_id) == [(1, 10), (11, 50), (51, None)]
    assert is_tier_guard_suspended(db_session, product_id) is False


def test_statement_timeout_is_reported(db_session: Session) -> None:
    product_id = _create_product(db_session)

    failing = CatalogService(tier_repository=FailingTierRepository("canceling statement due to statement timeout"))
    with pytest.raises(TierStoreUnavailableError) as exc_info:
        failing.replace_tiers(db_session, product_id, _standard_tiers())

    assert exc_info.value.timed_out is True
    assert _stored_bounds(db_session, product_id) == []


def test_retry_after_failure_succeeds(db_session: Session) -> None:
    product_id = _create_product(db_session)
    failing = CatalogService(tier_repository=FailingTierRepository("server closed the connection"))
    with pytest.raises(TierStoreUnavailableError):
        failing.replace_tiers(db_session, product_id, _standard_tiers())

    CatalogService().replace_tiers(db_session, product_id, _standard_tiers())
    assert len(_stored_bounds(db_session, product_id)) == 3


def test_replace_records_audit_and_event(db_session: Session) -> None:
    service = CatalogService()
    product_id = _create_product(db_session)
    service.replace_tiers(db_session, product_id, [_tier(1, None, "10")])
    service.replace_tiers(db_session, product_id, _standard_tiers(), actor_user_id="seller-1")

    entries = [entry for entry in audit.audit_entries if entry["entity_type"] == "catalog.price_tiers"]
    assert entries[-1]["action"] == "replace"
    assert entries[-1]["actor_user_id"] == "seller-1"
    assert len(entries[-1]["before"]["tiers"]) == 1
    assert len(entries[-1]["after"]["tiers"]) == 3

    replaced = [item for item in events.published_events if item["event_type"] == "catalog.price_tiers.replaced"]
    assert replaced[-1]["tier_count"] == 3
    assert replaced[-1]["previous_tier_count"] == 1


def test_guard_rejects_direct_overlapping_write(db_session: Session) -> None:
    product_id = _create_product(db_session)
    db_session.add_all(
        [
            ProductPriceTier(product_id=product_id, min_quantity=1, max_quantity=20, unit_price=Decimal("10")),
            ProductPriceTier(product_id=product_id, min_quantity=15, max_quantity=30, unit_price=Decimal("9")),
        ]
    )

    with pytest.raises(TierValidationError) as exc_info:
        db_session.commit()
    db_session.rollback()

    assert exc_info.value.rules == ["overlap"]
    assert _stored_bounds(db_session, product_id) == []


def test_guard_rejects_bulk_insert(db_session: Session) -> None:
    product_id = _create_product(db_session)
    db_session.execute(
        insert(ProductPriceTier),
        [
            {"product_id": product_id, "min_quantity": 1, "max_quantity": None, "unit_price": Decimal("10")},
            {"product_id": product_id, "min_quantity": 5, "max_quantity": None, "unit_price": Decimal("9")},
        ],
    )

    with pytest.raises(TierValidationError) as exc_info:
        db_session.commit()
    db_session.rollback()

    assert "invalid_max" in exc_info.value.rules
    assert _stored_bounds(db_session, product_id) == []


def test_guard_allows_valid_direct_write(db_session: Session) -> None:
    product_id = _create_product(db_session)
    db_session.add(ProductPriceTier(product_id=product_id, min_quantity=1, max_quantity=None, unit_price=Decimal("10")))
    db_session.commit()

    assert _stored_bounds(db_session, product_id) == [(1, None)]


def test_clear_tiers(db_session: Session) -> None:
    service = CatalogService()
    product_id = _create_product(db_session)
    service.replace_tiers(db_session, product_id, _standard_tiers())

    assert service.clear_tiers(db_session, product_id) == 3
    assert service.list_tiers(db_session, product_id) == []


def test_quote_uses_tiers_in_tiered_mode(db_session: Session) -> None:
    service = CatalogService()
    product_id = _create_product(db_session)
    service.replace_tiers(db_session, product_id, _standard_tiers())

    quote = service.quote_price(db_session, product_id, 11)
    assert quote.pricing_mode == "tiered"
    assert quote.unit_price == Decimal("90")
    assert quote.total_price == Decimal("990")
    assert quote.savings == Decimal("110")
    assert quote.applied_tier is not None and quote.applied_tier.min_quantity == 11
    assert quote.next_tier is not None and quote.next_tier.min_quantity == 51
    assert quote.used_fallback is False


def test_quote_ignores_tiers_in_simple_mode(db_session: Session) -> None:
    service = CatalogService()
    product_id = _create_product(db_session, price="25", discounted_price="20", has_tiered_pricing=False)
    service.replace_tiers(db_session, product_id, [_tier(1, None, "10")])

    quote = service.quote_price(db_session, product_id, 4)
    assert quote.pricing_mode == "simple"
    assert quote.unit_price == Decimal("20")
    assert quote.total_price == Decimal("80")
    assert quote.used_fallback is True


def test_price_table(db_session: Session) -> None:
    service = CatalogService()
    product_id = _create_product(db_session)
    service.replace_tiers(db_session, product_id, _standard_tiers())

    table = service.price_table(db_session, product_id)
    assert table.fallback_unit_price == Decimal("100")
    assert table.minimum_tier_price == Decimal("80")
    assert [row.range_label for row in table.rows] == ["1-10 units", "11-50 units", "51+ units"]
    assert [row.is_best_value for row in table.rows] == [False, False, True]


def test_switch_to_tiered_requires_confirmation_and_clears_simple_price(db_session: Session) -> None:
    service = CatalogService()
    product_id = _create_product(db_session, price="25", has_tiered_pricing=False)

    pending = service.change_pricing_mode(db_session, product_id, PricingModeChangeRequest(target_mode="tiered"))
    assert pending.applied is False
    assert pending.requires_confirmation is True
    assert pending.discards == "simple"
    assert pending.current_mode == "simple"
    assert service.get_product(db_session, product_id).price == Decimal("25")

    applied = service.change_pricing_mode(
        db_session,
        product_id,
        PricingModeChangeRequest(target_mode="tiered", confirmation_token=pending.confirmation_token),
    )
    assert applied.applied is True
    assert applied.current_mode == "tiered"

    product = service.get_product(db_session, product_id)
    assert product.has_tiered_pricing is True
    assert product.price is None
    changed = [item for item in events.published_events if item["event_type"] == "catalog.product.pricing_mode_changed"]
    assert changed[-1]["discarded"] == "simple"


def test_switch_to_simple_removes_tiers(db_session: Session) -> None:
    service = CatalogService()
    product_id = _create_product(db_session, price=None)
    service.replace_tiers(db_session, product_id, _standard_tiers())

    pending = service.change_pricing_mode(db_session, product_id, PricingModeChangeRequest(target_mode="simple"))
    assert pending.requires_confirmation is True
    assert pending.discards == "tiered"

    service.change_pricing_mode(
        db_session,
        product_id,
        PricingModeChangeRequest(target_mode="simple", confirmation_token=pending.confirmation_token),
    )
    assert service.list_tiers(db_session, product_id) == []
    assert service.get_product(db_session, product_id).has_tiered_pricing is False


def test_switch_without_data_applies_immediately(db_session: Session) -> None:
    service = CatalogService()
    product_id = _create_product(db_session, price=None, has_tiered_pricing=False)

    decision = service.change_pricing_mode(db_session, product_id, PricingModeChangeRequest(target_mode="tiered"))
    assert decision.applied is True
    assert decision.discards is None
    assert service.get_product(db_session, product_id).has_tiered_pricing is True


def test_confirmation_goes_stale_after_tiers_change(db_session: Session) -> None:
    service = CatalogService()
    product_id = _create_product(db_session, price=None)
    service.replace_tiers(db_session, product_id, _standard_tiers())

    pending = service.change_pricing_mode(db_session, product_id, PricingModeChangeRequest(target_mode="simple"))
    service.replace_tiers(db_session, product_id, [_tier(1, None, "50")])

    with pytest.raises(ModeChangeConfirmationError):
        service.change_pricing_mode(
            db_session,
            product_id,
            PricingModeChangeRequest(target_mode="simple", confirmation_token=pending.confirmation_token),
        )
    assert len(service.list_tiers(db_session, product_id)) == 1
