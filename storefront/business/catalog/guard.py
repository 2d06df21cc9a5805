"""
Commit-time consistency guard for product price tiers.

Every ORM write path that touches `product_price_tiers` (unit-of-work flushes
and ORM-enabled bulk statements) marks the affected products on the session.
Before the transaction commits, each marked product's stored tier set is
validated with the configured policy and the commit is refused with
`TierValidationError` if it breaks a rule. Products whose tier set is empty are
skipped: teardown and product removal legitimately leave no tiers behind.

`suspended_tier_guard` lets a multi-step rewrite of one product (delete all,
insert all) skip the check for that product only. The suspension is lifted
when the block exits, on success and on error.
"""
from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from itertools import chain
from typing import Any

from sqlalchemy import event, inspect, select
from sqlalchemy.orm import ORMExecuteState, Session, UOWTransaction

from storefront.business.catalog.models import ProductPriceTier
from storefront.core.config import get_settings
from storefront.metrics import observe_price_tier_validation_failure
from storefront.pricing.errors import TierValidationError
from storefront.pricing.validation import TierValidationPolicy, validate_tiers


logger = logging.getLogger("storefront.catalog.guard")

_PENDING_KEY = "price_tier_guard.pending"
_SUSPENDED_KEY = "price_tier_guard.suspended"
_ALL_PRODUCTS = "*"


def _pending(session: Session) -> set[Any]:
    return session.info.setdefault(_PENDING_KEY, set())


def _suspended(session: Session) -> set[uuid.UUID]:
    return session.info.setdefault(_SUSPENDED_KEY, set())


def is_tier_guard_suspended(session: Session, product_id: uuid.UUID) -> bool:
    return product_id in session.info.get(_SUSPENDED_KEY, set())


@contextmanager
def suspended_tier_guard(session: Session, product_id: uuid.UUID) -> Iterator[None]:
    suspended = _suspended(session)
    already_suspended = product_id in suspended
    suspended.add(product_id)
    try:
        yield
    finally:
        if not already_suspended:
            suspended.discard(product_id)


def _touched_product_ids(instance: ProductPriceTier) -> set[uuid.UUID]:
    history = inspect(instance).attrs.product_id.history
    return {value for value in chain(history.added, history.unchanged, history.deleted) if value is not None}


def _after_flush(session: Session, flush_context: UOWTransaction) -> None:
    pending = _pending(session)
    for instance in chain(session.new, session.dirty, session.deleted):
        if isinstance(instance, ProductPriceTier):
            pending.update(_touched_product_ids(instance))


def _targets_price_tiers(state: ORMExecuteState) -> bool:
    if any(mapper.class_ is ProductPriceTier for mapper in state.all_mappers):
        return True
    table = getattr(state.statement, "table", None)
    return getattr(table, "name", None) == ProductPriceTier.__tablename__


def _on_orm_execute(state: ORMExecuteState) -> None:
    if not (state.is_insert or state.is_update or state.is_delete):
        return
    if _targets_price_tiers(state):
        _pending(state.session).add(_ALL_PRODUCTS)


def check_product_tiers(session: Session, product_id: uuid.UUID, policy: TierValidationPolicy | None = None) -> None:
    tiers = session.scalars(select(ProductPriceTier).where(ProductPriceTier.product_id == product_id)).all()
    if not tiers:
        return
    issues = validate_tiers(tiers, policy or TierValidationPolicy.from_settings(get_settings()))
    if not issues:
        return

    for issue in issues:
        observe_price_tier_validation_failure(issue.type, source="guard")
    logger.warning(
        "price_tiers.guard_rejected",
        extra={"product_id": str(product_id), "rules": sorted({issue.type for issue in issues})},
    )
    raise TierValidationError(issues, product_id=str(product_id))


def _before_commit(session: Session) -> None:
    # Commit dispatches this hook before its final flush.
    session.flush()

    pending = session.info.get(_PENDING_KEY)
    if not pending:
        return

    product_ids: set[Any] = set(pending)
    if _ALL_PRODUCTS in product_ids:
        product_ids.discard(_ALL_PRODUCTS)
        product_ids.update(session.scalars(select(ProductPriceTier.product_id).distinct()).all())

    suspended = session.info.get(_SUSPENDED_KEY, set())
    policy = TierValidationPolicy.from_settings(get_settings())
    for product_id in sorted(product_ids, key=str):
        if product_id in suspended:
            continue
        check_product_tiers(session, product_id, policy)

    session.info.pop(_PENDING_KEY, None)


def _after_soft_rollback(session: Session, previous_transaction: Any) -> None:
    session.info.pop(_PENDING_KEY, None)


def install_tier_guard() -> None:
    hooks = (
        ("after_flush", _after_flush),
        ("do_orm_execute", _on_orm_execute),
        ("before_commit", _before_commit),
        ("after_soft_rollback", _after_soft_rollback),
    )
    for identifier, handler in hooks:
        if not event.contains(Session, identifier, handler):
            event.listen(Session, identifier, handler)


install_tier_guard()
