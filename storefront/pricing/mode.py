from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from enum import Enum

from storefront.pricing.errors import ModeChangeConfirmationError


class PricingMode(str, Enum):
    SIMPLE = "simple"
    TIERED = "tiered"

    @classmethod
    def from_flag(cls, has_tiered_pricing: bool) -> PricingMode:
        return cls.TIERED if has_tiered_pricing else cls.SIMPLE


@dataclass(frozen=True, slots=True)
class ModeChangeDecision:
    current_mode: PricingMode
    target_mode: PricingMode
    applied: bool
    requires_confirmation: bool
    discards: PricingMode | None = None
    confirmation_token: str | None = None


class PricingModeCoordinator:
    """
    Guards switches between simple and tiered pricing.

    Leaving a mode that still holds data destroys that data, so the switch is
    held as pending until the caller echoes the acknowledgement token back.
    The coordinator only decides; whoever owns the data performs the teardown
    for an applied decision with `discards` set.
    """

    def __init__(self, current_mode: PricingMode | str, *, state_key: str = "") -> None:
        self.mode = PricingMode(current_mode)
        self.state_key = state_key
        self._pending: ModeChangeDecision | None = None

    @property
    def pending(self) -> ModeChangeDecision | None:
        return self._pending

    def confirmation_token(self, target_mode: PricingMode | str) -> str:
        target = PricingMode(target_mode)
        raw = f"{self.state_key}|{self.mode.value}->{target.value}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]

    def request_mode_change(
        self,
        target_mode: PricingMode | str,
        has_simple_data: bool,
        has_tiered_data: bool,
        acknowledgement: str | None = None,
    ) -> ModeChangeDecision:
        target = PricingMode(target_mode)
        if target is self.mode:
            self._pending = None
            return ModeChangeDecision(self.mode, target, applied=True, requires_confirmation=False)

        abandoned = self.mode
        abandoned_has_data = has_tiered_data if abandoned is PricingMode.TIERED else has_simple_data
        if not abandoned_has_data:
            return self._apply(target, discards=None)

        token = self.confirmation_token(target)
        if acknowledgement is not None:
            if not hmac.compare_digest(acknowledgement, token):
                raise ModeChangeConfirmationError("confirmation token is stale or does not match this mode change")
            return self._apply(target, discards=abandoned)

        self._pending = ModeChangeDecision(
            self.mode,
            target,
            applied=False,
            requires_confirmation=True,
            discards=abandoned,
            confirmation_token=token,
        )
        return self._pending

    def confirm(self, token: str) -> ModeChangeDecision:
        pending = self._pending
        if pending is None or pending.confirmation_token is None:
            raise ModeChangeConfirmationError("no pricing mode change is awaiting confirmation")
        if not hmac.compare_digest(token, pending.confirmation_token):
            raise ModeChangeConfirmationError("confirmation token does not match the pending mode change")
        return self._apply(pending.target_mode, discards=pending.discards)

    def cancel(self) -> None:
        self._pending = None

    def _apply(self, target: PricingMode, *, discards: PricingMode | None) -> ModeChangeDecision:
        previous = self.mode
        self.mode = target
        self._pending = None
        return ModeChangeDecision(previous, target, applied=True, requires_confirmation=False, discards=discards)
