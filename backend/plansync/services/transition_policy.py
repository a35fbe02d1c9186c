"""Plan transition policy: decides how a requested plan/interval change is executed

Four strategies:

- immediate_same_interval: upgrade, interval unchanged. Applied now, prorated.
- deferred_downgrade: lower tier. Scheduled for the period end, whatever the
  interval does (tier decides feature access, so it wins over interval).
- deferred_interval_switch: same plan, other interval. Stripe cannot prorate
  an interval change mid-cycle, so it is a two-phase schedule.
- mixed_upgrade: upgrade plus interval change. Upgrade now at the current
  interval, then schedule the interval switch at the post-upgrade period end.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from plansync.core.exceptions import ValidationError
from plansync.services.plan_catalog import PlanCatalog, INTERVALS, UPGRADE, DOWNGRADE, LATERAL, INVALID


class Strategy(str, Enum):
    IMMEDIATE_SAME_INTERVAL = "immediate_same_interval"
    DEFERRED_DOWNGRADE = "deferred_downgrade"
    DEFERRED_INTERVAL_SWITCH = "deferred_interval_switch"
    MIXED_UPGRADE = "mixed_upgrade"


@dataclass(frozen=True)
class TransitionPlan:
    strategy: Strategy
    target_plan_id: str
    target_interval: str
    # price to switch to now (immediate and mixed)
    immediate_price_id: Optional[str] = None
    # price for the second schedule phase (deferred and mixed)
    deferred_price_id: Optional[str] = None
    # scheduled_change.reason for the deferred part
    deferred_reason: Optional[str] = None
    # downgrade to the default plan: executed as a cancellation at period end
    is_cancellation: bool = False

    @property
    def has_immediate_step(self) -> bool:
        return self.immediate_price_id is not None

    @property
    def has_deferred_step(self) -> bool:
        return self.deferred_reason is not None


def _require_price(catalog: PlanCatalog, plan_id: str, interval: str) -> str:
    price_id = catalog.resolve_price_id(plan_id, interval)
    if not price_id:
        raise ValidationError("price_not_found", f"Plan {plan_id} is not offered with a {interval} interval")
    return price_id


def select_strategy(
    catalog: PlanCatalog,
    current_plan_id: str,
    current_interval: str,
    target_plan_id: str,
    target_interval: str,
) -> TransitionPlan:
    """Pick exactly one strategy, or raise ValidationError before any remote call"""
    if target_interval not in INTERVALS:
        raise ValidationError("invalid_interval", f"Unknown billing interval: {target_interval}")
    if catalog.get(target_plan_id) is None:
        raise ValidationError("unknown_plan", f"Unknown plan: {target_plan_id}")

    kind = catalog.transition_kind(current_plan_id, target_plan_id)
    interval_changes = current_interval != target_interval

    if kind == INVALID:
        raise ValidationError(
            "invalid_transition",
            f"Cannot move from {current_plan_id} to {target_plan_id}",
        )

    if kind == LATERAL:
        if not interval_changes:
            raise ValidationError("no_change", "Already on this plan and interval")
        return TransitionPlan(
            strategy=Strategy.DEFERRED_INTERVAL_SWITCH,
            target_plan_id=target_plan_id,
            target_interval=target_interval,
            deferred_price_id=_require_price(catalog, target_plan_id, target_interval),
            deferred_reason="interval_switch",
        )

    if kind == DOWNGRADE:
        if target_plan_id == catalog.default_plan_id:
            # the default plan has no price: ending the paid subscription is the downgrade
            return TransitionPlan(
                strategy=Strategy.DEFERRED_DOWNGRADE,
                target_plan_id=target_plan_id,
                target_interval=current_interval,
                deferred_reason="cancellation",
                is_cancellation=True,
            )
        return TransitionPlan(
            strategy=Strategy.DEFERRED_DOWNGRADE,
            target_plan_id=target_plan_id,
            target_interval=target_interval,
            deferred_price_id=_require_price(catalog, target_plan_id, target_interval),
            deferred_reason="downgrade",
        )

    # UPGRADE
    if not interval_changes:
        return TransitionPlan(
            strategy=Strategy.IMMEDIATE_SAME_INTERVAL,
            target_plan_id=target_plan_id,
            target_interval=target_interval,
            immediate_price_id=_require_price(catalog, target_plan_id, current_interval),
        )
    return TransitionPlan(
        strategy=Strategy.MIXED_UPGRADE,
        target_plan_id=target_plan_id,
        target_interval=target_interval,
        immediate_price_id=_require_price(catalog, target_plan_id, current_interval),
        deferred_price_id=_require_price(catalog, target_plan_id, target_interval),
        deferred_reason="interval_switch",
    )
