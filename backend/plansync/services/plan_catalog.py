"""Plan catalog: static plan definitions and the upgrade/downgrade graph

The graph is explicit configuration. It is asymmetric on purpose (a plan may
downgrade only to its predecessor while upgrading to any higher tier), so it
is never derived from price ordering.
"""
import json
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, ConfigDict, model_validator

from plansync.core.config import settings
from plansync.core.logging import get_logger

logger = get_logger(__name__)

INTERVALS = ("month", "year")

UPGRADE = "upgrade"
DOWNGRADE = "downgrade"
LATERAL = "lateral"
INVALID = "invalid"


class PlanCatalogError(Exception):
    pass


class PlanDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    monthly_price_id: Optional[str] = None
    annual_price_id: Optional[str] = None
    included_units: int
    concurrency_limit: int
    allows_overage: bool = False
    upgrade_targets: tuple[str, ...] = ()
    downgrade_targets: tuple[str, ...] = ()

    def price_id_for(self, interval: str) -> Optional[str]:
        if interval == "month":
            return self.monthly_price_id
        if interval == "year":
            return self.annual_price_id
        return None


class PlanCatalogFile(BaseModel):
    model_config = ConfigDict(frozen=True)

    default_plan_id: str
    plans: tuple[PlanDefinition, ...]

    @model_validator(mode="after")
    def _check_graph(self):
        ids = [p.plan_id for p in self.plans]
        if len(ids) != len(set(ids)):
            raise ValueError("duplicate plan_id in catalog")
        known = set(ids)
        if self.default_plan_id not in known:
            raise ValueError(f"default_plan_id {self.default_plan_id!r} is not a known plan")
        for plan in self.plans:
            for target in plan.upgrade_targets + plan.downgrade_targets:
                if target not in known:
                    raise ValueError(f"plan {plan.plan_id!r} points at unknown plan {target!r}")
                if target == plan.plan_id:
                    raise ValueError(f"plan {plan.plan_id!r} lists itself as a transition target")
            overlap = set(plan.upgrade_targets) & set(plan.downgrade_targets)
            if overlap:
                raise ValueError(f"plan {plan.plan_id!r} lists {sorted(overlap)} as both upgrade and downgrade")
        price_ids = [
            price_id
            for p in self.plans
            for price_id in (p.monthly_price_id, p.annual_price_id)
            if price_id
        ]
        if len(price_ids) != len(set(price_ids)):
            raise ValueError("a price id is shared by more than one plan/interval")
        return self


class PlanCatalog:
    """Read-only lookup over a validated catalog file."""

    def __init__(self, data: PlanCatalogFile):
        self.default_plan_id = data.default_plan_id
        self._plans = {p.plan_id: p for p in data.plans}
        self._by_price = {}
        for plan in data.plans:
            for interval in INTERVALS:
                price_id = plan.price_id_for(interval)
                if price_id:
                    self._by_price[price_id] = (plan.plan_id, interval)

    @classmethod
    def from_dict(cls, raw: dict) -> "PlanCatalog":
        try:
            return cls(PlanCatalogFile.model_validate(raw))
        except ValueError as e:
            raise PlanCatalogError(f"invalid plan catalog: {e}") from e

    @classmethod
    def from_file(cls, path: str) -> "PlanCatalog":
        try:
            with open(path, encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PlanCatalogError(f"cannot load plan catalog {path}: {e}") from e
        catalog = cls.from_dict(raw)
        logger.info(f"Plan catalog loaded: {len(catalog._plans)} plans from {path}")
        return catalog

    def get(self, plan_id: str) -> Optional[PlanDefinition]:
        return self._plans.get(plan_id)

    def plans(self) -> list[PlanDefinition]:
        return list(self._plans.values())

    def resolve_price_id(self, plan_id: str, interval: str) -> Optional[str]:
        plan = self._plans.get(plan_id)
        if plan is None:
            return None
        return plan.price_id_for(interval)

    def plan_for_price_id(self, price_id: str) -> Optional[tuple[str, str]]:
        """Reverse lookup: remote price id -> (plan_id, interval)"""
        return self._by_price.get(price_id)

    def can_upgrade(self, from_plan: str, to_plan: str) -> bool:
        plan = self._plans.get(from_plan)
        return plan is not None and to_plan in plan.upgrade_targets

    def can_downgrade(self, from_plan: str, to_plan: str) -> bool:
        plan = self._plans.get(from_plan)
        return plan is not None and to_plan in plan.downgrade_targets

    def transition_kind(self, from_plan: str, to_plan: str) -> str:
        if from_plan not in self._plans or to_plan not in self._plans:
            return INVALID
        if from_plan == to_plan:
            return LATERAL
        if self.can_upgrade(from_plan, to_plan):
            return UPGRADE
        if self.can_downgrade(from_plan, to_plan):
            return DOWNGRADE
        return INVALID


@lru_cache
def get_plan_catalog() -> PlanCatalog:
    """Process-wide catalog, loaded on first use"""
    return PlanCatalog.from_file(settings.PLAN_CATALOG_PATH)
