from decimal import Decimal
from uuid import uuid4

from loguru import logger

from .exceptions import InvalidAmount, PlanNotFound
from .models import Actor, PlanCreateRequest, PlanDefinition, PlanUpdateRequest, quantize
from .permissions import require_admin
from .storage import InMemoryStorage


def _priced(price: Decimal, rate: Decimal) -> tuple[Decimal, Decimal]:
    """Price and rate as stored: two decimal places, price still payable."""
    price, rate = quantize(price), quantize(rate)
    if price <= 0:
        raise InvalidAmount(f"Plan price must be at least 0.01 USDT, got {price}")
    return price, rate


class PlanCatalog:
    """Admin CRUD over plan definitions.

    Holdings carry their own copy of the plan, so nothing here touches
    existing holdings.
    """

    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def list_plans(self, include_inactive: bool = False) -> list[PlanDefinition]:
        with self.storage.registry_lock:
            plans = list(self.storage.plans.values())
        if not include_inactive:
            plans = [p for p in plans if p.active]
        return plans

    def get_plan(self, plan_id: str) -> PlanDefinition:
        plan = self.storage.plans.get(plan_id)
        if not plan:
            raise PlanNotFound(f"Plan {plan_id} not found")
        return plan

    def create_plan(self, actor: Actor, request: PlanCreateRequest) -> PlanDefinition:
        require_admin(actor, "create plans")
        price, rate = _priced(request.price, request.daily_interest_rate)
        plan = PlanDefinition(
            id=f"plan-{uuid4().hex[:8]}",
            name=request.name,
            price=price,
            daily_interest_rate=rate,
            duration_days=request.duration_days,
            total_profit=PlanDefinition.compute_total_profit(price, rate, request.duration_days),
            active=request.active,
        )
        with self.storage.registry_lock:
            self.storage.plans[plan.id] = plan
        logger.info(f"Plan {plan.id} created by {actor.id}: {plan.name} total_profit={plan.total_profit}")
        return plan

    def update_plan(self, actor: Actor, plan_id: str, request: PlanUpdateRequest) -> PlanDefinition:
        require_admin(actor, "update plans")
        with self.storage.registry_lock:
            current = self.get_plan(plan_id)
            changes = request.model_dump(exclude_unset=True, exclude={"total_profit"})
            changes = {k: v for k, v in changes.items() if v is not None}
            merged = current.model_dump() | changes
            merged["price"], merged["daily_interest_rate"] = _priced(
                merged["price"], merged["daily_interest_rate"]
            )
            merged["total_profit"] = PlanDefinition.compute_total_profit(
                merged["price"], merged["daily_interest_rate"], merged["duration_days"]
            )
            plan = PlanDefinition(**merged)
            self.storage.plans[plan_id] = plan
        logger.info(f"Plan {plan_id} updated by {actor.id}: {sorted(changes)}")
        return plan

    def delete_plan(self, actor: Actor, plan_id: str) -> PlanDefinition:
        require_admin(actor, "delete plans")
        with self.storage.registry_lock:
            plan = self.get_plan(plan_id)
            del self.storage.plans[plan_id]
        logger.info(f"Plan {plan_id} deleted by {actor.id}")
        return plan

    def toggle_active(self, actor: Actor, plan_id: str) -> PlanDefinition:
        require_admin(actor, "toggle plans")
        with self.storage.registry_lock:
            plan = self.get_plan(plan_id)
            plan = plan.model_copy(update={"active": not plan.active})
            self.storage.plans[plan_id] = plan
        logger.info(f"Plan {plan_id} active={plan.active} (by {actor.id})")
        return plan
