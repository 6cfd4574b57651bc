from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.crm.errors import ConcurrencyConflictError
from app.crm.models import CRMRoutingRule, CRMTeamMember
from app.crm.schemas import (
    RoundRobinAssignment,
    RoutingCondition,
    SpecificUserAssignment,
    TeamAssignment,
    parse_assignment_strategy,
    parse_routing_conditions,
)
from app.metrics import observe_routing_assignment
from app.platform.tenancy import TenantPartition

logger = logging.getLogger("app.crm.routing")


@dataclass(frozen=True)
class RoutingDecision:
    owner_id: str
    rule_id: uuid.UUID
    rule_name: str
    assignment_type: str


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip()) or value == []


def condition_matches(condition: RoutingCondition, values: Mapping[str, Any]) -> bool:
    actual = values.get(condition.field)
    expected = condition.value
    operator = condition.operator

    if operator == "equals":
        if actual is None or expected is None:
            return False
        return str(actual).strip().lower() == str(expected).strip().lower()
    if operator == "contains":
        if actual is None or expected is None:
            return False
        return str(expected).lower() in str(actual).lower()
    if operator == "in":
        if not isinstance(expected, list) or actual is None:
            return False
        return actual in expected or str(actual) in [str(item) for item in expected]
    if operator == "is_not_empty":
        return not _is_blank(actual)
    return True


def rule_matches(conditions: list[RoutingCondition], values: Mapping[str, Any]) -> bool:
    return all(condition_matches(condition, values) for condition in conditions)


class RoutingEvaluator:
    """Picks an owner for a new lead from the tenant's active routing rules."""

    def resolve_owner(
        self,
        session: Session,
        tenant: TenantPartition,
        values: Mapping[str, Any],
    ) -> RoutingDecision | None:
        rules = session.scalars(
            tenant.select(CRMRoutingRule)
            .where(CRMRoutingRule.is_active.is_(True))
            .order_by(CRMRoutingRule.priority.desc(), CRMRoutingRule.created_at.asc())
        ).all()

        for rule in rules:
            if not rule_matches(parse_routing_conditions(rule.conditions), values):
                continue

            strategy = parse_assignment_strategy(rule.assignment_type, rule.assignment_config)
            if isinstance(strategy, SpecificUserAssignment):
                if not strategy.user_ids:
                    return None
                owner_id = strategy.user_ids[0]
            elif isinstance(strategy, RoundRobinAssignment):
                if not strategy.user_ids:
                    continue
                owner_id = self._take_next(session, tenant, rule, strategy.user_ids)
            elif isinstance(strategy, TeamAssignment):
                members = self._team_members(session, tenant, strategy.team_id)
                if not members:
                    continue
                owner_id = self._take_next(session, tenant, rule, members)
            else:  # pragma: no cover - closed union
                continue

            observe_routing_assignment(strategy.type)
            logger.info(
                "lead.routed",
                extra={
                    "tenant_id": tenant.tenant_id,
                    "rule_id": str(rule.id),
                    "assignment_type": strategy.type,
                    "owner_id": owner_id,
                },
            )
            return RoutingDecision(
                owner_id=owner_id,
                rule_id=rule.id,
                rule_name=rule.name,
                assignment_type=strategy.type,
            )
        return None

    def _team_members(self, session: Session, tenant: TenantPartition, team_id: str) -> list[str]:
        return list(
            session.scalars(
                tenant.scope(select(CRMTeamMember.user_id), CRMTeamMember)
                .where(CRMTeamMember.team_id == team_id)
                .order_by(CRMTeamMember.joined_at.asc(), CRMTeamMember.user_id.asc())
            ).all()
        )

    def _take_next(
        self,
        session: Session,
        tenant: TenantPartition,
        rule: CRMRoutingRule,
        candidates: list[str],
    ) -> str:
        """Claims the next cursor slot with a compare-and-set so concurrent creates never share a slot."""
        max_retries = max(1, get_settings().routing_cursor_max_retries)
        for _ in range(max_retries):
            seen = session.scalar(
                tenant.scope(select(CRMRoutingRule.round_robin_index), CRMRoutingRule).where(CRMRoutingRule.id == rule.id)
            )
            cursor = int(seen or 0)
            index = cursor % len(candidates)
            result = session.execute(
                update(CRMRoutingRule)
                .where(
                    CRMRoutingRule.id == rule.id,
                    CRMRoutingRule.tenant_id == tenant.tenant_id,
                    CRMRoutingRule.round_robin_index == cursor,
                )
                .values(round_robin_index=index + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                session.expire(rule, ["round_robin_index"])
                return candidates[index]
        raise ConcurrencyConflictError("routing rule", "Round-robin cursor is under contention, retry the request")
