from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from typing import Any, Protocol

from opentelemetry import trace
from sqlalchemy.orm import Session

from app.crm.errors import NotFoundError
from app.crm.models import CRMLead, CRMLeadPriority, CRMQualificationField, CRMScoringRule, CRMScoringTemplate
from app.platform.tenancy import TenantPartition

logger = logging.getLogger("app.crm.scoring")
tracer = trace.get_tracer("app.crm.scoring")

DEFAULT_MAX_SCORE = 100
SCORING_INPUT_FIELDS = frozenset({"email", "phone", "company", "job_title", "qualification", "custom_fields", "source"})

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


@dataclass(frozen=True)
class ScoreResult:
    score: int
    breakdown: dict[str, Any]


class LeadScorer(Protocol):
    def score_lead(self, session: Session, tenant: TenantPartition, lead_id: uuid.UUID) -> ScoreResult: ...


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return str(value).strip() == ""


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def resolve_lead_value(lead: CRMLead, field_key: str) -> Any:
    if field_key.startswith("qualification."):
        return (lead.qualification or {}).get(field_key.split(".", 1)[1])
    if field_key.startswith("custom.") or field_key.startswith("customFields."):
        return (lead.custom_fields or {}).get(field_key.split(".", 1)[1])
    column = _CAMEL_RE.sub("_", field_key).lower()
    return getattr(lead, column, None)


def evaluate_rule(operator: str, value: Any, target: Any) -> bool:
    text = "" if value is None else str(value).lower()
    if operator == "equals":
        return text == str(target).lower()
    if operator == "not_equals":
        return text != str(target).lower()
    if operator == "contains":
        return str(target).lower() in text
    if operator == "contains_any":
        targets = target if isinstance(target, list) else []
        return any(str(item).lower() in text for item in targets)
    if operator == "in":
        targets = target if isinstance(target, list) else []
        return value in targets
    if operator == "is_not_empty":
        return not _is_blank(value)
    if operator == "is_empty":
        return _is_blank(value)
    if operator in {"greater_than", "less_than"}:
        left = _as_number(value)
        right = _as_number(target)
        if left is None or right is None:
            return False
        return left > right if operator == "greater_than" else left < right
    return False


class ScoringService:
    """Rule-based lead scoring. The same inputs always give the same score and breakdown."""

    def score_lead(self, session: Session, tenant: TenantPartition, lead_id: uuid.UUID) -> ScoreResult:
        with tracer.start_as_current_span("crm.lead.score") as span:
            span.set_attribute("tenant_id", tenant.tenant_id)
            span.set_attribute("lead_id", str(lead_id))
            lead = tenant.get(session, CRMLead, lead_id)
            if lead is None:
                raise NotFoundError("lead")

            result = self.compute(session, tenant, lead)
            lead.score = result.score
            lead.score_breakdown = result.breakdown
            session.flush()
            span.set_attribute("score", result.score)
            return result

    def compute(self, session: Session, tenant: TenantPartition, lead: CRMLead) -> ScoreResult:
        template = session.scalar(
            tenant.select(CRMScoringTemplate).where(
                CRMScoringTemplate.is_default.is_(True),
                CRMScoringTemplate.is_active.is_(True),
            )
        )
        max_score = template.max_score if template is not None and template.max_score else DEFAULT_MAX_SCORE
        total = 0
        breakdown: dict[str, Any] = {}

        if template is not None:
            rules = session.scalars(
                tenant.select(CRMScoringRule)
                .where(CRMScoringRule.template_id == template.id, CRMScoringRule.is_active.is_(True))
                .order_by(CRMScoringRule.sort_order.asc(), CRMScoringRule.name.asc())
            ).all()
            for rule in rules:
                if not evaluate_rule(rule.operator, resolve_lead_value(lead, rule.field_key), rule.value):
                    continue
                total += rule.score_delta
                breakdown[rule.name] = {
                    "rule_id": str(rule.id),
                    "category": rule.category,
                    "field_key": rule.field_key,
                    "delta": rule.score_delta,
                    "matched": True,
                }

        if lead.qualification_framework_id is not None:
            fields = session.scalars(
                tenant.select(CRMQualificationField)
                .where(CRMQualificationField.framework_id == lead.qualification_framework_id)
                .order_by(CRMQualificationField.sort_order.asc(), CRMQualificationField.field_key.asc())
            ).all()
            qualification = lead.qualification or {}
            for field in fields:
                if not field.score_weight or _is_blank(qualification.get(field.field_key)):
                    continue
                total += field.score_weight
                breakdown[f"qualification:{field.field_key}"] = {
                    "rule_id": None,
                    "category": "qualification",
                    "field_key": f"qualification.{field.field_key}",
                    "delta": field.score_weight,
                    "matched": True,
                }

        return ScoreResult(score=max(0, min(max_score, total)), breakdown=breakdown)

    def rescore_all(self, session: Session, tenant: TenantPartition) -> int:
        leads = session.scalars(tenant.select(CRMLead).where(CRMLead.converted_at.is_(None))).all()
        for lead in leads:
            result = self.compute(session, tenant, lead)
            lead.score = result.score
            lead.score_breakdown = result.breakdown
        session.flush()
        logger.info("lead.rescore_all", extra={"tenant_id": tenant.tenant_id, "count": len(leads)})
        return len(leads)


class PriorityResolver:
    def resolve(self, priorities: list[CRMLeadPriority] | tuple[CRMLeadPriority, ...], score: int) -> CRMLeadPriority | None:
        for priority in sorted(priorities, key=lambda item: item.sort_order):
            if not priority.is_active or priority.score_min is None or priority.score_max is None:
                continue
            if priority.score_min <= score <= priority.score_max:
                return priority
        return None

    def apply(
        self,
        lead: CRMLead,
        priorities: list[CRMLeadPriority] | tuple[CRMLeadPriority, ...],
        auto_priority_from_score: bool,
    ) -> bool:
        if not auto_priority_from_score:
            return False
        matched = self.resolve(priorities, lead.score)
        if matched is None or matched.id == lead.priority_id:
            return False
        lead.priority_id = matched.id
        return True
