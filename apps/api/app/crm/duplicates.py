from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.crm.errors import DuplicateConflictError
from app.crm.models import CRMAccount, CRMContact, CRMLead
from app.crm.schemas import DuplicateCandidate, DuplicateReport
from app.crm.settings import DuplicateDetectionSettings
from app.metrics import observe_duplicate_block
from app.platform.tenancy import TenantPartition

logger = logging.getLogger("app.crm.leads")


def normalize_email(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = str(value).strip().lower()
    return normalized or None


def normalize_phone(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = str(value).strip()
    return normalized or None


class DuplicateDetector:
    """Flags existing leads and contacts sharing an email or phone with a lead being written."""

    def check(
        self,
        session: Session,
        tenant: TenantPartition,
        config: DuplicateDetectionSettings,
        *,
        email: str | None,
        phone: str | None,
        exclude_id: uuid.UUID | None = None,
    ) -> None:
        if not config.enabled:
            return

        email = normalize_email(email)
        phone = normalize_phone(phone)
        checks: list[tuple[str, str, str | None, str]] = []
        if email:
            if config.check_leads:
                checks.append(("lead", "email", email, config.exact_email_match))
            if config.check_contacts:
                checks.append(("contact", "email", email, config.exact_email_match))
        if phone:
            if config.check_leads:
                checks.append(("lead", "phone", phone, config.exact_phone_match))
            if config.check_contacts:
                checks.append(("contact", "phone", phone, config.exact_phone_match))

        for entity_type, identifier, value, policy in checks:
            if policy == "allow" or value is None:
                continue
            match = self._first_match(session, tenant, entity_type, identifier, value, exclude_id)
            if match is None:
                continue
            label = "lead" if entity_type == "lead" else "contact"
            if policy == "block":
                observe_duplicate_block(entity_type)
                raise DuplicateConflictError(
                    entity_type,
                    str(match.id),
                    f'A {label} with {identifier} "{value}" already exists: {match.full_name}',
                )
            logger.info(
                "lead.duplicate_warning",
                extra={
                    "tenant_id": tenant.tenant_id,
                    "duplicate_type": entity_type,
                    "duplicate_id": str(match.id),
                    "match_type": identifier,
                },
            )

    def find_duplicates(
        self,
        session: Session,
        tenant: TenantPartition,
        *,
        email: str | None,
        phone: str | None,
        exclude_id: uuid.UUID | None = None,
    ) -> DuplicateReport:
        settings = get_settings()
        limit = settings.duplicate_candidate_limit
        report = DuplicateReport()
        email = normalize_email(email)
        phone = normalize_phone(phone)
        seen: set[uuid.UUID] = set()

        for identifier, value in (("email", email), ("phone", phone)):
            if not value:
                continue
            for lead in self._matches(session, tenant, "lead", identifier, value, exclude_id, limit):
                if lead.id in seen:
                    continue
                seen.add(lead.id)
                report.leads.append(self._candidate(lead, "lead", identifier))
            for contact in self._matches(session, tenant, "contact", identifier, value, None, limit):
                if contact.id in seen:
                    continue
                seen.add(contact.id)
                report.contacts.append(self._candidate(contact, "contact", identifier))

        domain = email.split("@", 1)[1] if email and "@" in email else None
        if domain:
            domain_root = domain.split(".", 1)[0]
            accounts = session.scalars(
                tenant.select(CRMAccount)
                .where(
                    or_(
                        CRMAccount.website.ilike(f"%{domain}%"),
                        CRMAccount.name.ilike(f"%{domain_root}%"),
                    )
                )
                .order_by(CRMAccount.created_at.desc())
                .limit(settings.duplicate_account_limit)
            ).all()
            for account in accounts:
                report.accounts.append(
                    DuplicateCandidate(id=account.id, entity_type="account", match_type="domain", name=account.name)
                )
        return report

    def _first_match(
        self,
        session: Session,
        tenant: TenantPartition,
        entity_type: str,
        identifier: str,
        value: str,
        exclude_id: uuid.UUID | None,
    ) -> Any:
        matches = self._matches(session, tenant, entity_type, identifier, value, exclude_id, 1)
        return matches[0] if matches else None

    def _matches(
        self,
        session: Session,
        tenant: TenantPartition,
        entity_type: str,
        identifier: str,
        value: str,
        exclude_id: uuid.UUID | None,
        limit: int,
    ) -> list[Any]:
        model: Any = CRMLead if entity_type == "lead" else CRMContact
        stmt = tenant.select(model)
        if identifier == "email":
            stmt = stmt.where(func.lower(func.trim(model.email)) == value)
        else:
            stmt = stmt.where(model.phone == value)
        if exclude_id is not None:
            stmt = stmt.where(model.id != exclude_id)
        return list(session.scalars(stmt.order_by(model.created_at.asc()).limit(limit)).all())

    @staticmethod
    def _candidate(row: Any, entity_type: str, match_type: str) -> DuplicateCandidate:
        return DuplicateCandidate(
            id=row.id,
            entity_type=entity_type,
            match_type=match_type,
            name=row.full_name,
            email=row.email,
            phone=row.phone,
            company=row.company,
        )
