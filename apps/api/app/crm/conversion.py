from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from opentelemetry import trace
from sqlalchemy import inspect
from sqlalchemy.orm import Session

from app.crm.errors import NotFoundError
from app.crm.models import (
    CRMAccount,
    CRMActivity,
    CRMContact,
    CRMContactAccount,
    CRMDocument,
    CRMLead,
    CRMNote,
    CRMOpportunity,
)
from app.crm.reference import LeadReferenceData
from app.crm.schemas import LeadConvertRequest
from app.crm.stages import append_stage_history, ensure_not_terminal
from app.platform.tenancy import TenantPartition
from app.services.activity import ActivityEntry, ActivityTimeline
from app.services.audit import AuditEntry, AuditLogWriter

logger = logging.getLogger("app.crm.conversion")
tracer = trace.get_tracer("app.crm.conversion")

PRIMARY_CONTACT_ROLE = "Primary Contact"

OpportunityCapability = Callable[[Session], bool]


def opportunities_table_present(session: Session) -> bool:
    bind = session.get_bind()
    if bind is None:
        return False
    return inspect(bind).has_table(CRMOpportunity.__tablename__)


@dataclass(frozen=True)
class ConversionOutcome:
    contact_id: uuid.UUID | None
    account_id: uuid.UUID | None
    opportunity_id: uuid.UUID | None


class ConversionOrchestrator:
    """Turns a lead into a contact, an account and optionally an opportunity inside one transaction."""

    def __init__(
        self,
        activity: ActivityTimeline,
        audit: AuditLogWriter,
        opportunity_capability: OpportunityCapability = opportunities_table_present,
    ) -> None:
        self.activity = activity
        self.audit = audit
        self.opportunity_capability = opportunity_capability

    def convert(
        self,
        session: Session,
        reference: LeadReferenceData,
        lead: CRMLead,
        dto: LeadConvertRequest,
        *,
        performed_by: str,
    ) -> ConversionOutcome:
        tenant = reference.tenant
        ensure_not_terminal(lead, "convert")
        owner_id = dto.new_owner_id or lead.owner_id or performed_by

        contact = self._resolve_contact(session, tenant, lead, dto, owner_id, performed_by)
        account = self._resolve_account(session, tenant, lead, dto, owner_id, performed_by)
        if contact is not None and account is not None:
            self._link_primary_contact(session, tenant, contact.id, account.id)

        opportunity: CRMOpportunity | None = None
        if dto.create_opportunity:
            if self.opportunity_capability(session):
                opportunity = self._create_opportunity(session, tenant, lead, dto, contact, account, owner_id, performed_by)
            else:
                logger.warning(
                    "lead.convert.opportunity_skipped",
                    extra={"tenant_id": tenant.tenant_id, "lead_id": str(lead.id)},
                )

        now = datetime.now(timezone.utc)
        previous_stage_id = lead.stage_id
        won_stage = reference.won_stage
        if won_stage is not None:
            lead.stage_id = won_stage.id
            lead.stage_entered_at = now
        lead.converted_at = now
        lead.converted_by = performed_by
        lead.converted_contact_id = contact.id if contact is not None else None
        lead.converted_account_id = account.id if account is not None else None
        lead.converted_opportunity_id = opportunity.id if opportunity is not None else None
        lead.conversion_notes = dto.notes
        lead.updated_by = performed_by
        append_stage_history(
            lead,
            stage_id=lead.stage_id,
            stage_name="Converted",
            entered_by=performed_by,
            entered_at=now,
            previous_stage_id=previous_stage_id,
        )
        session.flush()

        if contact is not None:
            self._copy_forward(session, reference, lead, contact)

        outcome = ConversionOutcome(
            contact_id=lead.converted_contact_id,
            account_id=lead.converted_account_id,
            opportunity_id=lead.converted_opportunity_id,
        )
        result_ids = {
            "contact_id": str(outcome.contact_id) if outcome.contact_id else None,
            "account_id": str(outcome.account_id) if outcome.account_id else None,
            "opportunity_id": str(outcome.opportunity_id) if outcome.opportunity_id else None,
        }
        self.activity.create(
            session,
            tenant,
            ActivityEntry(
                entity_type="lead",
                entity_id=lead.id,
                activity_type="converted",
                title="Lead converted",
                description=dto.notes,
                performed_by=performed_by,
                metadata=result_ids,
            ),
        )
        self.audit.log(
            session,
            tenant,
            AuditEntry(
                entity_type="lead",
                entity_id=str(lead.id),
                action="convert",
                performed_by=performed_by,
                changes={"converted_at": {"from": None, "to": now.isoformat()}},
                new_values=result_ids,
            ),
        )
        return outcome

    def _resolve_contact(
        self,
        session: Session,
        tenant: TenantPartition,
        lead: CRMLead,
        dto: LeadConvertRequest,
        owner_id: str,
        performed_by: str,
    ) -> CRMContact | None:
        if dto.contact_action == "merge_existing":
            contact = tenant.get(session, CRMContact, dto.existing_contact_id) if dto.existing_contact_id else None
            if contact is None:
                raise NotFoundError("contact", "Existing contact not found")
            return contact
        if dto.contact_action != "create_new":
            return None

        with tracer.start_as_current_span("crm.lead.convert.contact"):
            contact = tenant.add(
                session,
                CRMContact(
                    first_name=lead.first_name,
                    last_name=lead.last_name,
                    email=lead.email,
                    phone=lead.phone,
                    mobile=lead.mobile,
                    company=lead.company,
                    job_title=lead.job_title,
                    website=lead.website,
                    address_line1=lead.address_line1,
                    address_line2=lead.address_line2,
                    city=lead.city,
                    state=lead.state,
                    postal_code=lead.postal_code,
                    country=lead.country,
                    emails=list(lead.emails or []),
                    phones=list(lead.phones or []),
                    addresses=list(lead.addresses or []),
                    social_profiles=dict(lead.social_profiles or {}),
                    source=lead.source,
                    tags=list(lead.tags or []),
                    custom_fields=dict(lead.custom_fields or {}),
                    do_not_contact=lead.do_not_contact,
                    do_not_email=lead.do_not_email,
                    do_not_call=lead.do_not_call,
                    owner_id=owner_id,
                    created_by=performed_by,
                ),
            )
            session.flush()
            return contact

    def _resolve_account(
        self,
        session: Session,
        tenant: TenantPartition,
        lead: CRMLead,
        dto: LeadConvertRequest,
        owner_id: str,
        performed_by: str,
    ) -> CRMAccount | None:
        if dto.account_action == "link_existing":
            account = tenant.get(session, CRMAccount, dto.existing_account_id) if dto.existing_account_id else None
            if account is None:
                raise NotFoundError("account", "Existing account not found")
            return account
        if dto.account_action != "create_new":
            return None

        with tracer.start_as_current_span("crm.lead.convert.account"):
            account = tenant.add(
                session,
                CRMAccount(
                    name=dto.account_name or lead.company or lead.full_name,
                    website=lead.website,
                    phone=lead.phone,
                    source=lead.source,
                    owner_id=owner_id,
                    created_by=performed_by,
                ),
            )
            session.flush()
            return account

    def _link_primary_contact(
        self,
        session: Session,
        tenant: TenantPartition,
        contact_id: uuid.UUID,
        account_id: uuid.UUID,
    ) -> None:
        existing = session.scalar(
            tenant.select(CRMContactAccount).where(
                CRMContactAccount.contact_id == contact_id,
                CRMContactAccount.account_id == account_id,
            )
        )
        if existing is not None:
            return
        tenant.add(
            session,
            CRMContactAccount(
                contact_id=contact_id,
                account_id=account_id,
                role=PRIMARY_CONTACT_ROLE,
                is_primary=True,
            ),
        )
        session.flush()

    def _create_opportunity(
        self,
        session: Session,
        tenant: TenantPartition,
        lead: CRMLead,
        dto: LeadConvertRequest,
        contact: CRMContact | None,
        account: CRMAccount | None,
        owner_id: str,
        performed_by: str,
    ) -> CRMOpportunity:
        with tracer.start_as_current_span("crm.lead.convert.opportunity"):
            opportunity = tenant.add(
                session,
                CRMOpportunity(
                    name=dto.opportunity_name or f"{lead.company or lead.last_name} - Opportunity",
                    account_id=account.id if account is not None else None,
                    primary_contact_id=contact.id if contact is not None else None,
                    lead_id=lead.id,
                    pipeline_id=dto.pipeline_id,
                    stage_id=dto.opportunity_stage_id,
                    amount=dto.amount,
                    close_date=dto.close_date,
                    lead_source=lead.source,
                    owner_id=owner_id,
                    created_by=performed_by,
                ),
            )
            session.flush()
            return opportunity

    def _copy_forward(
        self,
        session: Session,
        reference: LeadReferenceData,
        lead: CRMLead,
        contact: CRMContact,
    ) -> None:
        tenant = reference.tenant
        config = reference.settings.conversion
        copied = {"activities": 0, "notes": 0, "documents": 0}

        if config.copy_activities:
            activities = session.scalars(
                tenant.select(CRMActivity)
                .where(CRMActivity.entity_type == "lead", CRMActivity.entity_id == lead.id)
                .order_by(CRMActivity.created_at.asc())
            ).all()
            for item in activities:
                tenant.add(
                    session,
                    CRMActivity(
                        entity_type="contact",
                        entity_id=contact.id,
                        activity_type=item.activity_type,
                        title=item.title,
                        description=item.description,
                        activity_metadata={**(item.activity_metadata or {}), "copied_from_lead_id": str(lead.id)},
                        performed_by=item.performed_by,
                        created_at=item.created_at,
                    ),
                )
            copied["activities"] = len(activities)

        if config.copy_notes:
            notes = session.scalars(
                tenant.select(CRMNote).where(CRMNote.entity_type == "lead", CRMNote.entity_id == lead.id)
            ).all()
            for note in notes:
                tenant.add(
                    session,
                    CRMNote(
                        entity_type="contact",
                        entity_id=contact.id,
                        content=note.content,
                        is_pinned=note.is_pinned,
                        created_by=note.created_by,
                        created_at=note.created_at,
                    ),
                )
            copied["notes"] = len(notes)

        if config.copy_documents:
            documents = session.scalars(
                tenant.select(CRMDocument).where(CRMDocument.entity_type == "lead", CRMDocument.entity_id == lead.id)
            ).all()
            for document in documents:
                tenant.add(
                    session,
                    CRMDocument(
                        entity_type="contact",
                        entity_id=contact.id,
                        file_name=document.file_name,
                        storage_key=document.storage_key,
                        mime_type=document.mime_type,
                        size_bytes=document.size_bytes,
                        uploaded_by=document.uploaded_by,
                        created_at=document.created_at,
                    ),
                )
            copied["documents"] = len(documents)

        session.flush()
        logger.info(
            "lead.convert.copied_forward",
            extra={"tenant_id": tenant.tenant_id, "lead_id": str(lead.id), "contact_id": str(contact.id), **copied},
        )
