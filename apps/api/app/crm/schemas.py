from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, TypeAdapter


FieldScalar = str | bool | int | float
FieldValue = FieldScalar | list[FieldScalar] | None
FieldMap = dict[str, FieldValue]

DuplicatePolicy = Literal["block", "warn", "allow"]
ContactAction = Literal["create_new", "merge_existing", "skip"]
AccountAction = Literal["create_new", "link_existing", "skip"]
ConvertedStatus = Literal["converted", "disqualified", "active"]
OwnershipScope = Literal["my_leads", "created_by_me", "my_team"]
LeadSortField = Literal["created_at", "updated_at", "name", "company", "score", "source", "last_activity_at", "stage"]


class RoutingCondition(BaseModel):
    field: str = Field(min_length=1)
    operator: str = Field(min_length=1)
    value: Any = None


class SpecificUserAssignment(BaseModel):
    type: Literal["specific_user"]
    user_ids: list[str] = Field(default_factory=list)


class RoundRobinAssignment(BaseModel):
    type: Literal["round_robin"]
    user_ids: list[str] = Field(default_factory=list)


class TeamAssignment(BaseModel):
    type: Literal["team"]
    team_id: str = Field(min_length=1)


AssignmentStrategy = Annotated[
    SpecificUserAssignment | RoundRobinAssignment | TeamAssignment,
    Field(discriminator="type"),
]

assignment_strategy_adapter = TypeAdapter(AssignmentStrategy)
_routing_condition_list_adapter = TypeAdapter(list[RoutingCondition])


def parse_assignment_strategy(assignment_type: str, config: dict[str, Any] | None) -> AssignmentStrategy:
    return assignment_strategy_adapter.validate_python({**(config or {}), "type": assignment_type})


def parse_routing_conditions(value: Any) -> list[RoutingCondition]:
    if not value:
        return []
    return _routing_condition_list_adapter.validate_python(value)


class StageSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    slug: str
    color: str | None
    sort_order: int
    is_won: bool
    is_lost: bool


class PrioritySummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    color: str | None
    icon: str | None


class StageRead(StageSummary):
    description: str | None
    is_active: bool
    required_fields: list[str]
    lock_previous_fields: bool


class StageFieldRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    stage_id: UUID
    field_key: str
    field_label: str
    field_type: str
    field_options: list[Any]
    is_required: bool
    is_visible: bool
    sort_order: int


class PriorityRead(PrioritySummary):
    score_min: int | None
    score_max: int | None
    sort_order: int
    is_default: bool
    is_active: bool


class QualificationFieldRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    field_key: str
    field_label: str
    field_type: str
    field_options: list[Any]
    score_weight: int
    is_required: bool
    sort_order: int


class DisqualificationReasonRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None
    is_active: bool


class RoutingRuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    priority: int
    is_active: bool
    conditions: list[RoutingCondition]
    assignment_type: str
    assignment_config: dict[str, Any]
    round_robin_index: int


class StageHistoryEntry(BaseModel):
    stage_id: UUID | None
    stage_name: str | None = None
    entered_at: datetime
    entered_by: str
    previous_stage_id: UUID | None = None
    unlock_reason: str | None = None


class LeadCreate(BaseModel):
    first_name: str | None = None
    last_name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    mobile: str | None = None
    company: str | None = None
    job_title: str | None = None
    website: str | None = None
    address_line1: str | None = None
    address_line2: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None
    emails: list[dict[str, Any]] = Field(default_factory=list)
    phones: list[dict[str, Any]] = Field(default_factory=list)
    addresses: list[dict[str, Any]] = Field(default_factory=list)
    social_profiles: dict[str, str] = Field(default_factory=dict)
    source: str | None = None
    source_details: dict[str, Any] = Field(default_factory=dict)
    owner_id: str | None = None
    stage_id: UUID | None = None
    priority_id: UUID | None = None
    qualification_framework_id: UUID | None = None
    qualification: FieldMap = Field(default_factory=dict)
    custom_fields: FieldMap = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)
    do_not_contact: bool = False
    do_not_email: bool = False
    do_not_call: bool = False


class LeadUpdate(BaseModel):
    row_version: int | None = Field(default=None, ge=1)
    first_name: str | None = None
    last_name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    mobile: str | None = None
    company: str | None = None
    job_title: str | None = None
    website: str | None = None
    address_line1: str | None = None
    address_line2: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None
    emails: list[dict[str, Any]] | None = None
    phones: list[dict[str, Any]] | None = None
    addresses: list[dict[str, Any]] | None = None
    social_profiles: dict[str, str] | None = None
    source: str | None = None
    source_details: dict[str, Any] | None = None
    owner_id: str | None = None
    priority_id: UUID | None = None
    qualification_framework_id: UUID | None = None
    qualification: FieldMap | None = None
    custom_fields: FieldMap | None = None
    tags: list[str] | None = None
    do_not_contact: bool | None = None
    do_not_email: bool | None = None
    do_not_call: bool | None = None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    first_name: str | None
    last_name: str
    email: str | None
    phone: str | None
    mobile: str | None
    company: str | None
    job_title: str | None
    website: str | None
    address_line1: str | None
    address_line2: str | None
    city: str | None
    state: str | None
    postal_code: str | None
    country: str | None
    emails: list[dict[str, Any]]
    phones: list[dict[str, Any]]
    addresses: list[dict[str, Any]]
    social_profiles: dict[str, Any]
    source: str | None
    source_details: dict[str, Any]
    owner_id: str | None
    created_by: str
    updated_by: str | None
    stage_id: UUID | None
    stage_entered_at: datetime | None
    stage: StageSummary | None = None
    priority_id: UUID | None
    priority: PrioritySummary | None = None
    stage_history: list[StageHistoryEntry]
    score: int
    score_breakdown: dict[str, Any]
    qualification_framework_id: UUID | None
    qualification: FieldMap
    custom_fields: FieldMap
    tags: list[str]
    do_not_contact: bool
    do_not_email: bool
    do_not_call: bool
    converted_at: datetime | None
    converted_by: str | None
    converted_contact_id: UUID | None
    converted_account_id: UUID | None
    converted_opportunity_id: UUID | None
    conversion_notes: str | None
    disqualified_at: datetime | None
    disqualified_by: str | None
    disqualification_reason_id: UUID | None
    disqualification_notes: str | None
    last_activity_at: datetime | None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None
    row_version: int


class RecordTeamMemberRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    role_id: UUID | None
    role_name: str | None = None
    access_level: str
    added_by: str
    created_at: datetime


class DuplicateCandidate(BaseModel):
    id: UUID
    entity_type: Literal["lead", "contact", "account"]
    match_type: Literal["email", "phone", "domain"]
    name: str
    email: str | None = None
    phone: str | None = None
    company: str | None = None


class DuplicateReport(BaseModel):
    leads: list[DuplicateCandidate] = Field(default_factory=list)
    contacts: list[DuplicateCandidate] = Field(default_factory=list)
    accounts: list[DuplicateCandidate] = Field(default_factory=list)


class LeadDetailRead(LeadRead):
    team_members: list[RecordTeamMemberRead] = Field(default_factory=list)
    qualification_fields: list[QualificationFieldRead] = Field(default_factory=list)
    stage_fields: list[StageFieldRead] = Field(default_factory=list)
    all_stages: list[StageRead] = Field(default_factory=list)
    stage_settings: dict[str, Any] = Field(default_factory=dict)
    duplicates: DuplicateReport = Field(default_factory=DuplicateReport)


class LeadListMeta(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int


class LeadListPage(BaseModel):
    data: list[LeadRead]
    meta: LeadListMeta


class KanbanColumn(StageSummary):
    count: int
    leads: list[LeadRead]


class LeadKanbanBoard(BaseModel):
    stages: list[KanbanColumn]


class LeadStageChangeRequest(BaseModel):
    stage_id: UUID
    stage_fields: FieldMap = Field(default_factory=dict)
    unlock_reason: str | None = None


class LeadDisqualifyRequest(BaseModel):
    reason_id: UUID
    notes: str | None = None


class LeadConvertRequest(BaseModel):
    contact_action: ContactAction = "create_new"
    existing_contact_id: UUID | None = None
    account_action: AccountAction = "create_new"
    existing_account_id: UUID | None = None
    account_name: str | None = Field(default=None, max_length=255)
    create_opportunity: bool = False
    opportunity_name: str | None = Field(default=None, max_length=255)
    pipeline_id: str | None = None
    opportunity_stage_id: str | None = None
    amount: Decimal | None = None
    close_date: date | None = None
    new_owner_id: str | None = None
    notes: str | None = None


class LeadConvertResult(BaseModel):
    lead: LeadRead
    contact_id: UUID | None
    account_id: UUID | None
    opportunity_id: UUID | None


class LeadSettingUpdate(BaseModel):
    value: dict[str, Any]
