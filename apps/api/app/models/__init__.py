from app.models.audit import AuditLog
from app.platform.tenancy import PlatformTenant
from app.crm.models import (
	CRMAccount,
	CRMActivity,
	CRMContact,
	CRMContactAccount,
	CRMDisqualificationReason,
	CRMDocument,
	CRMIdempotencyKey,
	CRMLead,
	CRMLeadPriority,
	CRMLeadSetting,
	CRMLeadStage,
	CRMLeadStageField,
	CRMNote,
	CRMOpportunity,
	CRMQualificationField,
	CRMQualificationFramework,
	CRMRecordTeamMember,
	CRMRecordTeamRole,
	CRMRoutingRule,
	CRMScoringRule,
	CRMScoringTemplate,
	CRMTeamMember,
)

__all__ = [
	"AuditLog",
	"PlatformTenant",
	"CRMAccount",
	"CRMActivity",
	"CRMContact",
	"CRMContactAccount",
	"CRMDisqualificationReason",
	"CRMDocument",
	"CRMIdempotencyKey",
	"CRMLead",
	"CRMLeadPriority",
	"CRMLeadSetting",
	"CRMLeadStage",
	"CRMLeadStageField",
	"CRMNote",
	"CRMOpportunity",
	"CRMQualificationField",
	"CRMQualificationFramework",
	"CRMRecordTeamMember",
	"CRMRecordTeamRole",
	"CRMRoutingRule",
	"CRMScoringRule",
	"CRMScoringTemplate",
	"CRMTeamMember",
]
