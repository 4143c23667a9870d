from app.models.activity import ActivityLog
from app.crm.models import (
	CRMAccount,
	CRMContact,
	CRMIdempotencyKey,
	CRMLead,
	CRMNote,
	CRMOpportunity,
	CRMTenant,
)

__all__ = [
	"ActivityLog",
	"CRMAccount",
	"CRMContact",
	"CRMIdempotencyKey",
	"CRMLead",
	"CRMNote",
	"CRMOpportunity",
	"CRMTenant",
]
