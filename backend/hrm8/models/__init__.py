# Import models here so Alembic can discover metadata.
from hrm8.models.user import User  # noqa: F401
from hrm8.models.licensee import Licensee  # noqa: F401
from hrm8.models.region import Region  # noqa: F401
from hrm8.models.consultant import Consultant  # noqa: F401
from hrm8.models.platform_membership import PlatformMembership  # noqa: F401

# Lead pipeline
from hrm8.models.lead import Lead  # noqa: F401
from hrm8.models.conversion_request import ConversionRequest  # noqa: F401
from hrm8.models.company import Company  # noqa: F401

# Region-owned work
from hrm8.models.job import Job  # noqa: F401
from hrm8.models.invoice import Invoice  # noqa: F401
from hrm8.models.opportunity import Opportunity  # noqa: F401

# Money
from hrm8.models.revenue_event import RevenueEvent  # noqa: F401
from hrm8.models.commission_entry import CommissionEntry  # noqa: F401
from hrm8.models.withdrawal import Withdrawal, WithdrawalClaim  # noqa: F401
from hrm8.models.settlement import Settlement  # noqa: F401

from hrm8.models.audit_log import AuditLogEntry  # noqa: F401
