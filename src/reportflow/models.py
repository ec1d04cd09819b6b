"""
Alembic model import hook.

Importing this module ensures all SQLAlchemy models are registered on Base.metadata.
"""

from __future__ import annotations

# Import User first - other models have relationships to User
from reportflow.modules.identity.models import User  # noqa: F401

from reportflow.modules.audit.models import HistoryEntry  # noqa: F401
from reportflow.modules.notifications.models import Notification  # noqa: F401
from reportflow.modules.payments.models import Payment, PaymentProof  # noqa: F401
from reportflow.modules.reports.models import Report, ReportFile  # noqa: F401
