# backend/hrm8/schemas/audit.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class AuditLogOut(BaseModel):
    id: UUID
    entity_type: str
    entity_id: str
    action: str
    performed_by: Optional[str] = None
    performed_by_role: str
    description: Optional[str] = None
    changes: Dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    sequence: int
    entry_hash: str
    performed_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLogPageOut(BaseModel):
    items: List[AuditLogOut]
    total: int
    limit: int
    offset: int


class TopActionOut(BaseModel):
    action: str
    count: int


class AuditStatsOut(BaseModel):
    total_logs: int
    today_logs: int
    top_actions: List[TopActionOut]


class ChainVerificationOut(BaseModel):
    entity_type: str
    entity_id: str
    entries: int
    valid: bool
    broken_at_sequence: Optional[int] = None
