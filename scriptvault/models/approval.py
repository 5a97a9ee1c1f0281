from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel


class ApprovalStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


TERMINAL_STATUSES = (
    ApprovalStatus.APPROVED,
    ApprovalStatus.REJECTED,
    ApprovalStatus.WITHDRAWN,
)


class OperationType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ScriptType(str, Enum):
    READ_ONLY = "read_only"
    DATA_MODIFICATION = "data_modification"
    STRUCTURE_CHANGE = "structure_change"
    SYSTEM_ADMIN = "system_admin"


class ApprovalPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


PRIORITY_RANK = {
    ApprovalPriority.URGENT.value: 4,
    ApprovalPriority.HIGH.value: 3,
    ApprovalPriority.MEDIUM.value: 2,
    ApprovalPriority.LOW.value: 1,
}


class HistoryAction(str, Enum):
    SUBMIT = "submit"
    APPROVE = "approve"
    REJECT = "reject"
    WITHDRAW = "withdraw"
    REQUEST_CHANGES = "request_changes"


class ApprovalRequest(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    request_id: str = Field(unique=True, index=True)
    script_id: str = Field(index=True)
    operation_type: str = Field(index=True)
    script_type: str
    status: str = Field(default=ApprovalStatus.PENDING.value, index=True)
    priority: str = Field(default=ApprovalPriority.MEDIUM.value)

    title: str
    description: str = Field(default="")
    changes_summary: Optional[str] = None
    original_data_json: Optional[str] = None
    sql_content: str = Field(default="")

    requester_id: str = Field(index=True)
    requester_email: str

    requested_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    submitted_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    reviewer_email: Optional[str] = None
    review_comment: Optional[str] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow, index=True)

    auto_approval_eligible: bool = Field(default=False)
    required_approvers_json: str = Field(default="[]")
    current_approvers_json: str = Field(default="[]")


class ApprovalHistory(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    history_id: str = Field(unique=True, index=True)
    request_id: str = Field(index=True)
    script_id: str = Field(index=True)

    action: str = Field(index=True)
    action_by: str = Field(index=True)
    action_by_email: str
    action_at: datetime = Field(default_factory=datetime.utcnow, index=True)

    previous_status: str
    new_status: str
    comment: Optional[str] = None
    metadata_json: str = Field(default="{}")
