from scriptvault.models.user_role import Role, UserRoleAssignment
from scriptvault.models.script import SqlScript
from scriptvault.models.approval import (
    ApprovalHistory,
    ApprovalPriority,
    ApprovalRequest,
    ApprovalStatus,
    HistoryAction,
    OperationType,
    ScriptType,
)
from scriptvault.models.version import (
    ChangeType,
    ScriptSnapshot,
    ScriptVersion,
    VersionBump,
    VersionStatus,
)
from scriptvault.models.edit_history import EditHistory

__all__ = [
    "Role", "UserRoleAssignment",
    "SqlScript",
    "ApprovalHistory", "ApprovalPriority", "ApprovalRequest", "ApprovalStatus",
    "HistoryAction", "OperationType", "ScriptType",
    "ChangeType", "ScriptSnapshot", "ScriptVersion", "VersionBump", "VersionStatus",
    "EditHistory",
]
