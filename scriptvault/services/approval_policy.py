"""Classification and auto-approval rules for proposed script changes.

The classifier only informs reporting today: the gate itself depends on the
requester's role alone, so every non-admin change passes a human reviewer no
matter how harmless the SQL looks.
"""

from typing import Optional, Union

from scriptvault.models.approval import OperationType, ScriptType
from scriptvault.models.user_role import Role

SYSTEM_ADMIN_KEYWORDS = (
    "GRANT",
    "REVOKE",
    "CREATE USER",
    "DROP USER",
    "ALTER USER",
    "BACKUP",
    "RESTORE",
    "SHUTDOWN",
    "KILL",
)

STRUCTURE_CHANGE_KEYWORDS = (
    "CREATE TABLE",
    "DROP TABLE",
    "ALTER TABLE",
    "CREATE INDEX",
    "DROP INDEX",
    "CREATE DATABASE",
    "DROP DATABASE",
)

DATA_MODIFICATION_KEYWORDS = (
    "INSERT",
    "UPDATE",
    "DELETE",
    "TRUNCATE",
    "MERGE",
)

# first match wins
CLASSIFICATION_ORDER = (
    (ScriptType.SYSTEM_ADMIN, SYSTEM_ADMIN_KEYWORDS),
    (ScriptType.STRUCTURE_CHANGE, STRUCTURE_CHANGE_KEYWORDS),
    (ScriptType.DATA_MODIFICATION, DATA_MODIFICATION_KEYWORDS),
)


def classify_script(sql_content: Optional[str]) -> ScriptType:
    upper_sql = (sql_content or "").upper().strip()
    for script_type, keywords in CLASSIFICATION_ORDER:
        if any(keyword in upper_sql for keyword in keywords):
            return script_type
    return ScriptType.READ_ONLY


def is_auto_approval_eligible(
    role: Optional[Union[Role, str]],
    operation_type: Union[OperationType, str],
    script_type: Union[ScriptType, str],
) -> bool:
    if role is None:
        return False
    try:
        return Role(role) == Role.ADMIN
    except ValueError:
        return False


def required_approvers(
    operation_type: Union[OperationType, str],
    script_type: Union[ScriptType, str],
) -> list[str]:
    return [Role.ADMIN.value]
