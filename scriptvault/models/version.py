from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Index, UniqueConstraint, text
from sqlmodel import Field, SQLModel


class VersionStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"
    DEPRECATED = "deprecated"


class ChangeType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    ROLLBACK = "rollback"
    MERGE = "merge"


class VersionBump(str, Enum):
    MAJOR = "major"
    MINOR = "minor"
    PATCH = "patch"


class ScriptSnapshot(SQLModel):
    name: str
    cn_name: Optional[str] = None
    description: Optional[str] = None
    cn_description: Optional[str] = None
    scope: Optional[str] = None
    cn_scope: Optional[str] = None
    author: str = ""
    hashtags: list[str] = Field(default_factory=list)
    sql_content: str


class ScriptVersion(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint(
            "script_id", "major_version", "minor_version", "patch_version",
            name="uq_scriptversion_number",
        ),
        # at most one current version per script, enforced by the database too
        Index(
            "uq_scriptversion_current",
            "script_id",
            unique=True,
            sqlite_where=text("is_current_version = 1"),
            postgresql_where=text("is_current_version"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    version_id: str = Field(unique=True, index=True)
    script_id: str = Field(index=True)
    version: str = Field(index=True)
    major_version: int
    minor_version: int
    patch_version: int
    status: str = Field(default=VersionStatus.ACTIVE.value, index=True)
    is_current_version: bool = Field(default=True)

    name: str
    cn_name: Optional[str] = None
    description: Optional[str] = None
    cn_description: Optional[str] = None
    scope: Optional[str] = None
    cn_scope: Optional[str] = None
    author: str = Field(default="")
    hashtags_json: str = Field(default="[]")
    sql_content: str

    created_by: str
    created_by_email: str
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    approval_status: Optional[str] = None
    approval_request_id: Optional[str] = Field(default=None, index=True)

    change_type: str = Field(default=ChangeType.CREATE.value)
    change_description: Optional[str] = None
    previous_version_id: Optional[str] = None

    execution_count: int = Field(default=0)
    last_executed_at: Optional[datetime] = None
    rollback_count: int = Field(default=0)
