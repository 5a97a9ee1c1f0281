from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


class SqlScript(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    script_id: str = Field(unique=True, index=True)

    name: str
    cn_name: Optional[str] = None
    description: Optional[str] = None
    cn_description: Optional[str] = None
    scope: Optional[str] = None
    cn_scope: Optional[str] = None
    author: str = Field(default="")
    hashtags_json: str = Field(default="[]")
    sql_content: str

    is_scheduled: bool = Field(default=False)
    cron_schedule: str = Field(default="")

    approval_status: Optional[str] = Field(default=None, index=True)
    approval_request_id: Optional[str] = Field(default=None, index=True)

    current_version_id: Optional[str] = Field(default=None, index=True)
    current_version: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
