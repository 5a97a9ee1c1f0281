from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


class EditHistory(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    script_id: str = Field(index=True)
    operation: str = Field(index=True)
    description: Optional[str] = None

    changes_json: str = Field(default="[]")
    old_data_json: Optional[str] = None
    new_data_json: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
