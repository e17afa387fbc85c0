from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    email: str
    created_at: datetime
    name: Optional[str] = None
    status: str = "active"

    @staticmethod
    def normalized_email(email: str) -> str:
        return email.strip().lower()
