from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class User(BaseModel):
    id: int
    email: str
    tier: str = "FREE"
    jobs_created: int = 0
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
