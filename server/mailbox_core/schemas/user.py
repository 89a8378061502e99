from pydantic import BaseModel
from typing import Optional

class CurrentUser(BaseModel):
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
