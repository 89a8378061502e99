from pydantic import BaseModel
from typing import Optional

class TokenData(BaseModel):
    sub: str
    email: Optional[str] = None
    name: Optional[str] = None

    class Config:
        from_attributes = True
