from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime

class WebhookResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    reason: Optional[str] = None
    task_id: Optional[str] = None
    intent: Optional[str] = None

class LinkCodeCreateRequest(BaseModel):
    phone: str = Field(..., min_length=6, max_length=32)

class LinkCodeCreateResponse(BaseModel):
    link_code: str
    expires_at: datetime
    normalized_address: str

class UnlinkResponse(BaseModel):
    status: str = "ok"
    deactivated: int = 0

class MaintenanceResponse(BaseModel):
    status: str = "queued"
    job_ids: List[str] = Field(default_factory=list)
