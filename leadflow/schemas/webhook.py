from typing import Optional

from pydantic import BaseModel


class WebhookResponse(BaseModel):
    success: bool
    message: str
    processed: int = 0
    ai_replies: int = 0
    request_id: Optional[str] = None
