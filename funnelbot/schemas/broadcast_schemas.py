from decimal import Decimal
from typing import List, Optional

from pydantic import Field

from funnelbot.scenario.types import MediaConfig
from funnelbot.schemas.camel_base_model import CamelCaseBaseModel
from funnelbot.services.broadcast import CaptionMode


class StartBroadcastRequest(CamelCaseBaseModel):
    contacts: List[str] = Field(..., description="Telegram chat ids, one per contact")
    message_html: str = Field(default="", description="Message text (Telegram HTML)")
    media: List[MediaConfig] = Field(default_factory=list)
    caption_mode: Optional[CaptionMode] = Field(
        default=None, description="Defaults to caption when the text fits, else separate"
    )
    delay_ms: Optional[int] = Field(default=None, ge=0)
    filter_blocked: Optional[bool] = None


class BroadcastIdRequest(CamelCaseBaseModel):
    id: str = Field(..., min_length=1, description="Broadcast id")


class ConfirmPaymentRequest(CamelCaseBaseModel):
    telegram_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0)
    currency: str = Field(default="RUB", min_length=3, max_length=3)
