from decimal import Decimal
from enum import Enum
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


class MediaType(str, Enum):
    PHOTO = "photo"
    VIDEO = "video"
    VIDEO_NOTE = "video_note"
    AUDIO = "audio"


class MediaConfig(BaseModel):
    """A Telegram file_id or a direct URL attached to a step or a broadcast."""

    type: MediaType
    file_id_or_url: str


class NotPaidCondition(BaseModel):
    type: Literal["not_paid"] = "not_paid"


class NotReachedStepCondition(BaseModel):
    type: Literal["not_reached_step"] = "not_reached_step"
    step_id: str


ReminderCondition = Union[NotPaidCondition, NotReachedStepCondition]


class ReminderBinding(BaseModel):
    """
    A delayed step hung on a parent step.

    `delay_minutes` is counted from the previous reminder of the chain; when it
    is missing the target step's `default_delay_minutes` is used.
    """

    step_id: str
    delay_minutes: Optional[int] = None
    condition: Optional[ReminderCondition] = Field(default=None, discriminator="type")


class TimeOfDayConfig(BaseModel):
    hour: int = Field(ge=0, le=23)
    minute: int = Field(default=0, ge=0, le=59)


class StepConfig(BaseModel):
    text: str
    system_title: Optional[str] = None
    media: List[MediaConfig] = Field(default_factory=list)
    default_delay_minutes: Optional[int] = None
    reminders: List[ReminderBinding] = Field(default_factory=list)
    offer_key: Optional[str] = None
    send_at_time_of_day: Optional[TimeOfDayConfig] = None


class ScenarioConfig(BaseModel):
    entry_step_id: str
    steps: Dict[str, StepConfig]

    @model_validator(mode="after")
    def check_step_references(self):
        if self.entry_step_id not in self.steps:
            raise ValueError(f"entry step '{self.entry_step_id}' is not defined")
        return self


class OfferPhase(BaseModel):
    start_after_minutes: int = 0
    price: Decimal
    label: Optional[str] = None


class OfferTemplate(BaseModel):
    key: str
    title: str
    currency: Literal["RUB", "USD"] = "RUB"
    # <= 0 means the offer never expires
    lifetime_minutes: int = 0
    phases: List[OfferPhase] = Field(default_factory=list)

    @property
    def base_price(self) -> Decimal:
        return self.phases[0].price if self.phases else Decimal("0")
