from .default import DEFAULT_OFFERS, DEFAULT_SCENARIO, DEFAULT_SCENARIO_KEY
from .registry import ScenarioRegistry
from .types import (
    MediaConfig,
    MediaType,
    NotPaidCondition,
    NotReachedStepCondition,
    OfferPhase,
    OfferTemplate,
    ReminderBinding,
    ScenarioConfig,
    StepConfig,
    TimeOfDayConfig,
)

__all__ = [
    "DEFAULT_OFFERS",
    "DEFAULT_SCENARIO",
    "DEFAULT_SCENARIO_KEY",
    "ScenarioRegistry",
    "MediaConfig",
    "MediaType",
    "NotPaidCondition",
    "NotReachedStepCondition",
    "OfferPhase",
    "OfferTemplate",
    "ReminderBinding",
    "ScenarioConfig",
    "StepConfig",
    "TimeOfDayConfig",
]
