from decimal import Decimal

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

DEFAULT_SCENARIO_KEY = "default"

DEFAULT_SCENARIO = ScenarioConfig(
    entry_step_id="start",
    steps={
        "start": StepConfig(
            system_title="Welcome",
            text="<b>Welcome!</b> Here is what the course is about.",
            reminders=[
                ReminderBinding(
                    step_id="lesson_1",
                    delay_minutes=120,
                    condition=NotReachedStepCondition(step_id="lesson_1"),
                ),
                ReminderBinding(step_id="morning_digest", delay_minutes=1320),
            ],
        ),
        "lesson_1": StepConfig(
            system_title="Lesson 1",
            text="Lesson 1 is ready for you.",
            media=[MediaConfig(type=MediaType.VIDEO, file_id_or_url="lesson-1-video")],
            default_delay_minutes=60,
        ),
        "morning_digest": StepConfig(
            system_title="Morning digest",
            text="Good morning! A short recap of yesterday.",
            default_delay_minutes=1320,
            send_at_time_of_day=TimeOfDayConfig(hour=9, minute=0),
            reminders=[
                ReminderBinding(
                    step_id="discount_offer",
                    delay_minutes=240,
                    condition=NotPaidCondition(),
                )
            ],
        ),
        "discount_offer": StepConfig(
            system_title="Discount offer",
            text="Only for the next 24 hours: the full course at a discount.",
            offer_key="discount_24h",
            default_delay_minutes=240,
            reminders=[
                ReminderBinding(
                    step_id="last_call", delay_minutes=1200, condition=NotPaidCondition()
                )
            ],
        ),
        "last_call": StepConfig(
            system_title="Last call",
            text="The discount disappears soon.",
            default_delay_minutes=1200,
            send_at_time_of_day=TimeOfDayConfig(hour=12),
        ),
        "full_price": StepConfig(
            system_title="Full price",
            text="The course is always available at the regular price.",
            offer_key="full_price",
        ),
    },
)

DEFAULT_OFFERS = {
    "discount_24h": OfferTemplate(
        key="discount_24h",
        title="Course -50% for 24 hours",
        currency="RUB",
        lifetime_minutes=24 * 60,
        phases=[OfferPhase(start_after_minutes=0, price=Decimal("4990"))],
    ),
    "full_price": OfferTemplate(
        key="full_price",
        title="Course",
        currency="RUB",
        lifetime_minutes=0,
        phases=[OfferPhase(start_after_minutes=0, price=Decimal("9990"))],
    ),
}
