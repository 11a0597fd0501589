from typing import Dict, Mapping, Optional

from funnelbot.utils.errors import ValidationError

from .types import OfferTemplate, ScenarioConfig, StepConfig


class ScenarioRegistry:
    """Lookup of scenario steps and offer templates by key."""

    def __init__(
        self,
        scenarios: Mapping[str, ScenarioConfig],
        offers: Mapping[str, OfferTemplate],
    ):
        self._scenarios: Dict[str, ScenarioConfig] = dict(scenarios)
        self._offers: Dict[str, OfferTemplate] = dict(offers)

    def scenario(self, scenario_key: str) -> ScenarioConfig:
        scenario = self._scenarios.get(scenario_key)
        if scenario is None:
            raise ValidationError(
                f"Unknown scenario '{scenario_key}'", error_code="UNKNOWN_SCENARIO"
            )
        return scenario

    def step(self, scenario_key: str, step_id: str) -> Optional[StepConfig]:
        return self.scenario(scenario_key).steps.get(step_id)

    def offer(self, offer_key: str) -> Optional[OfferTemplate]:
        return self._offers.get(offer_key)
