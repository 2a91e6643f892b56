from typing import Any

from pydantic import BaseModel

from studio_agents.invoker import Invocation
from studio_agents.models import Stage


class FakeInvoker:
    """Returns canned structured outputs per stage and records every call."""

    def __init__(self, responses: dict[Stage, Any] | None = None, *, model: str = "fake-model") -> None:
        self.responses: dict[Stage, Any] = dict(responses or {})
        self.model = model
        self.calls: list[dict[str, Any]] = []

    def invoke(self, *, stage: Stage, system_prompt: str, prompt: str, schema: type[BaseModel]) -> Invocation:
        self.calls.append({"stage": stage, "system_prompt": system_prompt, "prompt": prompt, "schema": schema})
        response = self.responses[stage]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            response = response(prompt)
        output = response if isinstance(response, schema) else schema.model_validate(response)
        return Invocation(output=output, model=self.model, provider="fake")

    def calls_for(self, stage: Stage) -> int:
        return sum(1 for call in self.calls if call["stage"] == stage)


def theme_payload(name: str, observation_ids: list[str], **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "name": name,
        "summary": f"{name} summary",
        "confidence": "high",
        "root_cause_hypotheses": ["manual handoffs"],
        "observation_ids": observation_ids,
        "step_ids": [],
        "waste_type_ids": [],
    }
    payload.update(extra)
    return payload


def solution_payload(title: str, theme_ids: list[str], **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "bucket": "eliminate",
        "title": title,
        "description": f"{title} description",
        "expected_impact": "Shorter lead time",
        "effort_level": "low",
        "risks": [],
        "dependencies": [],
        "recommended_wave": "Wave 1",
        "theme_ids": theme_ids,
        "step_ids": [],
        "observation_ids": [],
    }
    payload.update(extra)
    return payload
