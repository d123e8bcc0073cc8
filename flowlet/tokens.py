"""Token estimation and cost accounting for LLM calls."""
from dataclasses import dataclass
from typing import Any, Dict, Optional

# USD per 1M tokens: (input, output)
MODEL_PRICING: Dict[str, tuple] = {
    "gpt-4": (30.0, 60.0),
    "gpt-4-turbo": (10.0, 30.0),
    "gpt-3.5-turbo": (0.5, 1.5),
    "gpt-4o": (2.5, 10.0),
    "gpt-4o-mini": (0.15, 0.6),
    "claude-3-opus": (15.0, 75.0),
    "claude-3-sonnet": (3.0, 15.0),
    "claude-3-haiku": (0.25, 1.25),
    "claude-3-5-sonnet": (3.0, 15.0),
    "gemini-1.5-pro": (1.25, 5.0),
    "gemini-1.5-flash": (0.075, 0.3),
}


def model_pricing(model: str) -> Optional[tuple]:
    """Price pair for ``model``; dated ids such as "gpt-4o-2024-08-06" match their family."""
    if model in MODEL_PRICING:
        return MODEL_PRICING[model]
    family = max((name for name in MODEL_PRICING if model.startswith(name + "-")), key=len, default=None)
    return MODEL_PRICING[family] if family else None


def estimate_tokens(text: str) -> int:
    """Rough estimate: about four characters per token, never less than one."""
    return max(1, len(text) // 4)


@dataclass
class ModelUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0


class CostTracker:
    """Accumulates token usage and USD cost per model.

    Models missing from MODEL_PRICING are counted but cost nothing.
    """

    def __init__(self):
        self.total_input_tokens = 0
        self.total_output_tokens = 0
        self.total_cost = 0.0
        self.by_model: Dict[str, ModelUsage] = {}

    def track_usage(self, model: str, input_tokens: int, output_tokens: int) -> float:
        usage = self.by_model.setdefault(model, ModelUsage())
        usage.input_tokens += input_tokens
        usage.output_tokens += output_tokens
        self.total_input_tokens += input_tokens
        self.total_output_tokens += output_tokens

        cost = 0.0
        pricing = model_pricing(model)
        if pricing is not None:
            input_price, output_price = pricing
            cost = (input_tokens * input_price + output_tokens * output_price) / 1_000_000
        usage.cost += cost
        self.total_cost += cost
        return cost

    def summary(self) -> Dict[str, Any]:
        return {
            "total_input_tokens": self.total_input_tokens,
            "total_output_tokens": self.total_output_tokens,
            "total_cost_usd": self.total_cost,
            "by_model": {
                model: {"input_tokens": u.input_tokens, "output_tokens": u.output_tokens, "cost_usd": u.cost}
                for model, u in self.by_model.items()
            },
        }

    def reset(self) -> None:
        self.total_input_tokens = 0
        self.total_output_tokens = 0
        self.total_cost = 0.0
        self.by_model.clear()


global_cost_tracker = CostTracker()
