"""
Token Tracker - token usage and cost estimates for assistant answers.
"""

from typing import Dict, Any


# USD per 1K tokens
MODEL_PRICING = {
    "gpt-4o-mini": {"input": 0.00015, "output": 0.0006},
    "gpt-4o": {"input": 0.0025, "output": 0.01},
    "text-embedding-3-small": {"input": 0.00002, "output": 0},
    "default": {"input": 0.00015, "output": 0.0006}
}


def estimate_cost(model: str, input_tokens: int = 0, output_tokens: int = 0) -> float:
    pricing = MODEL_PRICING.get(model, MODEL_PRICING["default"])
    return (input_tokens / 1000) * pricing["input"] + (output_tokens / 1000) * pricing["output"]


def empty_usage(model: str = "unknown") -> Dict[str, Any]:
    return {
        "model": model,
        "input_tokens": 0,
        "output_tokens": 0,
        "total_tokens": 0,
        "estimated_cost_usd": 0.0
    }


def extract_token_usage(response) -> Dict[str, Any]:
    """
    Read prompt/completion token counts from a chat completion (or the final
    chunk of a stream sent with include_usage).
    """
    usage = getattr(response, "usage", None)
    model = getattr(response, "model", None) or "unknown"
    if usage is None:
        return empty_usage(model)

    input_tokens = getattr(usage, "prompt_tokens", 0) or 0
    output_tokens = getattr(usage, "completion_tokens", 0) or 0
    total_tokens = getattr(usage, "total_tokens", 0) or input_tokens + output_tokens

    return {
        "model": model,
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "total_tokens": total_tokens,
        "estimated_cost_usd": estimate_cost(model, input_tokens, output_tokens)
    }


class TokenTracker:
    """Accumulates usage over the calls made while answering one question."""

    def __init__(self):
        self.calls = []
        self.total_input_tokens = 0
        self.total_output_tokens = 0
        self.total_tokens = 0
        self.total_cost_usd = 0.0

    def track(self, response) -> Dict[str, Any]:
        return self.add(extract_token_usage(response))

    def add(self, usage: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append(usage)
        self.total_input_tokens += usage["input_tokens"]
        self.total_output_tokens += usage["output_tokens"]
        self.total_tokens += usage["total_tokens"]
        self.total_cost_usd += usage["estimated_cost_usd"]
        return usage

    def get_summary(self) -> Dict[str, Any]:
        return {
            "call_count": len(self.calls),
            "input_tokens": self.total_input_tokens,
            "output_tokens": self.total_output_tokens,
            "total_tokens": self.total_tokens,
            "estimated_cost_usd": round(self.total_cost_usd, 6)
        }
