"""Grok model catalogue and context window sizes."""

DEFAULT_GROK_MODEL = "grok-4-0709"
DEFAULT_GROK_FLASH_MODEL = "grok-3-fast"

DEFAULT_MODEL = DEFAULT_GROK_MODEL

GROK_MODELS = {
    "grok-4-0709": "Flagship model for advanced reasoning, text, and vision (256K context)",
    "grok-3": "General-purpose text model (131K context)",
    "grok-3-mini": "Lightweight variant for faster responses",
    "grok-3-fast": "Fast response model",
    "grok-2-vision-1212": "Vision-capable model",
}

_TOKEN_LIMITS = {
    "grok-4-0709": 256_000,
    "grok-3": 131_072,
    "grok-3-mini": 131_072,
    "grok-3-fast": 131_072,
    "grok-2-vision-1212": 32_768,
}

DEFAULT_TOKEN_LIMIT = 131_072


def token_limit(model: str) -> int:
    """Context window for model, falling back to a conservative default."""
    return _TOKEN_LIMITS.get(model.removeprefix("xai/"), DEFAULT_TOKEN_LIMIT)
