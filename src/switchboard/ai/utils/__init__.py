"""Small helpers used across the AI layer."""

from .tokens import CHARS_PER_TOKEN, IMAGE_PART_TOKENS, estimate_tokens

__all__ = ["CHARS_PER_TOKEN", "IMAGE_PART_TOKENS", "estimate_tokens"]
