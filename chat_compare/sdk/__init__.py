"""
SDK for ChatCompare.

Completion clients that satisfy the per-provider completion capability.
"""

from .openrouter_client import OpenRouterCompletion, TransportError, build_completions

__all__ = ["OpenRouterCompletion", "TransportError", "build_completions"]
