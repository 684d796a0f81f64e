"""Language model clients."""

from review_copilot.llm.client import ModelClient, ModelInvocationError, TransientModelError

__all__ = ["ModelClient", "ModelInvocationError", "TransientModelError"]
