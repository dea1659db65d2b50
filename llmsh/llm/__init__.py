"""
Provider clients for llmsh.

Provides the OpenAI-compatible chat-completions collaborator.
"""

from .client import LLMResult, OpenAICompatibleClient, strip_code_fence

__all__ = ["LLMResult", "OpenAICompatibleClient", "strip_code_fence"]
