"""Prompt and UI utilities."""

from bulletproof.core.utils.prompt.prompt import PromptHandler, console
from bulletproof.core.utils.prompt.status_ui import SessionUI, create_session_ui

__all__ = ["console", "create_session_ui", "PromptHandler", "SessionUI"]
