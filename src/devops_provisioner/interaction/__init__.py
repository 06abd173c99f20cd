"""User interaction and parameter collection."""

from .handler import (
    AutoResponseHandler,
    CallbackInteractionHandler,
    CLIInteractionHandler,
    InputType,
    InteractionRequest,
    InteractionResponse,
    QuestionCategory,
    UserInteractionHandler,
)
from .parameters import InteractiveParameterProvider, ParameterProvider

__all__ = [
    "AutoResponseHandler",
    "CallbackInteractionHandler",
    "CLIInteractionHandler",
    "InputType",
    "InteractionRequest",
    "InteractionResponse",
    "InteractiveParameterProvider",
    "ParameterProvider",
    "QuestionCategory",
    "UserInteractionHandler",
]
