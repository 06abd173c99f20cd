"""User interaction handlers for deployment parameter prompts."""

from __future__ import annotations

import getpass
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class InputType(str, Enum):
    """Type of user input expected."""
    CHOICE = "choice"       # 从 options 中选择
    TEXT = "text"           # 自由文本输入
    CONFIRM = "confirm"     # 是/否确认
    SECRET = "secret"       # 敏感信息


class QuestionCategory(str, Enum):
    """What the question is about."""
    SELECTION = "selection"         # 选择已有云资源（compartment、集群、子网）
    NAMING = "naming"               # 为新资源命名
    CONFIRMATION = "confirmation"   # 确认操作
    INFORMATION = "information"     # 需要额外信息


@dataclass
class InteractionRequest:
    """A question asked while collecting deployment parameters."""

    question: str
    input_type: InputType = InputType.CHOICE
    options: List[str] = field(default_factory=list)
    category: QuestionCategory = QuestionCategory.SELECTION
    context: Optional[str] = None
    default: Optional[str] = None
    allow_custom: bool = False
    # 用于 AutoResponseHandler 匹配预设答案
    key: Optional[str] = None

    def format_prompt(self) -> str:
        lines = [f"\n? {self.question}"]
        if self.context:
            lines.append(f"  {self.context}")

        if self.input_type == InputType.CHOICE and self.options:
            for index, option in enumerate(self.options, 1):
                marker = " (默认)" if option == self.default else ""
                lines.append(f"  [{index}] {option}{marker}")
            if self.allow_custom:
                lines.append("  也可以直接输入自定义值")
        elif self.input_type in (InputType.TEXT, InputType.CONFIRM) and self.default:
            lines.append(f"  (默认: {self.default})")
        return "\n".join(lines)


@dataclass
class InteractionResponse:
    """User's answer to an interaction request."""

    value: str
    selected_option: Optional[int] = None  # 1-based
    is_custom: bool = False
    cancelled: bool = False

    @property
    def confirmed(self) -> bool:
        return not self.cancelled and self.value.lower() in ("y", "yes", "是")

    @classmethod
    def from_choice(cls, option_index: int, options: List[str]) -> "InteractionResponse":
        if 1 <= option_index <= len(options):
            return cls(value=options[option_index - 1], selected_option=option_index)
        raise ValueError(f"Invalid option index: {option_index}")

    @classmethod
    def cancelled_response(cls) -> "InteractionResponse":
        return cls(value="", cancelled=True)


class UserInteractionHandler(ABC):
    """Abstract base class for handling user interactions."""

    @abstractmethod
    def ask(self, request: InteractionRequest) -> InteractionResponse:
        """
        Present a request to the user and get their response.

        Args:
            request: The interaction request to present

        Returns:
            The user's response; ``cancelled`` is set when the user declines
        """

    @abstractmethod
    def notify(self, message: str, level: str = "info") -> None:
        """Send a message that needs no answer (info, warning, error)."""


class CLIInteractionHandler(UserInteractionHandler):
    """Prompts on stdin/stdout."""

    def __init__(self, input_func: Callable[[str], str] = input) -> None:
        self.input_func = input_func

    def ask(self, request: InteractionRequest) -> InteractionResponse:
        print(request.format_prompt())
        try:
            if request.input_type == InputType.CHOICE:
                return self._handle_choice(request)
            if request.input_type == InputType.CONFIRM:
                return self._handle_confirm(request)
            if request.input_type == InputType.SECRET:
                return InteractionResponse(value=getpass.getpass("  > "))
            return self._handle_text(request)
        except (KeyboardInterrupt, EOFError):
            print("\n  (已取消)")
            return InteractionResponse.cancelled_response()

    def _handle_choice(self, request: InteractionRequest) -> InteractionResponse:
        while True:
            user_input = self.input_func("  请选择: ").strip()
            if not user_input and request.default:
                if request.default in request.options:
                    return InteractionResponse.from_choice(
                        request.options.index(request.default) + 1, request.options
                    )
                return InteractionResponse(value=request.default)
            if user_input.isdigit() and 1 <= int(user_input) <= len(request.options):
                return InteractionResponse.from_choice(int(user_input), request.options)
            if user_input and request.allow_custom:
                return InteractionResponse(value=user_input, is_custom=True)
            print(f"  无效选项，请输入 1-{len(request.options)}")

    def _handle_confirm(self, request: InteractionRequest) -> InteractionResponse:
        default = request.default or "n"
        while True:
            user_input = self.input_func(f"  [y/n] ({default}): ").strip().lower() or default
            if user_input in ("y", "yes", "是"):
                return InteractionResponse(value="yes")
            if user_input in ("n", "no", "否"):
                return InteractionResponse(value="no")
            print("  请输入 y 或 n")

    def _handle_text(self, request: InteractionRequest) -> InteractionResponse:
        user_input = self.input_func("  > ").strip()
        return InteractionResponse(value=user_input or (request.default or ""))

    def notify(self, message: str, level: str = "info") -> None:
        prefixes = {"info": "i", "warning": "!", "error": "x", "success": "+"}
        print(f"[{prefixes.get(level, '-')}] {message}")


class CallbackInteractionHandler(UserInteractionHandler):
    """
    Interaction handler that delegates to callbacks.
    Useful when the orchestrator is embedded in another UI.
    """

    def __init__(
        self,
        ask_callback: Callable[[InteractionRequest], InteractionResponse],
        notify_callback: Optional[Callable[[str, str], None]] = None,
    ) -> None:
        self.ask_callback = ask_callback
        self.notify_callback = notify_callback or (lambda msg, lvl: logger.info("[%s] %s", lvl, msg))

    def ask(self, request: InteractionRequest) -> InteractionResponse:
        return self.ask_callback(request)

    def notify(self, message: str, level: str = "info") -> None:
        self.notify_callback(message, level)


class AutoResponseHandler(UserInteractionHandler):
    """
    Non-interactive handler: answers from preset values, then defaults.

    A question with neither a preset answer nor a default is declined,
    which cancels the run instead of guessing a cloud resource.
    """

    def __init__(
        self,
        responses: Optional[Dict[str, str]] = None,
        always_confirm: bool = True,
        pick_first: bool = False,
    ) -> None:
        self.responses = responses or {}
        self.always_confirm = always_confirm
        self.pick_first = pick_first

    def ask(self, request: InteractionRequest) -> InteractionResponse:
        logger.info("Auto-responding to: %s", request.question)
        if request.key and request.key in self.responses:
            return InteractionResponse(value=self.responses[request.key])
        if request.default:
            return InteractionResponse(value=request.default)
        if request.input_type == InputType.CONFIRM:
            return InteractionResponse(value="yes" if self.always_confirm else "no")
        if request.input_type == InputType.CHOICE and request.options and self.pick_first:
            return InteractionResponse.from_choice(1, request.options)
        logger.warning("No automatic answer for: %s", request.question)
        return InteractionResponse.cancelled_response()

    def notify(self, message: str, level: str = "info") -> None:
        logger.info("[%s] %s", level, message)
