import logging
from typing import Callable, List, Optional, Protocol, Tuple

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from pydantic import BaseModel, Field

from trip_assistant.errors import ProviderError
from trip_assistant.models import Role, Turn
from trip_assistant.prompts.grounding_prompt import format_grounding_facts

logger = logging.getLogger(__name__)


class CompletionRequest(BaseModel):
    system_instructions: str
    grounding_facts: Tuple[str, ...] = ()
    prior_turns: Tuple[Turn, ...] = ()
    user_turn: str
    model: Optional[str] = None
    temperature: float = Field(0.7, ge=0.0, le=2.0, description="Part of the cache key; the model itself is configured at creation.")


class CompletionProvider(Protocol):
    async def complete(self, request: CompletionRequest) -> str:
        ...


def _extract_text(content) -> str:
    """Extract plain text from a content field that may be a string or a list of blocks."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "\n".join(parts)
    return str(content)


def build_messages(request: CompletionRequest) -> List[BaseMessage]:
    """Translate a completion request into chat messages."""
    system = request.system_instructions.rstrip() + "\n\n" + format_grounding_facts(request.grounding_facts)
    messages: List[BaseMessage] = [SystemMessage(content=system)]
    for turn in request.prior_turns:
        if turn.role == Role.USER:
            messages.append(HumanMessage(content=turn.content))
        elif turn.role == Role.ASSISTANT:
            messages.append(AIMessage(content=turn.content))
    messages.append(HumanMessage(content=request.user_turn))
    return messages


class ChatModelCompletionProvider:
    """Completion provider backed by a LangChain chat model.

    The model is created lazily through ``model_factory`` so the service can
    start without provider credentials; ``model`` takes precedence when given.
    """

    def __init__(
        self,
        model: Optional[BaseChatModel] = None,
        *,
        model_factory: Optional[Callable[[], BaseChatModel]] = None,
    ):
        if model is None and model_factory is None:
            raise ValueError("either model or model_factory is required")
        self._model = model
        self._model_factory = model_factory

    @property
    def model(self) -> BaseChatModel:
        if self._model is None:
            self._model = self._model_factory()
        return self._model

    async def complete(self, request: CompletionRequest) -> str:
        messages = build_messages(request)
        logger.info(
            "Requesting completion (%d message(s), %d grounding fact(s))",
            len(messages), len(request.grounding_facts),
        )
        try:
            result = await self.model.ainvoke(messages)
        except ProviderError:
            raise
        except Exception as exc:
            raise ProviderError(f"completion failed: {type(exc).__name__}: {exc}") from exc
        text = _extract_text(result.content).strip()
        if not text:
            raise ProviderError("completion returned empty content")
        return text
