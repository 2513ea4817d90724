import re
import time
from enum import Enum
from typing import Dict, Optional, Tuple

from pydantic import AliasChoices, BaseModel, Field, field_validator

from giftbot.logging_config import get_logger
from giftbot.services.ai_service import LanguageModel, ModelRequest, ModelTask, parse_json_object
from giftbot.services.conversation_service import ConversationStore

logger = get_logger("intent_service")

CLASSIFY_HISTORY_TURNS = 6
SIMPLE_GREETING_MAX_LENGTH = 25

GREETING_PHRASES = (
    "hola",
    "hello",
    "hi",
    "hey",
    "buenas",
    "buen dia",
    "buen día",
    "buenos dias",
    "buenos días",
    "buenas tardes",
    "buenas noches",
    "saludos",
    "que tal",
    "qué tal",
    "ola",
    "ey",
    "como estas",
    "cómo estás",
)

POSITIVE_PATTERN = re.compile(
    r"\b(s[ií]|claro|ok|okay|vale|dale|listo|perfecto|correcto|confirmo|de acuerdo|est[aá] bien)\b",
    re.IGNORECASE,
)
NEGATIVE_PATTERN = re.compile(r"\bno\b", re.IGNORECASE)
YES_NO_PATTERN = re.compile(r"^\s*(s[ií]|no|claro|ok)\b", re.IGNORECASE)
CANCELLATION_PATTERN = re.compile(
    r"\b(cancelar|cancela|cancelo|ya no|olv[ií]dalo|no quiero|mejor no|d[eé]jalo)\b",
    re.IGNORECASE,
)
THANKS_PATTERN = re.compile(r"\b(gracias|te agradezco|muy amable)\b", re.IGNORECASE)
FRUSTRATION_PATTERN = re.compile(
    r"\b(no entiendes|no me entiendes|p[eé]simo|terrible|harto|harta|molesto|molesta|qu[eé] mal servicio)\b",
    re.IGNORECASE,
)
SCHEDULING_PATTERN = re.compile(r"\b(agendar|agenda|programar|reservar|pedido)\b", re.IGNORECASE)

ORDER_STATUS_KEYWORDS = (
    "estado de mi pedido",
    "estado de pedido",
    "mi pedido",
    "mi orden",
    "seguimiento",
    "tracking",
    "cuando llega",
    "cuándo llega",
    "consultar pedido",
    "consultar orden",
    "ver pedido",
    "mi compra",
    "mis rosas",
    "mis flores",
    "mi entrega",
    "dónde está",
    "donde esta",
    "ya enviaron",
    "enviaste",
    "entregado",
)


def normalize_for_matching(text: str) -> str:
    """Normalize text for matching short phrases (casefold + trim punctuation)."""
    if not text:
        return ""
    normalized = text.strip().casefold()
    normalized = re.sub(r"\s+", " ", normalized)
    normalized = re.sub(r"^[^\w]+|[^\w]+$", "", normalized)
    return normalized


def is_simple_greeting(text: str) -> bool:
    normalized = normalize_for_matching(text)
    if not normalized or len(normalized) >= SIMPLE_GREETING_MAX_LENGTH:
        return False
    for greeting in GREETING_PHRASES:
        if normalized == greeting or normalized.startswith(greeting + " ") or normalized.startswith(greeting + ","):
            return True
    return False


def is_positive_response(text: str) -> bool:
    return bool(POSITIVE_PATTERN.search(text or ""))


def is_negative_response(text: str) -> bool:
    return bool(NEGATIVE_PATTERN.search(text or ""))


def is_yes_no_answer(text: str) -> bool:
    return bool(YES_NO_PATTERN.match(text or ""))


def is_cancellation_message(text: str) -> bool:
    return bool(CANCELLATION_PATTERN.search(text or ""))


def is_thanks_message(text: str) -> bool:
    return bool(THANKS_PATTERN.search(text or ""))


def is_frustration_message(text: str) -> bool:
    if FRUSTRATION_PATTERN.search(text or ""):
        return True
    letters = [char for char in (text or "") if char.isalpha()]
    # shouting
    return len(letters) >= 8 and all(char.isupper() for char in letters)


def is_order_status_query(text: str) -> bool:
    lowered = (text or "").lower()
    return any(keyword in lowered for keyword in ORDER_STATUS_KEYWORDS)


def mentions_scheduling(text: str) -> bool:
    return bool(SCHEDULING_PATTERN.search(text or ""))


class ContextAction(str, Enum):
    SEND_CATALOG = "send_catalog"
    START_APPOINTMENT = "start_appointment"
    CONTINUE_APPOINTMENT = "continue_appointment"
    LOOKUP_ORDER = "lookup_order"
    RESPOND_GREETING = "respond_greeting"
    RESPOND_GENERAL = "respond_general"


class SuggestedFlow(str, Enum):
    NONE = "none"
    SALES = "sales"
    INQUIRY = "inquiry"
    APPOINTMENT = "appointment"
    PAYMENT = "payment"


ACTION_ALIASES = {
    "enviar_catalogo": ContextAction.SEND_CATALOG,
    "iniciar_agendamiento": ContextAction.START_APPOINTMENT,
    "continuar_agendamiento": ContextAction.CONTINUE_APPOINTMENT,
    "consultar_pedido": ContextAction.LOOKUP_ORDER,
    "responder_saludo": ContextAction.RESPOND_GREETING,
    "responder_general": ContextAction.RESPOND_GENERAL,
    "responder_consulta": ContextAction.RESPOND_GENERAL,
}

FLOW_ALIASES = {
    "ventas": SuggestedFlow.SALES,
    "consulta": SuggestedFlow.INQUIRY,
    "agendamiento": SuggestedFlow.APPOINTMENT,
    "pago": SuggestedFlow.PAYMENT,
}


class ConversationContext(BaseModel):
    message_type: str = Field(default="unknown", validation_alias=AliasChoices("messageType", "message_type"))
    topics: list[str] = Field(default_factory=list)
    purchase_stage: str = Field(
        default="exploration", validation_alias=AliasChoices("purchaseStage", "purchase_stage")
    )
    suggested_flow: SuggestedFlow = Field(
        default=SuggestedFlow.NONE, validation_alias=AliasChoices("suggestedFlow", "suggested_flow")
    )
    next_action_suggestion: bool = Field(
        default=False, validation_alias=AliasChoices("nextActionSuggestion", "next_action_suggestion")
    )
    specific_action: ContextAction = Field(
        default=ContextAction.RESPOND_GENERAL, validation_alias=AliasChoices("specificAction", "specific_action")
    )
    is_fallback: bool = False

    @field_validator("topics", mode="before")
    @classmethod
    def _coerce_topics(cls, value):
        if isinstance(value, str):
            return [value]
        if not isinstance(value, list):
            return []
        return [str(item) for item in value]

    @field_validator("suggested_flow", mode="before")
    @classmethod
    def _coerce_flow(cls, value):
        key = str(value or "none").strip().lower()
        if key in FLOW_ALIASES:
            return FLOW_ALIASES[key]
        try:
            return SuggestedFlow(key)
        except ValueError:
            return SuggestedFlow.NONE

    @field_validator("specific_action", mode="before")
    @classmethod
    def _coerce_action(cls, value):
        key = str(value or "").strip().lower()
        if key in ACTION_ALIASES:
            return ACTION_ALIASES[key]
        try:
            return ContextAction(key)
        except ValueError:
            return ContextAction.RESPOND_GENERAL

    @classmethod
    def fallback(cls) -> "ConversationContext":
        return cls(is_fallback=True)

    @classmethod
    def greeting(cls) -> "ConversationContext":
        return cls(message_type="greeting", specific_action=ContextAction.RESPOND_GREETING)


class IntentRouter:
    """Classifies a (combined) user message into a ConversationContext."""

    def __init__(self, model: LanguageModel, conversations: ConversationStore):
        self.model = model
        self.conversations = conversations
        self._last_classification: Dict[str, Tuple[str, ConversationContext]] = {}

    async def classify(self, user_id: str, text: str) -> ConversationContext:
        if is_simple_greeting(text):
            return ConversationContext.greeting()

        normalized = normalize_for_matching(text)
        cached = self._last_classification.get(user_id)
        if cached and cached[0] == normalized:
            logger.info("Reusing classification for repeated text", extra={"context": {"user_id": user_id}})
            return cached[1]

        conversation = self.conversations.get_or_create(user_id)
        request = ModelRequest(
            task=ModelTask.CLASSIFY_CONTEXT,
            conversation_history=conversation.recent_history(CLASSIFY_HISTORY_TURNS),
            current_message=text,
        )

        llm_start = time.monotonic()
        try:
            reply = await self.model.complete(request)
            context = ConversationContext.model_validate(parse_json_object(reply))
        except Exception as exc:
            logger.warning(
                "Context classification failed, using default",
                extra={"context": {"user_id": user_id, "error": str(exc)}},
            )
            context = ConversationContext.fallback()
            if is_order_status_query(text):
                context.specific_action = ContextAction.LOOKUP_ORDER
            return context
        finally:
            logger.info(
                "Timing",
                extra={
                    "context": {
                        "stage": "classify_llm_ms",
                        "elapsed_ms": round((time.monotonic() - llm_start) * 1000, 2),
                    }
                },
            )

        self._last_classification[user_id] = (normalized, context)
        logger.info(
            "Context classified",
            extra={
                "context": {
                    "user_id": user_id,
                    "message_type": context.message_type,
                    "suggested_flow": context.suggested_flow.value,
                    "specific_action": context.specific_action.value,
                }
            },
        )
        return context
