import json
import re
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import List, Optional

from giftbot.config import settings
from giftbot.logging_config import get_logger
from giftbot.services.field_extractor import parse_date, parse_time_slot
from giftbot.services.knowledge_service import load_store_knowledge
from giftbot.services.llm import LLMProvider, OpenAICompatibleProvider
from giftbot.services.state_machine import TimeSlot, normalize_time_slot

logger = get_logger("ai_service")

MIN_REPLY_LENGTH = 10
MAX_EMOJIS = 3
KEPT_EMOJIS = 2
EMOJI_PATTERN = re.compile("[\U0001f300-\U0001faff\u2600-\u27bf\u2b50\u2764]")
CODE_FENCE_PATTERN = re.compile(r"```(?:json)?", re.IGNORECASE)
FORMATTED_DATE_PATTERN = re.compile(r"^\d{2}/\d{2}/\d{4}$")


class ModelTask(str, Enum):
    CLASSIFY_CONTEXT = "classify_context"
    GENERATE_RESPONSE = "generate_response"
    VALIDATE_DATE = "validate_date"
    VALIDATE_TIME_SLOT = "validate_time_slot"


CLASSIFY_SYSTEM_PROMPT = """Eres un asistente de WhatsApp para una tienda de rosas preservadas que analiza conversaciones.
Analiza el historial y el mensaje actual del cliente y determina:
- messageType: question | statement | request | greeting | unknown
- topics: lista corta de temas (flores, precios, entrega, colores, pedido...)
- purchaseStage: exploration | inquiry | decision | scheduling | payment
- suggestedFlow: none | sales | inquiry | appointment | payment
- nextActionSuggestion: true si conviene sugerir un siguiente paso
- specificAction: send_catalog | start_appointment | continue_appointment | lookup_order | respond_greeting | respond_general

Responde SOLO con un objeto JSON, sin bloques de código markdown:
{"messageType":"...","topics":["..."],"purchaseStage":"...","suggestedFlow":"...","nextActionSuggestion":false,"specificAction":"..."}"""

RESPONSE_SYSTEM_PROMPT = """Eres el asistente virtual de WhatsApp de una tienda de rosas preservadas.
Sé amable, útil y conciso. Usa solo la información de la tienda que se te entrega.
No repitas el mensaje del cliente, no empieces con "Dices que..." y responde en máximo 4 oraciones."""

DATE_SYSTEM_PROMPT = """Eres un asistente que valida fechas de entrega.
Determina si la entrada es una fecha válida en cualquier formato común y conviértela a DD/MM/YYYY.
Si no trae año, usa la próxima ocurrencia de esa fecha a partir de hoy."""

TIME_SLOT_SYSTEM_PROMPT = """Eres un asistente que valida franjas horarias de entrega.
Determina si la entrada corresponde a la mañana, la tarde o la noche."""

FALLBACK_REPLIES = {
    "general": "Con gusto te ayudo. ¿Me cuentas un poco más de lo que buscas?",
    "product_inquiry": "Tenemos rosas preservadas en tamaño Premium y Mini, en muchos colores. ¿Quieres que te envíe el catálogo?",
    "price_inquiry": "Nuestras rosas preservadas van desde $75.000 hasta $189.000 según el modelo. ¿Te envío el catálogo con todos los precios?",
    "purchase_intent": "¡Qué bien! Puedo ayudarte a agendar tu pedido. ¿Te gustaría empezar?",
    "appointment_suggestion": "Si quieres, podemos agendar la entrega de tu regalo ahora mismo. ¿Te parece?",
    "order_not_found": "No encontré pedidos con esos datos. ¿Me confirmas el nombre con el que hiciste el pedido o la fecha de entrega?",
    "appointment_prompt": "¿Me ayudas con ese dato para continuar con tu pedido?",
    "appointment_confirmed": "¡Listo! Tu pedido quedó agendado. Te contactaremos para confirmar los detalles de pago y entrega.",
    "thanks": "¡Con mucho gusto! Si necesitas algo más, aquí estoy para ayudarte. 🌹",
    "frustration": "Lamento mucho la confusión. Cuéntame de nuevo qué necesitas y con gusto lo resolvemos, o si prefieres te contacta un asesor.",
}
DEFAULT_FALLBACK_REPLY = FALLBACK_REPLIES["general"]


@dataclass
class ModelRequest:
    """Structured request for a single model task."""

    task: ModelTask
    specific_prompt: str = ""
    system_prompt: Optional[str] = None
    conversation_history: List[dict] = field(default_factory=list)
    current_message: Optional[str] = None
    state_info: Optional[dict] = None
    knowledge_base: Optional[dict] = None
    response_type: Optional[str] = None


@dataclass
class DateValidation:
    valid: bool
    formatted_date: Optional[str] = None
    error: Optional[str] = None


@dataclass
class TimeSlotValidation:
    valid: bool
    value: Optional[TimeSlot] = None
    error: Optional[str] = None


def _format_history(history: List[dict], numbered: bool = False) -> str:
    lines = []
    for index, turn in enumerate(history, start=1):
        speaker = "Cliente" if turn.get("role") == "user" else "Asistente"
        prefix = f"{index}. " if numbered else ""
        lines.append(f"{prefix}{speaker}: {turn.get('content', '')}")
    return "\n".join(lines)


def build_messages(request: ModelRequest) -> List[dict]:
    """Render a request into chat-completion messages."""
    task = request.task
    if task == ModelTask.CLASSIFY_CONTEXT:
        system_prompt = request.system_prompt or CLASSIFY_SYSTEM_PROMPT
        user_prompt = (
            f"HISTORIAL DE CONVERSACIÓN:\n{_format_history(request.conversation_history)}\n\n"
            f"MENSAJE ACTUAL DEL CLIENTE:\n{request.current_message or ''}"
        )
    elif task == ModelTask.GENERATE_RESPONSE:
        system_prompt = request.system_prompt or RESPONSE_SYSTEM_PROMPT
        knowledge = json.dumps(request.knowledge_base or {}, ensure_ascii=False)
        state = json.dumps(request.state_info or {}, ensure_ascii=False, default=str)
        user_prompt = (
            f"INFORMACIÓN DE LA TIENDA:\n{knowledge}\n\n"
            f"HISTORIAL DE CONVERSACIÓN RECIENTE:\n{_format_history(request.conversation_history, numbered=True)}\n\n"
            f"ESTADO ACTUAL DEL CLIENTE:\n{state}\n\n"
            f"INSTRUCCIONES ESPECÍFICAS:\n{request.specific_prompt}\n\n"
            f"TIPO DE RESPUESTA: {request.response_type or 'general'}"
        )
    elif task == ModelTask.VALIDATE_DATE:
        system_prompt = request.system_prompt or DATE_SYSTEM_PROMPT
        user_prompt = (
            f'Hoy es {date.today().strftime("%d/%m/%Y")}.\n'
            f'Fecha proporcionada por el cliente: "{request.current_message or ""}"\n\n'
            'Responde solo con JSON: {"valid": true|false, "formattedDate": "DD/MM/YYYY", "error": "..."}'
        )
    elif task == ModelTask.VALIDATE_TIME_SLOT:
        system_prompt = request.system_prompt or TIME_SLOT_SYSTEM_PROMPT
        user_prompt = (
            f'Franja horaria proporcionada por el cliente: "{request.current_message or ""}"\n\n'
            'Responde solo con JSON: {"valid": true|false, "normalizedValue": "morning|afternoon|evening", "error": "..."}'
        )
    else:
        raise ValueError(f"Unsupported model task: {task}")

    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt},
    ]


def parse_json_object(text: str) -> dict:
    """Extract the JSON object from a model reply that may be fenced or padded."""
    cleaned = CODE_FENCE_PATTERN.sub("", text or "").strip()
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end <= start:
        raise ValueError("No JSON object in model reply")
    data = json.loads(cleaned[start : end + 1])
    if not isinstance(data, dict):
        raise ValueError("Model reply JSON is not an object")
    return data


def reduce_emojis(text: str) -> str:
    """Keep only the first couple of emoji when a reply is overloaded with them."""
    if len(EMOJI_PATTERN.findall(text)) <= MAX_EMOJIS:
        return text
    kept = 0

    def _keep_first(match: re.Match) -> str:
        nonlocal kept
        kept += 1
        return match.group(0) if kept <= KEPT_EMOJIS else ""

    return re.sub(r"\s{2,}", " ", EMOJI_PATTERN.sub(_keep_first, text)).strip()


class LanguageModel:
    """Task-oriented front for an LLM provider."""

    def __init__(
        self,
        provider: LLMProvider,
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 800,
    ):
        self.provider = provider
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def complete(self, request: ModelRequest) -> str:
        """Return the raw reply text; raises LLMError on provider failure."""
        temperature = self.temperature
        if request.task in (ModelTask.VALIDATE_DATE, ModelTask.VALIDATE_TIME_SLOT, ModelTask.CLASSIFY_CONTEXT):
            temperature = 0.0
        response = await self.provider.generate(
            build_messages(request),
            model=self.model,
            temperature=temperature,
            max_tokens=self.max_tokens,
        )
        return (response.content or "").strip()


_language_model: Optional[LanguageModel] = None


def get_language_model() -> LanguageModel:
    global _language_model
    if _language_model is None:
        provider = OpenAICompatibleProvider(
            api_key=settings.llm_api_key,
            base_url=settings.llm_base_url,
            default_model=settings.llm_model,
            timeout_seconds=settings.llm_timeout_seconds,
        )
        _language_model = LanguageModel(provider, model=settings.llm_model)
    return _language_model


async def generate_reply(
    model: LanguageModel,
    response_type: str,
    specific_prompt: str,
    history: Optional[List[dict]] = None,
    state_info: Optional[dict] = None,
    fallback: Optional[str] = None,
) -> str:
    """Generate a customer-facing reply; never raises, falls back to a fixed text."""
    fallback_text = fallback or FALLBACK_REPLIES.get(response_type, DEFAULT_FALLBACK_REPLY)
    request = ModelRequest(
        task=ModelTask.GENERATE_RESPONSE,
        specific_prompt=specific_prompt,
        conversation_history=list(history or []),
        state_info=state_info,
        knowledge_base=load_store_knowledge(),
        response_type=response_type,
    )
    try:
        reply = await model.complete(request)
    except Exception as exc:
        logger.warning(
            "Reply generation failed, using fallback",
            extra={"context": {"response_type": response_type, "error": str(exc)}},
        )
        return fallback_text

    if len(reply) < MIN_REPLY_LENGTH:
        logger.info("Reply too short, using fallback", extra={"context": {"response_type": response_type}})
        return fallback_text
    return reduce_emojis(reply)


async def validate_date(model: LanguageModel, text: str, today: Optional[date] = None) -> DateValidation:
    try:
        reply = await model.complete(ModelRequest(task=ModelTask.VALIDATE_DATE, current_message=text))
        data = parse_json_object(reply)
    except Exception as exc:
        logger.warning("Date validation fell back to parser", extra={"context": {"error": str(exc)}})
        parsed = parse_date(text, today)
        if parsed:
            return DateValidation(valid=True, formatted_date=parsed)
        return DateValidation(valid=False, error="No pude entender la fecha")

    if not data.get("valid"):
        return DateValidation(valid=False, error=data.get("error") or "Fecha no válida")

    formatted = str(data.get("formattedDate") or "").strip()
    if FORMATTED_DATE_PATTERN.match(formatted):
        return DateValidation(valid=True, formatted_date=formatted)
    # model accepted the date but not in DD/MM/YYYY
    parsed = parse_date(text, today)
    if parsed:
        return DateValidation(valid=True, formatted_date=parsed)
    logger.warning("Model date not normalized", extra={"context": {"formatted_date": formatted}})
    return DateValidation(valid=False, error="No pude entender la fecha")


async def validate_time_slot(model: LanguageModel, text: str) -> TimeSlotValidation:
    try:
        reply = await model.complete(ModelRequest(task=ModelTask.VALIDATE_TIME_SLOT, current_message=text))
        data = parse_json_object(reply)
    except Exception as exc:
        logger.warning("Time slot validation fell back to keywords", extra={"context": {"error": str(exc)}})
        slot = parse_time_slot(text)
        if slot:
            return TimeSlotValidation(valid=True, value=slot)
        return TimeSlotValidation(valid=False, error="No pude entender la franja horaria")

    slot = normalize_time_slot(data.get("normalizedValue"))
    if data.get("valid") and slot:
        return TimeSlotValidation(valid=True, value=slot)
    return TimeSlotValidation(valid=False, error=data.get("error") or "Franja horaria no válida")
