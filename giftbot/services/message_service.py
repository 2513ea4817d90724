"""Orchestration of inbound WhatsApp messages.

An inbound message passes the validity check, is buffered with other
fragments from the same user, guarded against concurrent handling, and then
either continues an active appointment, gets the welcome reply, or is
classified and dispatched to an action.
"""

import random
import time
from typing import Optional

from giftbot.config import settings
from giftbot.logging_config import get_logger
from giftbot.schemas.message import InboundMessage, SenderInfo, now_ms
from giftbot.services.ai_service import LanguageModel, generate_reply, get_language_model
from giftbot.services.appointment_service import AppointmentFlowEngine
from giftbot.services.conversation_service import ConversationState, ConversationStore
from giftbot.services.dedup_service import DeliveryDeduplicator
from giftbot.services.intent_service import (
    ContextAction,
    ConversationContext,
    IntentRouter,
    SuggestedFlow,
    is_frustration_message,
    is_positive_response,
    is_simple_greeting,
    is_thanks_message,
    mentions_scheduling,
)
from giftbot.services.knowledge_service import get_store_name
from giftbot.services.message_buffer import MessageBuffer
from giftbot.services.order_service import OrderLookup, format_orders_for_display
from giftbot.services.processing_guard import ProcessingGuard
from giftbot.services.response_service import ResponsePipeline
from giftbot.services.sheets_service import OrderStore, get_order_store
from giftbot.services.whatsapp_service import WhatsAppNotifier, get_notifier

logger = get_logger("message_service")

MAX_MESSAGE_AGE_MS = 10 * 60 * 1000
MAX_FUTURE_SKEW_MS = 10 * 1000
MAX_OUT_OF_SEQUENCE_MS = 60 * 1000
SUGGESTION_EVERY = 3
SALES_STEP = "sales_interaction"

APOLOGY_TEXT = (
    "Parece que estamos experimentando algunos problemas técnicos. "
    "¿Podrías intentarlo de nuevo en unos momentos?"
)
CATALOG_FOLLOWUP_TEXT = "Aquí tienes nuestro catálogo. ¿Hay algún producto que te llame la atención?"

WELCOME_TEMPLATES = (
    "{greeting} Soy el asistente virtual de {store}. Tenemos hermosas rosas preservadas que duran hasta 4 años. "
    "¿En qué puedo ayudarte hoy? 🌹",
    "{greeting} Bienvenido a {store}, donde encontrarás rosas preservadas únicas. "
    "¿Te gustaría ver nuestro catálogo o agendar un pedido? 🌹",
    "{greeting} Gracias por contactar a {store}. Puedo enviarte el catálogo, agendar tu pedido "
    "o consultar el estado de uno. ¿Qué te gustaría hacer? 🌹",
)

GENERAL_PROMPTS = {
    "product_inquiry": "Responde la consulta sobre productos con la información de la tienda y ofrece el catálogo.",
    "price_inquiry": "Responde la consulta de precios con la información de la tienda, sin inventar valores.",
    "purchase_intent": "El cliente quiere comprar. Anímalo y ofrece agendar su pedido.",
    "appointment_suggestion": "Responde la consulta y sugiere amablemente agendar la entrega del regalo.",
    "general": "Responde de forma útil y breve a la consulta del cliente.",
    "thanks": "El cliente agradece. Responde con calidez en una frase y ofrece ayuda adicional.",
    "frustration": "El cliente está molesto. Discúlpate con empatía, resume lo que entendiste y ofrece que un asesor lo contacte.",
}
SUGGESTION_PROMPT = " Al final, sugiere con naturalidad un siguiente paso (ver catálogo o agendar pedido)."


def _general_response_type(context: ConversationContext, text: str, assistant_step: Optional[str]) -> str:
    if is_frustration_message(text):
        return "frustration"
    if is_thanks_message(text) and context.message_type != "question":
        return "thanks"
    topics = " ".join(context.topics).lower()
    if context.suggested_flow == SuggestedFlow.APPOINTMENT:
        return "appointment_suggestion"
    if "precio" in topics or "price" in topics:
        return "price_inquiry"
    if (
        context.purchase_stage in ("decision", "payment")
        or context.suggested_flow == SuggestedFlow.SALES
        or assistant_step == SALES_STEP
    ):
        return "purchase_intent"
    if context.message_type == "question":
        return "product_inquiry"
    return "general"


def _next_assistant_step(context: ConversationContext, assistant_step: Optional[str], response_type: str) -> str:
    if context.suggested_flow != SuggestedFlow.NONE:
        return f"{context.suggested_flow.value}_interaction"
    # keep the sales framing after the catalog was sent
    if assistant_step == SALES_STEP:
        return SALES_STEP
    return response_type


class MessageHandler:
    def __init__(
        self,
        notifier: WhatsAppNotifier,
        model: LanguageModel,
        order_store: OrderStore,
        conversations: Optional[ConversationStore] = None,
        buffer: Optional[MessageBuffer] = None,
        guard: Optional[ProcessingGuard] = None,
        deduplicator: Optional[DeliveryDeduplicator] = None,
        pipeline: Optional[ResponsePipeline] = None,
        rng: Optional[random.Random] = None,
        related_defer_seconds: float = 10.0,
        catalog_url: str = "",
        catalog_caption: str = "",
        clock_ms=now_ms,
    ):
        self.notifier = notifier
        self.model = model
        self.conversations = conversations or ConversationStore()
        self.buffer = buffer or MessageBuffer()
        self.guard = guard or ProcessingGuard()
        self.deduplicator = deduplicator or DeliveryDeduplicator()
        self.pipeline = pipeline or ResponsePipeline(self.conversations)
        self.rng = rng or random.Random()
        self.intents = IntentRouter(model, self.conversations)
        self.orders = OrderLookup(order_store)
        self.appointments = AppointmentFlowEngine(
            model, self.conversations, order_store, self.send_reply, on_order_saved=self.orders.invalidate
        )
        self.related_defer_seconds = related_defer_seconds
        self.catalog_url = catalog_url
        self.catalog_caption = catalog_caption
        self._clock_ms = clock_ms

    def is_valid_incoming(self, message: InboundMessage, conversation: ConversationState) -> bool:
        context = {"user_id": message.sender, "message_id": message.id}
        if message.type != "text" or not (message.body or "").strip():
            logger.info("Ignoring non-text or empty message", extra={"context": context})
            return False

        now = self._clock_ms()
        if now - message.timestamp > MAX_MESSAGE_AGE_MS:
            logger.info("Ignoring stale message", extra={"context": context})
            return False
        if message.timestamp - now > MAX_FUTURE_SKEW_MS:
            logger.warning("Ignoring message from the future", extra={"context": context})
            return False
        if conversation.last_message_timestamp - message.timestamp > MAX_OUT_OF_SEQUENCE_MS:
            logger.info("Ignoring out-of-sequence message", extra={"context": context})
            return False

        if not self.deduplicator.mark_message(message.id):
            logger.info("Ignoring already handled message id", extra={"context": context})
            return False
        return True

    async def handle_incoming_message(self, message: InboundMessage, sender: Optional[SenderInfo] = None) -> None:
        """Entry point for one normalized webhook message."""
        user_id = message.sender
        try:
            conversation = self.conversations.get_or_create(user_id)
            if sender and sender.profile_name:
                conversation.profile_name = sender.profile_name
            if not self.is_valid_incoming(message, conversation):
                return
            conversation.last_message_timestamp = max(conversation.last_message_timestamp, message.timestamp)

            immediate = await self.buffer.add_message(user_id, message, self.process_message)
            if immediate:
                await self.process_message(message)
        except Exception:
            logger.error(
                "Incoming message handling failed",
                extra={"context": {"user_id": user_id, "message_id": message.id}},
                exc_info=True,
            )
            await self._send_apology(user_id, message.id)

    async def process_message(self, message: InboundMessage) -> None:
        user_id = message.sender
        text = (message.body or "").strip()
        started = time.monotonic()

        decision = self.guard.begin(user_id, message.id)
        if decision.is_duplicate:
            return
        if decision.already_processing:
            # Another message from this user is still being answered; hold this one back.
            self.guard.finish(user_id, message.id)
            await self.buffer.defer_message(
                user_id, message, self.process_message, wait_time=self.related_defer_seconds
            )
            logger.info(
                "Deferred message related to in-flight reply",
                extra={"context": {"user_id": user_id, "message_id": message.id, "related_to": decision.related_to}},
            )
            return

        try:
            conversation = self.conversations.get_or_create(user_id)
            conversation.add_turn("user", text, message.timestamp)
            await self._mark_as_read(message.id)

            if self.appointments.is_active(user_id):
                await self.appointments.handle(user_id, text, message.id)
            elif is_simple_greeting(text):
                await self.send_welcome(user_id, message.id)
            else:
                context = await self.intents.classify(user_id, text)
                await self.execute_action(user_id, text, message.id, context)
        except Exception:
            logger.error(
                "Message processing failed",
                extra={"context": {"user_id": user_id, "message_id": message.id}},
                exc_info=True,
            )
            await self._send_apology(user_id, message.id)
        finally:
            self.guard.finish(user_id, message.id)
            self.buffer.update_state(user_id, self.appointments.current_step(user_id))
            logger.info(
                "Timing",
                extra={
                    "context": {
                        "stage": "process_message_ms",
                        "user_id": user_id,
                        "elapsed_ms": round((time.monotonic() - started) * 1000, 2),
                    }
                },
            )

    async def execute_action(
        self, user_id: str, text: str, message_id: str, context: ConversationContext
    ) -> None:
        action = context.specific_action
        logger.info("Executing action", extra={"context": {"user_id": user_id, "action": action.value}})

        if action == ContextAction.RESPOND_GREETING:
            await self.send_welcome(user_id, message_id)
        elif action == ContextAction.SEND_CATALOG:
            await self.send_catalog(user_id, message_id)
        elif action == ContextAction.START_APPOINTMENT:
            await self.appointments.start(user_id, text, message_id)
        elif action == ContextAction.CONTINUE_APPOINTMENT and self.appointments.is_active(user_id):
            await self.appointments.handle(user_id, text, message_id)
        elif action == ContextAction.LOOKUP_ORDER:
            await self.lookup_orders(user_id, text, message_id)
        else:
            await self.respond_general(user_id, text, message_id, context)

    async def send_reply(self, user_id: str, text: str, message_id: Optional[str] = None) -> bool:
        final_text = self.pipeline.finalize(text, user_id)
        result = await self.notifier.send_message(user_id, final_text, message_id)
        if not result.ok:
            logger.error(
                "Reply not delivered",
                extra={"context": {"user_id": user_id, "error": result.error, "code": result.error_code}},
            )
            return False
        self.conversations.get_or_create(user_id).add_turn("assistant", final_text)
        return True

    async def send_welcome(self, user_id: str, message_id: Optional[str] = None) -> None:
        conversation = self.conversations.get_or_create(user_id)
        name = conversation.profile_name or ""
        greeting = f"¡Hola {name}!" if name else "¡Hola!"
        template = self.rng.choice(WELCOME_TEMPLATES)
        await self.send_reply(user_id, template.format(greeting=greeting, store=get_store_name()), message_id)
        conversation.assistant_step = "welcome_sent"

    async def send_catalog(self, user_id: str, message_id: Optional[str] = None) -> None:
        conversation = self.conversations.get_or_create(user_id)
        result = await self.notifier.send_media_message(
            user_id, "document", self.catalog_url, self.catalog_caption, message_id
        )
        if not result.ok:
            logger.error("Catalog not delivered", extra={"context": {"user_id": user_id, "error": result.error}})
            await self._send_apology(user_id, message_id)
            return

        conversation.assistant_step = SALES_STEP
        if (result.value or {}).get("fallback_link"):
            conversation.add_turn("assistant", result.value["text"])
            return
        conversation.add_turn("assistant", f"[{self.catalog_caption}]")
        await self.send_reply(user_id, CATALOG_FOLLOWUP_TEXT, message_id)

    async def lookup_orders(self, user_id: str, text: str, message_id: Optional[str] = None) -> None:
        conversation = self.conversations.get_or_create(user_id)
        extra_terms = [term for term in (conversation.known_name, conversation.profile_name) if term]
        orders = await self.orders.search_message(text, extra_terms)
        conversation.assistant_step = "order_lookup"
        if orders:
            await self.send_reply(user_id, format_orders_for_display(orders), message_id)
            return

        reply = await generate_reply(
            self.model,
            "order_not_found",
            "No se encontraron pedidos. Pide amablemente el nombre con el que se hizo el pedido o la fecha de entrega.",
            history=conversation.recent_history(4),
        )
        await self.send_reply(user_id, reply, message_id)

    async def respond_general(
        self, user_id: str, text: str, message_id: Optional[str], context: ConversationContext
    ) -> None:
        conversation = self.conversations.get_or_create(user_id)
        if context.suggested_flow == SuggestedFlow.APPOINTMENT and (
            is_positive_response(text) or mentions_scheduling(text)
        ):
            await self.appointments.start(user_id, text, message_id)
            return

        conversation.interaction_count += 1
        response_type = _general_response_type(context, text, conversation.assistant_step)
        prompt = GENERAL_PROMPTS[response_type]
        if context.next_action_suggestion and conversation.interaction_count % SUGGESTION_EVERY == 0:
            prompt += SUGGESTION_PROMPT

        reply = await generate_reply(
            self.model,
            response_type,
            prompt,
            history=conversation.recent_history(6),
            state_info={
                "paso_asistente": conversation.assistant_step,
                "interacciones": conversation.interaction_count,
                "contexto": context.model_dump(mode="json"),
            },
        )
        await self.send_reply(user_id, reply, message_id)
        conversation.assistant_step = _next_assistant_step(context, conversation.assistant_step, response_type)

    async def _mark_as_read(self, message_id: str) -> None:
        result = await self.notifier.mark_as_read(message_id)
        if not result.ok:
            logger.info(
                "Could not mark message as read",
                extra={"context": {"message_id": message_id, "code": result.error_code}},
            )

    async def _send_apology(self, user_id: str, message_id: Optional[str]) -> None:
        try:
            result = await self.notifier.send_message(user_id, APOLOGY_TEXT, message_id)
        except Exception:
            logger.error("Apology not delivered", extra={"context": {"user_id": user_id}}, exc_info=True)
            return
        if result.ok:
            self.conversations.get_or_create(user_id).add_turn("assistant", APOLOGY_TEXT)


_message_handler: Optional[MessageHandler] = None


def get_message_handler() -> MessageHandler:
    global _message_handler
    if _message_handler is None:
        conversations = ConversationStore()
        _message_handler = MessageHandler(
            notifier=get_notifier(),
            model=get_language_model(),
            order_store=get_order_store(),
            conversations=conversations,
            buffer=MessageBuffer(
                wait_seconds=settings.buffer_wait_seconds,
                patient_wait_seconds=settings.buffer_patient_wait_seconds,
            ),
            pipeline=ResponsePipeline(conversations, humanize=settings.humanize_responses),
            related_defer_seconds=settings.related_defer_seconds,
            catalog_url=settings.catalog_url,
            catalog_caption=settings.catalog_caption,
        )
    return _message_handler
