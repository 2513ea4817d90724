"""Step-by-step collection of a gift delivery order.

Steps run name -> giftee -> date -> time slot -> order description ->
address -> confirmation. Each message is first scanned for fields the customer
volunteered out of order; a field that is already filled is never asked again.
"""

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Tuple

from giftbot.logging_config import get_logger
from giftbot.services.ai_service import LanguageModel, generate_reply, validate_date, validate_time_slot
from giftbot.services.alert_service import alert_error
from giftbot.services.conversation_service import AppointmentState, ConversationState, ConversationStore
from giftbot.services.field_extractor import extract_fields
from giftbot.services.intent_service import is_cancellation_message, is_negative_response, is_positive_response
from giftbot.services.sheets_service import OrderStore
from giftbot.services.state_machine import AppointmentStep, TimeSlot, next_missing_step, transition

logger = get_logger("appointment_service")

ReplyCallback = Callable[[str, str, Optional[str]], Awaitable[None]]

APOLOGY_TEXT = "Disculpa, tuve un problema procesando tu respuesta. ¿Podrías enviarla de nuevo?"

TIME_SLOT_LABELS = {
    TimeSlot.MORNING: "mañana",
    TimeSlot.AFTERNOON: "tarde",
    TimeSlot.EVENING: "noche",
}

STEP_QUESTIONS = {
    AppointmentStep.NAME: "¡Con gusto agendamos tu pedido! ¿Me regalas tu nombre completo, por favor?",
    AppointmentStep.GIFTEE: "¿Para quién es el regalo?",
    AppointmentStep.DATE: "¿Para qué fecha necesitas la entrega? Puedes escribirla como DD/MM/AAAA.",
    AppointmentStep.TIME_SLOT: "¿En qué franja prefieres la entrega: mañana, tarde o noche?",
    AppointmentStep.ORDER_DESCRIPTION: "Cuéntame qué producto quieres: modelo, tamaño y color.",
    AppointmentStep.ADDRESS: "¿A qué dirección enviamos el regalo?",
}

STEP_INSTRUCTIONS = {
    AppointmentStep.NAME: "Inicia el agendamiento del pedido y pide el nombre completo del cliente.",
    AppointmentStep.GIFTEE: "Agradece el dato recibido y pregunta para quién es el regalo.",
    AppointmentStep.DATE: "Agradece el dato recibido y pregunta la fecha de entrega (formato DD/MM/AAAA).",
    AppointmentStep.TIME_SLOT: "Agradece el dato recibido y pregunta la franja de entrega: mañana, tarde o noche.",
    AppointmentStep.ORDER_DESCRIPTION: "Agradece el dato recibido y pide la descripción del producto: modelo, tamaño y color.",
    AppointmentStep.ADDRESS: "Agradece el dato recibido y pide la dirección de entrega.",
    AppointmentStep.CONFIRMATION: (
        "Resume todos los datos del pedido del estado actual sin inventar nada "
        "y pide al cliente que confirme con sí o no."
    ),
}

RETRY_PROMPTS = {
    AppointmentStep.NAME: "No logré identificar tu nombre. ¿Me lo escribes de nuevo, por favor?",
    AppointmentStep.GIFTEE: "¿Me dices el nombre de la persona que recibirá el regalo?",
    AppointmentStep.DATE: "No logré entender la fecha. ¿Me la indicas como DD/MM/AAAA? Por ejemplo: 14/02/2025.",
    AppointmentStep.TIME_SLOT: "No logré entender la franja horaria. ¿Prefieres mañana, tarde o noche?",
    AppointmentStep.ORDER_DESCRIPTION: "¿Me describes el producto que quieres? Modelo, tamaño y color.",
    AppointmentStep.ADDRESS: "¿Me compartes la dirección completa de entrega?",
    AppointmentStep.CONFIRMATION: "¿Confirmas tu pedido? Respóndeme sí o no, por favor.",
}

CANCELLED_TEXT = "Listo, cancelé el agendamiento. Si quieres retomarlo más adelante, aquí estaré. 🌹"
CONFIRMED_TEXT = "¡Listo! Tu pedido quedó agendado. Pronto te contactaremos para confirmar el pago y la entrega. 🌹"


def format_summary(appointment: AppointmentState) -> str:
    slot = TIME_SLOT_LABELS.get(appointment.time_slot, "") if appointment.time_slot else ""
    lines = [
        "Estos son los datos de tu pedido:",
        f"👤 Nombre: {appointment.name or ''}",
        f"🎁 Para: {appointment.giftee or ''}",
        f"📅 Fecha: {appointment.date or ''}",
        f"🕒 Franja: {slot}",
        f"🌹 Pedido: {appointment.order_description or ''}",
        f"📍 Dirección: {appointment.full_address()}",
    ]
    if appointment.phone:
        lines.append(f"📞 Teléfono: {appointment.phone}")
    lines.append("¿Confirmas el pedido? (sí/no)")
    return "\n".join(lines)


class AppointmentFlowEngine:
    def __init__(
        self,
        model: LanguageModel,
        conversations: ConversationStore,
        order_store: OrderStore,
        reply: ReplyCallback,
        on_order_saved: Optional[Callable[[], None]] = None,
    ):
        self.model = model
        self.conversations = conversations
        self.order_store = order_store
        self.reply = reply
        self.on_order_saved = on_order_saved

    def current_step(self, user_id: str) -> Optional[AppointmentStep]:
        conversation = self.conversations.get(user_id)
        if conversation is None or conversation.appointment is None:
            return None
        return conversation.appointment.step

    def is_active(self, user_id: str) -> bool:
        return self.current_step(user_id) is not None

    async def start(self, user_id: str, text: str, message_id: Optional[str] = None) -> None:
        conversation = self.conversations.get_or_create(user_id)
        appointment = AppointmentState()
        conversation.appointment = appointment
        conversation.assistant_step = "appointment"

        if conversation.known_name:
            appointment.name = conversation.known_name
        self._absorb(appointment, extract_fields(text).extracted, current_step=None)

        logger.info(
            "Appointment started",
            extra={"context": {"user_id": user_id, "prefilled": [k for k, v in appointment.filled().items() if v]}},
        )
        await self._advance(user_id, conversation, appointment, message_id)

    async def handle(self, user_id: str, text: str, message_id: Optional[str] = None) -> bool:
        """Feed one customer message into the active flow; False when no flow is active."""
        conversation = self.conversations.get_or_create(user_id)
        appointment = conversation.appointment
        if appointment is None:
            return False

        step = appointment.step
        try:
            if step == AppointmentStep.CONFIRMATION:
                await self._handle_confirmation(user_id, conversation, appointment, text, message_id)
                return True

            if is_cancellation_message(text):
                await self._cancel(user_id, conversation, appointment, message_id)
                return True

            extraction = extract_fields(text, step)
            self._absorb(appointment, extraction.extracted, current_step=step)

            accepted, error = await self._apply_answer(appointment, step, extraction.primary)
            if not accepted:
                logger.info(
                    "Appointment answer rejected",
                    extra={"context": {"user_id": user_id, "step": step.value, "error": error}},
                )
                await self.reply(user_id, RETRY_PROMPTS[step], message_id)
                return True

            await self._advance(user_id, conversation, appointment, message_id)
        except Exception:
            logger.error(
                "Appointment step failed",
                extra={"context": {"user_id": user_id, "step": step.value}},
                exc_info=True,
            )
            await self.reply(user_id, APOLOGY_TEXT, message_id)
        return True

    def _absorb(self, appointment: AppointmentState, extracted: dict, current_step: Optional[AppointmentStep]) -> None:
        for field_name in ("name", "address", "city", "phone"):
            if current_step is not None and field_name == current_step.value:
                continue
            appointment.set_if_empty(field_name, extracted.get(field_name))

    async def _apply_answer(
        self, appointment: AppointmentState, step: AppointmentStep, answer: str
    ) -> Tuple[bool, Optional[str]]:
        answer = (answer or "").strip()
        if not answer:
            return False, "empty answer"

        if step == AppointmentStep.NAME:
            if any(char.isdigit() for char in answer) or sum(char.isalpha() for char in answer) < 2:
                return False, "not a name"
            appointment.name = answer
        elif step == AppointmentStep.GIFTEE:
            appointment.giftee = answer
        elif step == AppointmentStep.DATE:
            validation = await validate_date(self.model, answer)
            if not validation.valid:
                return False, validation.error
            appointment.date = validation.formatted_date
        elif step == AppointmentStep.TIME_SLOT:
            validation = await validate_time_slot(self.model, answer)
            if not validation.valid:
                return False, validation.error
            appointment.time_slot = validation.value
        elif step == AppointmentStep.ORDER_DESCRIPTION:
            appointment.order_description = answer
        elif step == AppointmentStep.ADDRESS:
            appointment.address = answer
        return True, None

    async def _advance(
        self,
        user_id: str,
        conversation: ConversationState,
        appointment: AppointmentState,
        message_id: Optional[str],
    ) -> None:
        next_step = next_missing_step(appointment.filled())
        if next_step != appointment.step:
            appointment.step = transition(appointment.step, next_step)

        if next_step == AppointmentStep.CONFIRMATION:
            fallback = format_summary(appointment)
        else:
            fallback = STEP_QUESTIONS[next_step]

        prompt = await generate_reply(
            self.model,
            "appointment_prompt",
            STEP_INSTRUCTIONS[next_step],
            history=conversation.recent_history(4),
            state_info=appointment.summary(),
            fallback=fallback,
        )
        logger.info("Appointment step", extra={"context": {"user_id": user_id, "step": next_step.value}})
        await self.reply(user_id, prompt, message_id)

    async def _handle_confirmation(
        self,
        user_id: str,
        conversation: ConversationState,
        appointment: AppointmentState,
        text: str,
        message_id: Optional[str],
    ) -> None:
        if is_positive_response(text):
            await self._finalize(user_id, conversation, appointment, message_id)
        elif is_negative_response(text) or is_cancellation_message(text):
            await self._cancel(user_id, conversation, appointment, message_id)
        else:
            await self.reply(user_id, RETRY_PROMPTS[AppointmentStep.CONFIRMATION], message_id)

    async def _finalize(
        self,
        user_id: str,
        conversation: ConversationState,
        appointment: AppointmentState,
        message_id: Optional[str],
    ) -> None:
        row = [
            appointment.name,
            appointment.giftee,
            appointment.date,
            appointment.time_slot.value if appointment.time_slot else "",
            appointment.order_description,
            datetime.now(timezone.utc).isoformat(),
            appointment.full_address(),
            appointment.phone or "",
        ]
        try:
            result = await asyncio.to_thread(self.order_store.append, row)
            if not result.ok:
                logger.error(
                    "Order not persisted",
                    extra={"context": {"user_id": user_id, "error": result.error, "code": result.error_code}},
                )
                await alert_error("Order not persisted", {"user_id": user_id, "error": result.error})
            elif self.on_order_saved is not None:
                self.on_order_saved()
        except Exception:
            logger.error("Order store append raised", extra={"context": {"user_id": user_id}}, exc_info=True)

        appointment.step = transition(appointment.step, AppointmentStep.COMPLETED)
        conversation.appointment = None
        conversation.assistant_step = "post_appointment"
        conversation.known_name = appointment.name
        logger.info("Appointment completed", extra={"context": {"user_id": user_id}})

        text = await generate_reply(
            self.model,
            "appointment_confirmed",
            "Confirma que el pedido quedó agendado y que pronto lo contactaremos para el pago y la entrega.",
            history=conversation.recent_history(4),
            state_info=appointment.summary(),
            fallback=CONFIRMED_TEXT,
        )
        await self.reply(user_id, text, message_id)

    async def _cancel(
        self,
        user_id: str,
        conversation: ConversationState,
        appointment: AppointmentState,
        message_id: Optional[str],
    ) -> None:
        appointment.step = transition(appointment.step, AppointmentStep.CANCELLED)
        conversation.appointment = None
        conversation.assistant_step = "appointment_cancelled"
        logger.info("Appointment cancelled", extra={"context": {"user_id": user_id}})
        await self.reply(user_id, CANCELLED_TEXT, message_id)
