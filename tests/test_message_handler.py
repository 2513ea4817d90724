import asyncio
from unittest.mock import AsyncMock

from giftbot.schemas.message import SenderInfo, now_ms
from giftbot.services.ai_service import ModelTask
from giftbot.services.message_service import APOLOGY_TEXT, CATALOG_FOLLOWUP_TEXT
from giftbot.services.result import Result
from giftbot.services.state_machine import AppointmentStep

USER = "573001112233"
ORDER_ROWS = [
    ["nombre", "felicitado", "fecha", "franja_horaria", "pedido", "timestamp"],
    ["Ana López", "Marta", "14/02/2025", "morning", "Rosa roja premium", "2025-02-01T10:00:00"],
]


async def _wait_for(predicate, timeout: float = 1.0):
    waited = 0.0
    while not predicate() and waited < timeout:
        await asyncio.sleep(0.01)
        waited += 0.01


class TestBuffering:
    def test_fragments_are_answered_once(self, make_handler, model, notifier, make_message, sent_texts):
        handler = make_handler()

        async def scenario():
            for index, text in enumerate(["Quiero", "una rosa", "roja"], start=1):
                await handler.handle_incoming_message(make_message(f"m{index}", text))
            await asyncio.sleep(0.2)

        asyncio.run(scenario())

        classify_calls = model.calls(ModelTask.CLASSIFY_CONTEXT)
        assert [request.current_message for request in classify_calls] == ["Quiero una rosa roja"]
        assert sent_texts(notifier) == ["Con gusto te ayudo con tu regalo."]
        notifier.mark_as_read.assert_awaited_once_with("m1")

    def test_greeting_gets_welcome_without_classification(self, make_handler, model, notifier, make_message, sent_texts):
        handler = make_handler()

        asyncio.run(handler.handle_incoming_message(make_message("m1", "Hola!"), SenderInfo(profile_name="Ana")))

        assert model.requests == []
        texts = sent_texts(notifier)
        assert len(texts) == 1
        assert texts[0].startswith("¡Hola Ana!")
        assert "Dommo" in texts[0]
        assert handler.conversations.get(USER).assistant_step == "welcome_sent"


class TestProcessingGuard:
    def test_message_during_reply_is_held_back(self, make_handler, model, notifier, make_message, sent_texts):
        handler = make_handler()

        async def scenario():
            model.classify_gate = asyncio.Event()
            first = asyncio.create_task(
                handler.handle_incoming_message(make_message("m1", "¿Cuánto cuesta la rosa grande?"))
            )
            await _wait_for(lambda: model.classify_started)
            await handler.handle_incoming_message(make_message("m2", "¿Y la tienen en color azul?"))
            model.classify_gate.set()
            await first
            return handler.buffer.has_pending(USER)

        pending = asyncio.run(scenario())

        assert len(model.calls(ModelTask.CLASSIFY_CONTEXT)) == 1
        assert len(sent_texts(notifier)) == 1
        assert pending is True
        assert len(handler.guard) == 0


class TestValidity:
    def test_stale_message_is_ignored(self, make_handler, model, notifier, make_message):
        handler = make_handler()
        stale = make_message("m1", "Hola", timestamp=now_ms() - 11 * 60 * 1000)

        asyncio.run(handler.handle_incoming_message(stale))

        notifier.send_message.assert_not_awaited()
        assert model.requests == []

    def test_future_message_is_ignored(self, make_handler, notifier, make_message):
        handler = make_handler()

        asyncio.run(handler.handle_incoming_message(make_message("m1", "Hola", timestamp=now_ms() + 60 * 1000)))

        notifier.send_message.assert_not_awaited()

    def test_repeated_message_id_is_ignored(self, make_handler, notifier, make_message):
        handler = make_handler()

        async def scenario():
            await handler.handle_incoming_message(make_message("m1", "Hola"))
            await handler.handle_incoming_message(make_message("m1", "Hola"))

        asyncio.run(scenario())
        assert notifier.send_message.await_count == 1

    def test_out_of_sequence_message_is_ignored(self, make_handler, notifier, make_message):
        handler = make_handler()
        now = now_ms()

        async def scenario():
            await handler.handle_incoming_message(make_message("m1", "Hola", timestamp=now))
            await handler.handle_incoming_message(make_message("m2", "Buenas", timestamp=now - 2 * 60 * 1000))

        asyncio.run(scenario())
        assert notifier.send_message.await_count == 1

    def test_blank_message_is_ignored(self, make_handler, notifier, make_message):
        handler = make_handler()
        asyncio.run(handler.handle_incoming_message(make_message("m1", "   ")))
        notifier.send_message.assert_not_awaited()

    def test_is_valid_incoming_rejects_non_text(self, make_handler, make_message):
        handler = make_handler()
        message = make_message("m1", "foto").model_copy(update={"type": "image"})
        conversation = handler.conversations.get_or_create(USER)
        assert handler.is_valid_incoming(message, conversation) is False


class TestActions:
    def test_catalog_is_sent_with_followup(self, make_handler, make_model, notifier, make_message, sent_texts):
        handler = make_handler(model=make_model({"specificAction": "send_catalog"}))

        asyncio.run(handler.handle_incoming_message(make_message("m1", "¿Me mandas el catálogo?")))

        notifier.send_media_message.assert_awaited_once_with(
            USER, "document", "https://example.com/catalogo.pdf", "Catálogo Dommo", "m1"
        )
        assert sent_texts(notifier) == [CATALOG_FOLLOWUP_TEXT]
        assert handler.conversations.get(USER).assistant_step == "sales_interaction"

    def test_catalog_link_fallback_skips_followup(self, make_handler, make_model, notifier, make_message):
        notifier.send_media_message = AsyncMock(
            return_value=Result.success({"fallback_link": True, "text": "¡Claro! Te comparto el enlace: x"})
        )
        handler = make_handler(model=make_model({"specificAction": "enviar_catalogo"}))

        asyncio.run(handler.handle_incoming_message(make_message("m1", "¿Me mandas el catálogo?")))

        notifier.send_message.assert_not_awaited()
        history = list(handler.conversations.get(USER).history)
        assert history[-1]["content"] == "¡Claro! Te comparto el enlace: x"

    def test_start_appointment_then_continue_without_classifying(self, make_handler, make_model, make_message):
        model = make_model({"specificAction": "start_appointment", "suggestedFlow": "appointment"})
        handler = make_handler(model=model)

        async def scenario():
            await handler.handle_incoming_message(make_message("m1", "Quiero agendar un pedido para mi mamá"))
            step_after_start = handler.appointments.current_step(USER)
            await handler.handle_incoming_message(make_message("m2", "Ana María López"))
            return step_after_start

        step_after_start = asyncio.run(scenario())

        assert step_after_start == AppointmentStep.NAME
        assert handler.appointments.current_step(USER) == AppointmentStep.GIFTEE
        assert len(model.calls(ModelTask.CLASSIFY_CONTEXT)) == 1

    def test_appointment_suggestion_accepted(self, make_handler, make_model, make_message):
        model = make_model({"specificAction": "respond_general", "suggestedFlow": "agendamiento"})
        handler = make_handler(model=model)

        asyncio.run(handler.handle_incoming_message(make_message("m1", "sí, quiero agendar mi pedido ya")))

        assert handler.appointments.current_step(USER) == AppointmentStep.NAME

    def test_order_lookup_lists_matches(
        self, make_handler, make_model, make_order_store, notifier, make_message, sent_texts
    ):
        handler = make_handler(
            model=make_model({"specificAction": "lookup_order"}), order_store=make_order_store(ORDER_ROWS)
        )

        asyncio.run(
            handler.handle_incoming_message(make_message("m1", "Quiero saber el estado del pedido de Ana López"))
        )

        texts = sent_texts(notifier)
        assert len(texts) == 1
        assert "ORD-2" in texts[0]
        assert "Marta" in texts[0]

    def test_order_lookup_without_match_asks_for_details(
        self, make_handler, make_model, notifier, make_message, sent_texts
    ):
        model = make_model({"specificAction": "lookup_order"}, reply="No encontré tu pedido, ¿a nombre de quién está?")
        handler = make_handler(model=model)

        asyncio.run(handler.handle_incoming_message(make_message("m1", "Quiero saber el estado de mi pedido porfa")))

        assert sent_texts(notifier) == ["No encontré tu pedido, ¿a nombre de quién está?"]
        assert handler.conversations.get(USER).assistant_step == "order_lookup"

    def test_continue_without_active_flow_answers_generally(self, make_handler, make_model, make_message):
        handler = make_handler(model=make_model({"specificAction": "continuar_agendamiento"}))

        asyncio.run(handler.handle_incoming_message(make_message("m1", "¿Qué colores de rosas tienen?")))

        assert handler.appointments.is_active(USER) is False
        assert handler.conversations.get(USER).assistant_step == "general"


class TestGeneralReplies:
    def test_thanks_gets_warm_acknowledgement(self, make_handler, model, make_message):
        handler = make_handler()

        asyncio.run(handler.handle_incoming_message(make_message("m1", "¡Muchas gracias!")))

        assert model.calls(ModelTask.GENERATE_RESPONSE)[-1].response_type == "thanks"

    def test_shouting_customer_gets_empathetic_reply(self, make_handler, model, make_message):
        handler = make_handler()

        asyncio.run(handler.handle_incoming_message(make_message("m1", "NO ME ESTAS ENTENDIENDO NADA!")))

        assert model.calls(ModelTask.GENERATE_RESPONSE)[-1].response_type == "frustration"

    def test_follow_up_after_catalog_keeps_sales_framing(self, make_handler, model, make_message):
        model.classification = {"messageType": "question", "specificAction": "send_catalog"}
        handler = make_handler()

        async def scenario():
            await handler.handle_incoming_message(make_message("m1", "¿Me mandas el catálogo?"))
            model.classification = {"messageType": "question", "suggestedFlow": "none"}
            await handler.handle_incoming_message(make_message("m2", "¿Y la tienen en color azul?"))

        asyncio.run(scenario())

        assert model.calls(ModelTask.GENERATE_RESPONSE)[-1].response_type == "purchase_intent"
        assert handler.conversations.get(USER).assistant_step == "sales_interaction"

    def test_suggested_flow_is_recorded_as_next_step(self, make_handler, model, make_message):
        model.classification = {"messageType": "question", "suggestedFlow": "inquiry"}
        handler = make_handler()

        asyncio.run(handler.handle_incoming_message(make_message("m1", "¿Hacen envíos a Chía?")))

        assert model.calls(ModelTask.GENERATE_RESPONSE)[-1].response_type == "product_inquiry"
        assert handler.conversations.get(USER).assistant_step == "inquiry_interaction"


class TestFailures:
    def test_unexpected_error_sends_apology(self, make_handler, notifier, make_message, sent_texts):
        notifier.mark_as_read = AsyncMock(side_effect=RuntimeError("boom"))
        handler = make_handler()

        asyncio.run(handler.handle_incoming_message(make_message("m1", "¿Qué colores de rosas tienen?")))

        assert sent_texts(notifier) == [APOLOGY_TEXT]
        assert len(handler.guard) == 0

    def test_model_error_still_gets_fallback_reply(self, make_handler, model, notifier, make_message, sent_texts):
        async def broken(request):
            raise RuntimeError("boom")

        model.complete = broken
        handler = make_handler()

        asyncio.run(handler.handle_incoming_message(make_message("m1", "¿Qué colores de rosas tienen?")))

        replies = sent_texts(notifier)
        assert len(replies) == 1
        assert replies[0] != APOLOGY_TEXT

    def test_failed_delivery_is_not_recorded_in_history(self, make_handler, notifier, make_message):
        notifier.send_message = AsyncMock(return_value=Result.failure("blocked", "http_400"))
        handler = make_handler()

        asyncio.run(handler.handle_incoming_message(make_message("m1", "Hola")))

        roles = [turn["role"] for turn in handler.conversations.get(USER).history]
        assert roles == ["user"]
