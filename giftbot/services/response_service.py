"""Final shaping of outbound replies before they reach the notifier."""

import random
import re
import unicodedata
from typing import Callable, Iterable, List, Optional

from giftbot.logging_config import get_logger
from giftbot.services.conversation_service import ConversationStore

logger = get_logger("response_service")

FALLBACK_TEXT = "¿Me cuentas un poco más para poder ayudarte?"
SIMILARITY_THRESHOLD = 0.7
MIN_LENGTH_FOR_VARIATION = 30
COMPARED_RESPONSES = 3
PUNCTUATION_VARIATION_PROBABILITY = 0.15

CLOSING_PHRASES = (
    "¿En qué más puedo ayudarte?",
    "¿Hay algo más en lo que pueda ayudarte?",
    "¿Necesitas algo más?",
)
CONVERSATIONAL_PREFIXES = ("¡Por supuesto! ", "Claro, ", "Desde luego, ", "Mira, ", "Verás, ")
FORMALITY_SWAPS = (
    ("disponemos de", "tenemos"),
    ("adquirir", "comprar"),
    ("notificar", "avisar"),
    ("solicitar", "pedir"),
)

TextTransform = Callable[[str, random.Random], str]


def normalize_words(text: str) -> set:
    decomposed = unicodedata.normalize("NFD", (text or "").lower())
    stripped = "".join(char for char in decomposed if unicodedata.category(char) != "Mn")
    return set(re.findall(r"\w+", stripped))


def jaccard_similarity(left: str, right: str) -> float:
    left_words, right_words = normalize_words(left), normalize_words(right)
    if not left_words or not right_words:
        return 0.0
    return len(left_words & right_words) / len(left_words | right_words)


def trim_closing_phrases(text: str) -> str:
    cleaned = (text or "").strip()
    for phrase in CLOSING_PHRASES:
        if cleaned.endswith(phrase):
            cleaned = cleaned[: -len(phrase)].strip()
    return cleaned


def vary_punctuation(text: str, rng: random.Random) -> str:
    """Occasionally turn a sentence break into an ellipsis."""
    if rng.random() >= PUNCTUATION_VARIATION_PROBABILITY:
        return text
    return re.sub(r"\.\s+([A-ZÁÉÍÓÚÑ¿¡])", r"... \1", text, count=1)


def reorder_sentences(text: str, rng: random.Random) -> str:
    sentences = re.split(r"(?<=[.!?])\s+", text)
    if len(sentences) < 2:
        return text
    sentences[0], sentences[1] = sentences[1], sentences[0]
    return " ".join(sentences)


def toggle_prefix(text: str, rng: random.Random) -> str:
    for prefix in CONVERSATIONAL_PREFIXES:
        if text.startswith(prefix):
            rest = text[len(prefix) :]
            return rest[:1].upper() + rest[1:]
    prefix = rng.choice(CONVERSATIONAL_PREFIXES)
    if prefix.endswith(", "):
        return prefix + text[:1].lower() + text[1:]
    return prefix + text


def swap_formality(text: str, rng: random.Random) -> str:
    for formal, casual in FORMALITY_SWAPS:
        if formal in text:
            return text.replace(formal, casual)
        if casual in text:
            return text.replace(casual, formal)
    return text


VARIATION_TECHNIQUES: List[TextTransform] = [reorder_sentences, toggle_prefix, swap_formality]


class ResponsePipeline:
    def __init__(
        self,
        conversations: ConversationStore,
        rng: Optional[random.Random] = None,
        transforms: Optional[Iterable[TextTransform]] = None,
        humanize: bool = True,
    ):
        self.conversations = conversations
        self.rng = rng or random.Random()
        self.transforms = list(transforms) if transforms is not None else [vary_punctuation]
        self.humanize = humanize

    def finalize(self, raw_text: str, user_id: str) -> str:
        text = trim_closing_phrases(raw_text)
        if not text:
            text = FALLBACK_TEXT

        if self.humanize:
            for transform in self.transforms:
                text = transform(text, self.rng) or text

        conversation = self.conversations.get_or_create(user_id)
        recent = list(conversation.recent_responses)[-COMPARED_RESPONSES:]
        if len(text) > MIN_LENGTH_FOR_VARIATION and any(
            jaccard_similarity(text, previous) > SIMILARITY_THRESHOLD for previous in recent
        ):
            technique = self.rng.choice(VARIATION_TECHNIQUES)
            varied = technique(text, self.rng)
            logger.info(
                "Rephrased repetitive reply",
                extra={"context": {"user_id": user_id, "technique": technique.__name__, "changed": varied != text}},
            )
            text = varied or text

        conversation.recent_responses.append(text)
        return text
