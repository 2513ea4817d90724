"""Pattern-based extraction of appointment fields from free text.

Everything here is pure: no state, no I/O. The appointment flow calls
``extract_fields`` on every message so that details a customer volunteers
early (an address typed together with their name, a phone number) are kept
and the matching questions are skipped later.
"""

import re
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional

from giftbot.services.state_machine import AppointmentStep, TimeSlot

CLAUSE_SPLIT_PATTERN = re.compile(r"[,.;:\n]+")

ADDRESS_PATTERN = re.compile(
    r"\b(?:calle|cll|cl|carrera|cra|kra|kr|cr|avenida|av|diagonal|diag|dg|transversal|trans|tv)\b\.?"
    r"\s*\d+[a-z]?"
    r"(?:\s*(?:#|no\.?|n[°º])\s*\d+[a-z]?(?:\s*-\s*\d+)?)?"
    r"(?:\s+(?:apto|apartamento|casa|torre|interior|int|piso|bloque|local)\.?\s*\w+)*",
    re.IGNORECASE,
)

CITY_NAMES = (
    "bogotá",
    "bogota",
    "medellín",
    "medellin",
    "cali",
    "barranquilla",
    "bucaramanga",
    "cartagena",
    "pereira",
    "manizales",
    "ibagué",
    "ibague",
    "chía",
    "chia",
    "soacha",
)
CITY_PATTERN = re.compile(r"\b(" + "|".join(CITY_NAMES) + r")\b", re.IGNORECASE)

PHONE_PATTERN = re.compile(r"(?:\+?57[\s-]?)?\b3\d{2}[\s-]?\d{3}[\s-]?\d{4}\b|\b\d{7,10}\b")

NAME_INTRO_PATTERN = re.compile(
    r"\b(?:me llamo|mi nombre es|soy)\s+([A-Za-zÁÉÍÓÚÑáéíóúñ]{2,}(?:\s+[A-ZÁÉÍÓÚÑ][a-záéíóúñ]+)?)",
    re.IGNORECASE,
)
NAME_RUN_PATTERN = re.compile(r"\b[A-ZÁÉÍÓÚÑ][a-záéíóúñ]+(?:\s+[A-ZÁÉÍÓÚÑ][a-záéíóúñ]+){1,3}\b")
NAME_STOPWORDS = {
    "hola",
    "buenas",
    "buenos",
    "quiero",
    "necesito",
    "gracias",
    "para",
    "por",
    "favor",
    "calle",
    "carrera",
    "avenida",
    "diagonal",
    "transversal",
    "rosa",
    "rosas",
    "rosita",
    "santa",
    "virgen",
    "duo",
    "premium",
    "mini",
    "eterna",
    "feliz",
    "cumpleaños",
    "dommo",
}
GIFTEE_MARKERS = {"para", "a", "mi", "felicitar"}

MONTHS = {
    "enero": 1,
    "febrero": 2,
    "marzo": 3,
    "abril": 4,
    "mayo": 5,
    "junio": 6,
    "julio": 7,
    "agosto": 8,
    "septiembre": 9,
    "setiembre": 9,
    "octubre": 10,
    "noviembre": 11,
    "diciembre": 12,
}
NUMERIC_DATE_PATTERN = re.compile(r"\b(\d{1,2})\s*[/.-]\s*(\d{1,2})(?:\s*[/.-]\s*(\d{2,4}))?\b")
WORDED_DATE_PATTERN = re.compile(
    r"\b(\d{1,2})\s+de\s+(" + "|".join(MONTHS) + r")(?:\s+(?:de|del)\s+(\d{4}))?\b",
    re.IGNORECASE,
)

TIME_SLOT_PATTERNS = {
    TimeSlot.MORNING: re.compile(r"\b(mañana|manana|morning|temprano)\b", re.IGNORECASE),
    TimeSlot.AFTERNOON: re.compile(r"\b(tarde|afternoon|mediod[ií]a)\b", re.IGNORECASE),
    TimeSlot.EVENING: re.compile(r"\b(noche|evening|night)\b", re.IGNORECASE),
}


@dataclass
class ExtractionResult:
    primary: str
    extracted: Dict[str, str] = field(default_factory=dict)


def split_clauses(text: str) -> List[str]:
    return [part.strip() for part in CLAUSE_SPLIT_PATTERN.split(text or "") if part.strip()]


def find_address(text: str) -> Optional[str]:
    match = ADDRESS_PATTERN.search(text or "")
    return match.group(0).strip() if match else None


def find_city(text: str) -> Optional[str]:
    match = CITY_PATTERN.search(text or "")
    return match.group(1).title() if match else None


def find_phone(text: str) -> Optional[str]:
    match = PHONE_PATTERN.search(text or "")
    return re.sub(r"[\s-]", "", match.group(0)) if match else None


def _not_a_name_word(word: str) -> bool:
    return word.lower() in NAME_STOPWORDS or bool(CITY_PATTERN.fullmatch(word))


def find_name(text: str) -> Optional[str]:
    intro = NAME_INTRO_PATTERN.search(text or "")
    if intro:
        words = intro.group(1).split()
        if words and words[0].lower() not in NAME_STOPWORDS:
            return " ".join(word.capitalize() for word in words)

    for match in NAME_RUN_PATTERN.finditer(text or ""):
        words = match.group(0).split()
        preceding = (text[: match.start()].split() or [""])[-1].lower()
        while words and _not_a_name_word(words[0]):
            preceding = words.pop(0).lower()
        for index, word in enumerate(words):
            if _not_a_name_word(word):
                words = words[:index]
                break
        if len(words) < 2:
            continue
        # "para Marta López" names the giftee, not the customer
        if preceding in GIFTEE_MARKERS:
            continue
        return " ".join(words)
    return None


def find_date_text(text: str) -> Optional[str]:
    """Date-shaped substring, ignoring digits that belong to an address."""
    searchable = text or ""
    address = find_address(searchable)
    if address:
        searchable = searchable.replace(address, " ")
    match = WORDED_DATE_PATTERN.search(searchable) or NUMERIC_DATE_PATTERN.search(searchable)
    return match.group(0).strip() if match else None


def parse_date(text: str, today: Optional[date] = None) -> Optional[str]:
    """Parse a day/month[/year] answer into DD/MM/YYYY.

    A missing year means the next occurrence of that day, counted from ``today``.
    """
    today = today or date.today()
    candidate = find_date_text(text)
    if not candidate:
        return None

    worded = WORDED_DATE_PATTERN.fullmatch(candidate)
    if worded:
        day, month, year = int(worded.group(1)), MONTHS[worded.group(2).lower()], worded.group(3)
    else:
        numeric = NUMERIC_DATE_PATTERN.fullmatch(candidate)
        if not numeric:
            return None
        day, month, year = int(numeric.group(1)), int(numeric.group(2)), numeric.group(3)

    explicit_year = year is not None
    if explicit_year:
        year_value = int(year)
        if year_value < 100:
            year_value += 2000
    else:
        year_value = today.year

    try:
        parsed = date(year_value, month, day)
        if not explicit_year and parsed < today:
            parsed = date(year_value + 1, month, day)
    except ValueError:
        return None
    return parsed.strftime("%d/%m/%Y")


def parse_time_slot(text: str) -> Optional[TimeSlot]:
    for slot, pattern in TIME_SLOT_PATTERNS.items():
        if pattern.search(text or ""):
            return slot
    return None


def _overlaps(clause: str, values: List[str]) -> bool:
    lowered = clause.lower()
    for value in values:
        other = value.lower()
        if lowered in other or other in lowered:
            return True
    return False


def _first_free_clause(clauses: List[str], consumed: List[str]) -> str:
    for clause in clauses:
        if not _overlaps(clause, consumed):
            return clause
    return ""


def _primary_answer(text: str, step: Optional[str], extracted: Dict[str, str]) -> str:
    clauses = split_clauses(text)
    consumed = [extracted[key] for key in ("address", "phone") if extracted.get(key)]

    if step == AppointmentStep.DATE:
        return find_date_text(text) or (clauses[0] if clauses else "")

    if step == AppointmentStep.TIME_SLOT:
        for clause in clauses:
            if parse_time_slot(clause):
                return clause
        return clauses[0] if clauses else ""

    if step == AppointmentStep.ADDRESS:
        return extracted.get("address") or text.strip()

    if step == AppointmentStep.ORDER_DESCRIPTION:
        remainder = text
        for value in consumed:
            remainder = remainder.replace(value, " ")
        remainder = " ".join(remainder.split()).strip(" ,.;:")
        return remainder or text.strip()

    if step == AppointmentStep.NAME and extracted.get("name"):
        return extracted["name"]

    return _first_free_clause(clauses, consumed)


def extract_fields(text: str, step: Optional[str] = None) -> ExtractionResult:
    """Primary answer for ``step`` plus any fields recognised anywhere in ``text``."""
    raw = (text or "").strip()
    extracted: Dict[str, str] = {}

    address = find_address(raw)
    if address:
        extracted["address"] = address
    city = find_city(raw)
    if city:
        extracted["city"] = city
    phone = find_phone(raw)
    if phone:
        extracted["phone"] = phone
    name = find_name(raw)
    if name:
        extracted["name"] = name

    return ExtractionResult(primary=_primary_answer(raw, step, extracted), extracted=extracted)
