"""Offer enrichment: aggregate bundle record -> structured offer via OpenAI."""

from __future__ import annotations

import json
from datetime import date
from typing import Any

import structlog
from openai import ContentFilterFinishReasonError, LengthFinishReasonError, OpenAI
from pydantic import BaseModel, Field

from .config import EnrichmentConfig
from .errors import EnrichmentRefusal
from .models import AggregateRecord

logger = structlog.get_logger()

# Attachment content beyond this is cut before it goes into the prompt
MAX_ATTACHMENT_CHARS = 60_000

SYSTEM_PROMPT = """\
You analyse commercial offers for steel and metal products and produce a
structured summary. Today's date is {today}.

Rules:
1. Use only information explicitly present in the input.
2. Leave a field null when the input does not state it; never guess.
3. Do not move data between fields; each field holds only its own data.
4. For numeric ranges (e.g. thickness "min. 280 - max 300") return a
   two-element list [min, max]; for a single value return one number.
5. All numeric data must be numbers, not strings.
6. If the supplier is not named, derive it from the sender's mail domain.
7. Products: material is the commodity (e.g. "cold rolled steel"),
   thickness and width in mm, grade is the steel grade (e.g. "HC220"),
   surface is the coating or finish, price is the unit price, quantity is
   the offered quantity.
8. Offer details: currency, delivery terms (e.g. "CIP Gdansk"), delivery
   date (e.g. "Sept/Oct"), payment terms (e.g. "net 60 days").
"""


# ------------------------------------------------------------------
# Output schema
# ------------------------------------------------------------------


class Contact(BaseModel):
    name: str | None = None
    email: str | None = None
    phone: str | None = None


class Customer(BaseModel):
    name: str | None = None
    location: str | None = None


class Supplier(BaseModel):
    name: str | None = None
    contact: Contact | None = None


class OfferDetails(BaseModel):
    currency: str | None = None
    delivery_terms: str | None = None
    delivery_date: str | None = None
    payment_terms: str | None = None
    total_quantity: float | None = None
    period_offered: str | None = None


class Product(BaseModel):
    item_number: str | None = None
    material: str | None = None
    grade: str | None = None
    surface: str | None = None
    thickness: float | list[float] | None = Field(default=None, description="mm; [min, max] for a range")
    width: float | list[float] | None = Field(default=None, description="mm; [min, max] for a range")
    length: float | list[float] | None = Field(default=None, description="mm; [min, max] for a range")
    quantity: float | None = None
    price: float | None = None


class OfferRecord(BaseModel):
    """Structured offer produced from one bundle."""

    offer_number: str | None = None
    offer_date: str | None = None
    customer: Customer | None = None
    supplier: Supplier | None = None
    offer_details: OfferDetails | None = None
    products: list[Product] = Field(default_factory=list)


# ------------------------------------------------------------------
# Cleaning
# ------------------------------------------------------------------


def _clean(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    if isinstance(value, list):
        return [_clean(v) for v in value]
    if isinstance(value, dict):
        return {k: _clean(v) for k, v in value.items()}
    return value


def _normalize_range(value: float | list[float] | None) -> float | list[float] | None:
    if isinstance(value, list):
        if not value:
            return None
        if len(value) == 1:
            return value[0]
        return [min(value), max(value)]
    return value


def clean_offer(offer: OfferRecord) -> OfferRecord:
    """Trim strings, turn empty strings into None, tidy ranges."""
    cleaned = OfferRecord.model_validate(_clean(offer.model_dump()))
    for product in cleaned.products:
        product.thickness = _normalize_range(product.thickness)
        product.width = _normalize_range(product.width)
        product.length = _normalize_range(product.length)
    return cleaned


# ------------------------------------------------------------------
# Prompt
# ------------------------------------------------------------------


def build_messages(record: AggregateRecord, *, today: date | None = None) -> list[dict[str, str]]:
    attachments = []
    for item in record.attachments:
        if not item.get("ok"):
            continue
        attachments.append({
            "filename": item.get("filename"),
            "content": str(item.get("content", ""))[:MAX_ATTACHMENT_CHARS],
        })

    user = (
        "Analyse the offer below and produce the structured summary.\n\n"
        f"Sender: {record.metadata.sender}\n"
        f"Subject: {record.subject}\n"
        f"Body:\n{record.body}\n\n"
        f"Attachments: {', '.join(a.filename for a in record.metadata.attachments)}\n\n"
        "Attachment data:\n"
        f"{json.dumps(attachments, indent=2, ensure_ascii=False)}"
    )
    return [
        {"role": "system", "content": SYSTEM_PROMPT.format(today=(today or date.today()).isoformat())},
        {"role": "user", "content": user},
    ]


class OfferEnricher:
    """Calls an OpenAI model with structured output parsing."""

    def __init__(self, client: OpenAI, model: str) -> None:
        self._client = client
        self._model = model

    @classmethod
    def from_config(cls, config: EnrichmentConfig) -> OfferEnricher:
        client = OpenAI(
            api_key=config.api_key.get_secret_value(),
            timeout=config.timeout_seconds,
            max_retries=0,
        )
        return cls(client, config.model)

    def enrich(self, record: AggregateRecord) -> OfferRecord:
        """Return the structured offer for *record*.

        Raises :class:`EnrichmentRefusal` when the model refuses or its
        output cannot be parsed.  OpenAI transport errors propagate for
        the retry executor to classify.
        """
        try:
            completion = self._client.chat.completions.parse(
                model=self._model,
                messages=build_messages(record),
                response_format=OfferRecord,
                temperature=0,
            )
        except (LengthFinishReasonError, ContentFilterFinishReasonError) as exc:
            raise EnrichmentRefusal(f"completion stopped early: {type(exc).__name__}") from exc

        if completion.usage is not None:
            logger.info(
                "enrichment_tokens_used",
                uid=record.uid,
                total_tokens=completion.usage.total_tokens,
                prompt_tokens=completion.usage.prompt_tokens,
                completion_tokens=completion.usage.completion_tokens,
            )

        message = completion.choices[0].message
        if message.refusal:
            raise EnrichmentRefusal(message.refusal)
        if message.parsed is None:
            raise EnrichmentRefusal("model returned no structured offer")
        return clean_offer(message.parsed)
