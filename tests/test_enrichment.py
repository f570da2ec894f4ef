"""Tests for offer_intake.enrichment."""

from __future__ import annotations

import json
from datetime import date
from unittest.mock import MagicMock

import pytest
from openai import LengthFinishReasonError

from offer_intake.config import EnrichmentConfig
from offer_intake.enrichment import (
    MAX_ATTACHMENT_CHARS,
    OfferEnricher,
    OfferRecord,
    Product,
    Supplier,
    build_messages,
    clean_offer,
)
from offer_intake.errors import EnrichmentRefusal

from tests.conftest import make_aggregate


def completion(parsed: OfferRecord | None = None, refusal: str | None = None) -> MagicMock:
    result = MagicMock()
    result.choices = [MagicMock()]
    result.choices[0].message.parsed = parsed
    result.choices[0].message.refusal = refusal
    result.usage.total_tokens = 1200
    result.usage.prompt_tokens = 1000
    result.usage.completion_tokens = 200
    return result


class TestCleanOffer:
    def test_strings_trimmed_and_blanks_dropped(self):
        offer = OfferRecord(
            offer_number="  2025/117 ",
            supplier=Supplier(name="   "),
            products=[Product(grade=" HC220 ", surface="")],
        )
        cleaned = clean_offer(offer)
        assert cleaned.offer_number == "2025/117"
        assert cleaned.supplier.name is None
        assert cleaned.products[0].grade == "HC220"
        assert cleaned.products[0].surface is None

    def test_ranges_normalized(self):
        offer = OfferRecord(products=[Product(thickness=[3.0, 2.8], width=[1250.0], length=[])])
        product = clean_offer(offer).products[0]
        assert product.thickness == [2.8, 3.0]
        assert product.width == 1250.0
        assert product.length is None


class TestBuildMessages:
    def test_prompt_contents(self):
        record = make_aggregate()
        record.attachments.append({"ok": False, "filename": "scan.doc", "error": "unsupported"})

        system, user = build_messages(record, today=date(2025, 6, 1))

        assert system["role"] == "system"
        assert "2025-06-01" in system["content"]
        assert user["role"] == "user"
        assert "Sender: sales@steelworks.test" in user["content"]
        payload = json.loads(user["content"].split("Attachment data:\n", 1)[1])
        assert payload == [{"filename": "offer.txt", "content": "HC220 1.5x1250 EUR 720/t"}]

    def test_long_attachment_truncated(self):
        record = make_aggregate(content="x" * (MAX_ATTACHMENT_CHARS + 500))
        _, user = build_messages(record)
        payload = json.loads(user["content"].split("Attachment data:\n", 1)[1])
        assert len(payload[0]["content"]) == MAX_ATTACHMENT_CHARS


class TestOfferEnricher:
    def test_returns_cleaned_offer(self):
        client = MagicMock()
        client.chat.completions.parse.return_value = completion(OfferRecord(offer_number=" 17 "))
        enricher = OfferEnricher(client, "gpt-4o-2024-08-06")

        offer = enricher.enrich(make_aggregate())

        assert offer.offer_number == "17"
        kwargs = client.chat.completions.parse.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-2024-08-06"
        assert kwargs["response_format"] is OfferRecord
        assert kwargs["temperature"] == 0

    def test_refusal(self):
        client = MagicMock()
        client.chat.completions.parse.return_value = completion(refusal="I can't assist with that.")
        with pytest.raises(EnrichmentRefusal, match="can't assist"):
            OfferEnricher(client, "m").enrich(make_aggregate())

    def test_unparsed_output_is_refusal(self):
        client = MagicMock()
        client.chat.completions.parse.return_value = completion()
        with pytest.raises(EnrichmentRefusal):
            OfferEnricher(client, "m").enrich(make_aggregate())

    def test_truncated_completion_is_refusal(self):
        client = MagicMock()
        client.chat.completions.parse.side_effect = LengthFinishReasonError(completion=MagicMock())
        with pytest.raises(EnrichmentRefusal, match="LengthFinishReasonError"):
            OfferEnricher(client, "m").enrich(make_aggregate())

    def test_from_config(self):
        enricher = OfferEnricher.from_config(EnrichmentConfig(api_key="sk-test", model="gpt-test"))
        assert enricher._model == "gpt-test"
