"""Tests for offer_intake.sheets."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from offer_intake.enrichment import OfferDetails, OfferRecord, Product, Supplier
from offer_intake.sheets import (
    HEADER_GAP_ROWS,
    MISSING,
    SheetsCommitter,
    offer_rows,
    sheet_base_name,
    unique_sheet_name,
)


def sheets_service(titles: list[str]) -> MagicMock:
    service = MagicMock()
    spreadsheets = service.spreadsheets.return_value
    spreadsheets.get.return_value.execute.return_value = {
        "sheets": [{"properties": {"title": t}} for t in titles]
    }
    spreadsheets.values.return_value.update.return_value.execute.return_value = {"updatedCells": 14}
    return service


@pytest.fixture
def offer() -> OfferRecord:
    return OfferRecord(
        supplier=Supplier(name="Steelworks GmbH"),
        offer_details=OfferDetails(currency="EUR", delivery_terms="CIP Gdansk", payment_terms="net 60 days"),
        products=[Product(material="cold rolled steel", grade="HC220", thickness=[1.5, 2.0], width=1250.0, price=720.0)],
    )


class TestNaming:
    def test_base_name_from_supplier(self, offer: OfferRecord):
        assert sheet_base_name(offer, "offer-42") == "Steelworks GmbH"

    def test_base_name_fallback(self):
        assert sheet_base_name(OfferRecord(), "offer-42") == "offer-42"

    def test_invalid_characters_removed(self):
        offer = OfferRecord(supplier=Supplier(name="A/B: [Steel]"))
        assert sheet_base_name(offer, "x") == "A B   Steel"

    def test_unique_name(self):
        assert unique_sheet_name("Steel", set()) == "Steel"
        assert unique_sheet_name("Steel", {"Steel"}) == "Steel - Copy 1"
        assert unique_sheet_name("Steel", {"Steel", "Steel - Copy 1"}) == "Steel - Copy 2"

    def test_unique_name_stays_within_limit(self):
        base = "S" * 100
        name = unique_sheet_name(base, {base})
        assert len(name) == 100
        assert name.endswith(" - Copy 1")


class TestOfferRows:
    def test_layout(self, offer: OfferRecord):
        rows = offer_rows(offer)
        assert rows[0] == ["Steelworks GmbH", "EUR", "CIP Gdansk", MISSING, "net 60 days"]
        assert rows[1:1 + HEADER_GAP_ROWS] == [[]] * HEADER_GAP_ROWS
        assert rows[-1] == ["cold rolled steel", "1.5-2", 1250.0, "HC220", MISSING, MISSING, MISSING, 720.0]

    def test_empty_offer(self):
        rows = offer_rows(OfferRecord())
        assert rows == [[MISSING] * 5] + [[]] * HEADER_GAP_ROWS


class TestSheetsCommitter:
    def test_commit_duplicates_template_and_writes(self, offer: OfferRecord):
        service = sheets_service(["Template"])
        committer = SheetsCommitter(service, "sheet-123", template_sheet_id=7)

        ack = committer.commit(offer, key="42")

        assert ack.sheet_name == "Steelworks GmbH"
        assert ack.updated_cells == 14
        body = service.spreadsheets.return_value.batchUpdate.call_args.kwargs["body"]
        request = body["requests"][0]["duplicateSheet"]
        assert request == {"sourceSheetId": 7, "insertSheetIndex": 1, "newSheetName": "Steelworks GmbH"}
        update = service.spreadsheets.return_value.values.return_value.update.call_args.kwargs
        assert update["range"] == "'Steelworks GmbH'!A2"
        assert update["body"]["values"] == offer_rows(offer)

    def test_existing_name_gets_copy_suffix(self, offer: OfferRecord):
        service = sheets_service(["Template", "Steelworks GmbH"])
        ack = SheetsCommitter(service, "sheet-123", 0).commit(offer, key="42")
        assert ack.sheet_name == "Steelworks GmbH - Copy 1"

    def test_retry_reuses_duplicated_sheet(self, offer: OfferRecord):
        service = sheets_service(["Template"])
        spreadsheets = service.spreadsheets.return_value
        committer = SheetsCommitter(service, "sheet-123", 0)
        spreadsheets.values.return_value.update.return_value.execute.side_effect = [
            RuntimeError("write failed"),
            {"updatedCells": 14},
        ]

        with pytest.raises(RuntimeError):
            committer.commit(offer, key="42")
        # The first attempt created the tab
        spreadsheets.get.return_value.execute.return_value = {
            "sheets": [{"properties": {"title": "Template"}}, {"properties": {"title": "Steelworks GmbH"}}]
        }
        ack = committer.commit(offer, key="42")

        assert ack.sheet_name == "Steelworks GmbH"
        assert spreadsheets.batchUpdate.call_count == 1

    def test_quote_in_sheet_name_escaped(self):
        service = sheets_service([])
        offer = OfferRecord(supplier=Supplier(name="O'Neil Steel"))
        SheetsCommitter(service, "sheet-123", 0).commit(offer, key="1")
        update = service.spreadsheets.return_value.values.return_value.update.call_args.kwargs
        assert update["range"] == "'O''Neil Steel'!A2"
