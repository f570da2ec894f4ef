"""Google Sheets sink: one duplicated template tab per offer."""

from __future__ import annotations

import re
from typing import Any

import structlog
from google.oauth2 import service_account
from googleapiclient.discovery import build
from pydantic import BaseModel

from .config import SheetsConfig
from .enrichment import OfferRecord

logger = structlog.get_logger()

SHEETS_SCOPE = "https://www.googleapis.com/auth/spreadsheets"
MISSING = "N/A"
MAX_SHEET_NAME = 100
HEADER_GAP_ROWS = 5

_INVALID_SHEET_CHARS = re.compile(r"[\[\]*?/\\:]")


class CommitAck(BaseModel):
    spreadsheet_id: str
    sheet_name: str
    updated_cells: int = 0


def sheet_base_name(offer: OfferRecord, fallback: str) -> str:
    name = offer.supplier.name if offer.supplier and offer.supplier.name else fallback
    name = _INVALID_SHEET_CHARS.sub(" ", name).strip()
    return (name or fallback)[:MAX_SHEET_NAME]


def unique_sheet_name(base: str, existing: set[str]) -> str:
    """*base*, or ``<base> - Copy <n>`` for the first free n."""
    name = base
    counter = 1
    while name in existing:
        suffix = f" - Copy {counter}"
        name = base[:MAX_SHEET_NAME - len(suffix)] + suffix
        counter += 1
    return name


def _cell(value: Any) -> Any:
    if value is None or value == "":
        return MISSING
    if isinstance(value, list):
        return "-".join(f"{v:g}" if isinstance(v, float) else str(v) for v in value)
    return value


def offer_rows(offer: OfferRecord) -> list[list[Any]]:
    """Rows written from A2 down: summary, blank gap, one row per product."""
    supplier = offer.supplier
    details = offer.offer_details
    rows: list[list[Any]] = [[
        _cell(supplier.name if supplier else None),
        _cell(details.currency if details else None),
        _cell(details.delivery_terms if details else None),
        _cell(details.delivery_date if details else None),
        _cell(details.payment_terms if details else None),
    ]]
    rows.extend([] for _ in range(HEADER_GAP_ROWS))
    for product in offer.products:
        rows.append([
            _cell(product.material),
            _cell(product.thickness),
            _cell(product.width),
            _cell(product.grade),
            _cell(product.surface),
            MISSING,  # paint coating
            MISSING,  # manufacturer
            _cell(product.price),
        ])
    return rows


class SheetsCommitter:
    """Writes offers into a spreadsheet via the Sheets v4 API.

    The sheet name chosen for a record key is remembered, so a retried
    commit reuses the tab it already duplicated instead of adding
    another copy.
    """

    def __init__(self, service: Any, spreadsheet_id: str, template_sheet_id: int) -> None:
        self._service = service
        self._spreadsheet_id = spreadsheet_id
        self._template_sheet_id = template_sheet_id
        self._reserved: dict[str, str] = {}

    @classmethod
    def from_config(cls, config: SheetsConfig) -> SheetsCommitter:
        credentials = service_account.Credentials.from_service_account_file(
            config.service_account_file,
            scopes=[SHEETS_SCOPE],
        )
        service = build("sheets", "v4", credentials=credentials, cache_discovery=False)
        return cls(service, config.spreadsheet_id, config.template_sheet_id)

    def _sheet_titles(self) -> set[str]:
        result = self._service.spreadsheets().get(
            spreadsheetId=self._spreadsheet_id,
            fields="sheets.properties.title",
        ).execute()
        return {s["properties"]["title"] for s in result.get("sheets", [])}

    def _duplicate_template(self, sheet_name: str) -> None:
        self._service.spreadsheets().batchUpdate(
            spreadsheetId=self._spreadsheet_id,
            body={
                "requests": [
                    {
                        "duplicateSheet": {
                            "sourceSheetId": self._template_sheet_id,
                            "insertSheetIndex": 1,
                            "newSheetName": sheet_name,
                        }
                    }
                ]
            },
        ).execute()
        logger.info("sheet_duplicated", sheet=sheet_name)

    def commit(self, offer: OfferRecord, *, key: str) -> CommitAck:
        """Create (or reuse) the tab for *key* and write *offer* into it.

        Google API errors propagate as ``HttpError`` for the retry
        executor to classify.
        """
        existing = self._sheet_titles()
        sheet_name = self._reserved.get(key)
        if sheet_name is None:
            sheet_name = unique_sheet_name(sheet_base_name(offer, f"offer-{key}"), existing)
            self._reserved[key] = sheet_name
        if sheet_name not in existing:
            self._duplicate_template(sheet_name)

        escaped = sheet_name.replace("'", "''")
        result = self._service.spreadsheets().values().update(
            spreadsheetId=self._spreadsheet_id,
            range=f"'{escaped}'!A2",
            valueInputOption="RAW",
            body={"values": offer_rows(offer)},
        ).execute()

        ack = CommitAck(
            spreadsheet_id=self._spreadsheet_id,
            sheet_name=sheet_name,
            updated_cells=int(result.get("updatedCells", 0)),
        )
        logger.info("offer_committed", key=key, sheet=sheet_name, updated_cells=ack.updated_cells)
        return ack
