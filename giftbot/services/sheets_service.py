"""Order persistence in a Google Sheets worksheet."""

from abc import ABC, abstractmethod
from typing import List, Optional

import gspread
from google.auth.exceptions import GoogleAuthError
from google.oauth2.service_account import Credentials

from giftbot.config import settings
from giftbot.logging_config import get_logger
from giftbot.services.result import Result

logger = get_logger("sheets_service")

SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]

# Column order of the orders sheet. Lookups read the first six columns.
ORDER_COLUMNS = (
    "name",
    "giftee",
    "date",
    "time_slot",
    "order_description",
    "timestamp",
    "address",
    "phone",
)


class OrderStore(ABC):
    @abstractmethod
    def append(self, row: List[str]) -> Result[None]:
        """Append one order row."""

    @abstractmethod
    def fetch_all(self) -> List[List[str]]:
        """All rows including the header row."""


class SheetsOrderStore(OrderStore):
    def __init__(
        self,
        spreadsheet_id: str,
        credentials_file: str,
        sheet_name: str = "pedidos",
    ):
        self.spreadsheet_id = spreadsheet_id
        self.credentials_file = credentials_file
        self.sheet_name = sheet_name
        self._worksheet: Optional[gspread.Worksheet] = None

    def _get_worksheet(self) -> gspread.Worksheet:
        if self._worksheet is None:
            credentials = Credentials.from_service_account_file(self.credentials_file, scopes=SCOPES)
            client = gspread.authorize(credentials)
            self._worksheet = client.open_by_key(self.spreadsheet_id).worksheet(self.sheet_name)
        return self._worksheet

    def append(self, row: List[str]) -> Result[None]:
        if not self.spreadsheet_id:
            logger.warning("Orders spreadsheet not configured, skipping append")
            return Result.failure("Spreadsheet not configured", code="not_configured")
        try:
            self._get_worksheet().append_row(
                [str(value) if value is not None else "" for value in row],
                value_input_option="RAW",
                insert_data_option="INSERT_ROWS",
            )
        except (gspread.exceptions.GSpreadException, GoogleAuthError, OSError, ValueError) as exc:
            logger.error("Order append failed", extra={"context": {"error": str(exc)}})
            self._worksheet = None
            return Result.failure(str(exc), code="sheets_error")

        logger.info("Order appended", extra={"context": {"sheet": self.sheet_name}})
        return Result.success(None)

    def fetch_all(self) -> List[List[str]]:
        if not self.spreadsheet_id:
            logger.warning("Orders spreadsheet not configured, nothing to fetch")
            return []
        return self._get_worksheet().get_all_values()


_order_store: Optional[OrderStore] = None


def get_order_store() -> OrderStore:
    global _order_store
    if _order_store is None:
        _order_store = SheetsOrderStore(
            spreadsheet_id=settings.spreadsheet_id,
            credentials_file=settings.google_credentials_file,
            sheet_name=settings.orders_sheet_name,
        )
    return _order_store
