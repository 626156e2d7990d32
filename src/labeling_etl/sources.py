"""labeling_etl.sources

Source adapters: turn an uploaded file or a remote spreadsheet tab into a
SheetData (title, header, rows) and expose every data row in the shape the
row normalizer expects.

  decode_file(path)       .xlsx via openpyxl (first worksheet), .csv via csv
  SheetsClient            Google Sheets v4 REST API via requests
  iter_raw_rows(sheet)    (row_number, [(header, value), ...]) per data row
  resolve_subject(tab)    subject label used when a row leaves it blank

Any transport or HTTP failure talking to the Sheets API raises
SourceUnavailableError before ingestion starts.
"""

from __future__ import annotations

import csv
import logging
import time
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Mapping, Sequence
from urllib.parse import quote

import requests
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from labeling_etl.normalize import trim

log = logging.getLogger(__name__)

SHEETS_API_BASE = "https://sheets.googleapis.com/v4/spreadsheets"
USER_AGENT = "labeling-etl/1.0"

# First data row is spreadsheet row 2; row 1 is the header.
FIRST_DATA_ROW = 2

# Tab name → subject label, for tabs whose rows carry no subject.
SUBJECT_ALIASES: dict[str, str] = {
    "Korean_Labeling": "국어",
    "Math_Labeling": "수학",
    "English": "영어",
    "Physics_labeling": "과탐 - 물리",
    "CHE_labeling": "과탐 - 화학",
    "BIO_labeling": "과탐 - 생명과학",
    "EAS_Labeling1": "과탐 - 지구과학",
    "IDX_KorPrivQ": "국어(사설)",
    "IDX_EngPrivQ": "영어(사설)",
    "IDX_MathPrivQ": "수학(사설)",
    "IDX_MathLocalQ": "수학(지역사설)",
    "IDX_PHYPrivQ": "과탐 - 물리(사설)",
    "IDX_CHMPrivQ": "과탐 - 화학(사설)",
    "IDX_BIOPrivQ": "과탐 - 생명과학(사설)",
    "IDX_EASPrivQ": "과탐 - 지구과학(사설)",
    "IDX_SCLPrivQ": "사탐(사설)",
    "IDX_PLWPrivQ": "정치와법(사설)",
    "IDX_ETSPrivQ": "ETS(사설)",
    "IDX_LEVPrivQ": "LEV(사설)",
}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class UnsupportedFileError(ValueError):
    """Raised for upload files that are neither .xlsx nor .csv."""


class UnreadableFileError(ValueError):
    """Raised for an .xlsx or .csv upload whose content cannot be decoded."""


class SourceUnavailableError(RuntimeError):
    """Raised when the remote spreadsheet cannot be read."""


# ---------------------------------------------------------------------------
# SheetData
# ---------------------------------------------------------------------------

@dataclass
class SheetData:
    title: str
    header: list[str]
    rows: list[list[Any]] = field(default_factory=list)

    @classmethod
    def from_values(cls, title: str, values: Sequence[Sequence[Any]]) -> SheetData:
        if not values:
            return cls(title=title, header=[])
        header = ["" if h is None else str(h).strip() for h in values[0]]
        return cls(title=title, header=header, rows=[list(r) for r in values[1:]])


def _is_blank_row(row: Sequence[Any]) -> bool:
    return all(trim(v) is None for v in row)


def iter_raw_rows(sheet: SheetData) -> Iterator[tuple[int, list[tuple[str, Any]]]]:
    """Yield (row_number, cells) for every non-blank data row.

    Rows shorter than the header are padded with None; cells beyond the
    header are dropped.  Row numbers are spreadsheet row numbers.
    """
    width = len(sheet.header)
    for offset, row in enumerate(sheet.rows):
        if _is_blank_row(row):
            continue
        padded = list(row[:width]) + [None] * (width - len(row))
        yield offset + FIRST_DATA_ROW, list(zip(sheet.header, padded))


def resolve_subject(tab_title: str, aliases: Mapping[str, str] | None = None) -> str:
    """Subject label for a tab: its alias when one exists, else the tab name."""
    aliases = SUBJECT_ALIASES if aliases is None else aliases
    return aliases.get(tab_title, tab_title)


# ---------------------------------------------------------------------------
# File decoder
# ---------------------------------------------------------------------------

def _decode_xlsx(path: Path) -> SheetData:
    try:
        wb = load_workbook(path, read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError) as exc:
        raise UnreadableFileError(f"cannot read workbook {path.name}: {exc}") from exc
    try:
        ws = wb.worksheets[0]
        values = [list(r) for r in ws.iter_rows(values_only=True)]
        return SheetData.from_values(ws.title, values)
    finally:
        wb.close()


def _decode_csv(path: Path) -> SheetData:
    try:
        with open(path, newline="", encoding="utf-8-sig") as fh:
            values = [row for row in csv.reader(fh)]
    except (UnicodeDecodeError, csv.Error) as exc:
        raise UnreadableFileError(f"cannot read {path.name} as UTF-8 CSV: {exc}") from exc
    return SheetData.from_values(path.stem, values)


def decode_file(path: Path) -> SheetData:
    """Decode an uploaded spreadsheet file into SheetData.

    Raises:
        UnsupportedFileError: the extension is not .xlsx or .csv.
        UnreadableFileError: the file is corrupt or not UTF-8 text.
        FileNotFoundError: the file does not exist.
    """
    suffix = path.suffix.lower()
    if suffix == ".xlsx":
        return _decode_xlsx(path)
    if suffix == ".csv":
        return _decode_csv(path)
    raise UnsupportedFileError(
        f"unsupported file type '{suffix or path.name}': expected .xlsx or .csv"
    )


# ---------------------------------------------------------------------------
# Google Sheets client
# ---------------------------------------------------------------------------

class SheetsClient:
    """Read-only Google Sheets v4 client.

    Authenticates with an API key (public spreadsheets) or an OAuth access
    token (private spreadsheets).  Values are requested unformatted, so
    numbers arrive as numbers and dates as serial numbers.
    """

    def __init__(
        self,
        api_key: str | None = None,
        access_token: str | None = None,
        session: requests.Session | None = None,
        timeout: int = 30,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
    ) -> None:
        if not api_key and not access_token:
            raise ValueError("SheetsClient needs an api_key or an access_token")
        self._api_key = api_key
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": USER_AGENT})
        if access_token:
            self._session.headers.update({"Authorization": f"Bearer {access_token}"})
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds

    def _get(self, url: str, params: dict[str, str]) -> dict[str, Any]:
        if self._api_key:
            params = {**params, "key": self._api_key}
        last_error = "no attempt made"
        for attempt in range(self._max_attempts):
            if attempt > 0:
                time.sleep(self._backoff_seconds * attempt)
            try:
                resp = self._session.get(url, params=params, timeout=self._timeout)
            except requests.RequestException as exc:
                last_error = f"network error: {exc}"
                log.warning("sheets request failed (attempt %d): %s", attempt + 1, exc)
                continue
            if resp.status_code == 429 or resp.status_code >= 500:
                last_error = f"HTTP {resp.status_code}"
                log.warning("sheets request returned %s (attempt %d)", resp.status_code, attempt + 1)
                continue
            if resp.status_code != 200:
                raise SourceUnavailableError(
                    f"Sheets API returned HTTP {resp.status_code}: {resp.text[:200]}"
                )
            try:
                return resp.json()
            except ValueError as exc:
                raise SourceUnavailableError(f"Sheets API returned invalid JSON: {exc}") from exc
        raise SourceUnavailableError(f"Sheets API unavailable after {self._max_attempts} attempts: {last_error}")

    def list_tabs(self, spreadsheet_id: str) -> list[str]:
        data = self._get(
            f"{SHEETS_API_BASE}/{spreadsheet_id}",
            {"fields": "sheets.properties.title"},
        )
        titles = [(s.get("properties") or {}).get("title") for s in data.get("sheets") or []]
        return [t for t in titles if t]

    def fetch_tab(self, spreadsheet_id: str, title: str) -> SheetData:
        a1_range = "'" + title.replace("'", "''") + "'"
        data = self._get(
            f"{SHEETS_API_BASE}/{spreadsheet_id}/values/{quote(a1_range, safe='')}",
            {
                "valueRenderOption": "UNFORMATTED_VALUE",
                "dateTimeRenderOption": "SERIAL_NUMBER",
            },
        )
        return SheetData.from_values(title, data.get("values") or [])

    def fetch_spreadsheet(
        self,
        spreadsheet_id: str,
        tabs: Sequence[str] | None = None,
    ) -> list[SheetData]:
        """Fetch every tab, or only the allow-listed ``tabs`` that exist."""
        titles = self.list_tabs(spreadsheet_id)
        if tabs is not None:
            allowed = set(tabs)
            missing = allowed - set(titles)
            if missing:
                log.warning("tabs not found in %s: %s", spreadsheet_id, sorted(missing))
            titles = [t for t in titles if t in allowed]
        return [self.fetch_tab(spreadsheet_id, t) for t in titles]
