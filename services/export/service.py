"""Export service: flatten a user's businesses into CSV or Excel files."""

import csv
import os
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Sequence, Tuple

from loguru import logger
from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from db.models.business import ExportRow
from infra import s3, slack
from services.export import repo
from services.export.models import ExportFilters, ExportResult

EXPORT_COLUMNS: List[Tuple[str, Callable[[ExportRow], Any]]] = [
    ("Name", lambda r: r.name),
    ("City", lambda r: r.city or ""),
    ("State", lambda r: r.state or ""),
    ("Rating", lambda r: r.rating if r.rating is not None else ""),
    ("Email", lambda r: r.email or ""),
    ("Phone", lambda r: r.phone or ""),
    ("Formatted Address", lambda r: r.formatted_address or ""),
]

SUPPORTED_FORMATS = (".csv", ".xlsx")

_ILLEGAL_XML_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")


def dedupe_rows(rows: Sequence[ExportRow]) -> List[ExportRow]:
    """Keep the first row for each (email, phone) pair.

    Missing values count as empty, so rows with neither collapse into one.
    """
    seen = set()
    unique = []
    for row in rows:
        key = (row.email or "", row.phone or "")
        if key in seen:
            continue
        seen.add(key)
        unique.append(row)
    return unique


def default_filename(user_id: int, job_id: Optional[int] = None, ext: str = ".csv") -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    scope = f"job-{job_id}" if job_id else f"user-{user_id}"
    return f"businesses-{scope}-{stamp}{ext}"


class IService(ABC):
    """Export Service - deliver enriched businesses as spreadsheets."""

    @abstractmethod
    async def export(
        self,
        user_id: int,
        path: str,
        filters: Optional[ExportFilters] = None,
        upload: bool = False,
    ) -> ExportResult:
        """Write the user's businesses to `path` (.csv or .xlsx).

        With upload=True the file is also pushed to S3 and announced on Slack.
        """
        pass


class Service(IService):
    def __init__(self, notify: bool = True) -> None:
        self.notify = notify

    async def export(
        self,
        user_id: int,
        path: str,
        filters: Optional[ExportFilters] = None,
        upload: bool = False,
    ) -> ExportResult:
        filters = filters or ExportFilters()
        _, ext = os.path.splitext(path.lower())
        if ext not in SUPPORTED_FORMATS:
            raise ValueError(f"Unsupported export format '{ext}', expected one of {SUPPORTED_FORMATS}")

        rows = await repo.get_export_rows(user_id, filters)
        unique = dedupe_rows(rows)
        logger.info(
            f"Exporting {len(unique)} businesses for user {user_id} "
            f"({len(rows) - len(unique)} duplicate contacts dropped)"
        )

        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        if ext == ".xlsx":
            self.write_xlsx(unique, path)
        else:
            self.write_csv(unique, path)

        result = ExportResult(path=path, row_count=len(unique), duplicates_removed=len(rows) - len(unique))
        if upload:
            key = f"exports/user-{user_id}/{os.path.basename(path)}"
            result.s3_uri = s3.upload_file(path, key)
            if self.notify:
                label = f"job {filters.job_id}" if filters.job_id else f"user {user_id}"
                slack.send_export_notification(label, result.row_count, result.s3_uri)
        return result

    def write_csv(self, rows: Sequence[ExportRow], path: str) -> None:
        with open(path, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow([header for header, _ in EXPORT_COLUMNS])
            for row in rows:
                writer.writerow([extract(row) for _, extract in EXPORT_COLUMNS])

    def write_xlsx(self, rows: Sequence[ExportRow], path: str) -> None:
        workbook = self._create_workbook(rows)
        workbook.save(path)

    def _create_workbook(self, rows: Sequence[ExportRow]) -> Workbook:
        workbook = Workbook()
        sheet = workbook.active
        sheet.title = "Businesses"
        self._populate_sheet(sheet, rows)
        return workbook

    def _populate_sheet(self, sheet, rows: Sequence[ExportRow]) -> None:
        headers = [header for header, _ in EXPORT_COLUMNS]

        header_font = Font(bold=True, color="FFFFFF")
        header_fill = PatternFill(start_color="4472C4", end_color="4472C4", fill_type="solid")
        header_alignment = Alignment(horizontal="center", vertical="center")
        thin_border = Border(
            left=Side(style="thin"),
            right=Side(style="thin"),
            top=Side(style="thin"),
            bottom=Side(style="thin"),
        )

        for col, header in enumerate(headers, 1):
            cell = sheet.cell(row=1, column=col, value=header)
            cell.font = header_font
            cell.fill = header_fill
            cell.alignment = header_alignment
            cell.border = thin_border

        for row_idx, row in enumerate(rows, 2):
            for col, (_, extract) in enumerate(EXPORT_COLUMNS, 1):
                value = extract(row)
                if isinstance(value, str):
                    value = _ILLEGAL_XML_RE.sub("", value)
                cell = sheet.cell(row=row_idx, column=col, value=value)
                cell.border = thin_border

        sheet.freeze_panes = "A2"

        # Auto-adjust column widths from the first 100 rows
        for col in range(1, len(headers) + 1):
            max_length = len(headers[col - 1])
            for row_idx in range(2, min(len(rows) + 2, 100)):
                cell_value = sheet.cell(row=row_idx, column=col).value
                if cell_value:
                    max_length = max(max_length, len(str(cell_value)))
            sheet.column_dimensions[get_column_letter(col)].width = min(max_length + 2, 60)
