"""
Tabulation export.

Flattens a Comparison into a quoted CSV table:

    "Item Code","Description","Qty","Unit","<vendor 1>","<vendor 2>",...
    one row per RFP item (normalized total, or "N/A" when the vendor did not price it)
    "","SUBTOTAL","","",...
    "","ADJUSTMENTS","","",...      adjusted total - subtotal
    "","TOTAL","","",...

Every cell is double-quoted, rows are joined with "\n" and there is no trailing
newline, so the output is byte-for-byte reproducible.
"""

from __future__ import annotations

import csv
import io
import logging
import re
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from .tabulation import Comparison

logger = logging.getLogger(__name__)

HEADERS = ["Item Code", "Description", "Qty", "Unit"]


def _fixed2(value: Optional[Decimal]) -> str:
    if value is None:
        return "0.00"
    return str(value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _qty(value: Decimal) -> str:
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def export_rows(comparison: Comparison) -> List[List[str]]:
    rows: List[List[str]] = [HEADERS + [vendor.name for vendor in comparison.vendors]]

    for rfp_line in comparison.rfp_items:
        row = [rfp_line.spec_code, rfp_line.description, _qty(rfp_line.qty), rfp_line.uom]
        for vendor in comparison.vendors:
            line = comparison.matrix.get(vendor.id, {}).get(rfp_line.id)
            # Items the vendor did not price are not $0 bids
            row.append("N/A" if line is None or line.missing else _fixed2(line.total_price))
        rows.append(row)

    subtotal_row = ["", "SUBTOTAL", "", ""]
    adjustments_row = ["", "ADJUSTMENTS", "", ""]
    total_row = ["", "TOTAL", "", ""]
    for vendor in comparison.vendors:
        subtotal = comparison.totals.get(vendor.id, Decimal("0"))
        adjusted = comparison.adjusted_totals.get(vendor.id, Decimal("0"))
        subtotal_row.append(_fixed2(subtotal))
        adjustments_row.append(_fixed2(adjusted - subtotal))
        total_row.append(_fixed2(adjusted))

    rows.extend([subtotal_row, adjustments_row, total_row])
    return rows


def export_csv(comparison: Comparison) -> str:
    rows = export_rows(comparison)
    logger.info("Exporting tabulation for RFP %s (%d rows)", comparison.rfp_id, len(rows))
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerows(rows)
    return buffer.getvalue().removesuffix("\n")


def export_filename(title: str, on: Optional[date] = None) -> str:
    safe_title = re.sub(r"[^a-z0-9]", "_", title, flags=re.IGNORECASE)
    return f"bid-tabulation-{safe_title}-{(on or date.today()).isoformat()}.csv"
