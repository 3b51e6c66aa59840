"""
Excel exports built with pandas (openpyxl engine).
"""

from io import BytesIO
from typing import Iterable, List, Optional

import pandas as pd

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def rows_to_xlsx(
    rows: Iterable[dict],
    sheet_name: str = "Report",
    columns: Optional[List[str]] = None,
) -> BytesIO:
    """Write a list of flat dicts to a single-sheet workbook"""
    df = pd.DataFrame(list(rows), columns=columns)
    output = BytesIO()
    with pd.ExcelWriter(output, engine="openpyxl") as writer:
        df.to_excel(writer, sheet_name=sheet_name[:31], index=False)
    output.seek(0)
    return output


def statement_to_xlsx(statement: dict) -> BytesIO:
    """Statement of account with an opening row and a closing row"""
    columns = ["date", "description", "reference_number", "debit", "credit", "balance"]
    rows = [{
        "date": statement["date_from"] or "",
        "description": "Opening balance",
        "reference_number": "",
        "debit": None,
        "credit": None,
        "balance": statement["opening_balance"],
    }]
    rows.extend({key: entry[key] for key in columns} for entry in statement["entries"])
    rows.append({
        "date": statement["date_to"] or "",
        "description": "Closing balance",
        "reference_number": "",
        "debit": statement["total_debit"],
        "credit": statement["total_credit"],
        "balance": statement["closing_balance"],
    })
    return rows_to_xlsx(rows, sheet_name="Statement", columns=columns)


def inventory_to_xlsx(valuation: dict) -> BytesIO:
    columns = ["code", "name", "item_type", "unit", "quantity", "unit_cost", "value", "low_stock"]
    return rows_to_xlsx(
        ({key: row[key] for key in columns} for row in valuation["items"]),
        sheet_name="Inventory",
        columns=columns,
    )
