"""
Ledgerflow — Bank Statement Import
CSV and OFX statement parsing into {date, description, amount, type} rows,
and import of those rows through the ingestion gateway.
"""

import io
import re
import csv
import logging

from ledgerflow.db import _n
from ledgerflow.ingest import ingest
from ledgerflow.errors import ValidationError

logger = logging.getLogger(__name__)

DATE_HEADERS = ("date", "data")
DESC_HEADERS = ("desc", "memo", "name", "payee")
AMOUNT_HEADERS = ("amount", "valor", "value")

STMTTRN = re.compile(r"<STMTTRN>(.*?)</STMTTRN>", re.S | re.I)
OFX_FIELDS = {
    "date": re.compile(r"<DTPOSTED>(\d{8})"),
    "amount": re.compile(r"<TRNAMT>([+-]?\d+\.?\d*)"),
    "name": re.compile(r"<NAME>([^<\n]+)"),
    "memo": re.compile(r"<MEMO>([^<\n]+)"),
}


def _row(date: str, description: str, amount: float) -> dict:
    return {"date": date, "description": description, "amount": round(amount, 2),
            "type": "income" if amount > 0 else "expense"}


def _money(value) -> float:
    return _n(re.sub(r"[^\d.-]", "", value or ""))


def _find(headers: list, names: tuple) -> int:
    return next((i for i, h in enumerate(headers) if any(n in h for n in names)), -1)


def _delimiter(header_line: str) -> str:
    counts = {d: header_line.count(d) for d in (",", ";", "\t")}
    best = max(counts, key=counts.get)
    return best if counts[best] else ","


# ============================================================
# CSV
# ============================================================
def parse_csv(content: str) -> list:
    lines = [l for l in content.strip().splitlines() if l.strip()]
    if len(lines) < 2:
        return []
    reader = csv.reader(io.StringIO("\n".join(lines)), delimiter=_delimiter(lines[0]))
    headers = [h.strip().lower() for h in next(reader)]

    date_idx = _find(headers, DATE_HEADERS)
    desc_idx = _find(headers, DESC_HEADERS)
    amount_idx = _find(headers, AMOUNT_HEADERS)
    credit_idx = _find(headers, ("credit", "crédito"))
    debit_idx = _find(headers, ("debit", "débito"))
    # Positional fallback: date, description, amount
    if date_idx == -1:
        date_idx = 0
    if desc_idx == -1:
        desc_idx = 1
    split_columns = credit_idx != -1 and debit_idx != -1
    if amount_idx == -1 and not split_columns:
        amount_idx = 2

    rows = []
    for values in reader:
        values = [v.strip() for v in values]
        cell = lambda i: values[i] if 0 <= i < len(values) else ""
        date, description = cell(date_idx), cell(desc_idx)
        if split_columns:
            amount = _money(cell(credit_idx)) - _money(cell(debit_idx))
        else:
            amount = _money(cell(amount_idx))
        if date and amount != 0:
            rows.append(_row(date, description, amount))
    return rows


# ============================================================
# OFX
# ============================================================
def _ofx_date(raw: str) -> str:
    return f"{raw[0:4]}-{raw[4:6]}-{raw[6:8]}"


def parse_ofx(content: str) -> list:
    rows = []
    for block in STMTTRN.findall(content):
        found = {k: rx.search(block) for k, rx in OFX_FIELDS.items()}
        if not (found["date"] and found["amount"]):
            continue
        amount = _n(found["amount"].group(1))
        description = (found["name"] or found["memo"])
        description = description.group(1).strip() if description else "Transaction"
        if amount != 0:
            rows.append(_row(_ofx_date(found["date"].group(1)), description, amount))
    if rows:
        return rows

    # SGML-style OFX without closing tags
    current = {}

    def flush():
        if current.get("date") and current.get("amount"):
            rows.append(_row(current["date"], current.get("description") or "Transaction", current["amount"]))

    for line in content.splitlines():
        line = line.strip()
        if line.upper().startswith("<STMTTRN>"):
            flush()
            current = {}
        elif line.startswith("<DTPOSTED>"):
            current["date"] = _ofx_date(line[len("<DTPOSTED>"):][:8])
        elif line.startswith("<TRNAMT>"):
            current["amount"] = _n(line[len("<TRNAMT>"):])
        elif line.startswith("<NAME>"):
            current["description"] = line[len("<NAME>"):].strip()
        elif line.startswith("<MEMO>") and not current.get("description"):
            current["description"] = line[len("<MEMO>"):].strip()
        elif line.upper() == "</STMTTRN>":
            flush()
            current = {}
    flush()
    return rows


def parse_statement(content: str, filename: str = "", file_type: str = None) -> list:
    if not content:
        raise ValidationError("No content provided")
    kind = file_type or (filename.rsplit(".", 1)[-1] if "." in (filename or "") else "csv")
    kind = kind.lower()
    rows = parse_ofx(content) if kind in ("ofx", "qfx") else parse_csv(content)
    logger.info("[Statement] parsed %d transactions from %s (%s)", len(rows), filename or "upload", kind)
    return rows


# ============================================================
# IMPORT
# ============================================================
def import_statement(company_id: str, content: str, filename: str = "", caller: dict = None,
                     file_type: str = None, dispatch=None) -> dict:
    """Ingest every parsed row as a bank transaction.created event. Re-imports are deduplicated."""
    rows = parse_statement(content, filename, file_type)
    admitted = []
    for row in rows:
        payload = {"amount": abs(row["amount"]), "date": row["date"], "description": row["description"],
                   "type": row["type"], "import_batch": filename or "statement"}
        external_id = f"{row['date']}:{row['amount']}:{row['description']}"
        admitted.append(ingest(company_id, "bank", "transaction.created", payload,
                               external_id=external_id, caller=caller, dispatch=dispatch))
    duplicates = sum(1 for a in admitted if a["is_duplicate"])
    logger.info("[Statement] %s: %d rows, %d new, %d duplicates",
                filename or "upload", len(rows), len(rows) - duplicates, duplicates)
    return {"transactions": len(rows), "imported": len(rows) - duplicates, "duplicates": duplicates,
            "events": [a["event_id"] for a in admitted]}
