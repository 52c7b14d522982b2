"""
Loan repayment statement parser (PDF text layer).

Page numbers are never inferred from digits in the text: statement rows are
full of 4-digit years that would collide with page-number heuristics.
Instead, extraction appends an explicit marker after each page encoding the
*next* page's 1-based number; the first page is implicitly page 1.

Expected layout (labels are matched case-insensitively):

    Loan Number: HL-2020-000123
    Loan Amount: 180,000.00
    Currency: CNY
    Annual Interest Rate: 4.90%
    Loan Term: 360 months
    Disbursement Date: 2020-01-15
    Maturity Date: 2050-01-15
    Period  Date        Payment    Principal  Interest  Remaining
    1       2020-02-15  1,735.00   1,000.00   735.00    179,000.00
"""

import io
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Optional

import pdfplumber
from pdfminer.pdfdocument import PDFPasswordIncorrect

from ..errors import ParseError, SourceAccessError
from .common import parse_amount, parse_date

logger = logging.getLogger(__name__)

PAGE_MARKER = "<<<PAGE {number}>>>"
PAGE_MARKER_RE = re.compile(r"^<<<PAGE (\d+)>>>$")
PAGE_MARKER_LINES_RE = re.compile(r"^<<<PAGE \d+>>>$", re.MULTILINE)

SOURCE_LABEL = "loan_statement_pdf"

# Header fields: name -> pattern (group 1 = value)
HEADER_PATTERNS = {
    "loan_number": r"Loan\s+(?:Number|No\.?|Account)\s*[:：]\s*([A-Za-z0-9][A-Za-z0-9\-/]*)",
    "borrower": r"Borrower\s*[:：]\s*(.+)",
    "principal": r"(?:Loan|Principal)\s+Amount\s*[:：]\s*([\d,]+(?:\.\d+)?)",
    "currency": r"Currency\s*[:：]\s*([A-Z]{3})",
    "annual_rate": r"(?:Annual\s+)?Interest\s+Rate\s*[:：]\s*([\d.]+)\s*%",
    "term_months": r"(?:Loan\s+)?Term\s*[:：]\s*(\d+)\s*months?",
    "disbursement_date": r"Disbursement\s+Date\s*[:：]\s*(\S+)",
    "maturity_date": r"Maturity\s+Date\s*[:：]\s*(\S+)",
}

# A line that starts like a repayment row: period number then a date
ROW_START_RE = re.compile(r"^\s*(\d{1,3})\s+(\d{4}[-/.]\d{1,2}[-/.]\d{1,2})\b(.*)$")
AMOUNT_TOKEN_RE = re.compile(r"-?[\d,]+\.\d{2}")

ROW_AMOUNT_COLUMNS = ("payment", "principal", "interest", "remaining")


@dataclass
class LoanRow:
    """One repayment period as printed on the statement."""

    period: int
    line: str
    page: int
    date: Optional[date] = None
    payment: Optional[Decimal] = None
    principal: Optional[Decimal] = None
    interest: Optional[Decimal] = None
    remaining: Optional[Decimal] = None
    skip_reason: Optional[str] = None


@dataclass
class LoanStatement:
    """Parsed loan statement: header fields plus repayment rows."""

    header: dict[str, str]
    rows: list[LoanRow] = field(default_factory=list)

    @property
    def loan_number(self) -> str:
        return self.header["loan_number"]

    @property
    def principal(self) -> Optional[Decimal]:
        value = self.header.get("principal")
        return parse_amount(value) if value else None


def join_pages(page_texts: Iterable[Optional[str]]) -> str:
    """Concatenate page texts, appending the next page's marker after each page."""
    parts: list[str] = []
    for number, text in enumerate(page_texts, start=1):
        parts.append((text or "").rstrip("\n"))
        parts.append(PAGE_MARKER.format(number=number + 1))
    return "\n".join(parts)


def split_pages(text: str) -> list[tuple[int, str]]:
    """Split marked text back into (page number, page text) pairs."""
    pages: list[tuple[int, str]] = []
    current: list[str] = []
    page = 1

    for line in text.splitlines():
        match = PAGE_MARKER_RE.match(line.strip())
        if match:
            pages.append((page, "\n".join(current)))
            page = int(match.group(1))
            current = []
            continue
        current.append(line)

    if any(line.strip() for line in current):
        pages.append((page, "\n".join(current)))
    return pages


def extract_pdf_text(data: bytes, password: Optional[str] = None) -> str:
    """
    Extract the text layer of a PDF with explicit page markers.

    Raises:
        SourceAccessError: Encrypted PDF with a missing or wrong password,
            or bytes that are not a readable PDF
    """
    try:
        pdf = pdfplumber.open(io.BytesIO(data), password=password or "")
    except PDFPasswordIncorrect as e:
        raise SourceAccessError("PDF password is missing or incorrect") from e
    except Exception as e:
        raise SourceAccessError(f"Unreadable PDF: {e}") from e

    with pdf:
        try:
            texts = [page.extract_text() for page in pdf.pages]
        except PDFPasswordIncorrect as e:
            raise SourceAccessError("PDF password is missing or incorrect") from e

    logger.debug(f"Extracted text from {len(texts)} PDF page(s)")
    return join_pages(texts)


def parse_header(text: str) -> dict[str, str]:
    header: dict[str, str] = {}
    for name, pattern in HEADER_PATTERNS.items():
        match = re.search(pattern, text, re.IGNORECASE)
        if match:
            header[name] = match.group(1).strip()
    return header


def parse_row(period: int, date_text: str, rest: str, line: str, page: int) -> LoanRow:
    """Parse one repayment row; unparseable rows are kept with a skip reason."""
    row = LoanRow(period=period, line=line.strip(), page=page)
    try:
        row.date = parse_date(date_text.replace(".", "-"))
    except ValueError:
        row.skip_reason = f"unparseable date {date_text!r}"
        return row

    amounts = AMOUNT_TOKEN_RE.findall(rest)
    if len(amounts) != len(ROW_AMOUNT_COLUMNS):
        row.skip_reason = (
            f"expected {len(ROW_AMOUNT_COLUMNS)} amounts, found {len(amounts)}"
        )
        return row

    values = [parse_amount(a) for a in amounts]
    row.payment, row.principal, row.interest, row.remaining = values
    if row.principal + row.interest != row.payment:
        logger.warning(
            f"Period {period}: principal {row.principal} + interest {row.interest} "
            f"!= payment {row.payment}"
        )
    return row


def parse_loan_statement(text: str) -> LoanStatement:
    """
    Parse marked statement text into header fields and repayment rows.

    Raises:
        ParseError: No text layer, unrecognized header, or zero rows
    """
    if not text or not PAGE_MARKER_LINES_RE.sub("", text).strip():
        raise ParseError("PDF has no text layer", source_type=SOURCE_LABEL)

    header = parse_header(text)
    if "loan_number" not in header:
        raise ParseError(
            "Unrecognized loan statement layout (no loan number)",
            source_type=SOURCE_LABEL,
            detail={"first_line": PAGE_MARKER_LINES_RE.sub("", text).strip().splitlines()[0][:120]},
        )

    statement = LoanStatement(header=header)
    for page, page_text in split_pages(text):
        for line in page_text.splitlines():
            match = ROW_START_RE.match(line)
            if not match:
                continue
            statement.rows.append(
                parse_row(int(match.group(1)), match.group(2), match.group(3), line, page)
            )

    if not statement.rows:
        raise ParseError(
            "Loan statement contains no repayment rows",
            source_type=SOURCE_LABEL,
            detail={"loan_number": header["loan_number"], "header_fields": sorted(header)},
        )

    skipped = sum(1 for row in statement.rows if row.skip_reason)
    logger.info(
        f"Parsed loan statement {header['loan_number']}: "
        f"{len(statement.rows)} rows ({skipped} skipped)"
    )
    return statement
