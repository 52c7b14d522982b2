"""Test fixtures and utilities."""

import io
import zipfile
from datetime import datetime
from pathlib import Path

import pytest
from openpyxl import Workbook
from pdfminer.pdfdocument import PDFPasswordIncorrect

from ledger_ingest.sources import Source, clear_parse_caches

# Text layer of a two-page loan repayment statement
LOAN_PAGE_1 = """Housing Loan Repayment Statement
Loan Number: HL-2020-000123
Borrower: Zhang Wei
Loan Amount: 180,000.00
Currency: CNY
Annual Interest Rate: 4.90%
Loan Term: 360 months
Disbursement Date: 2020-01-15
Maturity Date: 2050-01-15

Period  Date        Payment    Principal  Interest  Remaining
1       2020-02-15  1,735.00   1,000.00   735.00    179,000.00
2       2020-03-15  1,735.00   1,020.00   715.00    177,980.00
"""

LOAN_PAGE_2 = """Period  Date        Payment    Principal  Interest  Remaining
3       2020-04-15  1,735.00   1,040.00   695.00    176,940.00
Printed 2024-01-02 page 2 of 2
"""

LOAN_NUMBER = "HL-2020-000123"

SAMPLE_CARD_CSV = """Card Statement
Card Number: **** **** **** 4321
Statement Period: 2024-01-01 to 2024-01-31
Credit Limit: 5,000.00
Currency: USD

Transaction Date,Description,Amount,Type,Reference
2024-01-05,Coffee Shop,4.50,Purchase,REF001
2024-01-07,Grocery Store,82.10,Purchase,REF002
2024-01-15,Online Payment Thank You,-500.00,Payment,REF003
2024-01-18,Grocery Store,-12.00,Refund,REF004
2024-01-20,Annual Fee,95.00,Fee,REF005
"""

CARD_LAST4 = "4321"

CARD_CSV_HEADER = """Card Number: **** 4321
Currency: USD

Transaction Date,Description,Amount,Type
"""

SHEET_ACCOUNT_NUMBER = "DE89370400440532013000"

SAMPLE_SHEET_ROWS = [
    ("Account Number", SHEET_ACCOUNT_NUMBER),
    ("Account Name", "Household Checking"),
    ("Currency", "EUR"),
    ("Date", "Description", "Debit", "Credit", "Balance", "Reference"),
    (datetime(2024, 1, 2), "Salary ACME", None, 3000, 4000, "SAL-01"),
    (datetime(2024, 1, 3), "Rent", 1200, None, 2800, "RENT-01"),
    (datetime(2024, 1, 10), "Supermarket", "54.30", None, "2745.70", None),
    ("not a date", "Broken row", 10, None, None, None),
]

SAMPLE_API_PAGES = [
    {
        "accounts": [
            {
                "id": "acc-chk",
                "name": "Everyday Checking",
                "type": "depository",
                "currency": "USD",
                "mask": "0042",
                "balance": "2246.05",
                "opening_balance": "1000.00",
            },
            {
                "id": "acc-card",
                "name": "Rewards Card",
                "type": "credit",
                "currency": "USD",
                "mask": "9876",
            },
        ],
        "transactions": [
            {
                "id": "tx-1",
                "account_id": "acc-chk",
                "date": "2024-02-01",
                "amount": "2500.00",
                "merchant_name": "ACME Payroll",
                "category": "income",
            },
            {
                "id": "tx-2",
                "account_id": "acc-chk",
                "date": "2024-02-03",
                "amount": "-45.20",
                "merchant_name": "Corner Grocery",
                "category": "groceries",
            },
            {
                "id": "tx-3",
                "account_id": "acc-card",
                "date": "2024-02-04",
                "amount": "-19.99",
                "merchant_name": "Streaming Co",
                "category": "entertainment",
            },
        ],
        "next_cursor": "page-2",
    },
    {
        "transactions": [
            {
                "id": "tx-4",
                "account_id": "acc-chk",
                "date": "2024-02-10",
                "amount": "-1200.00",
                "description": "Rent February",
                "category": "housing",
            },
            {
                "id": "tx-5",
                "account_id": "acc-card",
                "date": "2024-02-12",
                "amount": "300.00",
                "merchant_name": "Card Payment",
                "category": "transfer",
            },
            {
                "id": "tx-6",
                "account_id": "acc-chk",
                "date": "2024-02-14",
                "amount": "-8.75",
                "merchant_name": "Cafe",
                "pending": True,
            },
        ],
        "next_cursor": None,
    },
]


class FakePage:
    """Stand-in for a pdfplumber page with a text layer."""

    def __init__(self, text):
        self.text = text

    def extract_text(self):
        return self.text


class FakePdf:
    """Stand-in for an opened pdfplumber document."""

    def __init__(self, texts):
        self.pages = [FakePage(text) for text in texts]

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def close(self):
        pass


def build_workbook(rows) -> bytes:
    """Serialize rows into an in-memory .xlsx file."""
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "Transactions"
    for row in rows:
        sheet.append(list(row))
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def build_zip(members: dict[str, bytes]) -> bytes:
    """Serialize members into an in-memory ZIP archive."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_STORED) as archive:
        for name, data in members.items():
            archive.writestr(name, data)
    return buffer.getvalue()


def mark_encrypted(data: bytes) -> bytes:
    """Set the encryption flag bit on the first member of a stored ZIP."""
    buffer = bytearray(data)
    local = buffer.find(b"PK\x03\x04")
    buffer[local + 6] |= 0x1
    central = buffer.find(b"PK\x01\x02")
    buffer[central + 8] |= 0x1
    return bytes(buffer)


def card_csv(lines: list[str]) -> bytes:
    """Card export with the standard preamble and the given data lines."""
    return (CARD_CSV_HEADER + "\n".join(lines) + "\n").encode("utf-8")


@pytest.fixture(autouse=True)
def _clear_parse_caches():
    """Parsed artifacts are memoized by content; start every test cold."""
    clear_parse_caches()
    yield
    clear_parse_caches()


@pytest.fixture
def temp_db(tmp_path: Path) -> Path:
    """Temporary database path."""
    return tmp_path / "test_ledger.db"


@pytest.fixture
def fake_pdf(monkeypatch):
    """Route pdfplumber.open to in-memory page texts.

    Tests may change ``state["pages"]`` or require ``state["password"]``.
    """
    from ledger_ingest.parsers import pdf_statement

    state = {"pages": [LOAN_PAGE_1, LOAN_PAGE_2], "password": None, "opened": 0}

    def fake_open(stream, password=""):
        state["opened"] += 1
        if state["password"] and password != state["password"]:
            raise PDFPasswordIncorrect()
        return FakePdf(state["pages"])

    monkeypatch.setattr(pdf_statement.pdfplumber, "open", fake_open)
    return state


@pytest.fixture
def loan_source(fake_pdf) -> Source:
    """Loan statement PDF artifact (text layer served by ``fake_pdf``)."""
    return Source.from_bytes(b"%PDF-1.7 loan statement", "loan_2020.pdf")


@pytest.fixture
def card_source() -> Source:
    """Credit card statement CSV artifact."""
    return Source.from_bytes(SAMPLE_CARD_CSV.encode("utf-8"), "card_2024_01.csv")


@pytest.fixture
def sheet_bytes() -> bytes:
    """Bank account spreadsheet export."""
    return build_workbook(SAMPLE_SHEET_ROWS)


@pytest.fixture
def sheet_source(sheet_bytes) -> Source:
    """Bank account spreadsheet artifact."""
    return Source.from_bytes(sheet_bytes, "checking_2024_01.xlsx")


@pytest.fixture
def api_pages() -> list[dict]:
    """Two aggregation API pages."""
    return [dict(page) for page in SAMPLE_API_PAGES]


@pytest.fixture
def api_source(api_pages) -> Source:
    """Aggregation API artifact."""
    return Source.from_api_pages(api_pages, name="aggregator-test")
