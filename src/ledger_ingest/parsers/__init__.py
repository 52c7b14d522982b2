"""
Source format parsers.

Pure functions from artifact bytes/records to source-specific rows:
- pdf_statement: loan repayment statements (PDF text layer, page markers)
- csv_statement: credit card statement exports
- spreadsheet: bank account .xlsx exports
- api_json: aggregation API pages
- archive: password-protected ZIP unwrapping
"""

from .api_json import ApiBatch, parse_api_pages
from .archive import read_archive_member, unwrap
from .csv_statement import CardStatement, parse_card_csv
from .pdf_statement import LoanStatement, extract_pdf_text, parse_loan_statement
from .spreadsheet import BankSheet, parse_bank_workbook

__all__ = [
    "ApiBatch",
    "BankSheet",
    "CardStatement",
    "LoanStatement",
    "extract_pdf_text",
    "parse_api_pages",
    "parse_bank_workbook",
    "parse_card_csv",
    "parse_loan_statement",
    "read_archive_member",
    "unwrap",
]
