"""
Print a summary of one year's transactions.

Usage: python verify_transactions.py [YEAR]
"""
import sys
from datetime import date

from dotenv import load_dotenv

load_dotenv()

import database


def summarize(transactions):
    """Income and expense totals over all transactions, pending included."""
    income = 0.0
    expense = 0.0
    invalid = 0
    for tx in transactions:
        try:
            amount = float(tx["amount"])
        except (TypeError, ValueError):
            invalid += 1
            continue
        if tx["type"] == "income":
            income += amount
        elif tx["type"] == "expense":
            expense += amount
    return {"count": len(transactions), "income": income, "expense": expense, "invalid": invalid}


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    try:
        year = int(argv[0]) if argv else date.today().year
    except ValueError:
        print(f"Invalid year: {argv[0]}")
        return 1

    print(f"Verifying transactions in {database.DB_PATH}...")
    transactions = database.get_transactions_by_year(year)
    print(f"Found {len(transactions)} transactions for {year}.")
    if not transactions:
        return 0

    print("Sample transaction:")
    print(transactions[0])
    summary = summarize(transactions)
    print(f"Total Income: {summary['income']:.2f}")
    print(f"Total Expense: {summary['expense']:.2f}")
    if summary["invalid"]:
        print(f"WARNING: {summary['invalid']} transactions have an invalid amount")
    return 0


if __name__ == "__main__":
    sys.exit(main())
