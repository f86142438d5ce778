from datetime import date

import pytest

from csv_utils import (
    DEFAULT_DESCRIPTION,
    format_amount,
    parse_amount,
    parse_csv,
    parse_csv_table,
    resolve_columns,
    split_csv_line,
)
from models import TransactionType

TODAY = date(2024, 3, 10)


def test_split_csv_line_honours_quotes_and_escapes() -> None:
    fields = split_csv_line('"Smith, John", 5 ,"He said ""hi"""')
    assert fields == ["Smith, John", "5", 'He said "hi"']


def test_split_csv_line_drops_quotes_inside_fields() -> None:
    assert split_csv_line('100,Joe "Big" Store,2024-03-01') == [
        "100",
        "Joe Big Store",
        "2024-03-01",
    ]
    assert split_csv_line('100,Shop x"a,b"y,2024-03-01') == [
        "100",
        "Shop xa,by",
        "2024-03-01",
    ]


def test_rows_break_on_newlines_only() -> None:
    content = (
        "amount,description,date\r\n"
        "10,Café Bar,2024-03-01\r\n"
        "20,Page\x0cbreak\x0bTab,2024-03-02\n"
    )
    table = parse_csv_table(content)
    assert [row.row_number for row in table.rows] == [2, 3]
    assert table.rows[0].values == ["10", "Café Bar", "2024-03-01"]
    assert table.rows[1].values[1] == "Page\x0cbreak\x0bTab"
    assert table.headers == ["amount", "description", "date"]


def test_delimiter_is_taken_from_first_line_only() -> None:
    table = parse_csv_table("Dato;Tekst;Beløp\n01.03.2024;Kaffe;45.50\n")
    assert table.delimiter == ";"
    assert table.rows[0].values == ["01.03.2024", "Kaffe", "45.50"]

    table = parse_csv_table("date,description,amount\n2024-03-01,a;b,1\n")
    assert table.delimiter == ","
    assert table.rows[0].values == ["2024-03-01", "a;b", "1"]


def test_empty_file_is_rejected() -> None:
    with pytest.raises(ValueError):
        parse_csv_table("")
    with pytest.raises(ValueError):
        parse_csv_table("\n\n")


def test_row_limit_is_enforced() -> None:
    content = "amount,description,date\n" + "1,x,2024-01-01\n" * 4
    with pytest.raises(ValueError):
        parse_csv_table(content, max_rows=3)
    assert len(parse_csv_table(content, max_rows=4).rows) == 4


def test_resolve_columns_matches_keywords_and_falls_back_to_positions() -> None:
    mapping = resolve_columns(["Booking date", "Memo", "Amount NOK", "Valuta"])
    assert mapping.date == 0
    assert mapping.description == 1
    assert mapping.amount == 2
    assert mapping.currency == 3
    assert mapping.type is None

    fallback = resolve_columns(["a", "b", "c"])
    assert (fallback.amount, fallback.description, fallback.date) == (0, 1, 2)
    assert fallback.currency is None


def test_parse_amount_strips_noise_and_uses_absolute_value() -> None:
    assert parse_amount("$1,234.50") == 123450
    assert parse_amount("-45.5 NOK") == 4550
    assert parse_amount("12.34.56") == 1234
    assert parse_amount("0.005") == 1
    with pytest.raises(ValueError):
        parse_amount("-")
    with pytest.raises(ValueError):
        parse_amount(".")


def test_amount_without_any_number_characters_is_zero() -> None:
    assert parse_amount("n/a") == 0
    assert parse_amount("") == 0
    assert parse_amount("kr") == 0

    result = parse_csv("amount,description,date\nn/a,Pending,2024-03-01\n", today=TODAY)
    assert result.errors == []
    assert len(result.candidates) == 1
    assert result.candidates[0].amount_cents == 0
    assert result.candidates[0].description == "Pending"


def test_parse_amount_is_stable_on_formatted_output() -> None:
    for raw in ["100.50", "-0.99", "7", "1,000.01"]:
        cents = parse_amount(raw)
        assert parse_amount(format_amount(cents)) == cents


def test_row_numbers_follow_source_lines_and_every_row_is_accounted_for() -> None:
    content = (
        "amount,description,date\n"
        "10,Coffee,2024-03-01\n"
        "\n"
        ".,Broken,2024-03-02\n"
        "5,Short\n"
        "7.25,Bus,2024-03-03\n"
    )
    result = parse_csv(content, today=TODAY)

    assert [c.row_number for c in result.candidates] == [2, 6]
    assert result.errors == [
        'Row 4: Invalid amount "."',
        "Row 5: Insufficient data",
    ]
    assert len(result.candidates) + len(result.errors) == 4


def test_normalizer_applies_defaults_and_warnings() -> None:
    content = (
        "amount,description,date,type,currency\n"
        "12.00,,notadate,Credit card payment,xyz\n"
        "3,Fee,2024-02-29,Withdrawal,nok\n"
    )
    result = parse_csv(content, default_currency="usd", today=TODAY)
    first, second = result.candidates

    assert first.description == DEFAULT_DESCRIPTION
    assert first.date == TODAY
    assert first.currency == "USD"
    assert first.type == TransactionType.income
    assert second.currency == "NOK"
    assert second.type == TransactionType.expense
    assert second.date == date(2024, 2, 29)
    assert result.warnings == [
        'Row 2: Invalid date "notadate", using 2024-03-10',
        'Row 2: Invalid currency "xyz", using USD',
    ]


def test_unmapped_type_defaults_to_expense() -> None:
    result = parse_csv("amount,description,date\n5,Refund,2024-03-01\n", today=TODAY)
    assert result.candidates[0].type == TransactionType.expense


def test_bank_export_with_category_columns_and_original_amount() -> None:
    content = (
        "\ufeffDato;Tekst;Beløp;Originalt beløp;Hovedkategori;Underkategori\r\n"
        "01.03.2024;Kaffebar;-49.90;-4.50;Mat;Kafé\r\n"
        "02.03.2024;Lønn;25000;;Inntekt;\r\n"
    )
    result = parse_csv(content, default_currency="NOK", today=TODAY)
    coffee, salary = result.candidates

    assert result.delimiter == ";"
    assert coffee.amount_cents == 450
    assert coffee.description == "Kaffebar (Mat - Kafé)"
    assert coffee.date == date(2024, 3, 1)
    assert salary.amount_cents == 2500000
    assert salary.description == "Lønn (Inntekt)"
    assert salary.currency == "NOK"


def test_candidate_payload_uses_decimal_string_amount() -> None:
    result = parse_csv("amount,description,date\n100.5,Groceries,2024-03-01\n")
    payload = result.candidates[0].to_payload()
    assert payload == {
        "amount": "100.50",
        "currency": "USD",
        "type": "EXPENSE",
        "description": "Groceries",
        "date": "2024-03-01",
        "tags": [],
    }
