from datetime import date

import pytest

from library_portal.models import BorrowRecord, parse_date
from library_portal.utils.validators import DateValidator, ISBNValidator, TextValidator


@pytest.mark.parametrize("isbn", ["0306406152", "0-306-40615-2", "9780306406157", "080442957X"])
def test_valid_isbns(isbn):
    assert ISBNValidator.is_valid_isbn(isbn)


@pytest.mark.parametrize("isbn", ["0306406153", "9780306406158", "12345", "", None, "X306406152"])
def test_invalid_isbns(isbn):
    assert not ISBNValidator.is_valid_isbn(isbn)


def test_isbn_is_optional_on_forms():
    assert ISBNValidator.validate(None) is None
    assert ISBNValidator.validate("  ") is None
    assert ISBNValidator.validate("0-306-40615-2") == "0306406152"
    with pytest.raises(ValueError):
        ISBNValidator.validate("0306406153")


def test_text_validation():
    assert TextValidator.require("  Dune ", "书名") == "Dune"
    with pytest.raises(ValueError, match="书名不能为空"):
        TextValidator.require(" ", "书名")
    assert not TextValidator.validate_name("12345")
    assert TextValidator.validate_name("鲁迅")
    assert TextValidator.sanitize_text("<b>bold</b> text") == "bold text"


def test_dates():
    assert DateValidator.parse("2024-03-01") == date(2024, 3, 1)
    assert DateValidator.parse("2024-03-01T10:00:00Z") == date(2024, 3, 1)
    with pytest.raises(ValueError):
        DateValidator.parse("03/01/2024")
    with pytest.raises(ValueError):
        DateValidator.parse("")
    with pytest.raises(ValueError):
        DateValidator.validate_loan_period(date(2024, 3, 2), date(2024, 3, 1))
    DateValidator.validate_return(date(2024, 3, 1), date(2024, 3, 1))


@pytest.mark.parametrize(
    "value",
    ["2024-01-10T12:34:56.78+00:00", "2024-01-10T12:34:56.123456Z", "2024-01-10 08:00:00+08", "2024-01-10T00:00:00"],
)
def test_timestamps_reduce_to_their_date(value):
    assert parse_date(value) == date(2024, 1, 10)
    assert DateValidator.parse(value) == date(2024, 1, 10)


def test_borrow_record_with_trimmed_fraction_timestamp():
    row = {
        "id": 7,
        "book_id": 1,
        "user_id": "abc123",
        "borrow_date": "2024-01-01",
        "due_date": "2024-01-31",
        "return_date": "2024-01-10T12:34:56.78+00:00",
    }
    record = BorrowRecord.from_dict(row)
    assert record.return_date == date(2024, 1, 10)
