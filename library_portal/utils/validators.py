import re
from datetime import date
from typing import Any, Optional

from library_portal.models import parse_date


class ISBNValidator:
    """ISBN-10 and ISBN-13 checksum validation for book forms."""

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        s = re.sub(r"[^0-9Xx]", "", raw)
        return s.upper()

    @staticmethod
    def is_valid_isbn(isbn: Optional[str]) -> bool:
        if not isbn:
            return False
        s = ISBNValidator.normalize_isbn(isbn)
        if len(s) == 10:
            # Weighted sum 10..1, X stands for 10 in the check position only
            if not s[:-1].isdigit():
                return False
            check = s[-1]
            if check == "X":
                check_val = 10
            elif check.isdigit():
                check_val = int(check)
            else:
                return False
            total = sum((10 - i) * int(ch) for i, ch in enumerate(s[:-1]))
            return (total + check_val) % 11 == 0
        elif len(s) == 13 and s.isdigit():
            total = 0
            for i, ch in enumerate(s[:-1]):
                factor = 1 if i % 2 == 0 else 3
                total += factor * int(ch)
            check_val = (10 - (total % 10)) % 10
            return check_val == int(s[-1])
        return False

    @staticmethod
    def validate(raw: Optional[str]) -> Optional[str]:
        """Return the normalized ISBN, ``None`` for a blank value.

        Raises ValueError when a non-blank value fails the checksum.
        """
        if raw is None or not raw.strip():
            return None
        if not ISBNValidator.is_valid_isbn(raw):
            raise ValueError(f"无效的 ISBN: {raw}")
        return ISBNValidator.normalize_isbn(raw)


class TextValidator:
    """Required-text checks for titles and names."""

    @staticmethod
    def validate_title(title: Optional[str]) -> bool:
        return bool(title and title.strip())

    @staticmethod
    def validate_name(name: Optional[str]) -> bool:
        # Names must not be digits only
        if name is None:
            return False
        t = name.strip()
        return bool(t) and not t.isdigit()

    @staticmethod
    def require(text: Optional[str], label: str) -> str:
        if not TextValidator.validate_title(text):
            raise ValueError(f"{label}不能为空")
        return text.strip()

    @staticmethod
    def sanitize_text(text: Optional[str]) -> str:
        if text is None:
            return ""
        return re.sub(r"<[^>]*>", "", text).strip()


class DateValidator:
    @staticmethod
    def parse(value: Any) -> date:
        try:
            parsed = parse_date(value)
        except ValueError as e:
            raise ValueError(f"无效的日期: {value}") from e
        if parsed is None:
            raise ValueError("日期不能为空")
        return parsed

    @staticmethod
    def validate_loan_period(borrow_date: date, due_date: date) -> None:
        if due_date < borrow_date:
            raise ValueError("应还日期不能早于借阅日期")

    @staticmethod
    def validate_return(borrow_date: date, return_date: date) -> None:
        if return_date < borrow_date:
            raise ValueError("归还日期不能早于借阅日期")
