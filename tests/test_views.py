from datetime import date, timedelta

import pytest

from library_portal.models import AssembledRecord, AuthorRef, BookRef, UserRef
from library_portal.views import BorrowRecordView, filter_records, loan_duration_days, paginate, status_label

TODAY = date(2024, 3, 1)


def make_record(index, title="Book", author="Author", username="user", borrowed=None, due=None, returned=None):
    borrowed = borrowed or date(2024, 1, 1)
    return AssembledRecord(
        id=str(index),
        borrow_date=borrowed,
        due_date=due or borrowed + timedelta(days=30),
        return_date=returned,
        book=BookRef(id=index, title=title, author=AuthorRef(id=1, name=author)),
        user=UserRef(id=f"u{index}", username=username),
    )


@pytest.fixture
def records():
    return [
        make_record(1, title="Dune", author="Frank Herbert", username="alice", due=date(2024, 2, 1)),
        make_record(2, title="Emma", author="Jane Austen", username="bob", due=date(2024, 4, 1)),
        make_record(3, title="Ulysses", author="James Joyce", username="carol", returned=date(2024, 1, 20)),
    ]


def test_search_matches_title_author_or_username(records):
    assert [r.id for r in filter_records(records, "dune", today=TODAY)] == ["1"]
    assert [r.id for r in filter_records(records, "AUSTEN", today=TODAY)] == ["2"]
    assert [r.id for r in filter_records(records, "carol", today=TODAY)] == ["3"]
    assert len(filter_records(records, "", today=TODAY)) == 3


def test_status_filters(records):
    assert [r.id for r in filter_records(records, status="active", today=TODAY)] == ["1", "2"]
    assert [r.id for r in filter_records(records, status="returned", today=TODAY)] == ["3"]
    assert [r.id for r in filter_records(records, status="overdue", today=TODAY)] == ["1"]


def test_unknown_status_rejected(records):
    with pytest.raises(ValueError):
        filter_records(records, status="lost")


def test_third_page_of_twenty_five():
    items = list(range(25))
    page = paginate(items, 3, 10)
    assert page.items == items[20:25]
    assert len(page.items) == 5
    assert page.total_pages == 3


@pytest.mark.parametrize("page,per_page", [(1, 10), (2, 10), (3, 10), (4, 10), (1, 30), (2, 7)])
def test_slice_length(page, per_page):
    filtered = 25
    result = paginate(list(range(filtered)), page, per_page)
    assert len(result.items) == min(per_page, max(0, filtered - (page - 1) * per_page))


def test_out_of_range_page_is_not_clamped():
    page = paginate(list(range(5)), 9, 10)
    assert page.items == []
    assert page.page == 9


def test_changing_page_size_resets_page():
    view = BorrowRecordView([make_record(i) for i in range(25)], page_size=10, today=TODAY)
    view.set_page(3)
    assert len(view.current_page().items) == 5

    view.set_page_size(20)
    assert view.page == 1
    page = view.current_page()
    assert len(page.items) == 20
    assert page.total_items == 25


def test_page_size_change_keeps_filters():
    rows = [
        make_record(i, title="Dune" if i % 2 == 0 else "Emma", returned=date(2024, 1, 20) if i in (0, 2) else None)
        for i in range(24)
    ]
    view = BorrowRecordView(rows, page_size=3, today=TODAY)
    view.set_search("dune")
    view.set_status("active")
    view.set_page(3)
    assert view.current_page().total_items == 10

    view.set_page_size(4)
    assert view.page == 1
    page = view.current_page()
    assert page.total_items == 10
    assert page.total_pages == 3
    assert [r.id for r in page.items] == ["4", "6", "8", "10"]


def test_view_recomputes_over_filters(records):
    view = BorrowRecordView(records, page_size=1, today=TODAY)
    view.set_status("active")
    assert view.current_page().total_items == 2
    view.set_page(2)
    assert view.current_page().items[0].id == "2"
    view.set_search("emma")
    assert view.page == 1
    assert [r.id for r in view.current_page().items] == ["2"]


def test_same_day_return():
    record = make_record(1, borrowed=date(2024, 1, 10), returned=date(2024, 1, 10))
    assert loan_duration_days(record, TODAY) == 0
    assert status_label(record, TODAY) == "已归还 (2024-01-10)"


def test_status_labels(records):
    assert status_label(records[0], TODAY) == "已逾期 (2024-02-01)"
    assert status_label(records[1], TODAY) == "借阅中 (截止 2024-04-01)"


def test_duration_of_open_loan_counts_to_today():
    record = make_record(1, borrowed=date(2024, 2, 20))
    assert loan_duration_days(record, TODAY) == 10


def test_is_overdue_property(records):
    for record in records:
        assert record.is_overdue(TODAY) == (record.return_date is None and record.due_date < TODAY)
