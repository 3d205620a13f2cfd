from datetime import datetime, date

from bookstore.repository.order_repo import OrderRepository, format_order_number


def test_format_order_number():
    assert format_order_number(date(2026, 3, 10), 7) == "ORD-20260310-007"
    assert format_order_number(date(2026, 3, 10), 1234) == "ORD-20260310-1234"


def test_numbers_are_sequential_per_day(session_factory):
    day1 = datetime(2026, 3, 10, 8, 0, 0)
    day2 = datetime(2026, 3, 11, 8, 0, 0)
    numbers = []
    for now in (day1, day1, day1, day2):
        with session_factory() as db:
            numbers.append(OrderRepository(db).next_order_number(now))
            db.commit()
    assert numbers == ["ORD-20260310-001", "ORD-20260310-002", "ORD-20260310-003", "ORD-20260311-001"]
    assert len(set(numbers)) == len(numbers)
