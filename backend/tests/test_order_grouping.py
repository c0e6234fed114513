"""
Tests for mapping query rows to order lines and grouping them into tickets.
"""

from datetime import datetime

from services.order_grouping import (
    LineType,
    OrderLine,
    build_tickets,
    group_order_lines,
    map_row_to_order_line,
    parse_order_time,
)


def line(order_number, line_type, item_code="X", **kwargs) -> OrderLine:
    return OrderLine(order_number=order_number, line_type=line_type, item_code=item_code, **kwargs)


class TestRowMapper:
    """Row mapping never raises and coerces bad values"""

    def test_maps_full_row(self):
        row = {
            "ORDER_NO": 101,
            "ITEM_CODE": "BURGER",
            "ITEM_NAME": "Burger",
            "ITEM_NAME_LOCALIZED": "برجر",
            "QTY": 2,
            "ITEM_TYPE": "i",
            "ORDER_TIME": datetime(2026, 3, 1, 12, 0),
            "TIME_TO_FINISH": 15,
            "ORDER_COMMENTS": "well done",
            "TABLE_ID": 7,
            "TABLE_DESCRIPTION": "Table 7",
            "DEP_CODE": "D1",
            "DEPT_NAME": "Dining",
            "DEPT_NAME_AR": "صالة",
            "CAT_CODE": 1,
            "FINISHED": None,
        }
        result = map_row_to_order_line(row)

        assert result.order_number == 101
        assert result.line_type == LineType.MAIN
        assert result.quantity == 2
        assert result.time_to_finish_minutes == 15
        assert result.item_name_localized == "برجر"
        assert result.department_name == "Dining"
        assert result.finished is None

    def test_empty_row_gets_defaults(self):
        result = map_row_to_order_line({})

        assert result.order_number is None
        assert result.quantity == 0
        assert result.time_to_finish_minutes == 0
        assert result.order_time is None
        assert result.line_type == LineType.UNKNOWN
        assert result.item_name is None

    def test_malformed_numbers_become_zero(self):
        result = map_row_to_order_line({"QTY": "lots", "TIME_TO_FINISH": "soon", "ORDER_NO": "12"})

        assert result.quantity == 0
        assert result.time_to_finish_minutes == 0
        assert result.order_number == 12

    def test_negative_values_are_clamped(self):
        result = map_row_to_order_line({"QTY": -3, "TIME_TO_FINISH": -10})

        assert result.quantity == 0
        assert result.time_to_finish_minutes == 0

    def test_non_finite_prep_time_is_zero(self):
        result = map_row_to_order_line({"TIME_TO_FINISH": float("nan")})
        assert result.time_to_finish_minutes == 0

    def test_item_type_codes(self):
        assert map_row_to_order_line({"ITEM_TYPE": "M"}).line_type == LineType.MODIFIER
        assert map_row_to_order_line({"ITEM_TYPE": " m "}).line_type == LineType.MODIFIER
        assert map_row_to_order_line({"ITEM_TYPE": "Z"}).line_type == LineType.UNKNOWN

    def test_unparseable_order_time(self):
        result = map_row_to_order_line({"ORDER_TIME": "yesterday-ish"})
        assert result.order_time is None

    def test_order_time_text_formats(self):
        assert parse_order_time("2026-03-01T12:30:00") == datetime(2026, 3, 1, 12, 30)
        assert parse_order_time("12:30:00 2026-03-01") == datetime(2026, 3, 1, 12, 30)
        assert parse_order_time("2026-03-01 12:30:00") == datetime(2026, 3, 1, 12, 30)
        assert parse_order_time("") is None
        assert parse_order_time(12345) is None


class TestOrderGrouper:
    """Grouping main items with their modifiers"""

    def test_modifiers_attach_to_latest_main(self):
        lines = [
            line(1, LineType.MAIN, "BURGER"),
            line(1, LineType.MODIFIER, "NOONION"),
            line(1, LineType.MAIN, "FRIES"),
            line(1, LineType.MODIFIER, "SALT"),
            line(1, LineType.MODIFIER, "KETCHUP"),
        ]
        grouped = group_order_lines(lines)

        clusters = grouped[1]
        assert [c.main.item_code for c in clusters] == ["BURGER", "FRIES"]
        assert [m.item_code for m in clusters[0].modifiers] == ["NOONION"]
        assert [m.item_code for m in clusters[1].modifiers] == ["SALT", "KETCHUP"]

    def test_orphan_modifier_is_dropped(self):
        lines = [
            line(1, LineType.MODIFIER, "NOONION"),
            line(1, LineType.MAIN, "BURGER"),
        ]
        grouped = group_order_lines(lines)

        assert len(grouped[1]) == 1
        assert grouped[1][0].main.item_code == "BURGER"
        assert grouped[1][0].modifiers == []

    def test_bucket_of_only_orphans_is_omitted(self):
        grouped = group_order_lines([line(5, LineType.MODIFIER), line(6, LineType.MAIN)])
        assert list(grouped) == [6]

    def test_unknown_type_is_treated_as_main(self):
        lines = [
            line(1, LineType.MAIN, "BURGER"),
            line(1, LineType.UNKNOWN, "MYSTERY"),
            line(1, LineType.MODIFIER, "SAUCE"),
        ]
        clusters = group_order_lines(lines)[1]

        assert [c.main.item_code for c in clusters] == ["BURGER", "MYSTERY"]
        assert clusters[0].modifiers == []
        assert [m.item_code for m in clusters[1].modifiers] == ["SAUCE"]

    def test_lines_without_order_number_are_dropped(self):
        grouped = group_order_lines([line(None, LineType.MAIN), line(2, LineType.MAIN)])
        assert list(grouped) == [2]

    def test_grouping_is_scoped_per_order(self):
        """A modifier never crosses into another order's cluster"""
        lines = [
            line(1, LineType.MAIN, "BURGER"),
            line(2, LineType.MODIFIER, "NOONION"),
            line(2, LineType.MAIN, "SALAD"),
        ]
        grouped = group_order_lines(lines)

        assert grouped[1][0].modifiers == []
        assert grouped[2][0].main.item_code == "SALAD"
        assert grouped[2][0].modifiers == []

    def test_orders_keep_first_seen_order(self):
        lines = [line(3, LineType.MAIN), line(1, LineType.MAIN), line(3, LineType.MAIN)]
        assert list(group_order_lines(lines)) == [3, 1]


class TestBuildTickets:
    def test_ticket_lead_and_quantity(self):
        rows = [
            {"ORDER_NO": 101, "ITEM_CODE": "BURGER", "ITEM_TYPE": "I", "QTY": 1,
             "ORDER_TIME": datetime(2026, 3, 1, 12, 0), "TIME_TO_FINISH": 15},
            {"ORDER_NO": 101, "ITEM_CODE": "CHEESE", "ITEM_TYPE": "M", "QTY": 1,
             "ORDER_TIME": datetime(2026, 3, 1, 12, 0), "TIME_TO_FINISH": 0},
            {"ORDER_NO": 101, "ITEM_CODE": "FRIES", "ITEM_TYPE": "I", "QTY": 2,
             "ORDER_TIME": datetime(2026, 3, 1, 12, 1), "TIME_TO_FINISH": 5},
        ]
        tickets = build_tickets(rows)

        assert len(tickets) == 1
        ticket = tickets[0]
        assert ticket.order_number == 101
        assert ticket.lead.item_code == "BURGER"
        assert ticket.lead.time_to_finish_minutes == 15
        assert ticket.total_quantity == 4

    def test_no_rows_no_tickets(self):
        assert build_tickets([]) == []
