"""
Mapped types shared by the unit tests.
"""

from __future__ import annotations

from decimal import Decimal

from db_object import DBObject, Result
from db_schema import Column, TableSchema


class Customer(DBObject):
    __schema__ = TableSchema(
        "customer",
        {
            "id": Column(int, "SERIAL"),
            "name": str,
        },
    )


class Order(DBObject):
    __schema__ = TableSchema(
        "order",
        {
            "id": Column(int, "SERIAL"),
            "customer_id": int,
            "total": Column(Decimal, default="0"),
        },
        nested={"customer": Customer},
    )


class OrderItem(DBObject):
    __schema__ = TableSchema(
        "order_item",
        {
            "id": Column(int, "SERIAL"),
            "order_id": int,
            "sku": str,
            "quantity": int,
        },
    )


class Shipment(DBObject):
    """Points at its order through an explicitly declared column."""

    __schema__ = TableSchema(
        "shipment",
        {
            "id": Column(int, "SERIAL"),
            "parent_order": int,
            "carrier": str,
        },
        foreign_keys={"order": {"id": "parent_order"}},
    )


class Note(DBObject):
    """Has no order_id column, so it cannot resolve an Order parent."""

    __schema__ = TableSchema(
        "note",
        {
            "id": Column(int, "SERIAL"),
            "body": str,
        },
    )


class OrderLine(DBObject):
    __schema__ = TableSchema(
        "order_line",
        {
            "order_id": int,
            "line_no": int,
            "sku": str,
        },
        primary_key=("order_id", "line_no"),
    )


class LineComment(DBObject):
    __schema__ = TableSchema(
        "line_comment",
        {
            "id": Column(int, "SERIAL"),
            "order_line_order_id": int,
            "order_line_line_no": int,
            "text": str,
        },
    )


class CheckedOrder(Order):
    def validate(self):
        if self.total is not None and self.total < 0:
            self.set_error_msg("total must not be negative")
            return False
        return True


class StrictOrder(Order):
    def validate(self):
        if self.customer_id is None:
            return Result.failure("customer_id is required")
        return Result.success()


class Event(DBObject):
    __schema__ = TableSchema(
        "event",
        {
            "id": Column(int, "SERIAL"),
            "kind": str,
            "payload": dict,
            "tags": list,
        },
    )
