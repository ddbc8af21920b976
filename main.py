"""
Kleines Beispiel: Kunden, Bestellungen, Positionen.

    DB_NAME=meine_db DB_LOG_SQL=1 python main.py
"""
from decimal import Decimal
import logging

from db_object import DBObject
from db_query import Database
from db_schema import Column, TableSchema


class Customer(DBObject):
    __schema__ = TableSchema(
        "customer",
        {
            "id": Column(int, "SERIAL"),
            "name": Column(str, nullable=False),
        },
    )


class Order(DBObject):
    __schema__ = TableSchema(
        "order",
        {
            "id": Column(int, "SERIAL"),
            "customer_id": int,
            "total": Column(Decimal, "NUMERIC(10, 2)", default="0"),
        },
        nested={"customer": Customer},
    )

    def validate(self):
        if self.total is not None and self.total < 0:
            self.set_error_msg("Summe darf nicht negativ sein.")
            return False
        return True


class OrderItem(DBObject):
    __schema__ = TableSchema(
        "order_item",
        {
            "id": Column(int, "SERIAL"),
            "order_id": int,
            "sku": str,
            "quantity": Column(int, default="1"),
        },
    )


def main():
    logging.basicConfig(level=logging.DEBUG, format="%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    Database.connect_from_settings()
    try:
        for model in (Customer, Order, OrderItem):
            Database.create_table(model.__schema__)

        with Database.transaction():
            ada = Customer(name="Ada")
            ada.save()

            order = Order(customer_id=ada.id, total=Decimal("19.90"))
            order.save()
            print("Bestellung:", order, order.to_dict())

            for sku in ("A-1", "B-2"):
                OrderItem(order_id=order.id, sku=sku).save()

        print("Positionen:", [i.sku for i in order.get_children(OrderItem)])
        print("Anzahl:", order.count_children(OrderItem))
        print("Kunde:", order.get_parent(Customer).name)

        order.total = Decimal("-1")
        result = order.save()
        print("Ungültig:", result, order.get_error_msg())
    finally:
        Database.close()


if __name__ == "__main__":
    main()
