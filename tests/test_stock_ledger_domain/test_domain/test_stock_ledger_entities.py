# tests/test_stock_ledger_domain/test_domain/test_stock_ledger_entities.py
"""Tests for the stock ledger entities and value objects."""

import dataclasses

import pytest

from src.stock_ledger_domain.domain.entities.history_log import HistoryAction, HistoryLog
from src.stock_ledger_domain.domain.entities.product import Product
from src.stock_ledger_domain.domain.entities.stock_movement import StockMovement
from src.stock_ledger_domain.domain.entities.stock_transaction import StockTransaction, TransactionType


def test_stock_movement_for_import_raises_quantity_and_new_stock() -> None:
    movement = StockMovement.for_transaction(TransactionType.IMPORT, 50)

    assert movement == StockMovement(quantity_delta=50, new_stock_delta=50, sold_stock_delta=0)
    assert not movement.reduces_stock


def test_stock_movement_for_export_lowers_quantity_and_raises_sold_stock() -> None:
    movement = StockMovement.for_transaction(TransactionType.EXPORT, 20)

    assert movement == StockMovement(quantity_delta=-20, new_stock_delta=0, sold_stock_delta=20)
    assert movement.reduces_stock


def test_stock_movement_reversed_plus_original_is_zero() -> None:
    movement = StockMovement.for_transaction(TransactionType.EXPORT, 7)

    assert (movement + movement.reversed()).is_zero


def test_stock_movement_net_of_quantity_edit() -> None:
    old = StockMovement.for_transaction(TransactionType.IMPORT, 10)
    new = StockMovement.for_transaction(TransactionType.IMPORT, 15)

    assert new + old.reversed() == StockMovement(quantity_delta=5, new_stock_delta=5, sold_stock_delta=0)


def test_stock_movement_is_immutable() -> None:
    movement = StockMovement(quantity_delta=1)

    with pytest.raises(dataclasses.FrozenInstanceError):
        movement.quantity_delta = 2


@pytest.mark.parametrize("name, sku", [("", "W-1"), ("   ", "W-1"), ("Widget", ""), ("Widget", None)])
def test_product_requires_name_and_sku(name, sku) -> None:
    with pytest.raises(ValueError):
        Product(name=name, sku=sku, group="tools", unit="pcs")


def test_stock_transaction_coerces_type_and_exposes_signed_delta() -> None:
    export = StockTransaction(product_id=1, type="export", quantity=4)
    imported = StockTransaction(product_id=1, type=TransactionType.IMPORT, quantity=4)

    assert export.type is TransactionType.EXPORT
    assert export.signed_delta == -4
    assert imported.signed_delta == 4


@pytest.mark.parametrize("quantity", [0, -3])
def test_stock_transaction_rejects_non_positive_quantity(quantity) -> None:
    with pytest.raises(ValueError):
        StockTransaction(product_id=1, type=TransactionType.IMPORT, quantity=quantity)


def test_stock_transaction_rejects_unknown_type() -> None:
    with pytest.raises(ValueError):
        StockTransaction(product_id=1, type="transfer", quantity=1)


def test_history_log_for_product_copies_product_snapshot() -> None:
    product = Product(name="Widget", sku="W-1", group="tools", unit="pcs", id=9)

    entry = HistoryLog.for_product(HistoryAction.IMPORT_TRANSACTION, product, details="Imported", user_id=3)
    product.name = "Renamed"

    assert entry.product_id == 9
    assert entry.product_name == "Widget"
    assert entry.product_sku == "W-1"
    assert entry.user_id == 3
    assert entry.action.value == "import_transaction"


def test_history_log_can_drop_product_reference() -> None:
    product = Product(name="Widget", sku="W-1", group="tools", unit="pcs", id=9)

    entry = HistoryLog.for_product(HistoryAction.DELETE_PRODUCT, product, details="Deleted", keep_product_reference=False)

    assert entry.product_id is None
    assert entry.product_sku == "W-1"
