"""Enumerations and defaults shared across the point-of-sale modules.

Centralises domain constants so that the data access layer (DAL), business
logic layer (BLL), and the command-line front-end rely on a single source of
truth for payment methods, sheet names, and the store's opening defaults.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating the store file.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Cash available in the register before the first sale of a fresh store.
DEFAULT_OPENING_BALANCE = 100000

# Catalogue used when no prior snapshot exists: (id, name, price, quantity).
DEFAULT_PRODUCTS: tuple[tuple[str, str, int, int], ...] = (
    ("1", "Martillo", 10000, 20),
    ("2", "Destornillador", 5000, 30),
    ("3", "Clavos (1kg)", 100, 50),
    ("4", "Pintura Blanca", 250000, 15),
)


class PaymentMethod(str, Enum):
    """Enumerate the closed set of payment methods accepted at the counter."""

    CASH = "efectivo"
    CARD = "tarjeta"
    TRANSFER = "transferencia"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    SALES = "Sales"
    SALE_ITEMS = "SaleItems"
    CASH_REGISTER = "CashRegister"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_OPENING_BALANCE",
    "DEFAULT_PRODUCTS",
    "PaymentMethod",
    "SheetName",
]
