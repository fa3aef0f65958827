"""Data access layer for the hardware store point of sale.

This module provides low-level helpers that read from and write to the store
workbook, the local slot that holds the persisted snapshot. Business logic
belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Snapshot conversion: turning the typed records into the plain snapshot
   layout (``products`` / ``sales`` / ``cashRegister``) and back, validating
   every field on the way in.
3. Workbook lifecycle: rebuilding the workbook from a snapshot, reading it
   back, and replacing the file on disk in one step.
"""


from __future__ import annotations

import configparser
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from openpyxl.styles import Font
from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import DEFAULT_OPENING_BALANCE, PaymentMethod, SheetName


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
SALES_SHEET = SheetName.SALES.value
SALE_ITEMS_SHEET = SheetName.SALE_ITEMS.value
CASH_REGISTER_SHEET = SheetName.CASH_REGISTER.value

# Column layout of every sheet; the first row of each sheet holds these titles.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    PRODUCTS_SHEET: ["ProductID", "Name", "Price", "Quantity"],
    SALES_SHEET: ["SaleID", "Date", "PaymentMethod", "Total", "Change"],
    SALE_ITEMS_SHEET: ["SaleID", "ProductID", "Name", "Price", "Quantity"],
    CASH_REGISTER_SHEET: ["InitialAmount", "CurrentAmount", "SalesTotal"],
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    opening_balance: int = DEFAULT_OPENING_BALANCE
    autosave: bool = True


@dataclass(frozen=True)
class Product:
    """A product offered by the store together with its available stock."""

    product_id: str
    name: str
    price: int
    quantity: int


@dataclass(frozen=True)
class SaleLineItem:
    """One line of a sale; name and price are frozen when the line is created."""

    product_id: str
    name: str
    price: int
    quantity: int

    @property
    def subtotal(self) -> int:
        return self.price * self.quantity


@dataclass(frozen=True)
class Sale:
    """Immutable ledger entry describing a completed sale."""

    sale_id: str
    items: Tuple[SaleLineItem, ...]
    total: int
    payment_method: PaymentMethod
    date: datetime
    change: Optional[int] = None


@dataclass(frozen=True)
class CashRegister:
    """Running cash-on-hand figures since the last register reset."""

    initial_amount: int
    current_amount: int
    sales_total: int


@dataclass(frozen=True)
class StoreSnapshot:
    """The full persisted state: inventory, ledger, and register."""

    products: Tuple[Product, ...]
    sales: Tuple[Sale, ...]
    cash_register: CashRegister


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    The function expands user home references (``~``), resolves the absolute
    path, and validates that the file exists before parsing it. Validation of
    required entries happens in :func:`parse_settings`.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``DataFile``, ``StoreName`` and ``SchemaVersion`` under ``[System]`` are
    mandatory. ``AutoSave`` (``[System]``) defaults to ``yes`` and
    ``OpeningBalance`` (``[Defaults]``) to :data:`DEFAULT_OPENING_BALANCE`.
    Relative data file paths are expanded against ``base_path`` when provided,
    or against the current working directory as a fallback.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries. Defaults to :func:`Path.cwd` when omitted.

    Returns:
        ConfigSettings: Immutable settings container with a resolved data file
            path.

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If ``AutoSave`` or ``OpeningBalance`` cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    autosave = parser.getboolean("System", "AutoSave", fallback=True)
    opening_balance = parser.getint("Defaults", "OpeningBalance", fallback=DEFAULT_OPENING_BALANCE)

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        opening_balance=opening_balance,
        autosave=autosave,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the store workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the store workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, replacing ``destination`` in one step.

    The workbook is first written next to the destination and then moved over
    it, so an interrupted save never leaves a truncated file behind. Parent
    directories are created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    staging = dest.with_name(f".{dest.name}.tmp")
    workbook.save(staging)
    staging.replace(dest)


def build_workbook(snapshot: Mapping[str, Any]) -> Workbook:
    """Create a workbook holding ``snapshot`` in the sheet layout of the DAL.

    Every sheet listed in :data:`SHEET_COLUMNS` is created with a bold header
    row. Sale lines are flattened into ``SaleItems`` keyed by ``SaleID``.

    Args:
        snapshot (Mapping[str, Any]): Snapshot in the layout produced by
            :func:`serialize_snapshot`.

    Returns:
        Workbook: Fresh in-memory workbook ready to be saved.
    """

    workbook = openpyxl.Workbook()
    if workbook.active is not None and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)
    for sheet_name, columns in SHEET_COLUMNS.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    products_sheet = workbook[PRODUCTS_SHEET]
    for product in snapshot.get("products", []):
        products_sheet.append([product["id"], product["name"], product["price"], product["quantity"]])

    sales_sheet = workbook[SALES_SHEET]
    items_sheet = workbook[SALE_ITEMS_SHEET]
    for sale in snapshot.get("sales", []):
        sales_sheet.append([sale["id"], sale["date"], sale["paymentMethod"], sale["total"], sale.get("change")])
        for item in sale["items"]:
            items_sheet.append([sale["id"], item["productId"], item["name"], item["price"], item["quantity"]])

    register = snapshot.get("cashRegister")
    if register is not None:
        workbook[CASH_REGISTER_SHEET].append(
            [register["initialAmount"], register["currentAmount"], register["salesTotal"]]
        )

    return workbook


def read_snapshot(workbook: Workbook) -> Dict[str, Any]:
    """Read the raw snapshot stored in ``workbook``.

    Cell values are returned untouched apart from regrouping sale lines under
    their sale; validation is left to :func:`deserialize_snapshot`. Sheets that
    are absent from the workbook are omitted from the result so the loader can
    fall back to defaults for that part of the state.

    Args:
        workbook (Workbook): Workbook previously produced by
            :func:`build_workbook` (or edited by hand).

    Returns:
        dict[str, Any]: Snapshot in the ``products`` / ``sales`` /
            ``cashRegister`` layout.
    """

    snapshot: Dict[str, Any] = {}
    sheet_names = set(workbook.sheetnames)

    if PRODUCTS_SHEET in sheet_names:
        snapshot["products"] = [
            {"id": raw[0], "name": raw[1], "price": raw[2], "quantity": raw[3]}
            for raw in _iter_data_rows(workbook, PRODUCTS_SHEET, width=4)
        ]

    if SALES_SHEET in sheet_names:
        items_by_sale: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        if SALE_ITEMS_SHEET in sheet_names:
            for raw in _iter_data_rows(workbook, SALE_ITEMS_SHEET, width=5):
                items_by_sale[str(raw[0])].append(
                    {"productId": raw[1], "name": raw[2], "price": raw[3], "quantity": raw[4]}
                )
        sales = []
        for raw in _iter_data_rows(workbook, SALES_SHEET, width=5):
            sale: Dict[str, Any] = {
                "id": raw[0],
                "date": raw[1],
                "paymentMethod": raw[2],
                "total": raw[3],
                "items": items_by_sale.get(str(raw[0]), []),
            }
            if raw[4] is not None:
                sale["change"] = raw[4]
            sales.append(sale)
        snapshot["sales"] = sales

    if CASH_REGISTER_SHEET in sheet_names:
        rows = list(_iter_data_rows(workbook, CASH_REGISTER_SHEET, width=3))
        if rows:
            initial_amount, current_amount, sales_total = rows[0]
            snapshot["cashRegister"] = {
                "initialAmount": initial_amount,
                "currentAmount": current_amount,
                "salesTotal": sales_total,
            }

    return snapshot


def save_snapshot(snapshot: StoreSnapshot, destination: Path) -> None:
    """Serialize ``snapshot`` and write it to the workbook at ``destination``."""

    save_workbook(build_workbook(serialize_snapshot(snapshot)), destination)
    log.debug(
        "Saved snapshot with %d products and %d sales to '%s'",
        len(snapshot.products),
        len(snapshot.sales),
        destination,
    )


def load_snapshot(data_file: Path, *, defaults: StoreSnapshot) -> StoreSnapshot:
    """Restore the persisted snapshot, or ``defaults`` when none exists yet.

    Args:
        data_file (Path): Location of the store workbook.
        defaults (StoreSnapshot): State used for anything the workbook does not
            provide, including the whole state when the file is absent.

    Returns:
        StoreSnapshot: Validated snapshot.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        log.info("No snapshot found at '%s'; starting from defaults", data_file)
        return defaults
    return deserialize_snapshot(read_snapshot(open_workbook(data_file)), defaults=defaults)


def serialize_product(record: Product) -> Dict[str, Any]:
    """Convert a product into its snapshot mapping."""

    return {"id": record.product_id, "name": record.name, "price": record.price, "quantity": record.quantity}


def serialize_line_item(record: SaleLineItem) -> Dict[str, Any]:
    """Convert a sale line into its snapshot mapping."""

    return {"productId": record.product_id, "name": record.name, "price": record.price, "quantity": record.quantity}


def serialize_sale(record: Sale) -> Dict[str, Any]:
    """Convert a ledger entry into its snapshot mapping.

    The date is stored as an ISO-8601 string and ``change`` is only present
    for sales that carry one (cash payments).
    """

    payload: Dict[str, Any] = {
        "id": record.sale_id,
        "items": [serialize_line_item(item) for item in record.items],
        "total": record.total,
        "paymentMethod": record.payment_method.value,
        "date": record.date.isoformat(),
    }
    if record.change is not None:
        payload["change"] = record.change
    return payload


def serialize_cash_register(record: CashRegister) -> Dict[str, Any]:
    """Convert the register figures into their snapshot mapping."""

    return {
        "initialAmount": record.initial_amount,
        "currentAmount": record.current_amount,
        "salesTotal": record.sales_total,
    }


def serialize_snapshot(snapshot: StoreSnapshot) -> Dict[str, Any]:
    """Convert the full state into the ``products`` / ``sales`` / ``cashRegister`` layout."""

    return {
        "products": [serialize_product(product) for product in snapshot.products],
        "sales": [serialize_sale(sale) for sale in snapshot.sales],
        "cashRegister": serialize_cash_register(snapshot.cash_register),
    }


def deserialize_product(raw: Mapping[str, Any]) -> Product:
    """Convert a snapshot mapping into a validated :class:`Product`.

    Identifiers are coerced to ``str`` because spreadsheets readily turn
    numeric-looking ids into numbers.

    Raises:
        ValueError: If a field is missing or out of range.
    """

    product_id = _require_id(raw, "id")
    name = _require_name(raw, "name")
    price = _coerce_int(raw.get("price"), "price")
    quantity = _coerce_int(raw.get("quantity"), "quantity")
    if price <= 0:
        raise ValueError(f"Product '{product_id}' has a non-positive price: {price}")
    if quantity < 0:
        raise ValueError(f"Product '{product_id}' has a negative quantity: {quantity}")
    return Product(product_id=product_id, name=name, price=price, quantity=quantity)


def deserialize_line_item(raw: Mapping[str, Any]) -> SaleLineItem:
    """Convert a snapshot mapping into a validated :class:`SaleLineItem`.

    Raises:
        ValueError: If a field is missing or out of range.
    """

    product_id = _require_id(raw, "productId")
    name = _require_name(raw, "name")
    price = _coerce_int(raw.get("price"), "price")
    quantity = _coerce_int(raw.get("quantity"), "quantity")
    if price <= 0:
        raise ValueError(f"Line for '{product_id}' has a non-positive price: {price}")
    if quantity < 1:
        raise ValueError(f"Line for '{product_id}' has a quantity below one: {quantity}")
    return SaleLineItem(product_id=product_id, name=name, price=price, quantity=quantity)


def deserialize_sale(raw: Mapping[str, Any]) -> Sale:
    """Convert a snapshot mapping into a validated :class:`Sale`.

    The stored total must match the sum of the stored lines and the change,
    when present, must not be negative. Dates are parsed back from their ISO
    string form.

    Raises:
        ValueError: If a field is missing, out of range, or inconsistent.
    """

    sale_id = _require_id(raw, "id")
    raw_items = raw.get("items")
    if not isinstance(raw_items, (list, tuple)):
        raise ValueError(f"Sale '{sale_id}' has no item list")
    items = tuple(deserialize_line_item(item) for item in raw_items)
    total = _coerce_int(raw.get("total"), "total")
    if total != sum(item.subtotal for item in items):
        raise ValueError(f"Sale '{sale_id}' total {total} does not match its lines")
    try:
        payment_method = PaymentMethod(raw.get("paymentMethod"))
    except ValueError as exc:
        raise ValueError(f"Sale '{sale_id}' has an unknown payment method") from exc
    date = _parse_date(raw.get("date"), sale_id)
    change = None
    if raw.get("change") is not None:
        change = _coerce_int(raw.get("change"), "change")
        if change < 0:
            raise ValueError(f"Sale '{sale_id}' has negative change: {change}")
    return Sale(
        sale_id=sale_id,
        items=items,
        total=total,
        payment_method=payment_method,
        date=date,
        change=change,
    )


def deserialize_cash_register(raw: Any, *, ledger_total: int, default_initial: int) -> CashRegister:
    """Rebuild the register figures, deriving any amount that is missing.

    ``salesTotal`` falls back to ``ledger_total``, ``currentAmount`` to
    ``initialAmount + salesTotal``, and ``initialAmount`` to
    ``currentAmount - salesTotal`` or, failing that, ``default_initial``.

    Args:
        raw (Any): The ``cashRegister`` entry of a snapshot, possibly absent
            or malformed.
        ledger_total (int): Sum of the restored ledger totals.
        default_initial (int): Opening balance used when nothing else is known.

    Returns:
        CashRegister: Register figures with every amount populated.
    """

    fields = raw if isinstance(raw, Mapping) else {}
    initial_amount = _optional_int(fields.get("initialAmount"))
    current_amount = _optional_int(fields.get("currentAmount"))
    sales_total = _optional_int(fields.get("salesTotal"))

    if sales_total is None:
        sales_total = ledger_total
    if initial_amount is None:
        initial_amount = current_amount - sales_total if current_amount is not None else default_initial
    if current_amount is None:
        current_amount = initial_amount + sales_total

    if current_amount != initial_amount + sales_total or sales_total != ledger_total:
        log.warning(
            "Restored cash register is inconsistent: initial=%s current=%s sales_total=%s ledger=%s",
            initial_amount,
            current_amount,
            sales_total,
            ledger_total,
        )

    return CashRegister(
        initial_amount=initial_amount,
        current_amount=current_amount,
        sales_total=sales_total,
    )


def deserialize_snapshot(raw: Mapping[str, Any], *, defaults: StoreSnapshot) -> StoreSnapshot:
    """Validate a raw snapshot, falling back to ``defaults`` field by field.

    Malformed products and sales are skipped with a warning rather than
    failing the whole load. A missing or non-list ``products`` entry restores
    the default catalogue; a missing ``sales`` entry restores an empty ledger.
    Register amounts are handled by :func:`deserialize_cash_register`.

    Args:
        raw (Mapping[str, Any]): Snapshot in the ``products`` / ``sales`` /
            ``cashRegister`` layout.
        defaults (StoreSnapshot): State used for anything ``raw`` lacks.

    Returns:
        StoreSnapshot: Validated snapshot.
    """

    raw_products = raw.get("products")
    if isinstance(raw_products, (list, tuple)):
        products: List[Product] = []
        seen_ids: set[str] = set()
        for entry in raw_products:
            try:
                product = deserialize_product(entry)
            except (ValueError, TypeError, AttributeError) as exc:
                log.warning("Skipping malformed product entry %r: %s", entry, exc)
                continue
            if product.product_id in seen_ids:
                log.warning("Skipping duplicate product id '%s'", product.product_id)
                continue
            seen_ids.add(product.product_id)
            products.append(product)
        restored_products = tuple(products)
    else:
        log.warning("Snapshot has no product list; restoring default catalogue")
        restored_products = defaults.products

    raw_sales = raw.get("sales")
    sales: List[Sale] = []
    if isinstance(raw_sales, (list, tuple)):
        seen_sale_ids: set[str] = set()
        for entry in raw_sales:
            try:
                sale = deserialize_sale(entry)
            except (ValueError, TypeError, AttributeError) as exc:
                log.warning("Skipping malformed sale entry %r: %s", entry, exc)
                continue
            if sale.sale_id in seen_sale_ids:
                log.warning("Skipping duplicate sale id '%s'", sale.sale_id)
                continue
            seen_sale_ids.add(sale.sale_id)
            sales.append(sale)
    elif raw_sales is not None:
        log.warning("Snapshot sales entry is not a list; starting with an empty ledger")

    cash_register = deserialize_cash_register(
        raw.get("cashRegister"),
        ledger_total=sum(sale.total for sale in sales),
        default_initial=defaults.cash_register.initial_amount,
    )

    return StoreSnapshot(products=restored_products, sales=tuple(sales), cash_register=cash_register)


def _iter_data_rows(workbook: Workbook, sheet_name: str, *, width: int):
    """Yield the non-empty rows below the header, padded or cut to ``width``."""

    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            values = tuple(raw[:width])
            yield values + (None,) * (width - len(values))


def _coerce_int(value: Any, field_name: str) -> int:
    """Normalize spreadsheet or JSON numbers into ``int``.

    Integral floats and numeric strings are accepted; booleans, fractional
    values, and anything else raise :class:`ValueError`.
    """

    if isinstance(value, bool):
        raise ValueError(f"Field '{field_name}' must be an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise ValueError(f"Field '{field_name}' must be an integer, got {value!r}")


def _optional_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return _coerce_int(value, "amount")
    except ValueError:
        log.warning("Ignoring malformed register amount %r", value)
        return None


def _require_id(raw: Mapping[str, Any], key: str) -> str:
    value = raw.get(key)
    if value is None or str(value).strip() == "":
        raise ValueError(f"Field '{key}' is required")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value)


def _require_name(raw: Mapping[str, Any], key: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Field '{key}' must be a non-empty string")
    return value


def _parse_date(value: Any, sale_id: str) -> datetime:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        raise ValueError(f"Sale '{sale_id}' has no date")
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise ValueError(f"Sale '{sale_id}' has an unreadable date: {value!r}") from exc
