"""Business logic layer for the hardware store point of sale.

This module owns the in-memory store state and is the only place allowed to
mutate it. Every operation validates its input before touching the state, so
a rejected call leaves inventory, the sale in progress, the ledger, and the
cash register exactly as they were. Persistence goes through the Data Access
Layer (DAL); with ``AutoSave`` enabled a full snapshot is written after each
successful mutation.

Adding a product to the sale in progress reserves one unit immediately by
decrementing the product's quantity. Removing the line or abandoning the sale
gives the units back; completing the sale keeps them sold.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Container, Dict, List, Mapping, Optional, Union

from . import data_manager, log
from .constants import DEFAULT_PRODUCTS, EXPECTED_SCHEMA_VERSION, PaymentMethod
from .data_manager import CashRegister, Product, Sale, SaleLineItem, StoreSnapshot


class PointOfSaleError(Exception):
    """Raised when a requested operation violates a domain constraint."""


class ValidationError(PointOfSaleError):
    """Raised for input of the wrong shape or range (blank name, bad price...)."""


class MissingReferenceError(PointOfSaleError):
    """Raised when a referenced product is unknown."""


class OutOfStockError(PointOfSaleError):
    """Raised when adding a product that has no available units."""


class ConflictError(PointOfSaleError):
    """Raised when deleting a product that is reserved by the sale in progress."""


class EmptySaleError(PointOfSaleError):
    """Raised when completing a sale without lines."""


class InsufficientPaymentError(PointOfSaleError):
    """Raised when the cash tendered does not cover the sale total."""


class ConfirmationError(PointOfSaleError):
    """Raised when a register reset is confirmed without a valid token."""


EDITABLE_PRODUCT_FIELDS: tuple[str, ...] = ("name", "price", "quantity")


@dataclass
class StoreState:
    """Mutable container for the four sub-stores of the point of sale."""

    products: List[Product]
    cash_register: CashRegister
    sales: List[Sale] = field(default_factory=list)
    current_sale: List[SaleLineItem] = field(default_factory=list)
    pending_reset_token: Optional[str] = field(default=None, repr=False)


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and the live store state used by the BLL."""

    settings: data_manager.ConfigSettings
    state: StoreState


@dataclass(frozen=True)
class CompleteSaleCommand:
    """User intent for settling the sale in progress."""

    payment_method: PaymentMethod
    cash_received: Optional[int] = None
    timestamp: Optional[datetime] = None


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` when given, otherwise the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def generate_id(*, prefix: str, when: Optional[datetime] = None, taken: Container[str] = ()) -> str:
    """Generate a sortable identifier using UTC timestamps.

    Args:
        prefix (str): Designator prepended to the identifier (``"P"`` for
            products, ``"S"`` for sales).
        when (datetime | None): Timestamp used to produce the identifier. When
            ``None`` the current UTC time is used.
        taken (Container[str]): Identifiers already in use. On collision the
            timestamp is advanced one microsecond at a time until the
            identifier is free.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}``.
    """

    when = when or _resolve_timestamp(None)
    candidate = f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"
    while candidate in taken:
        when = when + timedelta(microseconds=1)
        candidate = f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"
    return candidate


def default_snapshot(opening_balance: int) -> StoreSnapshot:
    """Build the state of a brand-new store: seed catalogue, empty ledger."""

    products = tuple(
        Product(product_id=product_id, name=name, price=price, quantity=quantity)
        for product_id, name, price, quantity in DEFAULT_PRODUCTS
    )
    register = CashRegister(
        initial_amount=opening_balance,
        current_amount=opening_balance,
        sales_total=0,
    )
    return StoreSnapshot(products=products, sales=(), cash_register=register)


def state_from_snapshot(snapshot: StoreSnapshot) -> StoreState:
    """Create a live state from a restored snapshot with no sale in progress."""

    return StoreState(
        products=list(snapshot.products),
        cash_register=snapshot.cash_register,
        sales=list(snapshot.sales),
    )


def build_snapshot(state: StoreState) -> StoreSnapshot:
    """Capture the persisted part of ``state``.

    The sale in progress is not part of the snapshot; its reservations are
    already reflected in the product quantities.
    """

    return StoreSnapshot(
        products=tuple(state.products),
        sales=tuple(state.sales),
        cash_register=state.cash_register,
    )


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and the persisted store state.

    The helper resolves ``config.ini``, parses settings, and restores the last
    snapshot from the configured data file. A missing data file is not an
    error: the store then starts from the seed catalogue and the configured
    opening balance.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for the operations below.

    Raises:
        FileNotFoundError: If the configuration file cannot be located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    snapshot = data_manager.load_snapshot(
        settings.data_file,
        defaults=default_snapshot(settings.opening_balance),
    )
    log.info(
        "Loaded runtime context for '%s' (%d products, %d sales)",
        settings.data_file,
        len(snapshot.products),
        len(snapshot.sales),
    )
    return RuntimeContext(settings=settings, state=state_from_snapshot(snapshot))


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate that ``config.ini`` targets the schema this code understands.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Store schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Store schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Write the full snapshot of ``context`` to the configured data file."""
    data_manager.save_snapshot(build_snapshot(context.state), context.settings.data_file)
    log.info("Persisted snapshot to '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the persisted snapshot, discarding unsaved in-memory changes.

    Any sale in progress is dropped along with its reservations, exactly as a
    fresh process start would do.

    Returns:
        RuntimeContext: Fresh context sharing the settings of ``context``.
    """
    snapshot = data_manager.load_snapshot(
        context.settings.data_file,
        defaults=default_snapshot(context.settings.opening_balance),
    )
    log.info("Reloaded snapshot from '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, state=state_from_snapshot(snapshot))


def _commit(context: RuntimeContext) -> None:
    """Persist the snapshot after a successful mutation when autosave is on."""

    if context.settings.autosave:
        persist_context(context)


# ---------------------------------------------------------------------------
# Inventory store
# ---------------------------------------------------------------------------


def list_products(context: RuntimeContext) -> List[Product]:
    """Return the inventory in insertion order."""
    return list(context.state.products)


def get_product(context: RuntimeContext, product_id: str) -> Product:
    """Resolve a product by its identifier.

    Raises:
        MissingReferenceError: If ``product_id`` is not in the inventory.
    """
    for product in context.state.products:
        if product.product_id == product_id:
            return product
    log.warning("Product lookup failed for id '%s'", product_id)
    raise MissingReferenceError(f"Unknown product id: {product_id}")


def search_products(context: RuntimeContext, term: str = "") -> List[Product]:
    """Return the products whose name contains ``term``, ignoring case."""
    needle = term.lower()
    return [product for product in context.state.products if needle in product.name.lower()]


def list_available_products(context: RuntimeContext, term: str = "") -> List[Product]:
    """Return the search result restricted to products that still have stock."""
    return [product for product in search_products(context, term) if product.quantity > 0]


def add_product(context: RuntimeContext, *, name: str, price: int, quantity: int) -> Product:
    """Validate and append a new product to the inventory.

    Args:
        context (RuntimeContext): Runtime context owning the store state.
        name (str): Display name; surrounding whitespace is stripped.
        price (int): Unit price, strictly positive.
        quantity (int): Initial stock, strictly positive.

    Returns:
        Product: The stored product with its freshly generated id.

    Raises:
        ValidationError: If the name is blank or price/quantity are not
            positive.
    """
    clean_name = require_name(name)
    require_positive_price(price)
    if not _is_int(quantity) or quantity <= 0:
        log.warning("Rejected product '%s' with quantity %r", clean_name, quantity)
        raise ValidationError("Quantity must be greater than zero")

    taken = {product.product_id for product in context.state.products}
    product = Product(
        product_id=generate_id(prefix="P", taken=taken),
        name=clean_name,
        price=price,
        quantity=quantity,
    )
    context.state.products.append(product)
    log.info("Added product '%s' (%s) price=%s quantity=%s", product.product_id, product.name, price, quantity)
    _commit(context)
    return product


def update_product(context: RuntimeContext, product_id: str, *, field_values: Mapping[str, Any]) -> Product:
    """Replace selected fields of an existing product.

    Only ``name``, ``price`` and ``quantity`` may be edited; unspecified fields
    keep their values. Lines already in the sale in progress keep the name and
    price they were created with.

    Raises:
        MissingReferenceError: If the product does not exist.
        ValidationError: If a field is unknown or the resulting product would
            have a blank name, a non-positive price, or a negative quantity.
    """
    current = get_product(context, product_id)
    unknown = sorted(set(field_values) - set(EDITABLE_PRODUCT_FIELDS))
    if unknown:
        raise ValidationError(f"Unknown product field(s): {', '.join(unknown)}")

    name = require_name(field_values.get("name", current.name))
    price = field_values.get("price", current.price)
    quantity = field_values.get("quantity", current.quantity)
    require_positive_price(price)
    if not _is_int(quantity) or quantity < 0:
        log.warning("Rejected update of '%s' with quantity %r", product_id, quantity)
        raise ValidationError("Quantity cannot be negative")

    updated = replace(current, name=name, price=price, quantity=quantity)
    _replace_product(context, updated)
    log.info("Updated product '%s' with %s", product_id, dict(field_values))
    _commit(context)
    return updated


def delete_product(context: RuntimeContext, product_id: str) -> Product:
    """Remove a product from the inventory.

    Completed sales keep their own copy of every line, so deleting a product
    never alters the ledger.

    Raises:
        MissingReferenceError: If the product does not exist.
        ConflictError: If the product has a line in the sale in progress.
    """
    product = get_product(context, product_id)
    if _find_line(context, product_id) is not None:
        log.warning("Refused to delete product '%s' reserved by the current sale", product_id)
        raise ConflictError(f"Product '{product.name}' is part of the current sale")

    context.state.products = [p for p in context.state.products if p.product_id != product_id]
    log.info("Deleted product '%s' (%s)", product_id, product.name)
    _commit(context)
    return product


# ---------------------------------------------------------------------------
# Sale builder
# ---------------------------------------------------------------------------


def current_sale(context: RuntimeContext) -> List[SaleLineItem]:
    """Return the lines of the sale in progress."""
    return list(context.state.current_sale)


def sale_total(context: RuntimeContext) -> int:
    """Sum of price times quantity over the current lines, at their frozen prices."""
    return sum(line.subtotal for line in context.state.current_sale)


def add_line(context: RuntimeContext, product_id: str) -> SaleLineItem:
    """Add one unit of a product to the sale in progress, reserving it.

    A new line snapshots the product's current name and price; an existing
    line only grows by one. In both cases the product's quantity drops by one.

    Raises:
        MissingReferenceError: If the product does not exist.
        OutOfStockError: If the product has no units left.
    """
    product = get_product(context, product_id)
    if product.quantity <= 0:
        log.warning("Product '%s' is out of stock", product_id)
        raise OutOfStockError(f"No stock left for '{product.name}'")

    index = _find_line(context, product_id)
    if index is None:
        line = SaleLineItem(product_id=product_id, name=product.name, price=product.price, quantity=1)
        context.state.current_sale.append(line)
    else:
        line = context.state.current_sale[index]
        line = replace(line, quantity=line.quantity + 1)
        context.state.current_sale[index] = line
    _replace_product(context, replace(product, quantity=product.quantity - 1))

    log.info("Reserved one '%s' for the current sale (line quantity=%s)", product_id, line.quantity)
    _commit(context)
    return line


def remove_line(context: RuntimeContext, product_id: str) -> Optional[SaleLineItem]:
    """Take one unit of a product out of the sale in progress, releasing it.

    Does nothing when the product has no line. Otherwise the line shrinks by
    one (disappearing at zero) and the unit goes back to the product.

    Returns:
        SaleLineItem | None: The shrunken line, or ``None`` when the line was
            dropped or never existed.
    """
    index = _find_line(context, product_id)
    if index is None:
        log.debug("No line for '%s' in the current sale; nothing to remove", product_id)
        return None

    line = context.state.current_sale[index]
    remaining: Optional[SaleLineItem] = None
    if line.quantity > 1:
        remaining = replace(line, quantity=line.quantity - 1)
        context.state.current_sale[index] = remaining
    else:
        del context.state.current_sale[index]
    _release_units(context, product_id, 1)

    log.info("Released one '%s' from the current sale", product_id)
    _commit(context)
    return remaining


def abandon_sale(context: RuntimeContext) -> int:
    """Drop the sale in progress and give every reserved unit back.

    Returns:
        int: Number of units returned to the inventory.
    """
    lines = context.state.current_sale
    if not lines:
        return 0
    restored = 0
    for line in lines:
        _release_units(context, line.product_id, line.quantity)
        restored += line.quantity
    context.state.current_sale = []
    log.info("Abandoned current sale; %d unit(s) returned to stock", restored)
    _commit(context)
    return restored


def calculate_change(total: int, cash_received: Optional[int]) -> int:
    """Return the change owed for ``cash_received`` against ``total``.

    Raises:
        InsufficientPaymentError: If no cash was tendered or it is below
            ``total``.
    """
    if cash_received is None or cash_received < total:
        raise InsufficientPaymentError(
            f"Cash received ({cash_received}) is less than the total ({total})"
        )
    return cash_received - total


def can_complete_sale(context: RuntimeContext, payment_method: Union[PaymentMethod, str], cash_received: Optional[int] = None) -> bool:
    """Tell whether :func:`complete_sale` would accept the given payment."""
    if not context.state.current_sale:
        return False
    try:
        method = PaymentMethod(payment_method)
    except ValueError:
        return False
    if method is PaymentMethod.CASH:
        return cash_received is not None and cash_received >= sale_total(context)
    return True


def complete_sale(context: RuntimeContext, command: CompleteSaleCommand) -> Sale:
    """Settle the sale in progress.

    The sale is frozen into the ledger, its total is registered with the cash
    register, and the builder starts over empty. Inventory is not touched: the
    units were already taken out when the lines were added.

    Args:
        context (RuntimeContext): Runtime context owning the store state.
        command (CompleteSaleCommand): Payment method, cash tendered (cash
            payments only) and optional timestamp.

    Returns:
        Sale: The ledger entry that was appended.

    Raises:
        EmptySaleError: If the sale has no lines.
        ValidationError: If the payment method is not supported.
        InsufficientPaymentError: If cash tendered is below the total.
    """
    if not context.state.current_sale:
        log.warning("Attempted to complete an empty sale")
        raise EmptySaleError("There are no products in the current sale")
    try:
        payment_method = PaymentMethod(command.payment_method)
    except ValueError as exc:
        log.error("Unsupported payment method provided: %s", command.payment_method)
        raise ValidationError(f"Unsupported payment method: {command.payment_method}") from exc

    total = sale_total(context)
    change: Optional[int] = None
    if payment_method is PaymentMethod.CASH:
        try:
            change = calculate_change(total, command.cash_received)
        except InsufficientPaymentError:
            log.warning("Cash received %s does not cover total %s", command.cash_received, total)
            raise

    timestamp = _resolve_timestamp(command.timestamp)
    sale = Sale(
        sale_id=generate_id(prefix="S", when=timestamp, taken={s.sale_id for s in context.state.sales}),
        items=tuple(context.state.current_sale),
        total=total,
        payment_method=payment_method,
        date=timestamp,
        change=change,
    )
    append_sale(context, sale)
    register_sale(context, total)
    context.state.current_sale = []

    log.info(
        "Completed sale '%s' total=%s method=%s change=%s",
        sale.sale_id,
        total,
        payment_method.value,
        change,
    )
    _commit(context)
    return sale


# ---------------------------------------------------------------------------
# Sales ledger and cash register
# ---------------------------------------------------------------------------


def append_sale(context: RuntimeContext, sale: Sale) -> None:
    """Append ``sale`` to the ledger; existing entries are never modified."""
    context.state.sales.append(sale)


def list_sales(context: RuntimeContext) -> List[Sale]:
    """Return the ledger, oldest sale first."""
    return list(context.state.sales)


def register_sale(context: RuntimeContext, total: int) -> CashRegister:
    """Add a completed sale's total to the register figures."""
    register = context.state.cash_register
    context.state.cash_register = replace(
        register,
        current_amount=register.current_amount + total,
        sales_total=register.sales_total + total,
    )
    return context.state.cash_register


def request_register_reset(context: RuntimeContext) -> str:
    """Start a register reset and return the token that confirms it.

    Each request replaces any token issued before.
    """
    token = secrets.token_hex(8)
    context.state.pending_reset_token = token
    log.info("Register reset requested")
    return token


def confirm_register_reset(context: RuntimeContext, token: str) -> CashRegister:
    """Finish a register reset previously started with :func:`request_register_reset`.

    The current amount becomes the new opening balance, the sales total goes
    back to zero and the ledger is cleared. Inventory is left as it is.

    Raises:
        ConfirmationError: If no reset was requested or ``token`` does not
            match the issued one.
    """
    expected = context.state.pending_reset_token
    if (
        expected is None
        or not isinstance(token, str)
        or not secrets.compare_digest(expected.encode(), token.encode())
    ):
        log.warning("Register reset refused: invalid confirmation token")
        raise ConfirmationError("Register reset was not confirmed")

    current = context.state.cash_register.current_amount
    context.state.cash_register = CashRegister(
        initial_amount=current,
        current_amount=current,
        sales_total=0,
    )
    cleared = len(context.state.sales)
    context.state.sales = []
    context.state.pending_reset_token = None
    log.info("Register reset: opening balance %s, %d sale(s) cleared", current, cleared)
    _commit(context)
    return context.state.cash_register


def calculate_register_summary(context: RuntimeContext) -> Dict[str, Any]:
    """Report the register figures together with an invariant check.

    Returns:
        dict[str, Any]: ``initial_amount``, ``current_amount``,
            ``sales_total``, ``ledger_total`` (sum of ledger totals),
            ``sales_count`` and ``consistent`` (both register invariants hold).
    """
    register = context.state.cash_register
    ledger_total = sum(sale.total for sale in context.state.sales)
    consistent = (
        register.current_amount == register.initial_amount + register.sales_total
        and register.sales_total == ledger_total
    )
    if not consistent:
        log.error(
            "Cash register out of balance: initial=%s current=%s sales_total=%s ledger=%s",
            register.initial_amount,
            register.current_amount,
            register.sales_total,
            ledger_total,
        )
    return {
        "initial_amount": register.initial_amount,
        "current_amount": register.current_amount,
        "sales_total": register.sales_total,
        "ledger_total": ledger_total,
        "sales_count": len(context.state.sales),
        "consistent": consistent,
    }


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def require_name(name: Any) -> str:
    """Return ``name`` stripped, rejecting blank or non-text values."""
    if not isinstance(name, str) or not name.strip():
        log.warning("Rejected blank product name")
        raise ValidationError("Product name is required")
    return name.strip()


def require_positive_price(price: Any) -> None:
    """Reject prices that are not strictly positive integers."""
    if not _is_int(price) or price <= 0:
        log.warning("Rejected product price %r", price)
        raise ValidationError("Price must be greater than zero")


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _find_line(context: RuntimeContext, product_id: str) -> Optional[int]:
    for index, line in enumerate(context.state.current_sale):
        if line.product_id == product_id:
            return index
    return None


def _replace_product(context: RuntimeContext, updated: Product) -> None:
    context.state.products = [
        updated if product.product_id == updated.product_id else product
        for product in context.state.products
    ]


def _release_units(context: RuntimeContext, product_id: str, units: int) -> None:
    """Give ``units`` back to a product; lines outliving their product are ignored."""
    for product in context.state.products:
        if product.product_id == product_id:
            _replace_product(context, replace(product, quantity=product.quantity + units))
            return
    log.warning("Product '%s' no longer exists; %d reserved unit(s) not returned", product_id, units)
