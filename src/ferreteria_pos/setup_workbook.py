"""Utility for initializing the store workbook.

The module doubles as a script (``ferreteria-setup``) and as a library used by
tests or other tooling. The workbook it writes is an ordinary snapshot, so the
regular loader reads it back like any other saved state.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Sequence
import sys

from . import core_logic, data_manager
from .constants import DEFAULT_OPENING_BALANCE
from .data_manager import StoreSnapshot

CONFIG_FILE = "config.ini"


def create_store_workbook(
    destination: Path,
    *,
    opening_balance: int = DEFAULT_OPENING_BALANCE,
    seed_products: bool = True,
    overwrite: bool = False,
) -> Path:
    """Create the store workbook at ``destination``.

    The workbook holds the default catalogue (unless ``seed_products`` is
    ``False``), an empty sales history and a register opened with
    ``opening_balance``. When ``overwrite`` is ``False`` (the default) this
    function raises ``FileExistsError`` if the target already exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing store workbook: {destination}"
        )

    snapshot = core_logic.default_snapshot(opening_balance)
    if not seed_products:
        snapshot = StoreSnapshot(products=(), sales=(), cash_register=snapshot.cash_register)

    data_manager.save_snapshot(snapshot, destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False, seed_products: bool = True) -> Path:
    """Create the workbook named by ``config.ini`` using its opening balance."""

    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.expanduser().resolve().parent)
    return create_store_workbook(
        settings.data_file,
        opening_balance=settings.opening_balance,
        seed_products=seed_products,
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the store data file")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    parser.add_argument(
        "--empty",
        action="store_true",
        help="Start without the default product catalogue.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Ferretería POS Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force, seed_products=not args.empty)
    except FileNotFoundError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except (KeyError, ValueError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created store workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
