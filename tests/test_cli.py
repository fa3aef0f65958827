"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from typing import Mapping
from unittest.mock import Mock

import pytest

from ferreteria_pos import cli, constants, core_logic, data_manager


WRITE_COMMANDS = {
    "add-product",
    "update-product",
    "delete-product",
    "sell",
    "reset-register",
}

READ_COMMANDS = {
    "stock",
    "history",
    "register",
}


def _registered_choices(parser: argparse.ArgumentParser) -> Mapping[str, argparse.ArgumentParser]:
    for action in parser._actions:
        if isinstance(action, argparse._SubParsersAction):
            return action.choices
    return {}


def _parse(*argv: str) -> argparse.Namespace:
    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    return parser.parse_args(list(argv))


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "ferreteria-cli"


def test_configure_subcommands_registers_all_commands(cli_parser):
    command_table = cli.configure_subcommands(cli_parser)

    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert set(_registered_choices(cli_parser)) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    specs = cli.register_write_commands(subparsers_action)
    assert set(specs) == WRITE_COMMANDS
    for spec in specs.values():
        assert isinstance(spec, cli.CommandSpec)
        assert spec.help_text


def test_register_read_commands_returns_command_specs(subparsers_action):
    specs = cli.register_read_commands(subparsers_action)
    assert set(specs) == READ_COMMANDS
    for name in READ_COMMANDS:
        assert name in subparsers_action.choices


def test_build_command_table_rejects_duplicates(command_spec_iterable):
    with pytest.raises(ValueError):
        cli.build_command_table([*command_spec_iterable, command_spec_iterable[0]])


def test_dispatch_command_unknown_raises(context, command_spec_iterable):
    table = cli.build_command_table(command_spec_iterable)
    with pytest.raises(KeyError):
        cli.dispatch_command(context, argparse.Namespace(command="delta"), table)


# ---------------------------------------------------------------------------
# Argument translation
# ---------------------------------------------------------------------------


def test_sell_command_collects_items():
    args = _parse("sell", "--item", "1", "--item", "1", "--item", "3", "--cash-received", "20100")

    assert args.items == ["1", "1", "3"]
    assert args.payment_method == constants.PaymentMethod.CASH.value
    command = cli.translate_sell(args)
    assert command.payment_method is constants.PaymentMethod.CASH
    assert command.cash_received == 20100


def test_translate_sell_drops_cash_for_card():
    args = _parse("sell", "--item", "1", "--payment-method", "tarjeta", "--cash-received", "5")

    command = cli.translate_sell(args)

    assert command.payment_method is constants.PaymentMethod.CARD
    assert command.cash_received is None


def test_translate_update_product_skips_omitted_flags():
    args = _parse("update-product", "--product-id", "2", "--price", "6000")
    assert cli.translate_update_product(args) == {"price": 6000}


def test_add_product_arguments_are_integers():
    args = _parse("add-product", "--name", "Taladro", "--price", "90000", "--quantity", "2")
    assert cli.translate_add_product(args) == {"name": "Taladro", "price": 90000, "quantity": 2}


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def test_run_sell_completes_sale(context, capsys):
    args = _parse("sell", "--item", "1", "--item", "3", "--cash-received", "20000")

    assert cli.run_sell(context, args) == 0

    assert core_logic.list_sales(context)[0].total == 10100
    assert "Change: 9900" in capsys.readouterr().out


def test_run_sell_abandons_sale_on_rejection(context):
    args = _parse("sell", "--item", "1", "--item", "2", "--cash-received", "100")

    with pytest.raises(core_logic.InsufficientPaymentError):
        cli.run_sell(context, args)

    assert core_logic.current_sale(context) == []
    assert core_logic.get_product(context, "1").quantity == 20
    assert core_logic.get_product(context, "2").quantity == 30


def test_run_reset_register_requires_confirmation(context):
    core_logic.add_line(context, "3")
    core_logic.complete_sale(context, core_logic.CompleteSaleCommand(constants.PaymentMethod.CARD))

    assert cli.run_reset_register(context, _parse("reset-register")) == 2
    assert len(core_logic.list_sales(context)) == 1

    assert cli.run_reset_register(context, _parse("reset-register", "--yes")) == 0
    assert core_logic.list_sales(context) == []
    assert context.state.cash_register.initial_amount == 100100


def test_run_stock_report_filters(context, capsys):
    core_logic.update_product(context, "1", field_values={"quantity": 0})

    cli.run_stock_report(context, _parse("stock", "--available"))

    lines = capsys.readouterr().out.splitlines()
    assert [line.split("\t")[0] for line in lines] == ["2", "3", "4"]


def test_run_register_report_prints_amounts(context, capsys):
    assert cli.run_register_report(context, _parse("register")) == 0
    assert "Current amount: 100000" in capsys.readouterr().out


def test_handle_cli_error_maps_exit_codes():
    assert cli.handle_cli_error(core_logic.OutOfStockError("none")) == 2
    assert cli.handle_cli_error(FileNotFoundError("config.ini")) == 3
    assert cli.handle_cli_error(RuntimeError("boom")) == 1


# ---------------------------------------------------------------------------
# End-to-end through main()
# ---------------------------------------------------------------------------


def test_main_persists_between_invocations(config_factory, capsys):
    bundle = config_factory()
    config = str(bundle.config_path)

    assert cli.main(["--config", config, "sell", "--item", "1", "--item", "1", "--cash-received", "25000"]) == 0
    assert cli.main(["--config", config, "stock", "--search", "martillo"]) == 0

    out = capsys.readouterr().out
    assert "1\tMartillo\t10000\t18" in out


def test_main_sell_saves_once_after_settling(config_factory, monkeypatch):
    bundle = config_factory()
    save_snapshot = Mock(wraps=data_manager.save_snapshot)
    monkeypatch.setattr(data_manager, "save_snapshot", save_snapshot)

    exit_code = cli.main(
        ["--config", str(bundle.config_path), "sell", "--item", "1", "--item", "1", "--payment-method", "tarjeta"]
    )

    assert exit_code == 0
    save_snapshot.assert_called_once()


def test_main_sell_failed_save_leaves_stock_untouched(config_factory, monkeypatch):
    bundle = config_factory()
    monkeypatch.setattr(data_manager, "save_snapshot", Mock(side_effect=OSError("disk full")))

    exit_code = cli.main(
        ["--config", str(bundle.config_path), "sell", "--item", "1", "--item", "1", "--payment-method", "tarjeta"]
    )
    monkeypatch.undo()

    assert exit_code == 1
    context = core_logic.load_runtime_context(bundle.config_path)
    assert core_logic.get_product(context, "1").quantity == 20
    assert core_logic.list_sales(context) == []


def test_run_sell_abandons_sale_when_settlement_fails(context, monkeypatch):
    monkeypatch.setattr(core_logic, "complete_sale", Mock(side_effect=OSError("disk full")))

    with pytest.raises(OSError):
        cli.run_sell(context, _parse("sell", "--item", "1", "--item", "2", "--payment-method", "tarjeta"))

    assert core_logic.current_sale(context) == []
    assert core_logic.get_product(context, "1").quantity == 20
    assert core_logic.get_product(context, "2").quantity == 30


def test_main_discovers_config_in_parent_directory(config_factory, monkeypatch, capsys):
    bundle = config_factory()
    nested = bundle.config_path.parent / "caja" / "turno"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert cli.main(["register"]) == 0
    assert "Current amount: 100000" in capsys.readouterr().out


def test_main_without_autosave_saves_once_at_the_end(config_factory):
    bundle = config_factory(autosave=False)
    config = str(bundle.config_path)

    assert cli.main(["--config", config, "add-product", "--name", "Lija", "--price", "300", "--quantity", "10"]) == 0

    context = core_logic.load_runtime_context(bundle.config_path)
    assert [p.name for p in core_logic.search_products(context, "lija")] == ["Lija"]


def test_main_reports_business_errors(config_factory):
    bundle = config_factory()

    exit_code = cli.main(["--config", str(bundle.config_path), "delete-product", "--product-id", "missing"])

    assert exit_code == 2


def test_main_rejects_schema_mismatch(config_factory):
    bundle = config_factory(schema_version="0.1.0")
    assert cli.main(["--config", str(bundle.config_path), "stock"]) == 1
