"""Command line interface for grid_bot utilities."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Callable

from grid_bot.bootstrap import CredentialBootstrapError, bootstrap, build_client
from grid_bot.config import load_config
from grid_bot.connection.exceptions import ExchangeError
from grid_bot.connection.precision import format_decimal
from grid_bot.grid.catalog import PriceLadderCatalog
from grid_bot.grid.catalog_store import CatalogStore, load_or_build_catalog
from grid_bot.main import run as run_orchestrator


def _print_error(message: str) -> int:
    """Print an error message and return a non-zero exit code."""

    print(message)
    return 1


def _config_path(args: argparse.Namespace) -> Path | None:
    return Path(args.config) if args.config else None


def _run_command(args: argparse.Namespace) -> int:
    """Start the streams and the reconciliation loop until interrupted."""

    return run_orchestrator(config_path=_config_path(args), env=args.env)


def _build_catalog_command(args: argparse.Namespace) -> int:
    """Build (or reuse) the price ladder catalog; public data only."""

    config = load_config(config_path=_config_path(args), env=args.env)
    grid = config.grid
    client = build_client(config, api_key="", api_secret="")
    store = CatalogStore(Path(args.output or config.catalog_path) if (args.output or config.catalog_path) else None)

    try:
        if args.force:
            rules = client.fetch_symbol_rules(grid.symbol)
            catalog = PriceLadderCatalog.build(rules, grid.symbol, grid.step_percent, grid.min_price, grid.max_price)
            store.save(catalog)
        else:
            catalog = load_or_build_catalog(
                client, store, grid.symbol, grid.step_percent, grid.min_price, grid.max_price
            )
    except ExchangeError as exc:
        return _print_error(f"Catalog build failed: {exc}")
    finally:
        client.close()

    levels = catalog.levels
    print(f"{catalog.symbol}: {len(levels)} levels written to {store.path}")
    if levels:
        print(f"  lowest  {format_decimal(levels[0].buy_price)}")
        print(f"  highest {format_decimal(levels[-1].buy_price)}")
    return 0


def _balances_command(args: argparse.Namespace) -> int:
    """Print account balances (signed request)."""

    try:
        client, _ = bootstrap(config_path=_config_path(args), env=args.env)
    except CredentialBootstrapError as exc:
        return _print_error(str(exc))

    try:
        balances = client.get_account_snapshot(hide_zero=not args.all)
    except ExchangeError as exc:
        return _print_error(f"Balance request failed: {exc}")
    finally:
        client.close()

    for asset in sorted(balances):
        balance = balances[asset]
        print(
            f"{asset:<8} free={format_decimal(balance.free)} "
            f"locked={format_decimal(balance.locked)} total={format_decimal(balance.total)}"
        )
    return 0


def _cancel_all_command(args: argparse.Namespace) -> int:
    """Cancel every open order on the configured symbol."""

    try:
        client, config = bootstrap(config_path=_config_path(args), env=args.env)
    except CredentialBootstrapError as exc:
        return _print_error(str(exc))

    symbol = config.grid.symbol
    try:
        open_orders = client.list_open_orders(symbol)
        if not open_orders:
            print(f"No open orders on {symbol}.")
            return 0
        client.cancel_all_open_orders(symbol)
    except ExchangeError as exc:
        return _print_error(f"Cancel failed: {exc}")
    finally:
        client.close()

    print(f"Cancelled {len(open_orders)} open orders on {symbol}.")
    return 0


def _add_common_arguments(subparser: argparse.ArgumentParser) -> None:
    subparser.add_argument("--config", help="Path to config.yaml (defaults to the per-user config dir)")
    subparser.add_argument(
        "--env",
        choices=["testnet", "live"],
        default=None,
        help="Environment overlay to apply (defaults to GRID_BOT_ENV or testnet)",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="grid-bot", description="Binance spot grid bot")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Start the streams and the grid engine")
    _add_common_arguments(run_parser)
    run_parser.set_defaults(func=_run_command)

    catalog_parser = subparsers.add_parser(
        "build-catalog", help="Build the price ladder catalog from exchange filters"
    )
    _add_common_arguments(catalog_parser)
    catalog_parser.add_argument("--output", help="Catalog file path (defaults to the configured path)")
    catalog_parser.add_argument(
        "--force", action="store_true", help="Rebuild even when a matching catalog is stored"
    )
    catalog_parser.set_defaults(func=_build_catalog_command)

    balances_parser = subparsers.add_parser("balances", help="Show account balances")
    _add_common_arguments(balances_parser)
    balances_parser.add_argument("--all", action="store_true", help="Include zero balances")
    balances_parser.set_defaults(func=_balances_command)

    cancel_parser = subparsers.add_parser("cancel-all", help="Cancel all open orders on the grid symbol")
    _add_common_arguments(cancel_parser)
    cancel_parser.set_defaults(func=_cancel_all_command)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point for the `grid-bot` console script."""

    parser = _build_parser()
    args = parser.parse_args(argv)
    command: Callable[[argparse.Namespace], int] = getattr(args, "func")
    return command(args)


if __name__ == "__main__":
    sys.exit(main())
