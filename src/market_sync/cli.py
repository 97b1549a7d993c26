"""Command line interface for market-sync."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import Any, Callable, List

from market_sync.config import AppConfig, load_config
from market_sync.logging_config import configure_logging
from market_sync.market_data.api import MarketDataAPI
from market_sync.market_data.feeds import MarketFeed


def _to_json(view: Any) -> str:
    payload = dataclasses.asdict(view) if dataclasses.is_dataclass(view) else view
    return json.dumps(payload, default=str)


def _print_error(message: str) -> int:
    """Print an error message and return a non-zero exit code."""

    print(message, file=sys.stderr)
    return 1


async def _stream_feed(
    api: MarketDataAPI,
    build_feed: Callable[..., MarketFeed],
    duration: float | None,
) -> int:
    """Start one feed, print every published view as a JSON line, stop on error or timeout."""

    finished = asyncio.Event()
    errors: List[Exception] = []

    def on_update(view: Any) -> None:
        print(_to_json(view), flush=True)

    def on_error(error: Exception) -> None:
        errors.append(error)
        finished.set()

    feed = build_feed(on_snapshot_update=on_update, on_terminal_error=on_error)
    try:
        await feed.start()
        if duration is None:
            await finished.wait()
        else:
            try:
                await asyncio.wait_for(finished.wait(), timeout=duration)
            except asyncio.TimeoutError:
                pass
    finally:
        await api.shutdown()

    if errors:
        return _print_error(f"Error: {errors[0]}")
    return 0


def _run_stream(args: argparse.Namespace, config: AppConfig, kind: str) -> int:
    api = MarketDataAPI(config)
    symbol = args.symbol

    def build_feed(**callbacks: Any) -> MarketFeed:
        if kind == "orderbook":
            return api.order_book(symbol, **callbacks)
        if kind == "trades":
            return api.trades(symbol, **callbacks)
        return api.candles(symbol, interval=args.interval, **callbacks)

    try:
        return asyncio.run(_stream_feed(api, build_feed, args.duration))
    except KeyboardInterrupt:
        return 0


def _orderbook_command(args: argparse.Namespace, config: AppConfig) -> int:
    return _run_stream(args, config, "orderbook")


def _trades_command(args: argparse.Namespace, config: AppConfig) -> int:
    return _run_stream(args, config, "trades")


def _candles_command(args: argparse.Namespace, config: AppConfig) -> int:
    return _run_stream(args, config, "candles")


def _check_symbol_command(args: argparse.Namespace, config: AppConfig) -> int:
    """Report whether the symbol is on the venue's list."""

    api = MarketDataAPI(config)
    symbol = args.symbol.upper()
    try:
        supported = api.is_supported(symbol)
    finally:
        api.close()
    if not supported:
        return _print_error(f"{symbol} is not available on the venue.")
    print(f"{symbol} is supported.")
    return 0


def _show_config_command(_: argparse.Namespace, config: AppConfig) -> int:
    print(json.dumps(dataclasses.asdict(config), indent=2, default=str))
    return 0


def _add_duration_argument(subparser: argparse.ArgumentParser) -> None:
    subparser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Stop after this many seconds (runs until interrupted when omitted)",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="market-sync", description="Live market data feeds")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.yaml")
    parser.add_argument("--env", default=None, help="Config environment (local, dev, prod)")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (default WARNING)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    orderbook_parser = subparsers.add_parser("orderbook", help="Stream the order book for a symbol")
    orderbook_parser.add_argument("symbol")
    _add_duration_argument(orderbook_parser)
    orderbook_parser.set_defaults(func=_orderbook_command)

    trades_parser = subparsers.add_parser("trades", help="Stream recent trades for a symbol")
    trades_parser.add_argument("symbol")
    _add_duration_argument(trades_parser)
    trades_parser.set_defaults(func=_trades_command)

    candles_parser = subparsers.add_parser("candles", help="Stream candles for a symbol")
    candles_parser.add_argument("symbol")
    candles_parser.add_argument("--interval", default=None, help="Kline interval (defaults to config)")
    _add_duration_argument(candles_parser)
    candles_parser.set_defaults(func=_candles_command)

    check_parser = subparsers.add_parser("check-symbol", help="Check a symbol against the venue list")
    check_parser.add_argument("symbol")
    check_parser.set_defaults(func=_check_symbol_command)

    show_parser = subparsers.add_parser("show-config", help="Print the effective configuration")
    show_parser.set_defaults(func=_show_config_command)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point for the `market-sync` console script."""

    parser = _build_parser()
    args = parser.parse_args(argv)
    level = logging.getLevelName(str(args.log_level).upper())
    configure_logging(level=level if isinstance(level, int) else logging.WARNING, env=args.env)
    config = load_config(config_path=args.config, env=args.env)
    command: Callable[[argparse.Namespace, AppConfig], int] = getattr(args, "func")
    return command(args, config)


if __name__ == "__main__":
    sys.exit(main())
