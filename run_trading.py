#!/usr/bin/env python3
"""T-Invest trading bot

Reconciles the local position ledger with the broker before every trading
action and records fills in the ledger.

Usage:
    # Reconcile and check market hours
    python run_trading.py check

    # Trade one instrument, or refresh marks of held positions
    python run_trading.py buy BBG004730N88
    python run_trading.py sell BBG004730N88
    python run_trading.py refresh

    # Sandbox accounts
    python run_trading.py sandbox-open
    python run_trading.py sandbox-payin 100000 --account <id>
"""
import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from decimal import Decimal, InvalidOperation

from config.settings import settings
from tinvest_trader.middleware.rate_limiter import RateLimiter
from tinvest_trader.models.trading import CandleInterval
from tinvest_trader.services.market_scanner import MarketScanner
from tinvest_trader.trading.broker_gateway import TInvestGateway
from tinvest_trader.trading.live_engine import TradingSession, TradingSessionConfig
from tinvest_trader.trading.position_ledger import PositionLedger
from tinvest_trader.trading.sandbox import SandboxAccountService
from tinvest_trader.utils.config_validator import ConfigValidator
from tinvest_trader.utils.exceptions import ReconciliationFailure, TradingBotException
from tinvest_trader.utils.instrument_config import InstrumentConfigLoader
from tinvest_trader.utils.logger import setup_logger

logger = logging.getLogger("tinvest_trader.cli")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_HALTED = 2

# commands that run before an account id exists
NO_ACCOUNT_COMMANDS = ("sandbox-open", "sandbox-accounts")


def build_session(gateway: TInvestGateway, rate_limiter: RateLimiter) -> TradingSession:
    config = TradingSessionConfig(
        trading_limit=settings.TRADING_LIMIT,
        max_position_pct=settings.MAX_POSITION_PCT,
        max_loss_threshold=settings.MAX_LOSS_THRESHOLD,
        require_market_open=not settings.TINVEST_SANDBOX,
    )
    return TradingSession(
        gateway,
        PositionLedger(settings.LEDGER_PATH),
        rate_limiter=rate_limiter,
        config=config,
        account_id=settings.TINVEST_ACCOUNT_ID,
    )


def print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def positive_amount(value: str) -> Decimal:
    """argparse type for money amounts"""
    try:
        amount = Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not a number: {value!r}") from None
    if not amount.is_finite() or amount <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive amount, got {value}")
    return amount


async def run(args) -> int:
    rate_limiter = RateLimiter(interval=settings.RATE_LIMIT_INTERVAL)

    async with TInvestGateway.from_settings() as gateway:
        if args.command.startswith('sandbox-'):
            sandbox = SandboxAccountService(gateway)
            if args.command == 'sandbox-open':
                print(await sandbox.open_account(args.name))
            elif args.command == 'sandbox-payin':
                account = args.account or settings.TINVEST_ACCOUNT_ID
                print(await sandbox.pay_in(account, args.amount, args.currency))
            elif args.command == 'sandbox-close':
                await sandbox.close_account(args.account or settings.TINVEST_ACCOUNT_ID)
            elif args.command == 'sandbox-accounts':
                print_json(await sandbox.list_accounts())
            return EXIT_OK

        if args.command == 'candles':
            scanner = MarketScanner(gateway, rate_limiter)
            instruments = InstrumentConfigLoader(settings.INSTRUMENTS_CONFIG)
            figis = args.figi or instruments.figis
            frames = await scanner.fetch_candle_frames(figis, CandleInterval[args.interval])
            for figi, volume in scanner.rank_by_volume(frames, top=args.top):
                print(f"{instruments.ticker_for(figi):<8} {figi:<14} {volume}")
            return EXIT_OK

        if args.command == 'portfolio':
            print_json(await gateway.get_portfolio())
            return EXIT_OK

        session = build_session(gateway, rate_limiter)
        ready = await session.preflight()

        if args.command == 'check':
            print_json(session.get_status())
        elif args.command == 'status':
            print_json(session.get_status())
            return EXIT_HALTED if session.reconciler.is_halted else EXIT_OK
        elif ready and args.command == 'buy':
            result = await session.buy(args.figi)
            print_json(asdict(result) if result else None)
        elif ready and args.command == 'sell':
            result = await session.sell(args.figi)
            print_json(asdict(result) if result else None)
        elif ready and args.command == 'refresh':
            flagged = await session.refresh_positions()
            print_json([p.to_row() for p in flagged])

        if session.reconciler.is_halted:
            logger.critical(f"Trading halted: {session.reconciler.halt_reason}")
            return EXIT_HALTED
        return EXIT_OK


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='T-Invest trading bot')
    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('check', help='Reconcile ledger and check market hours')
    sub.add_parser('status', help='Reconcile and print session status')
    sub.add_parser('portfolio', help='Print the broker portfolio snapshot')
    sub.add_parser('refresh', help='Refresh max price and P&L of ledger positions')

    buy = sub.add_parser('buy', help='Buy within the per-position budget')
    buy.add_argument('figi')
    sell = sub.add_parser('sell', help='Close the ledger position')
    sell.add_argument('figi')

    candles = sub.add_parser('candles', help='Rank instruments by traded volume')
    candles.add_argument('figi', nargs='*', help='FIGIs (default: configured watch list)')
    candles.add_argument('--interval', choices=[i.name for i in CandleInterval], default='DAY')
    candles.add_argument('--top', type=int, default=15)

    sandbox_open = sub.add_parser('sandbox-open', help='Open a sandbox account')
    sandbox_open.add_argument('--name')
    payin = sub.add_parser('sandbox-payin', help='Credit a sandbox account')
    payin.add_argument('amount', type=positive_amount)
    payin.add_argument('--account')
    payin.add_argument('--currency', default='RUB')
    close = sub.add_parser('sandbox-close', help='Close a sandbox account')
    close.add_argument('--account')
    sub.add_parser('sandbox-accounts', help='List sandbox accounts')

    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logger("tinvest_trader", log_file="trading")
    errors = ConfigValidator.validate_all()
    if args.command in NO_ACCOUNT_COMMANDS:
        errors = [e for e in errors if "TINVEST_ACCOUNT_ID" not in e]
    if errors:
        for error in errors:
            logger.error(f"Configuration: {error}")
        return EXIT_ERROR

    try:
        return asyncio.run(run(args))
    except ReconciliationFailure as e:
        logger.critical(f"Reconciliation failed: {e.message}")
        return EXIT_HALTED
    except TradingBotException as e:
        logger.error(f"{e.error_code}: {e.message}")
        return EXIT_ERROR


if __name__ == '__main__':
    sys.exit(main())
