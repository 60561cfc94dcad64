"""
Main entry point for running a backtest or a batch of backtests.
"""
import argparse
import asyncio
import logging
import os
import sys

# Ensure the project root is in the python path
sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))

import quantrunner
from quantrunner.session import BacktestSession

logger = logging.getLogger("quantrunner.main")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run backtests against the remote evaluation service.")
    parser.add_argument("--config", default="config.yaml", help="Path to the YAML settings file.")
    parser.add_argument("--strategy", help="Strategy code for a single run.")
    parser.add_argument("--batch", action="store_true", help="Run a batch instead of a single backtest.")
    parser.add_argument("--strategies", nargs="*", help="Strategy codes for the batch (default: all).")
    parser.add_argument("--report-dir", help="Write a report of the run into this directory.")
    parser.add_argument("--clear", action="store_true", help="Clear persisted results and exit.")
    return parser.parse_args(argv)


async def run(args) -> int:
    settings = quantrunner.load_config(args.config)
    logging.basicConfig(
        level=settings.logging.level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info(f"Configuration loaded. Service client: {settings.service.client}")

    async with BacktestSession.from_settings(settings) as session:
        if args.clear:
            session.clear()
            return 0

        if args.batch:
            batch = await session.run_batch(args.strategies or None)
            print(f"Batch {batch.id or '-'}: {batch.status.value} - {batch.status_message}")
            for outcome in batch.failed_outcomes:
                print(f"  FAILED {outcome.strategy_code} ({outcome.strategy_name}): {outcome.error}")
            if args.report_dir:
                batch.generate_report(args.report_dir)
            return 0 if batch.status == quantrunner.BatchStatus.COMPLETED else 1

        if args.strategy and not session.configure(strategy_code=args.strategy):
            print("Configuration rejected.")
            return 2

        try:
            await session.run()
        except quantrunner.ValidationError as e:
            print(f"Invalid configuration: {e}")
            return 2

        state = session.state
        if state.phase != quantrunner.Phase.SUCCESS:
            print(f"Backtest failed: {state.error}")
            return 1

        results = state.results
        print(f"Backtest {results.backtest_id}: profit {results.profit:.2f} "
              f"({results.profit_percentage:.2f}%), win rate {results.win_rate:.2f}%, "
              f"{results.total_trades} trades over {session.total_pages()} page(s)")
        if args.report_dir:
            results.generate_report(args.report_dir)
        return 0


def main(argv=None):
    """
    Main execution function.
    """
    sys.exit(asyncio.run(run(parse_args(argv))))


if __name__ == "__main__":
    main()
