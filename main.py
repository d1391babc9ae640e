# main.py
import argparse
import asyncio
import sys

import questionary
from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from spreadbot.config import load_config
from spreadbot.detector import OpportunityDetector
from spreadbot.exceptions import ConfigError
from spreadbot.execution import ExecutionService
from spreadbot.logger import AsyncAuditLogger, setup_console_logger
from spreadbot.market_engine import MarketEngine
from spreadbot.rest_client import BinanceRestClient
from spreadbot.retry_policy import RetryPolicy
from spreadbot.risk_engine import RiskEngine
from spreadbot.session import MarketSession
from spreadbot.strategy import StrategyEngine
from spreadbot.websocket_engine import WebSocketEngine

# --- UI HELPER FUNCTIONS ---

def confirm_live(config) -> bool:
    """Asks before any real order can be posted."""
    strategy = config['strategy']
    print("\n🚀 SPREADBOT\n")
    return bool(questionary.confirm(
        f"Start LIVE {strategy['mode']} trading on {config['venue']['name']} "
        f"({', '.join(strategy['symbols'])}, ${strategy['trade_notional']} per cycle)?",
        default=False,
    ).ask())


def generate_dashboard(session, strategy, execution, risk):
    """
    Rich layout: live quotes on the left, engine state on the right.
    """
    price_table = Table(title="📡 Live Market Feed")
    price_table.add_column("Symbol", style="cyan")
    price_table.add_column("Bid", justify="right", style="green")
    price_table.add_column("Ask", justify="right", style="red")
    price_table.add_column("Age (s)", justify="right")
    for symbol, q in session.quotes.snapshot().items():
        price_table.add_row(symbol, f"{q.bid_price:,.2f} ({q.bid_qty:g})", f"{q.ask_price:,.2f} ({q.ask_qty:g})", f"{q.age:.1f}")

    state_table = Table(title="⚙️ Engine")
    state_table.add_column("Key", style="cyan")
    state_table.add_column("Value", justify="right")
    cycle = execution.current
    state_table.add_row("Lock", "[red]ACTIVE[/red]" if session.lock.active else "[green]FREE[/green]")
    state_table.add_row("Cycle", f"{cycle.id} {cycle.state.value}" if cycle else "-")
    state_table.add_row("Ticks / Dropped", f"{strategy.ticks} / {strategy.dropped_ticks}")
    state_table.add_row("Opportunities", str(strategy.opportunities))
    state_table.add_row("Cycles", str(risk.cycles))

    layout = Layout()
    layout.split_column(Layout(name="top"), Layout(name="bottom"))
    layout["top"].split_row(Layout(Panel(price_table)), Layout(Panel(state_table)))

    footer_style = "white on red" if risk.kill_switch else "white on blue"
    layout["bottom"].update(Panel(f"[bold]{risk.halt_reason or risk.last_status}[/bold]", style=footer_style))
    layout["bottom"].size = 3
    return layout

# --- MAIN CONTROLLER ---

class SpreadBot:
    def __init__(self, config: dict):
        self.config = config
        self.logger = setup_console_logger("SpreadBot", config['system']['log_level'])
        self.audit_log = AsyncAuditLogger(config['audit']['trade_log'])

        self.session = MarketSession()
        self.session.lock.logger = self.logger
        self.risk = RiskEngine(config, self.logger)
        self.detector = OpportunityDetector(config)
        self.rest_engine = MarketEngine(config, self.logger)

        venue = config['venue']
        self.client = BinanceRestClient(config, venue['api_key'], venue['api_secret'], self.logger)
        self.policy = RetryPolicy(config, self.logger)
        self.executor = ExecutionService(self.client, self.session, self.policy, self.logger, config,
                                         risk=self.risk, audit_logger=self.audit_log)
        self.strategy = StrategyEngine(config, self.session, self.detector, self.risk, self.executor, self.logger)
        self.ws_engine = WebSocketEngine(config, self.strategy.on_ticker_update, self.logger)

    async def run(self) -> int:
        try:
            print("Initializing Diagnostic Checks...")
            await self.audit_log.start()
            if not self.config['system']['dry_run']:
                if not await self.rest_engine.initialize():
                    print("❌ Diagnostic Failed. Check API Keys.")
                    return 1
                venue_min = self.rest_engine.venue_min_notional()
                if venue_min is not None and self.config['venue'].get('load_filters', True):
                    self.detector.set_min_notional(venue_min)
                    self.executor.min_notional = venue_min
                await self.client.start()

            await self.ws_engine.start()

            if self.config['system'].get('dashboard', True):
                with Live(console=Console(), refresh_per_second=4) as live:
                    while not self.strategy.halted.is_set():
                        live.update(generate_dashboard(self.session, self.strategy, self.executor, self.risk))
                        await asyncio.sleep(0.25)
            else:
                await self.strategy.halted.wait()

            print(f"⛔ HALTED: {self.risk.halt_reason}")
            return 2
        finally:
            print("Shutting down resources...")
            await self.ws_engine.shutdown()
            await self.strategy.shutdown()
            await self.client.close()
            await self.rest_engine.shutdown()
            await self.audit_log.stop()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Spread / momentum trading bot")
    parser.add_argument("--config", default="config.yaml")
    parser.add_argument("--dry-run", action="store_true", help="detect and log opportunities without trading")
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"❌ Config error: {e}")
        return 1
    if args.dry_run:
        config['system']['dry_run'] = True

    if not config['system']['dry_run'] and config['system'].get('confirm_live', True):
        if not confirm_live(config):
            print("Aborted.")
            return 0

    try:
        return asyncio.run(SpreadBot(config).run())
    except KeyboardInterrupt:
        print("\n🛑 Bot Stopped by User.")
        return 0


if __name__ == "__main__":
    sys.exit(main())
