"""Live run: short perp + long spot funding harvest on Hyperliquid.

Credentials come from the environment (or ``.env``):
    HL_PRIVATE_KEY   agent / API wallet private key
    HL_MAIN_ADDRESS  main account address

    python examples/run_live.py            # testnet
    python examples/run_live.py --mainnet

Ctrl+C / SIGTERM lets an in-flight cycle finish before stopping.
"""

import argparse
import asyncio
import logging
import signal

from funding_hedge import (
    ExecutionService,
    FundingHedgeConfig,
    FundingHedgeOrchestrator,
    HedgeMonitor,
    RiskService,
    StateStore,
    WebhookNotifier,
)
from funding_hedge.hyperliquid_client import HyperliquidConnector

logger = logging.getLogger("run_live")


def build_config(mainnet: bool) -> FundingHedgeConfig:
    config = FundingHedgeConfig(
        symbols=["BTC", "ETH", "SOL", "HYPE", "PURR"],
        min_order_usd={"BTC": 15.0, "ETH": 15.0},
        default_min_order_usd=12.0,
        balance_utilization=0.9,
        max_position_usd=200.0,
        min_hold_hours=24,
        improvement_multiple=2.0,
        min_funding_annualized_pct=5.0,
        testnet=not mainnet,
    )
    config.validate()
    return config


async def main(mainnet: bool) -> None:
    config = build_config(mainnet)
    connector = HyperliquidConnector(config)
    execution = ExecutionService(connector, config)
    orchestrator = FundingHedgeOrchestrator(
        config=config,
        connector=connector,
        execution=execution,
        hedge_monitor=HedgeMonitor(connector, execution, config),
        store=StateStore(config.state_path),
        risk=RiskService(config),
        notifier=WebhookNotifier(config.alert_webhook_url),
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    logger.info(
        "starting [%s] symbols=%s check=%smin status=%ss",
        "MAINNET" if mainnet else "TESTNET",
        config.symbols,
        config.check_interval_minutes,
        config.status_interval_seconds,
    )
    await orchestrator.run(stop_event)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--mainnet", action="store_true", help="trade on mainnet (default: testnet)")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    asyncio.run(main(args.mainnet))
