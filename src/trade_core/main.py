"""CLI 入口模块 - Trade Core 命令行接口。"""

import asyncio
import importlib
import sys
from collections import Counter
from pathlib import Path

import click

from trade_core import ConfigurationError, __version__
from trade_core.config import Settings, get_settings
from trade_core.data.feed import iter_observations, load_feed_frame
from trade_core.exec.connector import PaperConnector, VenueConnector
from trade_core.journal.state import StateStore
from trade_core.journal.store import JournalStore
from trade_core.pipeline import TradingCoordinator
from trade_core.risk.ledger import RiskLedger
from trade_core.utils.logging import get_logger, setup_logging


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="显示版本号")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """Trade Core - 交易决策核心。

    观测数据 → 预检 → 预测聚合 → 优化 → 校验 → 仓位计算 → 执行监控
    """
    if version:
        click.echo(f"trade-core version {__version__}")
        return

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


def load_connector(path: str, settings: Settings) -> VenueConnector:
    """Import a `module:factory` path and build the connector from settings."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"venue_connector must look like 'module:factory', got {path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(f"cannot import venue connector module {module_name!r}: {exc}") from exc
    factory = getattr(module, attr, None)
    if factory is None or not callable(factory):
        raise ConfigurationError(f"{path!r} is not a callable connector factory")
    return factory(settings)


def build_connector(settings: Settings) -> VenueConnector:
    """Paper connector in paper mode; the configured connector in live mode."""
    if settings.is_paper_mode:
        return PaperConnector.from_settings(settings)
    missing = settings.validate_for_live()
    if "VENUE_CONNECTOR" in missing:
        raise ConfigurationError("live mode requires VENUE_CONNECTOR")
    return load_connector(settings.venue_connector, settings)


async def _run_feed(
    settings: Settings,
    connector: VenueConnector,
    path: Path,
    *,
    interval_sec: float,
    restamp: bool,
) -> tuple[Counter[str], dict[str, object]]:
    frame = load_feed_frame(path)
    statuses: Counter[str] = Counter()
    journal = JournalStore(settings.journal_dir)
    journal.prune(settings.journal_retention_days)
    coordinator = TradingCoordinator(
        settings,
        connector,
        journal=journal,
        state_store=StateStore(settings.state_file),
    )
    async with coordinator:
        for observation in iter_observations(frame, restamp=restamp):
            if isinstance(connector, PaperConnector):
                connector.mark_to_market(observation)
            result = await coordinator.evaluate(observation)
            statuses[result.status] += 1
            if interval_sec > 0:
                await asyncio.sleep(interval_sec)
        report = await coordinator.review_performance()
    if isinstance(connector, PaperConnector):
        await connector.close()
    return statuses, report


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--interval-sec",
    "-i",
    type=float,
    default=0.0,
    help="两条观测之间的等待时间（秒）",
)
@click.option(
    "--file-timestamps",
    is_flag=True,
    default=False,
    help="使用文件中的时间戳，而不是回放时的当前时间",
)
def feed(path: Path, interval_sec: float, file_timestamps: bool) -> None:
    """逐条回放观测文件（CSV 或 JSONL）。

    使用 Ctrl+C 停止。
    """
    settings = get_settings()
    setup_logging(settings)
    logger = get_logger("trade_core.main")

    # 确保目录存在
    settings.ensure_directories()

    logger.info(
        "starting_feed",
        mode=settings.mode.value,
        path=str(path),
        interval_sec=interval_sec,
    )

    try:
        connector = build_connector(settings)
    except ConfigurationError as exc:
        logger.error(
            "missing_required_config",
            error=str(exc),
            missing_keys=settings.validate_for_live(),
            hint="请在 .env 文件中配置 VENUE_CONNECTOR",
        )
        sys.exit(1)

    try:
        statuses, report = asyncio.run(
            _run_feed(
                settings,
                connector,
                path,
                interval_sec=interval_sec,
                restamp=not file_timestamps,
            )
        )
    except KeyboardInterrupt:
        logger.info("feed_interrupted", message="User stopped feed")
        sys.exit(0)
    except ValueError as exc:
        logger.error("feed_invalid", error=str(exc))
        sys.exit(1)

    click.echo(f"Observations: {sum(statuses.values())}")
    for status_name, count in sorted(statuses.items()):
        click.echo(f"   {status_name}: {count}")
    click.echo(f"Milestone: {report['milestone']}")
    click.echo(f"Confidence threshold: {report['confidence_threshold']:.2f}")


@cli.command()
def status() -> None:
    """显示配置摘要和持久化的风控状态。"""
    settings = get_settings()
    setup_logging(settings)
    snapshot = StateStore(settings.state_file).load()

    click.echo("=" * 50)
    click.echo("Trade Core - Status")
    click.echo("=" * 50)
    click.echo()

    # 运行模式
    mode_marker = "[PAPER]" if settings.is_paper_mode else "[LIVE]"
    mode_text = "Paper Trading" if settings.is_paper_mode else "Live Trading"
    click.echo(f"{mode_marker} Mode: {mode_text}")
    click.echo(f"   Instrument: {settings.instrument}")
    click.echo()

    # 预测服务
    click.echo("[Prediction Providers]")
    click.echo(f"   HTTP endpoints: {len(settings.prediction_endpoints)}")
    click.echo(f"   Indicator heuristic: {'on' if settings.heuristic_provider_enabled else 'off'}")
    click.echo()

    # 风控参数
    click.echo("[Risk Limits]")
    click.echo(f"   Max daily loss: {settings.max_daily_loss}")
    click.echo(f"   Max daily trades: {settings.max_daily_trades}")
    click.echo(f"   Max consecutive losses: {settings.max_consecutive_losses}")
    click.echo(f"   Risk per trade: {settings.risk_per_trade_pct}%")
    click.echo()

    # 持久化状态
    click.echo("[Persisted State]")
    if snapshot is None:
        click.echo("   No snapshot found")
    else:
        risk = snapshot.get("risk", {})
        confidence = snapshot.get("confidence", {})
        click.echo(f"   Session date: {snapshot.get('session_date')}")
        click.echo(f"   Daily PnL: {risk.get('daily_pnl', 0.0):.2f}")
        click.echo(f"   Daily trades: {risk.get('daily_trade_count', 0)}")
        click.echo(f"   Consecutive losses: {risk.get('consecutive_losses', 0)}")
        click.echo(f"   Confidence threshold: {confidence.get('current', settings.confidence_base):.2f}")
        click.echo(f"   Recorded trades: {len(snapshot.get('performance', []))}")

    recent = JournalStore(settings.journal_dir).load_recent(5, event_types={"trade_completed"})
    if recent:
        click.echo()
        click.echo("[Recent Trades]")
        for record in recent:
            payload = record["payload"]
            click.echo(
                f"   {record['timestamp'][:19]} {payload.get('instrument')} "
                f"{payload.get('direction')} PnL {payload.get('realized_pnl', 0.0):.2f}"
            )
    click.echo()

    # 验证状态
    if settings.is_live_mode:
        missing = settings.validate_for_live()
        if missing:
            click.echo("[ERROR] Live mode configuration incomplete, missing:")
            for key in missing:
                click.echo(f"   - {key}")
        else:
            click.echo("[OK] Live mode configuration complete")
    else:
        click.echo("[INFO] Paper mode uses the built-in paper connector")

    click.echo()
    click.echo("=" * 50)


@cli.command()
def reset() -> None:
    """手动复位熔断器：清零持久化的当日计数。"""
    settings = get_settings()
    setup_logging(settings)
    logger = get_logger("trade_core.main")
    store = StateStore(settings.state_file)
    snapshot = store.load() or {}

    ledger = RiskLedger(settings)
    if isinstance(snapshot.get("risk"), dict):
        ledger.restore(snapshot["risk"])
    asyncio.run(ledger.reset_daily())

    snapshot.pop("schema_version", None)
    snapshot["risk"] = ledger.to_dict()
    snapshot["session_date"] = ledger.session_date.isoformat()
    store.save(snapshot)
    logger.info("circuit_breaker_reset", state_file=str(store.path))
    click.echo("[OK] Daily risk counters reset")


@cli.command()
def check() -> None:
    """检查系统依赖和配置。"""
    setup_logging()
    logger = get_logger("trade_core.main")

    click.echo("Checking system dependencies...")
    click.echo()

    all_ok = True

    # 检查必要的包
    packages = [
        ("pydantic", "Configuration validation"),
        ("pydantic_settings", "Settings loading"),
        ("httpx", "HTTP client"),
        ("pandas", "Data processing"),
        ("structlog", "Structured logging"),
        ("click", "CLI framework"),
        ("tenacity", "Retry mechanism"),
    ]

    for pkg_name, desc in packages:
        try:
            importlib.import_module(pkg_name)
            click.echo(f"  [OK] {pkg_name} - {desc}")
        except ImportError:
            click.echo(f"  [MISSING] {pkg_name} - {desc}")
            all_ok = False

    click.echo()

    env_file = Path(".env")
    if env_file.exists():
        click.echo("  [OK] .env configuration file exists")
    else:
        click.echo("  [WARN] .env file not found (using defaults)")

    click.echo()

    if all_ok:
        click.echo("[OK] All dependency checks passed")
    else:
        click.echo("[ERROR] Some dependencies missing. Run: pip install -e .")

    logger.info("dependency_check_completed", all_ok=all_ok)


# 支持 python -m trade_core.main 调用
if __name__ == "__main__":
    cli()
