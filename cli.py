# Command line entry point for Pool Ledger
import asyncio
import click

from app.main import ApplicationOrchestrator
from core.utils.exceptions import PoolLedgerException


def _run(coro_factory, startup: bool = True):
    """Run one command inside the orchestrator's startup / shutdown."""

    async def runner():
        orchestrator = ApplicationOrchestrator()
        try:
            if startup:
                await orchestrator.startup()
            return await coro_factory(orchestrator.container)
        finally:
            if startup:
                await orchestrator.shutdown()
            else:
                await orchestrator.container.price_feed().close()

    try:
        return asyncio.run(runner())
    except PoolLedgerException as e:
        raise click.ClickException(e.message) from e


def _format_quote(quote) -> str:
    flag = "  (fallback)" if quote.degraded else ""
    return f"{quote.symbol:<8} {quote.price:>20} {quote.source.value:<8}{flag}"


@click.group()
def cli():
    """Pool Ledger CLI"""
    pass


@cli.command()
@click.option("--host", default=None, help="Bind address (defaults to API__HOST)")
@click.option("--port", default=None, type=int, help="Port (defaults to API__PORT)")
def api(host, port):
    """Run the API server"""
    click.echo("🚀 Starting Pool Ledger API server...")
    from api.main import run as run_api
    run_api(host=host, port=port)


@cli.command("init-db")
def init_db():
    """Create the ledger tables in the configured database"""

    async def command(container):
        db_manager = container.db_manager()
        try:
            await db_manager.wait_for_ready(timeout=30)
            await db_manager.init()
        finally:
            await db_manager.shutdown()

    _run(command, startup=False)
    click.echo("✅ Database tables created")


@cli.command("seed-portfolios")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
def seed_portfolios_command(path):
    """Load model portfolios from a YAML catalog; existing portfolios are kept"""
    from services.portfolio_ledger.catalog import load_portfolio_catalog, seed_portfolios

    async def command(container):
        return await seed_portfolios(container.ledger_store(), load_portfolio_catalog(path))

    added = _run(command)
    click.echo(f"🌱 Added {added} portfolio(s)")


@cli.command()
def rebalance():
    """Evaluate all active portfolios once and rebalance the ones that need it"""

    async def command(container):
        return await container.rebalance_scheduler().run_all()

    summary = _run(command)
    click.echo(f"Evaluated {summary.evaluated} portfolio(s), rebalanced {summary.rebalanced_count}")
    for event in summary.events:
        click.echo(f"  {event.portfolio_id}: {event.reason.value}, {len(event.trades)} trade(s)")
    for failure in summary.errors:
        click.echo(f"  ❌ {failure.portfolio_id or '*'}: {failure.error_type}: {failure.message}", err=True)
    if not summary.success:
        raise SystemExit(1)


@cli.command()
@click.argument("symbols", nargs=-1, required=True)
def prices(symbols):
    """Fetch current prices for SYMBOLS"""

    async def command(container):
        return await container.price_feed().fetch_many(symbols)

    quotes = _run(command, startup=False)
    for quote in quotes.values():
        click.echo(_format_quote(quote))


@cli.command()
@click.argument("symbols", nargs=-1, required=True)
@click.option("--interval-ms", default=None, type=int, help="Polling interval (defaults to PRICE_FEED__SUBSCRIPTION_INTERVAL_MS)")
def watch(symbols, interval_ms):
    """Stream prices for SYMBOLS until interrupted"""

    def on_update(quotes):
        for quote in quotes.values():
            click.echo(_format_quote(quote))
        click.echo("")

    async def command(container):
        subscription = container.price_feed().subscribe(symbols, interval_ms, on_update)
        try:
            await subscription.wait_closed()
        finally:
            subscription.cancel()

    try:
        _run(command, startup=False)
    except KeyboardInterrupt:
        click.echo("Stopped")


if __name__ == "__main__":
    cli()
