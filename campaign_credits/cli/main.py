"""
CLI interface for Campaign Credits.

Provides command-line access to the credit ledger and campaign generation.
"""

import logging
import sys
from dataclasses import asdict, replace
from typing import Any, Dict, Optional, Tuple

import typer
import yaml
from rich.console import Console
from rich.table import Table

from campaign_credits.config.loader import AppConfig, load_app_config
from campaign_credits.core.ledger import CreditLedger, LedgerStoreError
from campaign_credits.core.orchestrator import (
    GenerationOrchestrator,
    GenerationRun,
    RunPolicy,
    RunStatus,
)
from campaign_credits.core.pricing import CostEstimate
from campaign_credits.core.tasks import GenerationRequest, Product, TaskKind, TaskStatus
from campaign_credits.sdk.factory import ProviderRegistry
from campaign_credits.storage.campaigns import CampaignUnavailableError, FileCampaignStore
from campaign_credits.storage.models import TransactionFilter, TransactionKind
from campaign_credits.storage.repository import get_repository, initialize_schema

app = typer.Typer()
console = Console()

# Exit codes - a run that finished with some failed fields is non-failing (0)
EXIT_CODE_PASS = 0
EXIT_CODE_WARN = 0  # Non-failing warning
EXIT_CODE_FAIL = 1  # Failing error

_STATUS_STYLES = {
    TaskStatus.SUCCEEDED: "green",
    TaskStatus.REFUNDED: "yellow",
    TaskStatus.FAILED: "red",
    TaskStatus.PLANNED: "dim",
    TaskStatus.RESERVED: "magenta",
}


def _status_to_exit_code(status: RunStatus) -> int:
    """Convert run status to CLI exit code."""
    return {
        RunStatus.COMPLETED: EXIT_CODE_PASS,
        RunStatus.COMPLETED_WITH_ERRORS: EXIT_CODE_WARN,
        RunStatus.ABORTED: EXIT_CODE_FAIL,
        RunStatus.RUNNING: EXIT_CODE_FAIL,
    }[status]


def _config(ctx: typer.Context) -> AppConfig:
    return ctx.obj["config"]


def _open_ledger(config: AppConfig) -> CreditLedger:
    initialize_schema(config.ledger.db_path)
    return CreditLedger(get_repository(config.ledger.db_path))


def _account(config: AppConfig, account: Optional[str]) -> str:
    return account or config.ledger.account_id


def _load_products(path: str) -> Tuple[Product, ...]:
    """Read products from a YAML or JSON list of mappings."""
    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f)
    if not isinstance(data, list) or not data:
        raise ValueError(f"Products file {path} must contain a non-empty list")
    return tuple(Product.from_dict(item) for item in data)


def _build_request(
    config: AppConfig,
    campaign_ref: str,
    account_id: str,
    products: Tuple[Product, ...],
    **options: Any
) -> GenerationRequest:
    generation = config.generation
    defaults = dict(
        tone=generation.tone,
        language=generation.language,
        image_style=generation.image_style,
        store_context=generation.store_context,
        product_context=generation.product_context,
        currency=generation.currency,
        currency_symbol=generation.currency_symbol,
        text_provider=generation.text_provider,
        text_model=generation.text_model,
        image_provider=generation.image_provider,
        image_model=generation.image_model,
    )
    defaults.update({key: value for key, value in options.items() if value is not None})
    return GenerationRequest(
        campaign_ref=campaign_ref,
        account_id=account_id,
        products=products,
        **defaults
    )


def _request_settings(request: GenerationRequest) -> Dict[str, Any]:
    settings = asdict(request)
    settings.pop("account_id")
    return settings


def _request_from_settings(settings: Dict[str, Any], account_id: str) -> GenerationRequest:
    values = dict(settings)
    values["products"] = tuple(Product.from_dict(p) for p in values.get("products", []))
    values["account_id"] = account_id
    return GenerationRequest(**values)


def _orchestrator(
    config: AppConfig,
    ledger: CreditLedger,
    campaigns: Optional[FileCampaignStore],
    policy: Optional[RunPolicy] = None,
) -> GenerationOrchestrator:
    registry = ProviderRegistry(config.providers)
    return GenerationOrchestrator(
        ledger,
        registry.adapter_for,
        cost_table=config.costs,
        policy=policy or config.generation.policy,
        campaigns=campaigns,
    )


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML configuration file"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging"
    )
):
    """Campaign Credits CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        ctx.obj = {"config": load_app_config(config_path)}
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Configuration error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if ctx.invoked_subcommand is None:
        console.print("Campaign Credits - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the credit ledger database."""
    config = _config(ctx)
    try:
        initialize_schema(config.ledger.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except LedgerStoreError as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def balance(
    ctx: typer.Context,
    account: Optional[str] = typer.Option(None, "--account", "-a", help="Account to inspect")
):
    """Show the current credit balance."""
    config = _config(ctx)
    account_id = _account(config, account)
    try:
        credits = _open_ledger(config).get_balance(account_id)
    except LedgerStoreError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[bold]{account_id}[/bold]: {credits:,} credits")
    sys.exit(EXIT_CODE_PASS)


@app.command("top-up")
def top_up(
    ctx: typer.Context,
    amount: int = typer.Argument(..., help="Credits to add"),
    account: Optional[str] = typer.Option(None, "--account", "-a", help="Account to credit"),
    description: str = typer.Option("", "--description", "-d", help="Transaction description"),
    payment_ref: Optional[str] = typer.Option(None, "--payment-ref", help="Payment reference")
):
    """Add purchased credits to an account."""
    config = _config(ctx)
    account_id = _account(config, account)
    try:
        new_balance = _open_ledger(config).top_up(
            account_id,
            amount,
            description or f"Credit top-up: {amount} credits",
            payment_ref
        )
    except (LedgerStoreError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Added {amount:,} credits. New balance: {new_balance:,}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def history(
    ctx: typer.Context,
    account: Optional[str] = typer.Option(None, "--account", "-a", help="Account to inspect"),
    kind: Optional[str] = typer.Option(None, "--kind", "-k", help="Filter by topup, usage or refund"),
    page: int = typer.Option(1, "--page", "-p", help="Page number"),
    per_page: int = typer.Option(20, "--per-page", help="Transactions per page")
):
    """List the account's credit transactions, newest first."""
    config = _config(ctx)
    account_id = _account(config, account)
    try:
        filters = TransactionFilter(kind=TransactionKind(kind)) if kind else None
        result = _open_ledger(config).history(account_id, filters=filters, page=page, per_page=per_page)
    except (LedgerStoreError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not result.items:
        console.print("\n[dim]No transactions found.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Transactions for {account_id}")
    table.add_column("Date")
    table.add_column("Type")
    table.add_column("Amount", justify="right")
    table.add_column("Balance", justify="right")
    table.add_column("Description")
    for transaction in result.items:
        sign = "+" if transaction.amount > 0 else ""
        table.add_row(
            transaction.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            transaction.kind.value,
            f"{sign}{transaction.amount:,}",
            f"{transaction.balance_after:,}",
            transaction.description,
        )
    console.print(table)
    console.print(f"Page {result.page} of {result.total_pages} ({result.total} transactions)")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def estimate(
    ctx: typer.Context,
    products_file: str = typer.Option(..., "--products", help="YAML/JSON file listing products"),
    images: bool = typer.Option(False, "--images", help="Include a main image"),
    product_images: bool = typer.Option(True, "--product-images/--no-product-images", help="Include product images"),
    coupon: bool = typer.Option(False, "--coupon", help="Include a coupon suggestion"),
    account: Optional[str] = typer.Option(None, "--account", "-a", help="Account to check")
):
    """Estimate the credits a full campaign generation would use."""
    config = _config(ctx)
    try:
        request = _build_request(
            config,
            "estimate",
            _account(config, account),
            _load_products(products_file),
            generate_images=images,
            generate_product_images=product_images,
            generate_coupon=coupon,
        )
        ledger = _open_ledger(config)
        result = _orchestrator(config, ledger, None).estimate(request)
    except (LedgerStoreError, ValueError, OSError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_estimate(result)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def generate(
    ctx: typer.Context,
    campaign_ref: str = typer.Argument(..., help="Campaign identifier"),
    products_file: str = typer.Option(..., "--products", help="YAML/JSON file listing products"),
    theme: str = typer.Option("", "--theme", "-t", help="Campaign theme or occasion"),
    brief: str = typer.Option("", "--brief", help="Free-form campaign brief"),
    tone: Optional[str] = typer.Option(None, "--tone", help="Copy tone"),
    language: Optional[str] = typer.Option(None, "--language", help="Copy language"),
    image_style: Optional[str] = typer.Option(None, "--image-style", help="Image style"),
    images: bool = typer.Option(False, "--images", help="Generate a main image"),
    product_images: bool = typer.Option(True, "--product-images/--no-product-images", help="Generate product images"),
    coupon: bool = typer.Option(False, "--coupon", help="Suggest a coupon"),
    halt_on_insufficient: bool = typer.Option(
        False,
        "--halt-on-insufficient",
        help="Stop at the first task the balance cannot cover"
    ),
    account: Optional[str] = typer.Option(None, "--account", "-a", help="Account to charge")
):
    """
    Generate every field of a campaign.

    Each field is charged when it starts and refunded if its provider call
    fails. Fields that succeed are kept even when others fail.
    """
    config = _config(ctx)
    policy = RunPolicy.HALT_ON_INSUFFICIENT_CREDITS if halt_on_insufficient else None
    try:
        request = _build_request(
            config,
            campaign_ref,
            _account(config, account),
            _load_products(products_file),
            theme=theme,
            campaign_brief=brief,
            tone=tone,
            language=language,
            image_style=image_style,
            generate_images=images,
            generate_product_images=product_images,
            generate_coupon=coupon,
        )
        ledger = _open_ledger(config)
        campaigns = FileCampaignStore(config.generation.campaigns_dir)
        campaigns.create(campaign_ref, _request_settings(request))
        run = _orchestrator(config, ledger, campaigns, policy).run(request)
    except (CampaignUnavailableError, LedgerStoreError, ValueError, OSError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_run(run, ledger)
    sys.exit(_status_to_exit_code(run.status))


@app.command()
def regenerate(
    ctx: typer.Context,
    campaign_ref: str = typer.Argument(..., help="Campaign identifier"),
    field_name: str = typer.Argument(..., metavar="FIELD", help="Field to regenerate (e.g. subject_line)"),
    product_index: Optional[int] = typer.Option(
        None,
        "--product-index",
        "-i",
        help="Zero-based product position for product fields"
    ),
    account: Optional[str] = typer.Option(None, "--account", "-a", help="Account to charge")
):
    """Regenerate a single field of an existing campaign."""
    config = _config(ctx)
    try:
        kind = TaskKind(field_name)
    except ValueError:
        valid_fields = [kind.value for kind in TaskKind]
        console.print(f"[red]Error:[/] FIELD must be one of: {valid_fields}")
        sys.exit(EXIT_CODE_FAIL)

    try:
        campaigns = FileCampaignStore(config.generation.campaigns_dir)
        document = campaigns.load(campaign_ref)
        request = _request_from_settings(document["settings"], _account(config, account))
        subject = document["fields"].get(TaskKind.SUBJECT_LINE.value)
        if isinstance(subject, dict):
            request = replace(request, subject_line=subject.get(TaskKind.SUBJECT_LINE.value, ""))
        ledger = _open_ledger(config)
        run = _orchestrator(config, ledger, campaigns).regenerate(request, kind, product_index)
    except (CampaignUnavailableError, LedgerStoreError, ValueError, TypeError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_run(run, ledger)
    sys.exit(EXIT_CODE_FAIL if run.status is not RunStatus.COMPLETED else EXIT_CODE_PASS)


@app.command()
def reconcile(
    ctx: typer.Context,
    account: Optional[str] = typer.Option(None, "--account", "-a", help="Account to check")
):
    """Check that the balance equals the sum of the transaction log."""
    config = _config(ctx)
    account_id = _account(config, account)
    try:
        credits, ledger_sum = _open_ledger(config).reconcile(account_id)
    except LedgerStoreError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if credits != ledger_sum:
        console.print(
            f"[bold red]Mismatch[/] for {account_id}: balance {credits:,}, "
            f"transaction sum {ledger_sum:,}"
        )
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] {account_id} reconciles: {credits:,} credits")
    sys.exit(EXIT_CODE_PASS)


def _display_estimate(result: CostEstimate):
    """Display a cost estimate."""
    console.print("\n[bold]Campaign Cost Estimate[/bold]")
    console.print("-" * 40)
    console.print(f"Copy:    {result.copy_credits:,} credits")
    console.print(f"Images:  {result.image_credits:,} credits")
    console.print(f"Total:   {result.total_credits:,} credits")
    console.print(f"Balance: {result.current_balance:,} credits")
    if result.can_afford:
        console.print("[green]Balance covers this campaign[/]")
    else:
        shortfall = result.total_credits - result.current_balance
        console.print(f"[yellow]Balance is {shortfall:,} credits short[/]")


def _display_run(run: GenerationRun, ledger: CreditLedger):
    """Display the per-task outcome of a run."""
    table = Table(title=f"Campaign {run.request.campaign_ref}")
    table.add_column("Field")
    table.add_column("Status")
    table.add_column("Credits", justify="right")
    table.add_column("Detail")
    for entry in run.report():
        style = _STATUS_STYLES[entry.status]
        label = "skipped" if entry.skipped else entry.status.value
        table.add_row(entry.key, f"[{style}]{label}[/]", str(entry.cost_credits), entry.error or "")
    console.print(table)

    try:
        balance_text = f"{ledger.get_balance(run.request.account_id):,}"
    except LedgerStoreError:
        balance_text = "unavailable"
    console.print(
        f"Run {run.status.value}: {run.credits_spent:,} credits spent, "
        f"{run.credits_refunded:,} refunded. Balance: {balance_text}"
    )
    if run.abort_reason:
        console.print(f"[bold red]Aborted:[/] {run.abort_reason}")


if __name__ == "__main__":
    app()
