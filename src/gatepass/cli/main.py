"""gatepass CLI - browser logins that survive CAPTCHAs and MFA.

Log accounts in, manage hCaptcha bypass cookies and inspect stored cookies.
"""

import asyncio
import json
import os
from collections.abc import Coroutine
from datetime import UTC, datetime
from typing import Annotated, Any, TypeVar

import requests
import typer
from rich.panel import Panel
from rich.table import Table

import gatepass
from gatepass.config import GatepassSettings, get_settings
from gatepass.console import err_console, error, out_console, success, warn
from gatepass.cookies import find_cookie
from gatepass.exceptions import GatepassError
from gatepass.hcaptcha import MARKER_COOKIE, BypassCookieCache, acquire_bypass_cookies
from gatepass.login import AccountLogin, LoginContext, LoginResult, login_all
from gatepass.logging import configure_logging, get_logger, suppress_asyncio_noise
from gatepass.repository import LocalCookieRepository

# Configure logging from env vars directly; get_settings() creates directories
# as a side effect. main_callback() may reconfigure for -v/-vv/--log-format.
configure_logging(
    level=os.environ.get("GATEPASS_LOG_LEVEL", "WARNING"),
    json_output=os.environ.get("GATEPASS_LOG_FORMAT", "console") == "json",
)

LOG = get_logger(__name__)

T = TypeVar("T")

app = typer.Typer(
    name="gatepass",
    help="""
    gatepass - browser logins that survive CAPTCHAs and MFA

    \b
    Quick start:
      gatepass login me@example.com   Log one configured account in
      gatepass login --all            Log every configured account in
      gatepass bypass refresh         Mint hCaptcha bypass cookies
      gatepass cookies list           Show stored cookie sets
      gatepass cookies header EMAIL   Cookie header for an HTTP client
      gatepass config                 Show current configuration
    """,
    no_args_is_help=True,
    rich_markup_mode="rich",
    context_settings={"help_option_names": ["-h", "--help"]},
)
bypass_app = typer.Typer(
    name="bypass",
    help="Manage cached hCaptcha accessibility cookies.",
    no_args_is_help=True,
)
cookies_app = typer.Typer(
    name="cookies",
    help="Inspect and remove stored login cookies.",
    no_args_is_help=True,
)
app.add_typer(bypass_app)
app.add_typer(cookies_app)


def _run(coro: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine to completion, exiting 1 on a gatepass error."""
    try:
        with suppress_asyncio_noise():
            return asyncio.run(coro)
    except GatepassError as exc:
        LOG.debug("command_failed", error=str(exc), exc_type=type(exc).__name__)
        error(str(exc))
        raise typer.Exit(1) from exc


def _repository(settings: GatepassSettings) -> LocalCookieRepository:
    return LocalCookieRepository(settings.cookies_dir, settings.config_dir)


def _format_expiry(expires: float | None) -> str:
    if expires is None or expires <= 0:
        return "session"
    return datetime.fromtimestamp(expires, tz=UTC).strftime("%Y-%m-%d %H:%M UTC")


def _print_result(result: LoginResult) -> None:
    detail = f"{result.cookie_count} cookie(s) stored, outcome: {result.outcome}"
    if result.mfa_used:
        detail += ", MFA answered"
    success(f"{result.email}: {detail}")
    if result.bypass.degraded:
        warn(f"{result.email}: logged in without bypass cookies ({result.bypass.reason})")


@app.callback(invoke_without_command=True)
def main_callback(
    verbose: Annotated[
        int,
        typer.Option(
            "--verbose",
            "-v",
            count=True,
            help="Increase verbosity (-v for info, -vv for debug)",
        ),
    ] = 0,
    log_format: Annotated[
        str | None,
        typer.Option(
            "--log-format",
            help="Log output format: console (human-readable) or json (structured)",
        ),
    ] = None,
) -> None:
    """gatepass - browser logins that survive CAPTCHAs and MFA."""
    settings = get_settings()
    json_output = (log_format or settings.log_format) == "json"

    if verbose >= 2:
        configure_logging(level="DEBUG", json_output=json_output)
    elif verbose >= 1:
        configure_logging(level="INFO", json_output=json_output)
    elif log_format is not None:
        configure_logging(level=settings.log_level, json_output=json_output)


@app.command("version")
def version() -> None:
    """Show gatepass version."""
    out_console.print(f"gatepass v{gatepass.__version__}")


@app.command("login")
def login(
    email: Annotated[
        str | None,
        typer.Argument(help="Configured account to log in", metavar="EMAIL"),
    ] = None,
    all_accounts: Annotated[
        bool,
        typer.Option("--all", "-a", help="Log in every configured account"),
    ] = False,
) -> None:
    """Log an account in and store its cookies.

    CAPTCHAs are handed to a human through the browser portal; MFA prompts are
    answered from the account's TOTP secret.
    """
    settings = get_settings()

    if all_accounts:
        if email:
            error("Pass either EMAIL or --all, not both")
            raise typer.Exit(2)
        if not settings.accounts:
            error("No accounts configured (set GATEPASS_ACCOUNTS)")
            raise typer.Exit(1)
        results = _run(login_all(settings, repository=_repository(settings)))
        failed = 0
        for account_email, outcome in results.items():
            if isinstance(outcome, Exception):
                failed += 1
                error(f"{account_email}: {outcome}")
            else:
                _print_result(outcome)
        if failed:
            raise typer.Exit(1)
        return

    if not email:
        error("Pass an EMAIL or --all")
        raise typer.Exit(2)

    try:
        account = settings.account(email)
    except GatepassError as exc:
        error(str(exc))
        raise typer.Exit(1) from exc

    attempt = AccountLogin(
        LoginContext.from_account(account),
        settings,
        repository=_repository(settings),
    )
    _print_result(_run(attempt.login()))


@bypass_app.command("refresh")
def bypass_refresh(
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Ignore a fresh cache and mint new cookies"),
    ] = False,
) -> None:
    """Mint hCaptcha accessibility cookies (uses the cache when fresh)."""
    settings = get_settings()
    cache = BypassCookieCache(settings.bypass_cache_file)
    if force:
        cache.clear()

    result = _run(acquire_bypass_cookies(settings, cache=cache))
    if result.degraded:
        error(f"No bypass cookies: {result.reason}")
        raise typer.Exit(1)
    source = "cache" if result.from_cache else "accessibility page"
    success(f"{len(result.cookies)} bypass cookie(s) from {source}")


@bypass_app.command("show")
def bypass_show() -> None:
    """Show the cached bypass cookie set and whether it is still fresh."""
    settings = get_settings()
    cache = BypassCookieCache(settings.bypass_cache_file)
    if not cache.path.exists():
        err_console.print("[dim]No bypass cookies cached.[/dim]")
        return

    fresh = cache.load_cached()
    try:
        cookies = fresh if fresh is not None else json.loads(cache.path.read_text())
    except (OSError, ValueError) as exc:
        error(f"Bypass cache unreadable: {exc}")
        raise typer.Exit(1) from exc

    marker = find_cookie(cookies, MARKER_COOKIE) if isinstance(cookies, list) else None
    status = "[green]● fresh[/green]" if fresh is not None else "[red]○ stale[/red]"
    info = (
        f"[dim]File:[/dim]    {cache.path}\n"
        f"[dim]Status:[/dim]  {status}\n"
        f"[dim]Cookies:[/dim] {len(cookies) if isinstance(cookies, list) else 0}\n"
        f"[dim]Expires:[/dim] {_format_expiry(marker.get('expires') if marker else None)}"
    )
    out_console.print(Panel(info, title="hCaptcha Bypass Cookies", border_style="cyan"))


@bypass_app.command("clear")
def bypass_clear() -> None:
    """Delete the cached bypass cookies."""
    settings = get_settings()
    if BypassCookieCache(settings.bypass_cache_file).clear():
        success("Bypass cookie cache removed")
    else:
        err_console.print("[dim]No bypass cookies cached.[/dim]")


@cookies_app.command("list")
def cookies_list(
    json_output: Annotated[
        bool,
        typer.Option("--json", "-j", help="Output as JSON for scripting"),
    ] = False,
) -> None:
    """List identities that have stored cookies."""
    settings = get_settings()
    repository = _repository(settings)
    identities = repository.list_identities()

    if json_output:
        out_console.print_json(json.dumps(identities))
        return

    if not identities:
        err_console.print(
            Panel(
                "[dim]No cookies stored yet.[/dim]\n\n"
                "Log an account in to store its cookies:\n"
                "[cyan]gatepass login <email>[/cyan]",
                title="No Cookies",
                border_style="yellow",
            )
        )
        return

    table = Table(
        title="Stored Cookies",
        title_style="bold",
        header_style="bold cyan",
        border_style="dim",
    )
    table.add_column("Identity", style="cyan", no_wrap=True)
    table.add_column("Cookies", justify="right", style="dim")
    for identity in identities:
        try:
            count = str(len(repository.get_cookies(identity)))
        except GatepassError:
            count = "[red]unreadable[/red]"
        table.add_row(identity, count)
    out_console.print(table)


@cookies_app.command("show")
def cookies_show(
    email: Annotated[str, typer.Argument(help="Identity to show", metavar="EMAIL")],
    json_output: Annotated[
        bool,
        typer.Option("--json", "-j", help="Output cookie records as JSON"),
    ] = False,
) -> None:
    """Show the cookies stored for an identity."""
    settings = get_settings()
    try:
        cookies = _repository(settings).get_cookies(email)
    except GatepassError as exc:
        error(str(exc))
        raise typer.Exit(1) from exc

    if not cookies:
        error(f"No cookies stored for {email}")
        raise typer.Exit(1)

    if json_output:
        out_console.print_json(json.dumps(cookies))
        return

    table = Table(
        title=f"Cookies for {email}",
        title_style="bold",
        header_style="bold cyan",
        border_style="dim",
    )
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Domain", style="white")
    table.add_column("Path", style="dim")
    table.add_column("Expires", style="dim")
    for cookie in cookies:
        table.add_row(
            cookie["name"],
            cookie.get("domain", ""),
            cookie.get("path", "/"),
            _format_expiry(cookie.get("expires")),
        )
    out_console.print(table)


@cookies_app.command("header")
def cookies_header(
    email: Annotated[str, typer.Argument(help="Identity to use", metavar="EMAIL")],
    url: Annotated[
        str | None,
        typer.Option("--url", "-u", help="Request URL (defaults to the login URL)"),
    ] = None,
) -> None:
    """Print the Cookie header a request to URL would carry for an identity.

    Useful for replaying a browser login from curl or another HTTP client.
    """
    settings = get_settings()
    target = url or settings.login_url
    try:
        jar = _repository(settings).cookiejar_for(email)
    except GatepassError as exc:
        error(str(exc))
        raise typer.Exit(1) from exc

    header = requests.cookies.get_cookie_header(jar, requests.Request("GET", target).prepare())
    if not header:
        error(f"No stored cookies for {email} apply to {target}")
        raise typer.Exit(1)
    out_console.print(f"Cookie: {header}", markup=False, highlight=False, soft_wrap=True)


@cookies_app.command("clear")
def cookies_clear(
    email: Annotated[str, typer.Argument(help="Identity to clear", metavar="EMAIL")],
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Skip confirmation prompt"),
    ] = False,
) -> None:
    """Remove the cookies stored for an identity."""
    settings = get_settings()
    if not force and not typer.confirm(f"Remove stored cookies for '{email}'?"):
        err_console.print("[dim]Cancelled[/dim]")
        return
    if _repository(settings).delete(email):
        success(f"Removed cookies for {email}")
    else:
        err_console.print(f"[dim]No cookies stored for {email}[/dim]")


@app.command("config")
def config() -> None:
    """Show current gatepass configuration."""
    settings = get_settings()
    bypass = "[dim]not set[/dim]"
    if settings.hcaptcha_accessibility_url:
        bypass = "[green]configured[/green]"
    webhook = settings.notification_webhook_url or "[dim]not set[/dim]"

    info = f"""
[dim]Config directory:[/dim]   {settings.config_dir}
[dim]Cookies directory:[/dim]  {settings.cookies_dir}
[dim]Bypass cache:[/dim]       {settings.bypass_cache_file}
[dim]Bypass link:[/dim]        {bypass}
[dim]Login URL:[/dim]          {settings.login_url}
[dim]Headless:[/dim]           {settings.headless}
[dim]Portal base URL:[/dim]    {settings.portal_base_url or "[dim]DevTools port[/dim]"}
[dim]Webhook:[/dim]            {webhook}
[dim]Accounts:[/dim]           {len(settings.accounts)}
[dim]Log level:[/dim]          {settings.log_level}
[dim]Log format:[/dim]         {settings.log_format}"""

    out_console.print(Panel(info.strip(), title="⚙ Configuration", border_style="cyan"))


if __name__ == "__main__":
    app()
