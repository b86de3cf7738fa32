"""
SurfAI CLI - Command-line interface for smart browser sessions.
"""

import logging
import os
import time

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

console = Console()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _build_config(headless: bool, report_dir, **overrides):
    from surfai import SessionConfig
    return SessionConfig(headless=headless, report_dir=report_dir, **overrides)


def _header(title: str, subtitle: str, style: str = "blue") -> None:
    console.print(Panel.fit(
        f"[bold {style}]{title}[/bold {style}]\n"
        f"[dim]{subtitle}[/dim]",
        border_style=style,
    ))
    console.print()


def _navigate(session, url: str):
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        transient=True,
    ) as progress:
        progress.add_task(f"Waiting for {url} to settle...", total=None)
        return session.navigate_smart(url)


def _print_navigation(result) -> None:
    color = "green" if result.settled else "yellow"
    console.print(
        f"[bold {color}]{result.verdict.value.replace('_', ' ').title()}[/bold {color}] "
        f"{result.url} [dim]| quality: {result.load_quality} | {result.duration_ms:.0f}ms "
        f"| {result.polls} polls | {result.reason}[/dim]"
    )
    console.print()


def _elements_table(elements, limit: int) -> Table:
    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("#", style="dim", width=4)
    table.add_column("Descriptor", style="blue")
    table.add_column("Role", style="green")
    table.add_column("Label", style="yellow", max_width=40)
    table.add_column("Confidence", justify="right")

    for i, element in enumerate(elements[:limit], 1):
        confidence_color = "green" if element.confidence > 0.7 else "yellow" if element.confidence > 0.4 else "red"
        label = element.label[:40] + "..." if len(element.label) > 40 else element.label
        table.add_row(
            str(i),
            element.descriptor_id,
            element.role.value,
            label or f"[dim]<{element.tag}>[/dim]",
            f"[{confidence_color}]{element.confidence:.0%}[/{confidence_color}]",
        )
    if len(elements) > limit:
        table.add_row("...", f"+{len(elements) - limit} more", "", "", "")
    return table


@click.group()
@click.version_option(version="0.1.0", prog_name="surfai")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
def cli(verbose):
    """🏄 SurfAI - Resilient browser sessions for dynamic pages

    Navigate until pages settle, discover elements without selectors,
    and act on them reliably while the DOM keeps changing.
    """
    _configure_logging(verbose)


@cli.command()
@click.argument("url")
@click.option("--headless/--headed", default=True, help="Run browser in headless mode")
@click.option("--limit", default=25, type=int, help="Maximum rows to print")
@click.option("--role", default=None, help="Only show elements with this role (e.g. button, link, text_input)")
@click.option("--report-dir", default=None, help="Write a flight record to this directory")
@click.option("--settle-window", default=2.5, type=float, help="Seconds a loaded page must stay quiet")
def elements(url, headless, limit, role, report_dir, settle_window):
    """
    Open URL, wait for it to settle and list its interactable elements.

    \b
    Examples:

        surfai elements "https://demo.playwright.dev/todomvc/"

        surfai elements "https://example.com" --role link --headed
    """
    from surfai import Session, SurfaiError

    _header("🏄 SurfAI", "Element discovery")
    try:
        with Session(_build_config(headless, report_dir, settle_window=settle_window)) as session:
            _print_navigation(_navigate(session, url))
            found = session.find_by_role(role) if role else session.get_elements()
            console.print(_elements_table(found, limit))

            stats = session.page_stats()
            console.print(
                f"\n[dim]{stats['total_nodes']} nodes, {stats['visible_nodes']} visible, "
                f"{stats['interactive_elements']} interactive[/dim]"
            )
    except (SurfaiError, ValueError) as e:
        console.print(f"[red]❌ Error: {e}[/red]")
        raise SystemExit(1)


@cli.command()
@click.argument("url")
@click.option("--duration", default=30.0, type=float, help="Seconds to watch for changes")
@click.option("--headless/--headed", default=True, help="Run browser in headless mode")
@click.option("--poll-interval", default=0.25, type=float, help="Seconds between DOM captures")
def watch(url, duration, headless, poll_interval):
    """
    Stream DOM change sets from a page as they happen.

    \b
    Example:

        surfai watch "https://time.is" --duration 10
    """
    from surfai import Session, SurfaiError

    _header("👀 SurfAI Watch", f"Monitoring {url} for {duration:.0f}s", style="magenta")
    try:
        config = _build_config(headless, None, poll_interval=poll_interval)
        with Session(config) as session:
            _print_navigation(_navigate(session, url))
            deadline = time.monotonic() + duration
            count = 0
            with session.subscribe_changes() as changes:
                while True:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        break
                    change = changes.get(timeout=remaining)
                    if change is None:
                        if changes.closed:
                            break
                        continue
                    count += 1
                    console.print(
                        f"  [cyan]{time.strftime('%H:%M:%S')}[/cyan] "
                        f"[green]+{len(change.added)}[/green] "
                        f"[red]-{len(change.removed)}[/red] "
                        f"[yellow]~{len(change.mutated)}[/yellow]"
                    )
            console.print(f"\n[bold]{count} change set(s) observed[/bold]")
    except SurfaiError as e:
        console.print(f"[red]❌ Error: {e}[/red]")
        raise SystemExit(1)


@cli.command()
@click.argument("url")
@click.argument("target")
@click.argument("action", type=click.Choice(["click", "type", "hover", "screenshot"]))
@click.option("--text", default="", help="Text to type (for the type action)")
@click.option("--output", default="element.png", help="Output file (for the screenshot action)")
@click.option("--headless/--headed", default=True, help="Run browser in headless mode")
def act(url, target, action, text, output, headless):
    """
    Perform one action on an element found by label or descriptor id.

    \b
    Examples:

        surfai act "https://duckduckgo.com" "Search" type --text "surfai"

        surfai act "https://example.com" "More information" click
    """
    from surfai import Action, Session, SurfaiError

    actions = {
        "click": Action.click,
        "type": lambda: Action.type(text),
        "hover": Action.hover,
        "screenshot": Action.screenshot_of,
    }
    _header("⚡ SurfAI Act", f"{action} → {target}", style="green")
    try:
        with Session(_build_config(headless, None)) as session:
            _print_navigation(_navigate(session, url))
            matches = [e for e in session.get_elements() if e.descriptor_id == target]
            matches = matches or session.find_by_text(target)
            if not matches:
                console.print(f"[red]❌ No element matches '{target}'[/red]")
                raise SystemExit(1)

            element = matches[0]
            console.print(f"[bold]Target:[/bold] {element}")
            result = session.act(element.descriptor_id, actions[action]())

            if result.data:
                with open(output, "wb") as f:
                    f.write(result.data)
                console.print(f"[dim]Saved element screenshot to {output}[/dim]")
            status = "[green]✅ Verified[/green]" if result.verified else "[yellow]⚠️ No visible effect[/yellow]"
            console.print(f"{status} after {result.attempts} attempt(s) in {result.duration_ms:.0f}ms")
            if result.navigated:
                console.print(f"[dim]Navigated to {session.page.url}[/dim]")
    except SurfaiError as e:
        console.print(f"[red]❌ Error: {e}[/red]")
        raise SystemExit(1)


@cli.command()
@click.argument("url")
@click.argument("name")
@click.option("--state-dir", default="./.surfai_states", help="State storage directory")
def save_state(url, name, state_dir):
    """
    Save browser state (cookies, localStorage, sessionStorage) after a manual login.

    Opens a visible browser on URL; log in, then press Enter in the terminal.

    Example:

        surfai save-state "https://example.com/login" "logged_in_user"
    """
    from surfai import Session, SurfaiError

    _header("💾 SurfAI Save State", name, style="cyan")
    try:
        with Session.demo_open() as session:
            _navigate(session, url)
            click.pause("Log in in the browser window, then press any key to save the state...")
            session.navigate_smart(session.current_url())
            state = session.export_storage_state()
        os.makedirs(state_dir, exist_ok=True)
        path = state.save(os.path.join(state_dir, f"{name}.json"))
        console.print(
            f"[green]✅ Saved {len(state.cookies)} cookies, {len(state.local_storage)} localStorage "
            f"and {len(state.session_storage)} sessionStorage items to {path}[/green]"
        )
    except SurfaiError as e:
        console.print(f"[red]❌ Error: {e}[/red]")
        raise SystemExit(1)


@cli.command()
@click.argument("name")
@click.option("--state-dir", default="./.surfai_states", help="State storage directory")
@click.option("--headless/--headed", default=False, help="Run browser in headless mode")
def load_state(name, state_dir, headless):
    """
    Open a browser with a previously saved state.

    Example:

        surfai load-state "logged_in_user"
    """
    from surfai import Session, SurfaiError
    from surfai.core.storage_state import StorageState

    path = os.path.join(state_dir, f"{name}.json")
    if not os.path.exists(path):
        console.print(f"[red]❌ No saved state at {path}[/red]")
        raise SystemExit(1)

    _header("📂 SurfAI Load State", name, style="cyan")
    try:
        state = StorageState.load(path)
        with Session(_build_config(headless, None)) as session:
            result = session.import_storage_state(state)
            if result is not None:
                _print_navigation(result)
            console.print(f"[green]✅ Restored state for {state.origin}[/green]")
            if not headless:
                click.pause("Press any key to close the browser...")
    except SurfaiError as e:
        console.print(f"[red]❌ Error: {e}[/red]")
        raise SystemExit(1)


@cli.command()
def doctor():
    """
    Check system health and dependencies.

    Verifies that the required packages are importable.
    """
    _header("🩺 SurfAI Doctor", "System Health Check", style="cyan")

    dependencies = [
        ("selenium", "Core - WebDriver"),
        ("urllib3", "Core - WebDriver transport"),
        ("click", "CLI - Commands"),
        ("rich", "CLI - Output"),
    ]

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Package", style="blue")
    table.add_column("Role", style="dim")
    table.add_column("Status", justify="center")

    all_good = True
    for package, role in dependencies:
        try:
            __import__(package)
            status = "[green]✅ Installed[/green]"
        except ImportError:
            status = "[red]❌ Missing[/red]"
            all_good = False
        table.add_row(package, role, status)

    console.print(table)
    console.print()

    if all_good:
        console.print("[bold green]✅ All dependencies installed! SurfAI is ready.[/bold green]")
    else:
        console.print("[yellow]⚠️ Some required dependencies are missing.[/yellow]")
        console.print("[dim]Install with: pip install surfai[/dim]")


@cli.command()
def version():
    """Show version information."""
    from surfai import __version__
    console.print(f"SurfAI v{__version__}")


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
