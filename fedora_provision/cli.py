#!/usr/bin/env python3
"""
Command line entry point.

    sudo fedora-provision [--catalog PATH] [--dry-run] [--resume RUN_ID|latest]

Exit codes: 0 when no fatal failure occurred, 1 when a fatal failure
aborted the run, 2 for a rejected catalog, 3 when the environment does not
allow a run (no root, unknown user or journal), 130 when interrupted.
"""

import sys
from typing import Optional

import click
from rich.prompt import Confirm
from rich.traceback import install as install_rich_traceback

from . import APP_NAME, VERSION
from .catalog_file import load_catalog_file
from .command import run_command
from .config import AppConfig
from .engine import (
    EXIT_CATALOG_ERROR,
    EXIT_ENVIRONMENT_ERROR,
    EXIT_OK,
    ProvisioningEngine,
    RunContext,
    RunOptions,
    exit_code_for,
)
from .errors import CatalogError, JournalError, PrivilegeError
from .journal import JournalStore
from .logging_setup import setup_logger
from .models import RunStatus
from .report import ConsoleReporter, print_run_list, print_run_summary, write_summary_file
from .ui import console, create_header, print_error, print_step, print_warning

install_rich_traceback(show_locals=False)

DEFAULTS = AppConfig()


def prompt_reboot(reboot: Optional[bool], interactive: bool) -> None:
    if reboot is False:
        print_warning("Please reboot manually for all changes to take effect.")
        return
    if reboot is None:
        if not interactive:
            print_warning("Please reboot manually for all changes to take effect.")
            return
        if not Confirm.ask("It is time to reboot the machine. Reboot now?", default=False):
            print_warning("Reboot canceled. Please reboot manually for all changes to take effect.")
            return
    print_step("Rebooting...")
    run_command(["systemctl", "reboot"], check=False)


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "--catalog",
    "catalog_path",
    type=click.Path(dir_okay=False),
    default=DEFAULTS.CATALOG,
    show_default=True,
    help="JSON step catalog to run",
)
@click.option("--dry-run", is_flag=True, help="Evaluate preconditions and log intended actions only")
@click.option("--resume", "resume_from", metavar="RUN_ID", help="Resume a previous run ('latest' for the newest)")
@click.option(
    "--step-timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=DEFAULTS.STEP_TIMEOUT,
    help="Default per-step timeout in seconds",
)
@click.option(
    "--journal-dir",
    envvar="FEDORA_PROVISION_JOURNAL_DIR",
    default=DEFAULTS.JOURNAL_DIR,
    show_default=True,
    help="Directory holding run journals",
)
@click.option("--log-file", default=DEFAULTS.LOG_FILE, show_default=True, help="Log file path")
@click.option("--user", "username", default=DEFAULTS.USERNAME, help="User to provision for (default: SUDO_USER)")
@click.option("-y", "--yes", is_flag=True, help="Do not ask for confirmation")
@click.option("--list-runs", is_flag=True, help="List recorded runs and exit")
@click.option("--reboot/--no-reboot", default=None, help="Reboot after a successful run (default: ask)")
@click.option("--debug", is_flag=True, help="Show debug output on the console")
@click.version_option(VERSION, prog_name=APP_NAME)
@click.pass_context
def main(
    ctx: click.Context,
    catalog_path: str,
    dry_run: bool,
    resume_from: Optional[str],
    step_timeout: Optional[float],
    journal_dir: str,
    log_file: str,
    username: Optional[str],
    yes: bool,
    list_runs: bool,
    reboot: Optional[bool],
    debug: bool,
) -> None:
    """Provision a freshly installed Fedora Workstation from a step catalog."""
    logger, _ = setup_logger(log_file, fallback_dir=journal_dir, debug=debug)
    store = JournalStore(journal_dir)

    if list_runs:
        print_run_list(store.list_runs())
        ctx.exit(EXIT_OK)

    console.print(create_header())

    try:
        catalog = load_catalog_file(catalog_path)
    except CatalogError as e:
        print_error(f"Catalog rejected: {e}")
        ctx.exit(EXIT_CATALOG_ERROR)

    try:
        run_context = RunContext.for_invoking_user(username, logger)
    except PrivilegeError as e:
        print_error(str(e))
        ctx.exit(EXIT_ENVIRONMENT_ERROR)

    interactive = sys.stdin.isatty() and not yes
    if not dry_run and interactive:
        console.print(
            f"About to run {len(catalog)} steps from {catalog_path} "
            f"for user [bold]{run_context.user.name}[/bold]."
        )
        if not Confirm.ask("Continue?", default=True):
            print_warning("Cancelled.")
            ctx.exit(EXIT_OK)

    engine = ProvisioningEngine(store, reporter=ConsoleReporter())
    options = RunOptions(resume_from=resume_from, dry_run=dry_run, step_timeout=step_timeout)
    try:
        journal = engine.run(catalog, run_context, options)
    except (PrivilegeError, JournalError) as e:
        print_error(str(e))
        ctx.exit(EXIT_ENVIRONMENT_ERROR)

    print_run_summary(journal, catalog)
    if not dry_run:
        try:
            write_summary_file(journal, journal_dir, catalog)
        except OSError as e:
            print_warning(f"Could not write summary file: {e}")
        if journal.status == RunStatus.COMPLETED:
            prompt_reboot(reboot, interactive)

    ctx.exit(exit_code_for(journal))


if __name__ == "__main__":
    main()
