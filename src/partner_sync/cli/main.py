"""
Main CLI entry point for the partner portal sync engine.

Usage:
    pps db migrate
    pps sync run --type full --mode incremental
    pps sync status
    pps groups match grp-123
    pps partners compliance --tier Premier
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager

import typer
from rich.console import Console
from rich.table import Table

from partner_sync.db.connection import close_engine, get_engine, get_session
from partner_sync.lms.client import LMS_ERRORS, LmsClient
from partner_sync.models import SyncMode, SyncType
from partner_sync.services.compliance import PartnerNotFoundError
from partner_sync.services.membership import GroupNotFoundError
from partner_sync.services.scheduler import SyncConflictError
from partner_sync.settings import get_settings

# Main app
app = typer.Typer(name="pps", help="Partner portal LMS/CRM sync CLI")
console = Console()


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging")):
    """Configure logging for every command."""
    level = "DEBUG" if verbose else get_settings().log_level
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ============================================================================
# Helpers
# ============================================================================


@asynccontextmanager
async def cli_session():
    """Session for one command; the engine is disposed with the event loop."""
    try:
        async with get_session() as session:
            yield session
    finally:
        await close_engine()


def run_async(coro):
    """Helper to run async functions from Typer commands."""
    try:
        return asyncio.run(coro)
    except (GroupNotFoundError, PartnerNotFoundError, SyncConflictError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    except LMS_ERRORS as e:
        console.print(f"[red]LMS error:[/red] {e}")
        raise typer.Exit(2)


def _fmt(value) -> str:
    return "-" if value is None else str(value)


# ============================================================================
# Database Commands
# ============================================================================

db_app = typer.Typer(help="Database operations")
app.add_typer(db_app, name="db")


@db_app.command("migrate")
def db_migrate():
    """Apply pending schema migrations."""
    from partner_sync.db.migrations import apply_migrations

    async def _migrate():
        try:
            return await apply_migrations(get_engine())
        finally:
            await close_engine()

    applied = run_async(_migrate())
    if not applied:
        typer.echo("Schema is up to date")
        return
    for name in applied:
        typer.echo(f"Applied: {name}")


@db_app.command("version")
def db_version():
    """Show the applied schema version."""
    from partner_sync.db.migrations import SCHEMA_VERSION, get_schema_version

    async def _version():
        try:
            return await get_schema_version(get_engine())
        finally:
            await close_engine()

    version = run_async(_version())
    typer.echo(f"Schema version: {version} (code: {SCHEMA_VERSION})")


# ============================================================================
# Sync Commands
# ============================================================================

sync_app = typer.Typer(help="LMS sync runs, lock and schedule")
app.add_typer(sync_app, name="sync")


@sync_app.command("run")
def sync_run(
    sync_type: SyncType = typer.Option(SyncType.FULL, "--type", "-t", help="What to sync"),
    mode: SyncMode = typer.Option(SyncMode.FULL, "--mode", "-m", help="full or incremental"),
):
    """Run a sync under the global lock."""
    from partner_sync.services.scheduler import trigger_sync

    async def _run():
        async with cli_session() as session, LmsClient() as client:
            return await trigger_sync(session, client, sync_type, mode, owner="cli")

    result = run_async(_run())

    table = Table(title=f"Sync {result.log_id}: {result.sync_type.value} ({result.status.value})")
    for column in ("phase", "processed", "created", "updated", "deleted", "skipped", "failed"):
        table.add_column(column, justify="left" if column == "phase" else "right")
    for name, stats in result.phases.items():
        table.add_row(
            name,
            str(stats.processed),
            str(stats.created),
            str(stats.updated),
            str(stats.deleted),
            str(stats.skipped),
            str(stats.failed),
        )
    console.print(table)


@sync_app.command("status")
def sync_status():
    """Show whether a sync is running."""
    from partner_sync.services.scheduler import get_sync_status

    async def _status():
        async with cli_session() as session:
            return await get_sync_status(session)

    status = run_async(_status())
    if not status.locked:
        typer.echo("Idle")
        return

    typer.echo(f"Running: {status.sync_type} since {status.locked_at} ({status.owner})")
    if status.current_run:
        typer.echo(f"  Log: {status.current_run.id}")
    if status.stale:
        console.print("[yellow]  Lock looks stale; the next run will reclaim it[/yellow]")


@sync_app.command("reset")
def sync_reset(
    reason: str = typer.Option("manual reset", "--reason", "-r", help="Recorded on failed runs"),
):
    """Force-clear the sync lock."""
    from partner_sync.services.scheduler import reset_sync_lock

    async def _reset():
        async with cli_session() as session:
            return await reset_sync_lock(session, reason)

    run_async(_reset())
    typer.echo("Sync lock cleared")


@sync_app.command("tick")
def sync_tick():
    """Run the scheduled sync if it is due."""
    from partner_sync.services.scheduler import schedule_tick

    async def _tick():
        async with cli_session() as session, LmsClient() as client:
            return await schedule_tick(session, client)

    tick = run_async(_tick())
    if not tick.ran:
        typer.echo(f"Skipped: {tick.reason}")
        return
    for result in tick.results:
        typer.echo(f"Sync {result.log_id}: {result.sync_type.value} {result.status.value}")
    if tick.reason:
        console.print(f"[yellow]{tick.reason}[/yellow]")
    typer.echo(f"Next run: {_fmt(tick.next_scheduled_run)}")


@sync_app.command("schedule")
def sync_schedule(
    enable: bool | None = typer.Option(None, "--enable/--disable", help="Turn the schedule on/off"),
    interval: int | None = typer.Option(None, "--interval", "-i", help="Hours between runs"),
    types: list[SyncType] | None = typer.Option(None, "--type", "-t", help="Types to sync"),
    mode: SyncMode | None = typer.Option(None, "--mode", "-m", help="full or incremental"),
):
    """Show or change the sync schedule."""
    from partner_sync.services.scheduler import get_schedule, update_schedule

    async def _schedule():
        async with cli_session() as session:
            if enable is None and interval is None and not types and mode is None:
                return await get_schedule(session)
            return await update_schedule(session, enable, interval, types or None, mode)

    schedule = run_async(_schedule())
    typer.echo(f"Enabled: {schedule.enabled}")
    typer.echo(f"  Every: {schedule.interval_hours}h ({schedule.sync_mode.value})")
    typer.echo(f"  Types: {', '.join(t.value for t in schedule.sync_types)}")
    typer.echo(f"  Last run: {_fmt(schedule.last_scheduled_run)}")
    typer.echo(f"  Next run: {_fmt(schedule.next_scheduled_run)}")


@sync_app.command("cleanup")
def sync_cleanup(keep_days: int = typer.Option(30, "--keep-days", help="Days of logs to keep")):
    """Delete old sync logs."""
    from partner_sync.services.scheduler import cleanup_sync_logs

    async def _cleanup():
        async with cli_session() as session:
            return await cleanup_sync_logs(session, keep_days)

    removed = run_async(_cleanup())
    typer.echo(f"Removed {removed} sync logs")


@sync_app.command("pending")
def sync_pending(
    confirm: bool = typer.Option(False, "--confirm", help="Re-check pending rows upstream"),
    expire: bool = typer.Option(False, "--expire", help="Delete stale pending rows"),
):
    """List, confirm or expire pending (locally added) memberships."""
    from partner_sync.services.membership import (
        confirm_pending_memberships,
        expire_stale_pending_memberships,
        list_stale_pending_memberships,
    )

    async def _pending():
        async with cli_session() as session:
            if confirm:
                async with LmsClient() as client:
                    return await confirm_pending_memberships(session, client)
            if expire:
                return await expire_stale_pending_memberships(session)
            return await list_stale_pending_memberships(session)

    outcome = run_async(_pending())
    if confirm:
        typer.echo(
            f"Checked {outcome.checked}: {outcome.confirmed} confirmed, "
            f"{outcome.still_pending} still pending"
        )
        return
    if expire:
        typer.echo(f"Expired {len(outcome)} stale pending memberships")
        return
    if not outcome:
        typer.echo("No stale pending memberships.")
        return
    for row in outcome:
        typer.echo(f"{row.group_id}/{row.user_id}: missed {row.missed_syncs} syncs")


# ============================================================================
# Group Commands
# ============================================================================

groups_app = typer.Typer(help="LMS group reconciliation and membership")
app.add_typer(groups_app, name="groups")


@groups_app.command("match")
def groups_match(group_id: str = typer.Argument(..., help="LMS group ID")):
    """Find the partner a group belongs to."""
    from partner_sync.services.reconciliation import match_group_to_partner

    async def _match():
        async with cli_session() as session:
            return await match_group_to_partner(session, group_id)

    result = run_async(_match())
    if result.exact_match:
        typer.echo(f"Exact match: {result.exact_match.account_name} ({result.exact_match.id})")
        return
    if not result.close_matches:
        typer.echo("No matches found.")
        return
    for match in result.close_matches:
        typer.echo(f"{match.similarity:.2f}  {match.partner.account_name} ({match.partner.id})")


@groups_app.command("auto-match")
def groups_auto_match(
    min_score: float | None = typer.Option(None, "--min-score", help="Minimum fuzzy score"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report without linking"),
):
    """Link unlinked groups to their partners."""
    from partner_sync.services.reconciliation import auto_match_groups

    async def _auto():
        async with cli_session() as session:
            return await auto_match_groups(session, min_score, dry_run)

    report = run_async(_auto())
    for match in report.matches:
        kind = "exact" if match.exact else f"{match.score:.2f}"
        typer.echo(f"{match.group_name} -> {match.account_name} ({kind})")
    suffix = " (dry run)" if dry_run else ""
    typer.echo(f"Matched {report.matched}, skipped {report.skipped}{suffix}")


@groups_app.command("link")
def groups_link(
    group_id: str = typer.Argument(..., help="LMS group ID"),
    partner_id: int = typer.Argument(..., help="Partner ID"),
):
    """Link a group to a partner."""
    from partner_sync.services.reconciliation import link_group_to_partner

    async def _link():
        async with cli_session() as session:
            return await link_group_to_partner(session, group_id, partner_id)

    group = run_async(_link())
    typer.echo(f"Linked {group.name} to partner {group.partner_id}")


@groups_app.command("unlink")
def groups_unlink(group_id: str = typer.Argument(..., help="LMS group ID")):
    """Clear a group's partner link."""
    from partner_sync.services.reconciliation import unlink_group

    async def _unlink():
        async with cli_session() as session:
            return await unlink_group(session, group_id)

    group = run_async(_unlink())
    typer.echo(f"Unlinked {group.name}")


@groups_app.command("analyze")
def groups_analyze(
    group_id: str = typer.Argument(..., help="LMS group ID"),
    lookup: bool = typer.Option(False, "--lookup", help="Look up unknown contacts in the LMS"),
    record: bool = typer.Option(False, "--record", help="Store the summary on the group"),
):
    """Find potential users and CRM contacts missing from a group."""
    from partner_sync.services.reconciliation import analyze_group, record_analysis

    async def _analyze():
        async with cli_session() as session:
            if lookup:
                async with LmsClient() as client:
                    analysis = await analyze_group(session, group_id, client)
            else:
                analysis = await analyze_group(session, group_id)
            if record:
                await record_analysis(session, group_id, analysis)
            return analysis

    analysis = run_async(_analyze())
    typer.echo(f"Group: {analysis.group_name} ({analysis.member_count} members)")
    typer.echo(f"  Domains: {', '.join(analysis.domains) or '-'}")

    if analysis.potential_users:
        table = Table(title="Potential users")
        table.add_column("id")
        table.add_column("email")
        for user in analysis.potential_users:
            table.add_row(user.id, user.email)
        console.print(table)

    if analysis.crm_contacts_not_in_lms:
        table = Table(title="CRM contacts not in LMS")
        table.add_column("email")
        table.add_column("name")
        for contact in analysis.crm_contacts_not_in_lms:
            name = " ".join(p for p in (contact.first_name, contact.last_name) if p)
            table.add_row(contact.email, name)
        console.print(table)

    for email in analysis.lookup_failed:
        console.print(f"[yellow]  Lookup failed: {email}[/yellow]")


@groups_app.command("domains")
def groups_domains(
    group_id: str = typer.Argument(..., help="LMS group ID"),
    block: list[str] | None = typer.Option(None, "--block", help="Domain to block"),
    unblock: list[str] | None = typer.Option(None, "--unblock", help="Domain to unblock"),
    add: list[str] | None = typer.Option(None, "--add", help="Custom domain to add"),
    remove: list[str] | None = typer.Option(None, "--remove", help="Custom domain to remove"),
):
    """Show or change a group's blocked and custom domains."""
    from partner_sync.services import reconciliation as rec

    async def _domains():
        async with cli_session() as session:
            for domain in block or []:
                await rec.add_blocked_domain(session, group_id, domain)
            for domain in unblock or []:
                await rec.remove_blocked_domain(session, group_id, domain)
            for domain in add or []:
                await rec.add_custom_domain(session, group_id, domain)
            for domain in remove or []:
                await rec.remove_custom_domain(session, group_id, domain)
            return await rec.get_domain_settings(session, group_id)

    domains = run_async(_domains())
    typer.echo(f"Blocked: {', '.join(domains.blocked_domains) or '-'}")
    typer.echo(f"Custom: {', '.join(domains.custom_domains) or '-'}")


@groups_app.command("merge")
def groups_merge(
    target_id: str = typer.Argument(..., help="Group to keep"),
    source_ids: list[str] = typer.Argument(..., help="Groups to merge in and delete"),
):
    """Merge groups into one."""
    from partner_sync.services.reconciliation import merge_groups

    async def _merge():
        async with cli_session() as session, LmsClient() as client:
            return await merge_groups(session, client, target_id, source_ids)

    result = run_async(_merge())
    typer.echo(f"Moved {result.users_moved} users, deleted {result.groups_deleted} groups")
    for error in result.errors:
        console.print(f"[red]  {error}[/red]")


@groups_app.command("add-users")
def groups_add_users(
    group_id: str = typer.Argument(..., help="LMS group ID"),
    user_ids: list[str] = typer.Argument(..., help="LMS user IDs"),
    all_partners: bool = typer.Option(
        False, "--all-partners", help="Also add to the All Partners group"
    ),
):
    """Add users to a group."""
    from partner_sync.services.membership import add_users_to_group

    async def _add():
        async with cli_session() as session, LmsClient() as client:
            return await add_users_to_group(session, client, group_id, user_ids, all_partners)

    result = run_async(_add())
    typer.echo(f"{group_id}: {result.primary_group.counts}")
    if result.all_partners_group is not None:
        summary = result.all_partners_group
        typer.echo(f"All Partners: {summary.error or summary.counts}")
    for failure in result.primary_group.failed:
        console.print(f"[red]  {failure['user_id']}: {failure['error']}[/red]")


@groups_app.command("remove-users")
def groups_remove_users(
    group_id: str = typer.Argument(..., help="LMS group ID"),
    user_ids: list[str] = typer.Argument(..., help="LMS user IDs"),
):
    """Remove users from a group."""
    from partner_sync.services.membership import remove_users_from_group

    async def _remove():
        async with cli_session() as session, LmsClient() as client:
            return await remove_users_from_group(session, client, group_id, user_ids)

    summary = run_async(_remove())
    typer.echo(f"{group_id}: {summary.counts}")


@groups_app.command("create")
def groups_create(partner_name: str = typer.Argument(..., help="Partner account name")):
    """Create the LMS group for a partner."""
    from partner_sync.services.membership import create_group

    async def _create():
        async with cli_session() as session, LmsClient() as client:
            return await create_group(session, client, partner_name)

    group = run_async(_create())
    typer.echo(f"Created group: {group.id}")
    typer.echo(f"  Name: {group.name}")
    typer.echo(f"  Partner: {_fmt(group.partner_id)}")


@groups_app.command("rename")
def groups_rename(
    group_id: str = typer.Argument(..., help="LMS group ID"),
    name: str = typer.Argument(..., help="New name"),
):
    """Rename a group."""
    from partner_sync.services.membership import update_group_name

    async def _rename():
        async with cli_session() as session, LmsClient() as client:
            return await update_group_name(session, client, group_id, name)

    group = run_async(_rename())
    typer.echo(f"Renamed {group.id} to {group.name}")


@groups_app.command("delete")
def groups_delete(
    group_id: str = typer.Argument(..., help="LMS group ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete a group in the LMS and locally."""
    from partner_sync.services.membership import delete_group

    if not yes:
        typer.confirm(f"Delete group {group_id}?", abort=True)

    async def _delete():
        async with cli_session() as session, LmsClient() as client:
            await delete_group(session, client, group_id)

    run_async(_delete())
    typer.echo(f"Deleted {group_id}")


# ============================================================================
# Partner Commands
# ============================================================================

partners_app = typer.Typer(help="Partner certification and compliance")
app.add_typer(partners_app, name="partners")


@partners_app.command("npcu")
def partners_npcu(partner_id: int = typer.Argument(..., help="Partner ID")):
    """Show a partner's NPCU against its tier requirement."""
    from partner_sync.services.compliance import compliance_gap

    async def _gap():
        async with cli_session() as session:
            return await compliance_gap(session, partner_id)

    gap = run_async(_gap())
    typer.echo(f"Partner: {gap.account_name} ({_fmt(gap.partner_tier)})")
    typer.echo(f"  NPCU: {gap.current}/{gap.required}")
    typer.echo(f"  Gap: {gap.gap}")
    typer.echo(f"  Certifications: {gap.certifications}")
    for category, count in sorted(gap.by_category.items()):
        typer.echo(f"    {category}: {count}")


@partners_app.command("compliance")
def partners_compliance(
    tier: str | None = typer.Option(None, "--tier", help="Only partners of this tier"),
    gaps_only: bool = typer.Option(False, "--gaps-only", help="Hide compliant partners"),
):
    """NPCU compliance report for all partners."""
    from partner_sync.services.compliance import partner_compliance_report

    async def _report():
        async with cli_session() as session:
            return await partner_compliance_report(session, tier)

    report = run_async(_report())
    if gaps_only:
        report = [row for row in report if not row.compliant]
    if not report:
        typer.echo("No partners found.")
        return

    table = Table(title="NPCU compliance")
    table.add_column("partner")
    table.add_column("tier")
    table.add_column("npcu", justify="right")
    table.add_column("required", justify="right")
    table.add_column("gap", justify="right")
    for row in report:
        table.add_row(
            row.account_name,
            _fmt(row.partner_tier),
            str(row.current),
            str(row.required),
            str(row.gap),
        )
    console.print(table)


@partners_app.command("unlinked")
def partners_unlinked():
    """List partners with no LMS group."""
    from partner_sync.services.reconciliation import partners_without_groups

    async def _unlinked():
        async with cli_session() as session:
            return await partners_without_groups(session)

    partners = run_async(_unlinked())
    if not partners:
        typer.echo("Every partner has a group.")
        return
    for partner in partners:
        typer.echo(f"{partner.id}: {partner.account_name} ({_fmt(partner.partner_tier)})")


@partners_app.command("tiers")
def partners_tiers(
    set_values: list[str] | None = typer.Option(None, "--set", help="TIER=NPCU, repeatable"),
):
    """Show or change required NPCU per tier."""
    from partner_sync.services.compliance import get_tier_requirements, update_tier_requirements

    updates: dict[str, int] = {}
    for value in set_values or []:
        tier, sep, npcu = value.rpartition("=")
        if not sep or not npcu.strip().lstrip("-").isdigit():
            console.print(f"[red]Error:[/red] expected TIER=NPCU, got {value!r}")
            raise typer.Exit(1)
        updates[tier] = int(npcu)

    async def _tiers():
        async with cli_session() as session:
            if updates:
                return await update_tier_requirements(session, updates)
            return await get_tier_requirements(session)

    requirements = run_async(_tiers())
    typer.echo(json.dumps(requirements, indent=2, sort_keys=True))


if __name__ == "__main__":
    app()
