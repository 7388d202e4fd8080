#!/usr/bin/env python3
"""
Followup Engine CLI Tool

Operator and testing commands for the reminder followup engine: schedule
followups for a sent reminder, inspect a patient's followups, run the
dispatch/expiry drivers by hand and link a patient reply.

Usage:
    python tools/followup_cli.py schedule --patient-id p1 --reminder-id r1 --phone 0812... --name "Budi"
    python tools/followup_cli.py list-patient p1
    python tools/followup_cli.py process-due
    python tools/followup_cli.py link-reply p1 "sudah minum obat"
    python tools/followup_cli.py cancel-reminder r1
    python tools/followup_cli.py retry <followup-id>
    python tools/followup_cli.py stats --patient-id p1
    python tools/followup_cli.py cleanup-conversations
    python tools/followup_cli.py escalations --limit 20
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import click
from dotenv import load_dotenv
from tabulate import tabulate

from config.redis import ping_redis
from config.settings import EngineSettings
from scheduling.models import (
    FollowupRecord,
    FollowupScheduleRequest,
    FollowupStatus,
    ReminderPriority,
    ReminderType,
)
from shared.exceptions import FollowupEngineError
from shared.services import FollowupServices, build_services
from utils.time_utils import format_for_patient, to_utc

T = TypeVar("T")

STATUS_EMOJI = {
    FollowupStatus.PENDING: "⏳",
    FollowupStatus.SENT: "📤",
    FollowupStatus.RESPONDED: "💬",
    FollowupStatus.CONFIRMED: "✅",
    FollowupStatus.FAILED: "❌",
    FollowupStatus.CANCELLED: "🚫",
    FollowupStatus.EXPIRED: "⌛",
}


class FollowupCLIManager:
    """Runs engine coroutines for one CLI invocation"""

    def __init__(self, services: Optional[FollowupServices] = None, memory: bool = False, env_file: Optional[str] = None):
        self._owns_services = services is None
        if services is None:
            settings = EngineSettings.from_env(env_file)
            # In-memory state does not outlive the process, so nothing real is sent
            settings.messaging_mock = settings.messaging_mock or memory
            services = build_services(settings=settings, memory=memory)
        self.services = services

    def run(self, operation: Callable[[FollowupServices], Awaitable[T]]) -> T:
        """Run one async operation against the services"""
        async def runner() -> T:
            try:
                return await operation(self.services)
            finally:
                if self._owns_services:
                    await self.services.close()

        return asyncio.run(runner())

    def format_time(self, dt: Optional[datetime]) -> str:
        if dt is None:
            return "-"
        return format_for_patient(dt, self.services.settings.local_timezone)

    def followup_rows(self, records: List[FollowupRecord]) -> List[List[Any]]:
        return [
            [
                f"{STATUS_EMOJI.get(r.status, '')} {r.status.value}",
                r.id,
                r.followup_type.value,
                r.stage.value,
                self.format_time(r.scheduled_at),
                self.format_time(r.sent_at),
                r.response or "",
            ]
            for r in records
        ]


FOLLOWUP_HEADERS = ["Status", "ID", "Type", "Stage", "Scheduled", "Sent", "Response"]


@click.group()
@click.option('--memory', is_flag=True, help='Use in-memory backends and mock messaging (no Redis)')
@click.option('--env-file', default=None, help='Path to a .env file')
@click.option('--log-level', envvar='LOG_LEVEL', default='WARNING',
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR']), help='Logging level')
@click.pass_context
def cli(ctx, memory, env_file, log_level):
    """Reminder Followup Engine Management CLI"""
    load_dotenv(env_file)
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    ctx.ensure_object(dict)
    if 'manager' not in ctx.obj:
        ctx.obj['manager'] = FollowupCLIManager(services=ctx.obj.get('services'), memory=memory, env_file=env_file)


@cli.command()
@click.option('--patient-id', required=True, help="Patient ID")
@click.option('--reminder-id', required=True, help="ID of the reminder that was just sent")
@click.option('--phone', required=True, help="Patient WhatsApp number")
@click.option('--name', 'patient_name', default="", help="Patient name used in messages")
@click.option('--type', 'reminder_type', default="MEDICATION",
              type=click.Choice(['MEDICATION', 'APPOINTMENT', 'GENERAL'], case_sensitive=False))
@click.option('--priority', default="MEDIUM", type=click.Choice(['LOW', 'MEDIUM', 'HIGH'], case_sensitive=False))
@click.option('--title', default="", help="Reminder title")
@click.option('--sent-at', default=None, help="Reminder send time (ISO, local time if naive). Defaults to now")
@click.pass_context
def schedule(ctx, patient_id, reminder_id, phone, patient_name, reminder_type, priority, title, sent_at):
    """Schedule the staged followups for a sent reminder"""
    manager: FollowupCLIManager = ctx.obj['manager']

    try:
        sent_at_dt = None
        if sent_at:
            sent_at_dt = to_utc(datetime.fromisoformat(sent_at), manager.services.settings.local_timezone)

        request = FollowupScheduleRequest(
            patient_id=patient_id,
            reminder_id=reminder_id,
            phone_number=phone,
            patient_name=patient_name,
            reminder_type=ReminderType.from_string(reminder_type),
            reminder_title=title,
            priority=ReminderPriority.from_string(priority),
        )

        async def operation(services: FollowupServices):
            ids = await services.engine.schedule_type_aware_followups(request, sent_at=sent_at_dt)
            return [await services.engine.get_followup(i) for i in ids]

        records = [r for r in manager.run(operation) if r is not None]
        click.echo(f"✅ Scheduled {len(records)} followups for reminder {reminder_id}")
        click.echo(tabulate(manager.followup_rows(records), headers=FOLLOWUP_HEADERS, tablefmt="grid"))

    except (FollowupEngineError, ValueError) as e:
        click.echo(f"❌ Error scheduling followups: {e}")
        ctx.exit(1)


@cli.command('list-patient')
@click.argument('patient_id')
@click.option('--active-only', is_flag=True, help="Show only pending and sent followups")
@click.pass_context
def list_patient(ctx, patient_id, active_only):
    """List a patient's followups ordered by schedule time"""
    manager: FollowupCLIManager = ctx.obj['manager']

    try:
        records = manager.run(lambda s: s.engine.get_patient_followups(patient_id))
        if active_only:
            records = [r for r in records if r.status.is_active]

        if not records:
            click.echo(f"📋 No followups found for patient {patient_id}")
            return

        click.echo(f"👤 {patient_id}: {len(records)} followups")
        click.echo(tabulate(manager.followup_rows(records), headers=FOLLOWUP_HEADERS, tablefmt="grid"))

    except FollowupEngineError as e:
        click.echo(f"❌ Error listing followups: {e}")
        ctx.exit(1)


@cli.command('process-due')
@click.pass_context
def process_due(ctx):
    """Run one dispatch cycle now"""
    manager: FollowupCLIManager = ctx.obj['manager']

    try:
        results = manager.run(lambda s: s.engine.process_pending_followups())
        if not results:
            click.echo("📋 Nothing due (or another driver is running)")
            return

        rows = [
            [r.followup_id, r.status.value if r.status else "-", "yes" if r.processed else "no",
             r.sent_message_id or "", r.error or ""]
            for r in results
        ]
        click.echo(f"📤 Processed {len(results)} followups")
        click.echo(tabulate(rows, headers=["ID", "Status", "Processed", "Message ID", "Error"], tablefmt="grid"))

    except FollowupEngineError as e:
        click.echo(f"❌ Error processing followups: {e}")
        ctx.exit(1)


@cli.command('expire')
@click.pass_context
def expire(ctx):
    """Expire sent followups whose response window has passed"""
    manager: FollowupCLIManager = ctx.obj['manager']

    try:
        expired = manager.run(lambda s: s.engine.expire_stale_followups())
        click.echo(f"⌛ Expired {expired} followups")
    except FollowupEngineError as e:
        click.echo(f"❌ Error expiring followups: {e}")
        ctx.exit(1)


@cli.command('cancel-reminder')
@click.argument('reminder_id')
@click.pass_context
def cancel_reminder(ctx, reminder_id):
    """Cancel every open followup of a reminder"""
    manager: FollowupCLIManager = ctx.obj['manager']

    try:
        cancelled = manager.run(lambda s: s.engine.cancel_followups_for_reminder(reminder_id))
        click.echo(f"🚫 Cancelled {cancelled} followups for reminder {reminder_id}")
    except FollowupEngineError as e:
        click.echo(f"❌ Error cancelling followups: {e}")
        ctx.exit(1)


@cli.command('link-reply')
@click.argument('patient_id')
@click.argument('text')
@click.option('--phone', default=None, help="Sender phone (defaults to the followup's phone)")
@click.pass_context
def link_reply(ctx, patient_id, text, phone):
    """Link a patient reply to the followup it answers"""
    manager: FollowupCLIManager = ctx.obj['manager']

    result = manager.run(lambda s: s.linker.link_confirmation_to_reminder(patient_id, text, phone))

    if result.emergency:
        click.echo(f"🚨 Emergency keyword detected: {result.emergency_keyword}")

    if not result.success:
        click.echo(f"❌ Reply could not be linked: {result.error}")
    elif not result.matched:
        click.echo(f"📋 No pending followup for patient {patient_id}")
    else:
        click.echo(f"✅ Linked to followup {result.followup_id}")

    rows = [
        ["Classification", result.classification.type.value if result.classification else "-"],
        ["Confidence", result.classification.confidence if result.classification else "-"],
        ["Actions", ", ".join(result.actions) or "-"],
        ["Needs follow-up", "yes" if result.requires_follow_up else "no"],
        ["Acknowledgment sent", "yes" if result.acknowledgment_sent else "no"],
        ["Reply", result.message or ""],
    ]
    click.echo(tabulate(rows, tablefmt="simple"))

    if not result.success:
        ctx.exit(1)


@cli.command()
@click.argument('followup_id')
@click.pass_context
def retry(ctx, followup_id):
    """Put a failed followup back on the queue with backoff"""
    manager: FollowupCLIManager = ctx.obj['manager']

    try:
        due_at = manager.run(lambda s: s.engine.retry_failed_followup(followup_id))
        click.echo(f"🔁 Followup {followup_id} will be retried at {manager.format_time(due_at)}")
    except FollowupEngineError as e:
        click.echo(f"❌ Cannot retry followup: {e}")
        ctx.exit(1)


@cli.command()
@click.option('--patient-id', default=None, help="Limit to one patient")
@click.pass_context
def stats(ctx, patient_id):
    """Show followup counts by status"""
    manager: FollowupCLIManager = ctx.obj['manager']

    try:
        counts = manager.run(lambda s: s.engine.get_followup_stats(patient_id))
        scope = f"patient {patient_id}" if patient_id else "all patients"
        click.echo(f"📊 Followup statistics ({scope})")

        total = counts.get("total", 0)
        rows = []
        for status in FollowupStatus:
            count = counts.get(status.value, 0)
            percentage = (count / total * 100) if total else 0.0
            rows.append([f"{STATUS_EMOJI[status]} {status.value}", count, f"{percentage:.1f}%"])
        rows.append(["total", total, ""])
        click.echo(tabulate(rows, headers=["Status", "Count", "Share"], tablefmt="simple"))

    except FollowupEngineError as e:
        click.echo(f"❌ Error getting statistics: {e}")
        ctx.exit(1)


@cli.command('cleanup-conversations')
@click.pass_context
def cleanup_conversations(ctx):
    """Deactivate conversation states past their expiry"""
    manager: FollowupCLIManager = ctx.obj['manager']

    try:
        cleaned = manager.run(lambda s: s.conversations.cleanup_expired())
        click.echo(f"🧹 Deactivated {cleaned} expired conversations")
    except FollowupEngineError as e:
        click.echo(f"❌ Error cleaning up conversations: {e}")
        ctx.exit(1)


@cli.command()
@click.option('--limit', default=20, help="Maximum number of escalations to show")
@click.pass_context
def escalations(ctx, limit):
    """Show the most recent operator escalations"""
    manager: FollowupCLIManager = ctx.obj['manager']

    try:
        items = manager.run(lambda s: s.escalations.recent(limit))
        if not items:
            click.echo("📋 No escalations recorded")
            return

        rows = [
            [manager.format_time(e.created_at), e.kind.value, e.patient_id, e.followup_id or "-",
             e.response, "yes" if e.notified else "no"]
            for e in items
        ]
        click.echo(tabulate(rows, headers=["When", "Kind", "Patient", "Followup", "Reply", "Notified"], tablefmt="grid"))

    except FollowupEngineError as e:
        click.echo(f"❌ Error listing escalations: {e}")
        ctx.exit(1)


@cli.command('redis-status')
def redis_status():
    """Check the Redis connection"""
    ok = ping_redis()
    click.echo(f"{'✅' if ok else '❌'} Redis connection: {'OK' if ok else 'Failed'}")


if __name__ == '__main__':
    cli()
