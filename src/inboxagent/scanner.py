import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from inboxagent.db import (
    DbConnection,
    find_task_waiting_for_sender,
    get_owner,
    get_owner_ids_with_waiting_tasks,
)
from inboxagent.engine import TaskEngine
from inboxagent.errors import AuthExpired, InboxAgentError
from inboxagent.scheduling import lookback_covers_schedule, next_scan_time

log = logging.getLogger(__name__)


@dataclass
class ScanResult:
    processed_count: int = 0
    owners_scanned: int = 0


class ReplyScanner:
    """Matches recent inbound mail to waiting tasks and hands them to the engine.

    Safe to run repeatedly or concurrently over the same messages: a task
    only matches while ``waiting_response``, completion is idempotent, and
    each task remembers which message ids it has already handled.
    """

    def __init__(
        self, db: DbConnection, engine: TaskEngine, *, lookback: timedelta
    ) -> None:
        self.db = db
        self.engine = engine
        self.lookback = lookback

    async def run_scan(self, now: datetime | None = None) -> ScanResult:
        since = (now or datetime.now(timezone.utc)) - self.lookback
        owner_ids = get_owner_ids_with_waiting_tasks(self.db)
        if not owner_ids:
            log.debug("No waiting tasks; nothing to scan")
            return ScanResult()

        # Owners share no state, so their scans run concurrently.
        outcomes = await asyncio.gather(
            *(self._scan_owner(owner_id, since) for owner_id in owner_ids),
            return_exceptions=True,
        )
        result = ScanResult(owners_scanned=len(owner_ids))
        for owner_id, outcome in zip(owner_ids, outcomes):
            if isinstance(outcome, BaseException):
                log.error("Scan failed for owner %s: %r", owner_id, outcome)
                continue
            result.processed_count += outcome

        log.info(
            "Scan complete: %d replies processed across %d owners",
            result.processed_count,
            result.owners_scanned,
        )
        return result

    async def _scan_owner(self, owner_id: str, since: datetime) -> int:
        owner = get_owner(self.db, owner_id)
        if owner is None or not owner.google_access_token:
            log.warning("Owner %s has waiting tasks but no connected mailbox", owner_id)
            return 0

        try:
            messages = await self.engine.mailbox.list_inbound(owner.credentials(), since)
        except AuthExpired as e:
            log.warning("Skipping owner %s until they reconnect: %s", owner_id, e)
            return 0
        except InboxAgentError as e:
            log.warning("Could not list inbound mail for %s: %s", owner_id, e)
            return 0

        processed = 0
        # Newest first, one message at a time: a task is re-read before each
        # message so a second reply cannot act on a task that already moved on.
        for message in sorted(messages, key=lambda m: m.received_at, reverse=True):
            task = find_task_waiting_for_sender(self.db, owner.id, message.from_email)
            if task is None:
                continue
            if message.received_at < datetime.fromisoformat(task.created_at):
                continue
            log.info("Reply from %s matches task %s", message.from_email, task.id)
            status = await self.engine.handle_reply(owner, task, message)
            if status is not None:
                processed += 1
        return processed


async def run_scanner(scanner: ReplyScanner, schedule: str) -> None:
    """Run scans forever on the cron cadence *schedule*."""
    if not lookback_covers_schedule(schedule, scanner.lookback):
        log.warning(
            "Look-back window %s is shorter than the scan interval of %r plus margin; "
            "replies may be missed",
            scanner.lookback,
            schedule,
        )
    log.info("Reply scanner started (schedule %r)", schedule)

    while True:
        try:
            await scanner.run_scan()
        except Exception:
            log.exception("Scan aborted")
        now = datetime.now(timezone.utc)
        delay = (next_scan_time(schedule, now) - now).total_seconds()
        await asyncio.sleep(max(delay, 0))
