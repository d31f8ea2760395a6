# reconcile.py
"""
Reconciliation passes over the wallet sheet.

One pass reads the whole sheet once, checks every stored member against the
guild with a small pool of concurrent workers, works out which rows actually
need to change, and writes that diff back in as few calls as possible:
one batched role update, then one batched row delete (highest row first).
"""
import asyncio
import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence

from directory import MembershipDirectory
from roles import HeldRoles, PriorityRoleList, priority_index, resolve_priority_role
from wallet_store import RoleUpdate, WalletRecord, WalletStore

log = logging.getLogger(__name__)

KEEP = "keep"
UPDATE = "update"
DELETE = "delete"

NOT_IN_SERVER = "Not in server"
NO_PRIORITY_ROLE = "No priority role"
LOOKUP_FAILED = "Lookup failed"


# ---------- modes

@dataclass(frozen=True)
class ModePolicy:
    name: str
    workers: int
    description: str = ""
    only_blank: bool = False       # worklist = rows with an empty Role cell
    delete_absent: bool = False    # member left the guild
    delete_unranked: bool = False  # member holds no priority role
    clear_unranked: bool = False   # write "" over a stale label instead
    update_roles: bool = True
    on_error: str = KEEP           # outcome when the member lookup fails


MODES: Dict[str, ModePolicy] = {
    "refresh": ModePolicy(
        name="refresh",
        workers=5,
        description="Re-resolve every role, drop members who left",
        delete_absent=True,
        clear_unranked=True,
        on_error=KEEP,
    ),
    "fill": ModePolicy(
        name="fill",
        workers=5,
        description="Fill blank roles only",
        only_blank=True,
        on_error=KEEP,
    ),
    "prune": ModePolicy(
        name="prune",
        workers=20,
        description="Delete members who left or hold no priority role",
        delete_absent=True,
        delete_unranked=True,
        update_roles=False,
        on_error=DELETE,
    ),
    "departed": ModePolicy(
        name="departed",
        workers=5,
        description="Delete members who left the server",
        delete_absent=True,
        update_roles=False,
        on_error=DELETE,
    ),
}


def get_policy(mode: str) -> ModePolicy:
    try:
        return MODES[mode]
    except KeyError:
        raise ValueError(f"unknown reconcile mode {mode!r}, expected one of {', '.join(MODES)}") from None


# ---------- per-record decision

@dataclass(frozen=True)
class Outcome:
    action: str
    label: str = ""
    note: str = ""   # resolved label, or why there is none


def decide(record: WalletRecord, held: Optional[HeldRoles], policy: ModePolicy, priority: PriorityRoleList) -> Outcome:
    """What one record should become, given the member's live roles (None = not in guild)."""
    if held is None:
        return Outcome(DELETE if policy.delete_absent else KEEP, note=NOT_IN_SERVER)

    label = resolve_priority_role(held, priority)
    if not label:
        if policy.delete_unranked:
            return Outcome(DELETE, note=NO_PRIORITY_ROLE)
        if policy.clear_unranked and record.role_label:
            return Outcome(UPDATE, "", note=NO_PRIORITY_ROLE)
        return Outcome(KEEP, note=NO_PRIORITY_ROLE)

    if policy.update_roles and label != record.role_label:
        return Outcome(UPDATE, label, note=label)
    return Outcome(KEEP, record.role_label, note=label)


# ---------- diff

@dataclass
class ReconciliationDiff:
    updates: List[RoleUpdate] = field(default_factory=list)
    deletions: List[int] = field(default_factory=list)   # highest row first

    def __bool__(self) -> bool:
        return bool(self.updates or self.deletions)


def compute_diff(snapshot: Sequence[WalletRecord], outcomes: Mapping[int, Outcome]) -> ReconciliationDiff:
    """Only rows whose computed state differs from the stored one make it in."""
    by_row = {r.row: r for r in snapshot if r.row is not None}
    diff = ReconciliationDiff()
    for row, out in outcomes.items():
        rec = by_row.get(row)
        if rec is None:
            continue
        if out.action == DELETE:
            diff.deletions.append(row)
        elif out.action == UPDATE and out.label != rec.role_label:
            diff.updates.append(RoleUpdate(row, out.label))
    diff.updates.sort(key=lambda u: u.row)
    diff.deletions.sort(reverse=True)
    return diff


# ---------- summary

@dataclass
class Summary:
    mode: str
    dry_run: bool = False
    checked: int = 0
    changed: int = 0
    deleted: int = 0
    errors: int = 0
    skipped: int = 0
    planned_updates: int = 0
    planned_deletions: int = 0
    by_label: Counter = field(default_factory=Counter)
    results: List[Dict[str, Any]] = field(default_factory=list)
    failure: Optional[str] = None

    def describe(self, priority: PriorityRoleList = ()) -> str:
        head = f"Reconcile **{self.mode}**" + (" (dry run)" if self.dry_run else "")
        if self.dry_run:
            counts = (
                f"Checked: {self.checked} | Would update: {self.planned_updates} | "
                f"Would delete: {self.planned_deletions} | Errors: {self.errors}"
            )
        else:
            counts = (
                f"Checked: {self.checked} | Updated: {self.changed}/{self.planned_updates} | "
                f"Deleted: {self.deleted}/{self.planned_deletions} | Errors: {self.errors}"
            )
        lines = [head, counts]
        if self.skipped:
            lines.append(f"Skipped rows without a Discord ID: {self.skipped}")
        if self.failure:
            lines.append(f"Stopped: {self.failure}")
        if self.by_label:
            ordered = sorted(self.by_label.items(), key=lambda kv: (priority_index(kv[0], priority), kv[0]))
            lines.append("By role: " + ", ".join(f"{k}: {v}" for k, v in ordered[:20]))
        return "\n".join(lines)[:1900]


class ReconcileError(Exception):
    """A store write failed mid-pass. `summary` says what was applied."""

    def __init__(self, message: str, summary: Summary):
        super().__init__(message)
        self.summary = summary


# ---------- engine

class Reconciler:
    def __init__(
        self,
        store: WalletStore,
        directory: MembershipDirectory,
        priority: PriorityRoleList,
        *,
        lookup_timeout: float = 30.0,
    ):
        self.store = store
        self.directory = directory
        self.priority = priority
        self.lookup_timeout = lookup_timeout

    async def _check(self, rec: WalletRecord, policy: ModePolicy, summary: Summary) -> Outcome:
        try:
            held = await asyncio.wait_for(self.directory.lookup(rec.member_id), self.lookup_timeout)
        except Exception as e:
            summary.errors += 1
            log.warning("Lookup failed for %s (row %s): %r", rec.member_id, rec.row, e)
            return Outcome(policy.on_error, note=LOOKUP_FAILED)
        return decide(rec, held, policy, self.priority)

    async def run(self, mode: str = "refresh", *, dry_run: bool = False, cancel: asyncio.Event | None = None) -> Summary:
        policy = get_policy(mode)
        summary = Summary(mode=mode, dry_run=dry_run)

        snapshot = await self.store.list_all()
        work: deque[WalletRecord] = deque()
        for rec in snapshot:
            if not rec.member_id:
                summary.skipped += 1
                continue
            if policy.only_blank and rec.role_label:
                continue
            work.append(rec)
        log.info("Reconcile %s: %d of %d row(s) to check with %d worker(s)",
                 mode, len(work), len(snapshot), policy.workers)

        outcomes: Dict[int, Outcome] = {}

        async def worker():
            while work:
                if cancel is not None and cancel.is_set():
                    return
                rec = work.popleft()
                out = await self._check(rec, policy, summary)
                outcomes[rec.row] = out
                summary.checked += 1
                summary.by_label[out.note or rec.role_label] += 1
                summary.results.append({
                    "Discord Username": rec.display_name,
                    "Discord ID": rec.member_id,
                    "Row": rec.row,
                    "Stored Role": rec.role_label,
                    "Resolved": out.note,
                    "Action": out.action,
                })

        if work:
            await asyncio.gather(*(worker() for _ in range(min(policy.workers, len(work)))))

        if cancel is not None and cancel.is_set():
            summary.failure = "cancelled before writing"
            log.warning("Reconcile %s cancelled after %d check(s)", mode, summary.checked)
            return summary

        diff = compute_diff(snapshot, outcomes)
        summary.planned_updates = len(diff.updates)
        summary.planned_deletions = len(diff.deletions)
        if dry_run or not diff:
            log.info("Reconcile %s done: %s", mode, summary.describe().replace("\n", " | "))
            return summary

        # Updates first: they address rows of the same snapshot the deletions
        # would shift.
        stage = "role update"
        try:
            summary.changed = await self.store.batch_update_roles(diff.updates)
            stage = "row delete"
            summary.deleted = await self.store.batch_delete_rows(diff.deletions)
        except Exception as e:
            applied = getattr(e, "applied", 0)
            if stage == "role update":
                summary.changed = applied
            else:
                summary.deleted = applied
            summary.failure = f"{stage} failed: {e}"
            log.error("Reconcile %s: %s", mode, summary.failure)
            raise ReconcileError(summary.failure, summary) from e

        log.info("Reconcile %s done: %s", mode, summary.describe().replace("\n", " | "))
        return summary


# ---------- fire and report

class Notifier(Protocol):
    async def notify(self, recipient: Any, message: str, attachment: Optional[str] = None) -> None:
        ...


class ReconcileService:
    """
    Runs passes in the background. `start` answers right away; the outcome
    arrives later through the notifier. One pass at a time, since a second
    pass would plan against rows the first one is about to move.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        notifier: Notifier,
        *,
        exporter: Optional[Callable[[Summary], str]] = None,
    ):
        self.reconciler = reconciler
        self.notifier = notifier
        self.exporter = exporter
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, mode: str, recipient: Any, *, dry_run: bool = False, export: bool = False) -> bool:
        get_policy(mode)
        if self.running:
            return False
        self._task = asyncio.get_running_loop().create_task(
            self._run_and_report(mode, recipient, dry_run=dry_run, export=export),
            name=f"reconcile-{mode}",
        )
        return True

    async def wait(self) -> Optional[Summary]:
        if self._task is None:
            return None
        return await self._task

    async def _run_and_report(self, mode: str, recipient: Any, *, dry_run: bool, export: bool) -> Optional[Summary]:
        try:
            summary = await self.reconciler.run(mode, dry_run=dry_run)
        except ReconcileError as e:
            summary = e.summary
        except Exception as e:
            log.exception("Reconcile %s failed", mode)
            await self._notify(recipient, f"Reconcile **{mode}** failed: {e}")
            return None

        attachment = None
        if export and self.exporter is not None and summary.results:
            try:
                attachment = await asyncio.to_thread(self.exporter, summary)
            except Exception:
                log.exception("Could not export reconcile %s report", mode)
        await self._notify(recipient, summary.describe(self.reconciler.priority), attachment)
        return summary

    async def _notify(self, recipient: Any, message: str, attachment: Optional[str] = None):
        try:
            await self.notifier.notify(recipient, message, attachment)
        except Exception:
            log.exception("Could not deliver reconcile report to %s", recipient)
