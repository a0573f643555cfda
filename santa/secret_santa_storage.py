"""
Secret Santa Storage Module - Durable State and Transactions

RESPONSIBILITIES:
- JSON file operations (load/save with atomic writes)
- State file management with backup fallback
- Events, participants, assignments and the token index
- Pending notification queue (enqueue, list, delete, attempts)
- Cleanup check for events that were never completed

STATE FILE LAYOUT:
{
    "version": 1,
    "events": {
        "<event_id>": {
            "id", "budget", "date", "location", "message", "created_at",
            "status": "ready",
            "organizer_key_hash": "<sha256 hex>",
            "participants": [{"name", "email", "wishlist"}, ...],
            "assignments": [{"giver": 0, "receiver": 2, "token", "revealed"}, ...]
        }
    },
    "tokens": {"<token>": ["<event_id>", <giver_index>]},
    "pending_notifications": {"<id>": {...}}
}

Assignments are stored in giver order, so assignments[i]["giver"] == i.

ISOLATION:
- No HTTP or email dependencies
- Every write goes through transaction(): one lock, one atomic file write,
  in-memory rollback if the write fails
"""

import asyncio
import copy
import datetime as dt
import json
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .errors import PersistenceFailure
from .health_monitor import HealthMonitor
from .secret_santa_assignments import validate_assignment_integrity

STATE_VERSION = 1

EVENT_READY = "ready"
EVENT_CREATING = "creating"

NOTIFY_PENDING = "pending"
NOTIFY_FAILED = "failed"


def load_json(path: Path, default: Any = None) -> Any:
    """
    Load JSON (cross-platform compatible).

    A missing or empty file gives default; a corrupt one raises, so the
    caller can fall back to the backup instead of silently starting empty.
    """
    if path.exists():
        text = path.read_text(encoding='utf-8').strip()
        if text:
            return json.loads(text)
    return default if default is not None else {}


def save_json(path: Path, data: Any, logger=None, monitor: Optional[HealthMonitor] = None):
    """
    Save JSON atomically (temp file + rename).

    Runs the health monitor first so a full disk or a read-only directory
    fails before the temp file is touched.
    """
    monitor = monitor or HealthMonitor(logger)
    is_safe, warning = monitor.validate_path_safety(path, operation="write")
    if not is_safe:
        if logger:
            logger.error(f"Cannot save {path}: {warning}")
        raise OSError(f"Health check failed: {warning}")

    temp = path.with_suffix('.tmp')
    try:
        temp.write_text(
            json.dumps(data, indent=2, ensure_ascii=False),
            encoding='utf-8'
        )
        temp.replace(path)
    except Exception:
        if temp.exists():
            try:
                temp.unlink()
            except OSError:
                pass
        raise


def get_default_state() -> dict:
    return {
        "version": STATE_VERSION,
        "events": {},
        "tokens": {},
        "pending_notifications": {},
    }


def validate_state_structure(state: dict, logger=None) -> dict:
    """
    Validate and repair state structure.

    The token index is rebuilt from the events on every load, so a stale or
    hand-edited index can never point a token at the wrong assignment.

    Returns: Validated state (repaired if needed)
    """
    if not isinstance(state, dict):
        if logger:
            logger.error("State is not a dict, using defaults")
        return get_default_state()

    state.setdefault("version", STATE_VERSION)

    for key in ("events", "pending_notifications"):
        if not isinstance(state.get(key), dict):
            if logger and key in state:
                logger.error(f"Invalid state - {key} not a dict, resetting")
            state[key] = {}

    for event_id, event in list(state["events"].items()):
        if not isinstance(event, dict) or not isinstance(event.get("assignments"), list) \
                or not isinstance(event.get("participants"), list):
            if logger:
                logger.error(f"Invalid event {event_id} - dropping")
            del state["events"][event_id]

    tokens = {}
    for event_id, event in state["events"].items():
        for assignment in event["assignments"]:
            if isinstance(assignment, dict) and assignment.get("token"):
                tokens[assignment["token"]] = [event_id, assignment.get("giver")]
    state["tokens"] = tokens

    return state


def load_state_with_fallback(path: Path, logger=None) -> dict:
    """
    Load state with multi-layer fallback system.

    Fallback chain:
    1. Load main state file
    2. Validate structure
    3. If corrupted → Try backup file
    4. If backup fails → Use clean defaults

    Returns: Valid state dict (guaranteed)
    """
    try:
        state = load_json(path, get_default_state())
        state = validate_state_structure(state, logger)
        if logger:
            logger.info(f"State loaded successfully. Events: {len(state['events'])}, "
                        f"queued notifications: {len(state['pending_notifications'])}")
        return state
    except Exception as e:
        if logger:
            logger.error(f"Failed to load state: {e}, trying backup", exc_info=True)

    backup_path = path.with_suffix('.backup')
    if backup_path.exists():
        try:
            if logger:
                logger.info("Attempting to load from backup...")
            state = load_json(backup_path, get_default_state())
            state = validate_state_structure(state, logger)
            if logger:
                logger.info("Backup state loaded successfully")
            return state
        except Exception as backup_error:
            if logger:
                logger.error(f"Backup load also failed: {backup_error}")

    if logger:
        logger.warning("Using clean default state")
    return get_default_state()


class SecretSantaStore:
    """Event, token and notification persistence backed by one JSON file"""

    def __init__(self, path: Path, logger=None, monitor: Optional[HealthMonitor] = None):
        self.path = Path(path)
        self.logger = logger
        self.monitor = monitor or HealthMonitor(logger)
        self.state = load_state_with_fallback(self.path, logger)
        self._lock = asyncio.Lock()

    # ---------- transactions ----------

    def _commit(self):
        try:
            save_json(self.path, self.state, self.logger, self.monitor)
        except Exception as e:
            if self.logger:
                self.logger.error(f"CRITICAL: Failed to save state: {e}", exc_info=True)
            raise PersistenceFailure(f"Could not write {self.path}") from e

    @asynccontextmanager
    async def transaction(self):
        """
        Exclusive write scope: yields the live state, writes it once on exit.
        Any exception (including a failed write) restores the previous state.
        """
        async with self._lock:
            snapshot = copy.deepcopy(self.state)
            try:
                yield self.state
                self._commit()
            except BaseException:
                self.state = snapshot
                raise

    async def backup_loop(self, interval: float = 3600):
        """Periodic copy of the state to the .backup file"""
        backup_path = self.path.with_suffix('.backup')
        try:
            while True:
                await asyncio.sleep(interval)
                async with self._lock:
                    try:
                        save_json(backup_path, self.state, self.logger, self.monitor)
                    except Exception as e:
                        if self.logger:
                            self.logger.error(f"Backup save failed: {e}")
        except asyncio.CancelledError:
            pass

    # ---------- events ----------

    async def create_event(
        self,
        fields: Mapping[str, Any],
        participants: Sequence[Mapping[str, str]],
        assignments: Mapping[int, int],
        token_factory: Callable[[], str],
        organizer_key_hash: str,
        outbox: Optional[Callable[[dict], Sequence[Mapping[str, Any]]]] = None,
        max_attempts: int = 3,
    ) -> dict:
        """
        Write an event together with all of its assignment rows.

        token_factory is called once per giver; a token already present in
        the store is thrown away and a new one drawn.

        outbox, when given, is called with the finished event and returns the
        messages to queue (invitations). They are committed in the same write
        as the event, so live tokens never exist without their invitations.

        Returns: Copy of the stored event (tokens included)
        """
        async with self.transaction() as state:
            event_id = uuid.uuid4().hex[:16]
            while event_id in state["events"]:
                event_id = uuid.uuid4().hex[:16]

            event = {
                "id": event_id,
                "budget": str(fields.get("budget") or ""),
                "date": str(fields.get("date") or ""),
                "location": str(fields.get("location") or ""),
                "message": str(fields.get("message") or ""),
                "created_at": dt.datetime.now(dt.timezone.utc).isoformat(),
                "status": EVENT_CREATING,
                "organizer_key_hash": organizer_key_hash,
                "participants": [
                    {"name": p["name"], "email": p["email"], "wishlist": ""}
                    for p in participants
                ],
                "assignments": [],
            }
            state["events"][event_id] = event

            for giver in range(len(participants)):
                token = token_factory()
                while token in state["tokens"]:
                    token = token_factory()
                event["assignments"].append({
                    "giver": giver,
                    "receiver": assignments[giver],
                    "token": token,
                    "revealed": False,
                })
                state["tokens"][token] = [event_id, giver]

            event["status"] = EVENT_READY

            if outbox is not None:
                records = self._notification_records(outbox(event), max_attempts, time.time())
                for record in records:
                    state["pending_notifications"][record["id"]] = record

        if self.logger:
            self.logger.info(f"Event {event_id} stored with {len(participants)} assignments")
        return copy.deepcopy(event)

    async def get_event(self, event_id: str) -> Optional[dict]:
        event = self.state["events"].get(event_id)
        return copy.deepcopy(event) if event else None

    async def delete_event(self, event_id: str) -> bool:
        """Remove an event, its tokens and its queued notifications"""
        if event_id not in self.state["events"]:
            return False

        async with self.transaction() as state:
            event = state["events"].pop(event_id)
            for assignment in event["assignments"]:
                state["tokens"].pop(assignment.get("token"), None)
            queue = state["pending_notifications"]
            for notification_id in [k for k, n in queue.items() if n.get("event_id") == event_id]:
                del queue[notification_id]

        if self.logger:
            self.logger.info(f"Event {event_id} deleted")
        return True

    def find_incomplete_events(self) -> List[str]:
        """
        Cleanup check: events that are not marked ready, or whose assignment
        rows do not form a valid single cycle over their participants.
        """
        broken = []
        for event_id, event in self.state["events"].items():
            if event.get("status") != EVENT_READY:
                broken.append(event_id)
                continue

            assignments = event["assignments"]
            count = len(event["participants"])
            try:
                if len(assignments) != count:
                    raise ValueError(f"{len(assignments)} assignments for {count} participants")
                mapping = {}
                for position, row in enumerate(assignments):
                    if row.get("giver") != position or not row.get("token"):
                        raise ValueError(f"Malformed assignment row {position}")
                    mapping[row["giver"]] = row["receiver"]
                validate_assignment_integrity(mapping, count)
            except (ValueError, KeyError, TypeError) as e:
                if self.logger:
                    self.logger.warning(f"Event {event_id} failed integrity check: {e}")
                broken.append(event_id)
        return broken

    async def purge_incomplete_events(self) -> List[str]:
        broken = self.find_incomplete_events()
        for event_id in broken:
            await self.delete_event(event_id)
        if broken and self.logger:
            self.logger.warning(f"Purged {len(broken)} incomplete event(s): {broken}")
        return broken

    # ---------- tokens ----------

    def token_exists(self, token: str) -> bool:
        return token in self.state["tokens"]

    def _lookup(self, token: str):
        """(event, assignment) for a token of a ready event, else (None, None)"""
        entry = self.state["tokens"].get(token)
        if not entry:
            return None, None

        event_id, giver = entry
        event = self.state["events"].get(event_id)
        if not event or event.get("status") != EVENT_READY:
            return None, None

        assignments = event["assignments"]
        if not isinstance(giver, int) or not 0 <= giver < len(assignments):
            return None, None
        assignment = assignments[giver]
        if assignment.get("token") != token:
            return None, None
        return event, assignment

    async def get_assignment_by_token(self, token: str) -> Optional[dict]:
        """
        Joined view of one assignment row: the giver, the receiver, both
        wishlists and the event details. Nothing about any other row.
        """
        event, assignment = self._lookup(token)
        if not event:
            return None

        participants = event["participants"]
        giver = participants[assignment["giver"]]
        receiver = participants[assignment["receiver"]]
        return {
            "event_id": event["id"],
            "giver": assignment["giver"],
            "receiver": assignment["receiver"],
            "giver_name": giver["name"],
            "giver_email": giver["email"],
            "receiver_name": receiver["name"],
            "my_wishlist": giver.get("wishlist", ""),
            "receiver_wishlist": receiver.get("wishlist", ""),
            "revealed": assignment.get("revealed", False),
            "budget": event["budget"],
            "date": event["date"],
            "location": event["location"],
            "message": event["message"],
        }

    async def get_santa_for(self, event_id: str, receiver_index: int) -> Optional[dict]:
        """Reverse lookup: the assignment row whose receiver is receiver_index"""
        event = self.state["events"].get(event_id)
        if not event or event.get("status") != EVENT_READY:
            return None

        for assignment in event["assignments"]:
            if assignment["receiver"] == receiver_index:
                santa = event["participants"][assignment["giver"]]
                return {
                    "giver": assignment["giver"],
                    "giver_name": santa["name"],
                    "giver_email": santa["email"],
                    "token": assignment["token"],
                }
        return None

    async def update_wishlist(self, token: str, wishlist: str) -> bool:
        event, _ = self._lookup(token)
        if not event:
            return False

        async with self.transaction():
            # Re-resolve inside the lock, the event may have been deleted meanwhile
            event, assignment = self._lookup(token)
            if not event:
                return False
            participant = event["participants"][assignment["giver"]]
            participant["wishlist"] = wishlist
            participant["wishlist_updated_at"] = time.time()
        return True

    async def mark_revealed(self, token: str) -> bool:
        event, assignment = self._lookup(token)
        if not event:
            return False
        if assignment.get("revealed"):
            return True

        async with self.transaction():
            event, assignment = self._lookup(token)
            if not event:
                return False
            assignment["revealed"] = True
        return True

    # ---------- pending notifications ----------

    async def enqueue(
        self,
        kind: str,
        to: str,
        subject: str,
        body: str,
        *,
        html: Optional[str] = None,
        event_id: Optional[str] = None,
        max_attempts: int = 3,
        dedupe_key: Optional[str] = None,
        now: Optional[float] = None,
    ) -> dict:
        [record] = await self.enqueue_many([{
            "kind": kind, "to": to, "subject": subject, "body": body, "html": html,
            "event_id": event_id, "dedupe_key": dedupe_key,
        }], max_attempts=max_attempts, now=now)
        return record

    @staticmethod
    def _notification_records(messages: Sequence[Mapping[str, Any]], max_attempts: int,
                              now: float) -> List[dict]:
        return [
            {
                "id": uuid.uuid4().hex,
                "kind": message["kind"],
                "event_id": message.get("event_id"),
                "to": message["to"],
                "subject": message["subject"],
                "body": message["body"],
                "html": message.get("html"),
                "attempts": 0,
                "max_attempts": max_attempts,
                "next_attempt_at": now + max(0.0, float(message.get("delay") or 0)),
                "status": NOTIFY_PENDING,
                "last_error": None,
                "dedupe_key": message.get("dedupe_key"),
                "created_at": now,
            }
            for message in messages
        ]

    async def enqueue_many(self, messages: Sequence[Mapping[str, Any]], max_attempts: int = 3,
                           now: Optional[float] = None) -> List[dict]:
        """
        Queue several messages with one write.

        Each message needs kind/to/subject/body; html, event_id, dedupe_key
        and delay (seconds before the first attempt) are optional.
        """
        now = time.time() if now is None else now
        records = self._notification_records(messages, max_attempts, now)

        if records:
            async with self.transaction() as state:
                for record in records:
                    state["pending_notifications"][record["id"]] = record
        return copy.deepcopy(records)


    async def get_notification(self, notification_id: str) -> Optional[dict]:
        record = self.state["pending_notifications"].get(notification_id)
        return copy.deepcopy(record) if record else None

    async def list_pending(self, now: Optional[float] = None) -> List[dict]:
        """Pending records that are due, oldest due first"""
        now = time.time() if now is None else now
        due = [
            n for n in self.state["pending_notifications"].values()
            if n["status"] == NOTIFY_PENDING and n["next_attempt_at"] <= now
        ]
        due.sort(key=lambda n: (n["next_attempt_at"], n["created_at"]))
        return copy.deepcopy(due)

    async def list_notifications(self, event_id: Optional[str] = None, status: Optional[str] = None) -> List[dict]:
        records = [
            n for n in self.state["pending_notifications"].values()
            if (event_id is None or n.get("event_id") == event_id)
            and (status is None or n["status"] == status)
        ]
        return copy.deepcopy(records)

    async def find_open_notification(self, dedupe_key: str) -> Optional[dict]:
        """A still-pending record with this dedupe key, if any"""
        for record in self.state["pending_notifications"].values():
            if record["status"] == NOTIFY_PENDING and record.get("dedupe_key") == dedupe_key:
                return copy.deepcopy(record)
        return None

    async def refresh_notification(self, notification_id: str, subject: str, body: str,
                                   html: Optional[str] = None) -> bool:
        if notification_id not in self.state["pending_notifications"]:
            return False
        async with self.transaction() as state:
            record = state["pending_notifications"].get(notification_id)
            if not record:
                return False
            record.update(subject=subject, body=body, html=html)
        return True

    async def delete_pending(self, notification_id: str) -> bool:
        if notification_id not in self.state["pending_notifications"]:
            return False
        async with self.transaction() as state:
            return state["pending_notifications"].pop(notification_id, None) is not None

    async def increment_attempts(self, notification_id: str, error: Optional[str] = None,
                                 retry_delay: float = 0, now: Optional[float] = None) -> Optional[dict]:
        """Count one failed attempt and push the next one retry_delay seconds out"""
        if notification_id not in self.state["pending_notifications"]:
            return None
        now = time.time() if now is None else now
        async with self.transaction() as state:
            record = state["pending_notifications"][notification_id]
            record["attempts"] += 1
            record["last_error"] = error
            record["next_attempt_at"] = now + retry_delay
        return copy.deepcopy(record)

    async def mark_failed(self, notification_id: str) -> bool:
        if notification_id not in self.state["pending_notifications"]:
            return False
        async with self.transaction() as state:
            state["pending_notifications"][notification_id]["status"] = NOTIFY_FAILED
        return True

    async def reprocess(self, notification_id: str, now: Optional[float] = None) -> bool:
        """Manual retry: put a record back in the queue with a fresh attempt budget"""
        if notification_id not in self.state["pending_notifications"]:
            return False
        now = time.time() if now is None else now
        async with self.transaction() as state:
            record = state["pending_notifications"][notification_id]
            record.update(status=NOTIFY_PENDING, attempts=0, next_attempt_at=now, last_error=None)
        return True

    def queue_counts(self) -> Dict[str, int]:
        counts = {NOTIFY_PENDING: 0, NOTIFY_FAILED: 0}
        for record in self.state["pending_notifications"].values():
            counts[record["status"]] = counts.get(record["status"], 0) + 1
        return counts
