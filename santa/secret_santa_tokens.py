"""
Secret Santa Token Module - Reveal Links and the Privacy Boundary

RESPONSIBILITIES:
- Event creation (filter → assign → mint tokens → store, one transaction)
- Token minting (256-bit, URL-safe, never derived from participant data)
- Reveal: token → that one giver's view, nothing else
- Wishlist updates through the owner's token
- Reverse lookup of a participant's Santa (internal only)

PRIVACY RULES:
- The token is the only key a caller can present. No name/email/index lookups
  are reachable from outside.
- Malformed, unknown and unusable tokens all raise the same InvalidToken.
- Tokens and organizer keys are never logged.
"""

import functools
import logging
import re
import secrets
from dataclasses import asdict, dataclass
from typing import Iterable, Mapping, Optional, Tuple
from urllib.parse import urlencode

from .errors import InvalidToken, SecretSantaError
from .secret_santa_assignments import make_assignments, prepare_participants
from .secret_santa_checks import hash_organizer_key, mint_organizer_key

logger = logging.getLogger("santa.tokens")

TOKEN_BYTES = 32
MAX_WISHLIST_LENGTH = 2000

# token_urlsafe alphabet; generous bounds so the format can change later
_TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]{16,128}$")


@dataclass(frozen=True)
class RevealView:
    """Everything one giver may see"""
    giver: str
    receiver: str
    budget: str
    date: str
    location: str
    message: str
    my_wishlist: str
    receiver_wishlist: str

    def to_dict(self) -> dict:
        return asdict(self)


def mint_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


def is_well_formed(token) -> bool:
    return isinstance(token, str) and bool(_TOKEN_RE.match(token))


def build_reveal_link(app_url: str, token: str) -> str:
    return f"{app_url.rstrip('/')}/reveal?{urlencode({'token': token})}"


async def create_exchange(store, details: Mapping, rows: Iterable[Mapping],
                          max_participants: Optional[int] = None, outbox=None,
                          organizer_email: Optional[str] = None) -> Tuple[dict, str]:
    """
    Create an event with its complete assignment.

    Args:
        store: SecretSantaStore
        details: budget/date/location/message
        rows: raw participant rows ({"name", "email"})
        max_participants: optional upper bound on eligible participants
        outbox: optional NotificationQueue; its invitations (and the organizer
            report, when organizer_email is given) are stored in the same
            write as the event
        organizer_email: optional address for the pair list report

    Returns:
        (stored event, organizer key) - the key is only ever returned here

    Raises:
        InsufficientParticipants: Fewer than 2 eligible rows
        ValueError: More than max_participants eligible rows
        PersistenceFailure: The state could not be written
    """
    participants = prepare_participants(rows)
    if max_participants and len(participants) > max_participants:
        raise ValueError(f"At most {max_participants} participants allowed (got {len(participants)})")

    assignments = make_assignments(len(participants))
    organizer_key = mint_organizer_key()

    messages = None
    if outbox is not None:
        messages = functools.partial(outbox.creation_messages, organizer_email=organizer_email)

    event = await store.create_event(
        details,
        participants,
        assignments,
        mint_token,
        hash_organizer_key(organizer_key),
        outbox=messages,
        max_attempts=outbox.max_attempts if outbox is not None else 3,
    )
    if outbox is not None:
        outbox.invitations_stored(event)
    logger.info(f"Created event {event['id']} with {len(participants)} participants")
    return event, organizer_key


async def resolve(store, token) -> RevealView:
    """
    Resolve a reveal token.

    Marks the assignment as revealed on success.

    Raises:
        InvalidToken: For every kind of bad token
    """
    if not is_well_formed(token):
        raise InvalidToken()

    row = await store.get_assignment_by_token(token)
    if not row:
        raise InvalidToken()

    if not row["revealed"]:
        await store.mark_revealed(token)

    return RevealView(
        giver=row["giver_name"],
        receiver=row["receiver_name"],
        budget=row["budget"],
        date=row["date"],
        location=row["location"],
        message=row["message"],
        my_wishlist=row["my_wishlist"],
        receiver_wishlist=row["receiver_wishlist"],
    )


async def find_santa(store, event_id: str, participant_index: int) -> Optional[dict]:
    """Who gives to participant_index? (giver index, name, email, token)"""
    return await store.get_santa_for(event_id, participant_index)


async def update_wishlist(store, token, wishlist: str, notifier=None) -> None:
    """
    Replace the wishlist of the participant who owns token, then tell their
    Santa. The Santa notification is queued; a problem queueing it is logged
    and never undoes or fails the update.

    Args:
        store: SecretSantaStore
        token: The owner's reveal token
        wishlist: New wishlist text
        notifier: Optional NotificationQueue

    Raises:
        InvalidToken: Bad token
        ValueError: Wishlist too long
    """
    if not is_well_formed(token):
        raise InvalidToken()

    wishlist = (wishlist or "").strip()
    if len(wishlist) > MAX_WISHLIST_LENGTH:
        raise ValueError(f"Wishlist too long (max {MAX_WISHLIST_LENGTH} characters)")

    if not await store.update_wishlist(token, wishlist):
        raise InvalidToken()

    if notifier is None:
        return

    row = await store.get_assignment_by_token(token)
    if not row:
        return

    santa = await find_santa(store, row["event_id"], row["giver"])
    if not santa:
        logger.warning(f"Event {row['event_id']}: no Santa found for participant {row['giver']}")
        return

    try:
        await notifier.notify_wishlist_update(row["event_id"], santa, row["giver"], row["giver_name"])
    except (SecretSantaError, OSError) as e:
        logger.warning(f"Event {row['event_id']}: could not queue wishlist notification: {e}")
