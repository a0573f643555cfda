"""
Reveal Token Test Suite

Tests the token protocol:
- Token minting (format, uniqueness)
- Event creation (one token per giver, all stored together)
- Reveal (own assignment only, uniform failures)
- Wishlist updates and the Santa notification

Run: python -m pytest tests/test_secret_santa_tokens.py -v
"""

import asyncio
import sys
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from santa.errors import InsufficientParticipants, InvalidToken
from santa.notifications import Dispatcher, NotificationQueue
from santa.secret_santa_storage import SecretSantaStore
from santa.secret_santa_tokens import (
    build_reveal_link, create_exchange, find_santa, is_well_formed, mint_token,
    resolve, update_wishlist
)

APP_URL = "https://santa.example"

DETAILS = {"budget": "$25", "date": "2026-12-20", "location": "Office", "message": "Ho ho ho"}

PEOPLE = [
    {"name": "Alice", "email": "alice@example.com"},
    {"name": "Bob", "email": "bob@example.com"},
    {"name": "Carol", "email": "carol@example.com"},
]


class RecordingDispatcher(Dispatcher):
    name = "recording"

    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.sent = []

    async def send(self, to, subject, body, html=None):
        self.sent.append({"to": to, "subject": subject, "body": body})
        return self.succeed


async def _fixed_event(store):
    """A→B, B→C, C→A"""
    return await store.create_event(DETAILS, PEOPLE, {0: 1, 1: 2, 2: 0}, mint_token, "hash")


class TestMinting:
    """Test token generation"""

    def test_ten_thousand_tokens_unique(self):
        tokens = {mint_token() for _ in range(10_000)}
        assert len(tokens) == 10_000

    def test_token_format(self):
        token = mint_token()
        assert is_well_formed(token)
        assert len(token) >= 43  # 32 random bytes

    def test_malformed_tokens(self):
        for bad in ["", "short", "has spaces in it......", "x" * 500, None, 12345, "../../etc/passwd"]:
            assert not is_well_formed(bad)

    def test_reveal_link_format(self):
        assert build_reveal_link("https://santa.example/", "abc_DEF-123") == \
            "https://santa.example/reveal?token=abc_DEF-123"


class TestCreateExchange:
    """Test event creation end to end through the store"""

    def test_creates_one_token_per_giver(self, tmp_path):
        async def scenario():
            store = SecretSantaStore(tmp_path / "state.json")
            event, organizer_key = await create_exchange(store, DETAILS, PEOPLE)
            return store, event, organizer_key

        store, event, organizer_key = asyncio.run(scenario())

        tokens = [a["token"] for a in event["assignments"]]
        assert len(set(tokens)) == 3
        assert all(store.token_exists(t) for t in tokens)
        assert organizer_key
        assert organizer_key not in (tmp_path / "state.json").read_text(encoding="utf-8")

    def test_filters_ineligible_rows(self, tmp_path):
        rows = PEOPLE + [{"name": "", "email": "x@example.com"}, {"name": "Dan", "email": ""}]

        async def scenario():
            store = SecretSantaStore(tmp_path / "state.json")
            event, _ = await create_exchange(store, DETAILS, rows)
            return event

        event = asyncio.run(scenario())
        assert len(event["participants"]) == 3

    def test_too_few_participants(self, tmp_path):
        async def scenario():
            store = SecretSantaStore(tmp_path / "state.json")
            with pytest.raises(InsufficientParticipants):
                await create_exchange(store, DETAILS, PEOPLE[:1] + [{"name": "NoEmail"}])
            return store

        store = asyncio.run(scenario())
        assert store.state["events"] == {}

    def test_too_many_participants(self, tmp_path):
        async def scenario():
            store = SecretSantaStore(tmp_path / "state.json")
            with pytest.raises(ValueError):
                await create_exchange(store, DETAILS, PEOPLE, max_participants=2)

        asyncio.run(scenario())


class TestResolve:
    """Test the reveal side of the protocol"""

    def test_reveal_own_assignment(self, tmp_path):
        async def scenario():
            store = SecretSantaStore(tmp_path / "state.json")
            event = await _fixed_event(store)
            return await resolve(store, event["assignments"][0]["token"])

        view = asyncio.run(scenario())
        assert view.giver == "Alice"
        assert view.receiver == "Bob"
        assert view.budget == "$25"
        assert view.date == "2026-12-20"
        assert view.location == "Office"
        assert view.message == "Ho ho ho"
        assert view.my_wishlist == ""
        assert view.receiver_wishlist == ""

    def test_every_token_sees_only_its_own_pair(self, tmp_path):
        async def scenario():
            store = SecretSantaStore(tmp_path / "state.json")
            event, _ = await create_exchange(store, DETAILS, PEOPLE)
            views = []
            for assignment in event["assignments"]:
                views.append((assignment, await resolve(store, assignment["token"])))
            return event, views

        event, views = asyncio.run(scenario())
        names = [p["name"] for p in event["participants"]]
        for assignment, view in views:
            assert view.giver == names[assignment["giver"]]
            assert view.receiver == names[assignment["receiver"]]
            # Only two participant names can appear in one view
            assert set(view.to_dict().values()) & set(names) == {view.giver, view.receiver}

    def test_unknown_token_not_found(self, tmp_path):
        async def scenario():
            store = SecretSantaStore(tmp_path / "state.json")
            await _fixed_event(store)
            for token in (mint_token(), "not a token", "", None):
                with pytest.raises(InvalidToken):
                    await resolve(store, token)

        asyncio.run(scenario())

    def test_uniform_error_message(self, tmp_path):
        async def scenario():
            store = SecretSantaStore(tmp_path / "state.json")
            messages = set()
            for token in (mint_token(), "bad"):
                try:
                    await resolve(store, token)
                except InvalidToken as e:
                    messages.add(str(e))
            return messages

        assert asyncio.run(scenario()) == {"Invalid link"}

    def test_reveal_marks_revealed(self, tmp_path):
        async def scenario():
            store = SecretSantaStore(tmp_path / "state.json")
            event = await _fixed_event(store)
            token = event["assignments"][1]["token"]
            await resolve(store, token)
            return await store.get_event(event["id"])

        event = asyncio.run(scenario())
        assert [a["revealed"] for a in event["assignments"]] == [False, True, False]

    def test_deleted_event_tokens_stop_working(self, tmp_path):
        async def scenario():
            store = SecretSantaStore(tmp_path / "state.json")
            event = await _fixed_event(store)
            token = event["assignments"][0]["token"]
            await store.delete_event(event["id"])
            with pytest.raises(InvalidToken):
                await resolve(store, token)

        asyncio.run(scenario())


class TestWishlist:
    """Test wishlist updates through a token"""

    def test_round_trip_through_both_tokens(self, tmp_path):
        async def scenario():
            store = SecretSantaStore(tmp_path / "state.json")
            event = await _fixed_event(store)
            alice, bob, _ = (a["token"] for a in event["assignments"])
            await update_wishlist(store, bob, "X")
            return await resolve(store, bob), await resolve(store, alice)

        bob_view, alice_view = asyncio.run(scenario())
        assert bob_view.my_wishlist == "X"
        # Alice gives to Bob, so she sees it as her receiver's wishlist
        assert alice_view.receiver_wishlist == "X"
        assert alice_view.my_wishlist == ""

    def test_bad_token_rejected(self, tmp_path):
        async def scenario():
            store = SecretSantaStore(tmp_path / "state.json")
            await _fixed_event(store)
            with pytest.raises(InvalidToken):
                await update_wishlist(store, mint_token(), "anything")

        asyncio.run(scenario())

    def test_too_long_rejected(self, tmp_path):
        async def scenario():
            store = SecretSantaStore(tmp_path / "state.json")
            event = await _fixed_event(store)
            with pytest.raises(ValueError):
                await update_wishlist(store, event["assignments"][0]["token"], "x" * 5000)

        asyncio.run(scenario())

    def test_notifies_only_the_santa(self, tmp_path):
        """Bob (receiver Carol) updates → exactly one mail, to Alice (Bob's Santa)"""
        async def scenario():
            store = SecretSantaStore(tmp_path / "state.json")
            dispatcher = RecordingDispatcher()
            queue = NotificationQueue(store, dispatcher, APP_URL)
            event = await _fixed_event(store)
            bob_token = event["assignments"][1]["token"]

            await update_wishlist(store, bob_token, "Socks", notifier=queue)
            await queue.drain()
            return event, dispatcher

        event, dispatcher = asyncio.run(scenario())
        assert len(dispatcher.sent) == 1
        mail = dispatcher.sent[0]
        assert mail["to"] == "alice@example.com"
        assert "Bob" in mail["body"]
        # The link in the mail is Alice's own reveal link
        assert build_reveal_link(APP_URL, event["assignments"][0]["token"]) in mail["body"]
        assert event["assignments"][1]["token"] not in mail["body"]

    def test_delivery_failure_does_not_fail_update(self, tmp_path):
        async def scenario():
            store = SecretSantaStore(tmp_path / "state.json")
            queue = NotificationQueue(store, RecordingDispatcher(succeed=False), APP_URL)
            event = await _fixed_event(store)
            token = event["assignments"][2]["token"]
            await update_wishlist(store, token, "Books", notifier=queue)
            await queue.drain()
            return await resolve(store, token), await store.list_notifications()

        view, queued = asyncio.run(scenario())
        assert view.my_wishlist == "Books"
        assert len(queued) == 1
        assert queued[0]["attempts"] == 1
        assert queued[0]["to"] == "bob@example.com"  # Bob gives to Carol


class TestReverseLookup:
    """find_santa is keyed by index, so duplicate names are fine"""

    def test_duplicate_names(self, tmp_path):
        twins = [
            {"name": "Sam", "email": "sam1@example.com"},
            {"name": "Sam", "email": "sam2@example.com"},
            {"name": "Kim", "email": "kim@example.com"},
        ]

        async def scenario():
            store = SecretSantaStore(tmp_path / "state.json")
            event = await store.create_event(DETAILS, twins, {0: 2, 2: 1, 1: 0}, mint_token, "hash")
            return [await find_santa(store, event["id"], i) for i in range(3)]

        santas = asyncio.run(scenario())
        assert santas[0]["giver_email"] == "sam2@example.com"
        assert santas[1]["giver_email"] == "kim@example.com"
        assert santas[2]["giver_email"] == "sam1@example.com"

    def test_unknown_event(self, tmp_path):
        async def scenario():
            store = SecretSantaStore(tmp_path / "state.json")
            return await find_santa(store, "nope", 0)

        assert asyncio.run(scenario()) is None
