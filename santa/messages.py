"""
Notification Content - Email Subjects and Bodies

Every renderer returns (subject, text_body, html_body). Participant supplied
values are HTML-escaped in the HTML body only.
"""

import csv
import io
from html import escape
from typing import Tuple

from .secret_santa_tokens import build_reveal_link

_BUTTON_STYLE = (
    "display: inline-block; background-color: #d32f2f; color: white; "
    "padding: 12px 24px; text-decoration: none; font-weight: bold; border-radius: 5px;"
)
_WRAPPER_STYLE = "font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; color: #333;"


def render_invitation(giver_name: str, event: dict, link: str) -> Tuple[str, str, str]:
    """Sent to every giver when the event is created"""
    subject = "🎅 You are a Secret Santa!"

    lines = [
        f"Hi {giver_name},",
        "",
        "You have been invited to a Secret Santa party!",
        f"Date: {event.get('date', '')}",
        f"Location: {event.get('location', '')}",
        f"Budget: {event.get('budget', '')}",
        "",
        "The moment you've been waiting for... open this link to see who you are gifting:",
        link,
    ]
    if event.get("message"):
        lines += ["", "Organizer's message:", event["message"]]
    text = "\n".join(lines)

    message_html = ""
    if event.get("message"):
        message_html = f'<p style="margin-top: 20px;"><em>Organizer\'s Message:</em><br/>{escape(event["message"])}</p>'

    html = f"""
<div style="{_WRAPPER_STYLE}">
    <h2>Hi {escape(giver_name)},</h2>
    <p>You have been invited to a Secret Santa party!</p>
    <p><strong>Date:</strong> {escape(event.get('date', ''))}</p>
    <p><strong>Location:</strong> {escape(event.get('location', ''))}</p>
    <p><strong>Budget:</strong> {escape(event.get('budget', ''))}</p>
    <p>The moment you've been waiting for... click below to see who you are gifting!</p>
    <a href="{escape(link)}" style="{_BUTTON_STYLE}">Reveal My Match 🎁</a>
    {message_html}
</div>
"""
    return subject, text, html


def render_wishlist_update(santa_name: str, receiver_name: str, link: str) -> Tuple[str, str, str]:
    """Sent to the Santa of a participant who just changed their wishlist"""
    subject = "🎁 Wishlist Update! Open to know"
    text = (
        f"Hi {santa_name},\n\n"
        f"Your gift recipient, {receiver_name}, has updated their wishlist!\n\n"
        f"See what they want:\n{link}\n"
    )
    html = f"""
<div style="{_WRAPPER_STYLE}">
    <h2>Hi {escape(santa_name)},</h2>
    <p>Your gift recipient, <strong>{escape(receiver_name)}</strong>, has updated their wishlist!</p>
    <p>Click below to see what they want:</p>
    <a href="{escape(link)}" style="{_BUTTON_STYLE}">View Wishlist 🎁</a>
</div>
"""
    return subject, text, html


# Leading characters a spreadsheet would read as a formula
FORMULA_PREFIXES = ("=", "+", "-", "@", "\t", "\r")


def _csv_cell(value: str) -> str:
    if value.startswith(FORMULA_PREFIXES):
        return "'" + value
    return value


def render_pairs_csv(event: dict, app_url: str) -> str:
    """Master list of every pair - organizer eyes only"""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(["Giver Name", "Giver Email", "Receiver Name", "Reveal Link"])

    participants = event["participants"]
    for assignment in event["assignments"]:
        giver = participants[assignment["giver"]]
        receiver = participants[assignment["receiver"]]
        writer.writerow([
            _csv_cell(giver["name"]),
            _csv_cell(giver["email"]),
            _csv_cell(receiver["name"]),
            build_reveal_link(app_url, assignment["token"]),
        ])
    return buffer.getvalue()


def render_organizer_report(event: dict, app_url: str) -> Tuple[str, str, str]:
    """Sent to the organizer (if an address was given) with the full pair list"""
    subject = "📋 Secret Santa Pair List (Admin Report)"
    pairs = render_pairs_csv(event, app_url)
    text = (
        "Here is the master list of all Secret Santa pairs for your event.\n"
        f"Event id: {event['id']}\n\n"
        f"{pairs}"
    )
    html = f"""
<div style="{_WRAPPER_STYLE}">
    <h2>Secret Santa Pair List</h2>
    <p>Here is the master list of all Secret Santa pairs for your event.</p>
    <p><strong>Event id:</strong> {escape(event['id'])}</p>
    <pre>{escape(pairs)}</pre>
</div>
"""
    return subject, text, html
