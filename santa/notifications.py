"""
Notification Module - Dispatchers and the Pending Retry Queue

DISPATCHERS (one attempt each, no retries inside):
- SendGridDispatcher: SendGrid v3 HTTP API over the shared aiohttp session
- SmtpDispatcher: smtplib in a worker thread (STARTTLS, or SSL on port 465)
- LogDispatcher: logs the subject only; used when no transport is configured

QUEUE MECHANICS:
- Every outgoing message is first stored as a pending notification
- submit() schedules an immediate background sweep (fire-and-forget)
- sweep_loop() re-sweeps on an interval and picks up everything that is due
- A failed attempt is counted and pushed out by base_delay * 2^(attempts-1)
- After max_attempts failures the record is marked failed and left alone
  until someone calls reprocess()
- Each attempt is bounded by asyncio.wait_for(timeout)
- The circuit breaker stops a sweep early without using up attempts
"""

import asyncio
import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Dict, List, Optional, Tuple

import aiohttp

from .errors import DeliveryFailure
from .health_monitor import HealthMonitor
from .messages import render_invitation, render_organizer_report, render_wishlist_update
from .secret_santa_tokens import build_reveal_link
from .utils import CircuitBreaker, HttpManager


# ============ DISPATCHERS ============
class Dispatcher:
    """send() returns True when the transport accepted the message"""

    name = "base"

    async def send(self, to: str, subject: str, body: str, html: Optional[str] = None) -> bool:
        raise NotImplementedError


class LogDispatcher(Dispatcher):
    name = "log"

    def __init__(self, logger=None):
        self.logger = logger or logging.getLogger("santa.mail")

    async def send(self, to: str, subject: str, body: str, html: Optional[str] = None) -> bool:
        # Body carries reveal links - subject only
        self.logger.info(f"[no transport] Would send '{subject}' to {to}")
        return True


class SendGridDispatcher(Dispatcher):
    name = "sendgrid"
    API_URL = "https://api.sendgrid.com/v3/mail/send"

    def __init__(self, api_key: str, sender: str, http_mgr: HttpManager, logger=None):
        self.api_key = api_key
        self.sender = sender
        self.http_mgr = http_mgr
        self.logger = logger or logging.getLogger("santa.mail")

    def _payload(self, to: str, subject: str, body: str, html: Optional[str]) -> dict:
        content = [{"type": "text/plain", "value": body}]
        if html:
            content.append({"type": "text/html", "value": html})
        return {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.sender},
            "subject": subject,
            "content": content,
        }

    async def send(self, to: str, subject: str, body: str, html: Optional[str] = None) -> bool:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            session = await self.http_mgr.get_session()
            async with session.post(self.API_URL, json=self._payload(to, subject, body, html),
                                    headers=headers) as r:
                if 200 <= r.status < 300:
                    return True
                error_body = await r.text()
                self.logger.warning(f"SendGrid rejected message to {to}: {r.status}")
                self.logger.debug(f"SendGrid response: {error_body[:500]}")
                return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.warning(f"SendGrid request failed for {to}: {e}")
            return False


class SmtpDispatcher(Dispatcher):
    name = "smtp"

    def __init__(self, host: str, port: int, user: str, password: str, sender: str,
                 timeout: int = 15, logger=None):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender
        self.timeout = timeout
        self.logger = logger or logging.getLogger("santa.mail")

    def _build_message(self, to: str, subject: str, body: str, html: Optional[str]) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body)
        if html:
            msg.add_alternative(html, subtype="html")
        return msg

    def _send_sync(self, msg: EmailMessage):
        context = ssl.create_default_context()
        if self.port == 465:
            with smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=self.timeout) as server:
                if self.user:
                    server.login(self.user, self.password)
                server.send_message(msg)
        else:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                server.starttls(context=context)
                if self.user:
                    server.login(self.user, self.password)
                server.send_message(msg)

    async def send(self, to: str, subject: str, body: str, html: Optional[str] = None) -> bool:
        msg = self._build_message(to, subject, body, html)
        try:
            await asyncio.to_thread(self._send_sync, msg)
            return True
        except (smtplib.SMTPException, OSError) as e:
            self.logger.warning(f"SMTP delivery to {to} failed: {e}")
            return False


def build_dispatcher(config, http_mgr: HttpManager, logger=None) -> Dispatcher:
    """SendGrid if an API key is configured, else SMTP if a host is, else log only"""
    logger = logger or logging.getLogger("santa.mail")
    sender = config.EMAIL_FROM or config.SMTP_USER

    if config.SENDGRID_API_KEY:
        if not sender:
            logger.warning("SENDGRID_API_KEY set without EMAIL_FROM - SendGrid will reject messages")
        logger.info("Using SendGrid for email delivery")
        return SendGridDispatcher(config.SENDGRID_API_KEY, sender, http_mgr, logger)

    if config.SMTP_HOST:
        logger.info(f"Using SMTP server {config.SMTP_HOST}:{config.SMTP_PORT} for email delivery")
        return SmtpDispatcher(config.SMTP_HOST, config.SMTP_PORT, config.SMTP_USER,
                              config.SMTP_PASSWORD, sender, config.DELIVERY_TIMEOUT, logger)

    logger.warning("No email transport configured - notifications will only be logged")
    return LogDispatcher(logger)


# ============ QUEUE ============
class NotificationQueue:
    """Durable outgoing mail: store first, deliver in the background"""

    def __init__(
        self,
        store,
        dispatcher: Dispatcher,
        app_url: str,
        *,
        max_attempts: int = 3,
        base_delay: float = 60.0,
        timeout: float = 15.0,
        wishlist_delay: float = 0.0,
        breaker: Optional[CircuitBreaker] = None,
        monitor: Optional[HealthMonitor] = None,
        backlog_warn_at: int = 100,
        logger=None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.app_url = app_url
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.timeout = timeout
        self.wishlist_delay = wishlist_delay
        self.breaker = breaker
        self.logger = logger or logging.getLogger("santa.notify")
        self.monitor = monitor or HealthMonitor(self.logger)
        self.backlog_warn_at = backlog_warn_at

        self._sweep_lock = asyncio.Lock()
        self._kick_scheduled = False
        self._tasks = set()

    def retry_delay(self, attempts: int) -> float:
        """Wait after the attempts-th failure (1 → base, 2 → 2x base, ...)"""
        return self.base_delay * (2 ** max(0, attempts - 1))

    # ---------- submitting ----------

    async def submit(self, kind: str, to: str, rendered: Tuple[str, str, str], *,
                     event_id: Optional[str] = None, dedupe_key: Optional[str] = None,
                     delay: float = 0.0) -> dict:
        """
        Queue one message. With a dedupe_key, an undelivered message with the
        same key is updated in place instead of queueing a second one.
        """
        subject, text, html = rendered

        if dedupe_key:
            existing = await self.store.find_open_notification(dedupe_key)
            if existing:
                await self.store.refresh_notification(existing["id"], subject, text, html)
                self.logger.info(f"Merged {kind} notification into queued {existing['id']}")
                return existing

        [record] = await self.store.enqueue_many([{
            "kind": kind, "to": to, "subject": subject, "body": text, "html": html,
            "event_id": event_id, "dedupe_key": dedupe_key, "delay": delay,
        }], max_attempts=self.max_attempts)
        if delay <= 0:
            self.kick()
        return record

    def creation_messages(self, event: dict, organizer_email: Optional[str] = None) -> List[dict]:
        """
        Messages for a freshly created event: one invitation per giver and,
        when organizer_email is given, the pair list report.

        Called by the store inside the event's own write.
        """
        participants = event["participants"]
        messages = []
        for assignment in event["assignments"]:
            giver = participants[assignment["giver"]]
            link = build_reveal_link(self.app_url, assignment["token"])
            subject, text, html = render_invitation(giver["name"], event, link)
            messages.append({
                "kind": "invitation", "to": giver["email"], "subject": subject,
                "body": text, "html": html, "event_id": event["id"],
            })

        if organizer_email:
            subject, text, html = render_organizer_report(event, self.app_url)
            messages.append({
                "kind": "organizer_report", "to": organizer_email, "subject": subject,
                "body": text, "html": html, "event_id": event["id"],
            })
        return messages

    def invitations_stored(self, event: dict):
        """Start delivering a new event's invitations"""
        if isinstance(self.dispatcher, LogDispatcher):
            self.logger.warning(
                f"Event {event['id']} created without an email transport - invitations will only be "
                f"logged and dropped. Configure SENDGRID_API_KEY or SMTP_HOST; until then the reveal "
                f"links are only available from the organizer's pairs.csv"
            )
        self.kick()

    async def notify_wishlist_update(self, event_id: str, santa: dict, receiver_index: int,
                                     receiver_name: str) -> dict:
        """Tell a Santa that their giftee changed their wishlist (link = the Santa's own token)"""
        link = build_reveal_link(self.app_url, santa["token"])
        rendered = render_wishlist_update(santa["giver_name"], receiver_name, link)
        self.logger.info(f"Event {event_id}: queueing wishlist notice for the Santa of participant {receiver_index}")
        return await self.submit(
            "wishlist_update",
            santa["giver_email"],
            rendered,
            event_id=event_id,
            dedupe_key=f"wishlist:{event_id}:{receiver_index}",
            delay=self.wishlist_delay,
        )

    async def reprocess(self, notification_id: str) -> bool:
        """Manual retry of a failed (or pending) notification"""
        if not await self.store.reprocess(notification_id):
            return False
        self.logger.info(f"Notification {notification_id} requeued manually")
        self.kick()
        return True

    # ---------- delivering ----------

    def kick(self):
        """Schedule a background sweep now (coalesced with one already waiting)"""
        if self._kick_scheduled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop - the periodic sweep will get to it
            return

        self._kick_scheduled = True
        task = loop.create_task(self._kicked_sweep())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _kicked_sweep(self):
        try:
            async with self._sweep_lock:
                self._kick_scheduled = False
                await self._sweep_locked(None)
        except Exception as e:
            self.logger.error(f"Background sweep failed: {e}", exc_info=True)
        finally:
            self._kick_scheduled = False

    async def drain(self):
        """Wait for every background sweep started so far"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _attempt(self, record: dict):
        try:
            ok = await asyncio.wait_for(
                self.dispatcher.send(record["to"], record["subject"], record["body"], record.get("html")),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise DeliveryFailure(f"timed out after {self.timeout}s") from e
        except Exception as e:
            raise DeliveryFailure(f"{type(e).__name__}: {e}") from e

        if not ok:
            raise DeliveryFailure(f"{self.dispatcher.name} dispatcher reported failure")

    async def deliver(self, record: dict, now: Optional[float] = None) -> bool:
        """One delivery attempt for one record; updates the queue either way"""
        try:
            await self._attempt(record)
        except DeliveryFailure as e:
            if self.breaker:
                await self.breaker.record_failure()

            attempts = record["attempts"] + 1
            if attempts >= record["max_attempts"]:
                await self.store.increment_attempts(record["id"], str(e), 0, now)
                await self.store.mark_failed(record["id"])
                self.logger.warning(
                    f"Giving up on {record['kind']} notification {record['id']} "
                    f"after {attempts} attempts: {e}"
                )
            else:
                delay = self.retry_delay(attempts)
                await self.store.increment_attempts(record["id"], str(e), delay, now)
                self.logger.info(
                    f"{record['kind']} notification {record['id']} attempt "
                    f"{attempts}/{record['max_attempts']} failed: {e} - retrying in {delay:.0f}s"
                )
            return False

        if self.breaker:
            await self.breaker.record_success()
        await self.store.delete_pending(record["id"])
        self.logger.info(f"Sent {record['kind']} notification to {record['to']}")
        return True

    async def _sweep_locked(self, now: Optional[float]) -> Dict[str, int]:
        stats = {"sent": 0, "failed": 0, "skipped": 0}
        pending: List[dict] = await self.store.list_pending(now)
        if not pending:
            return stats

        self.monitor.check_queue_backlog(len(pending), self.backlog_warn_at)

        for position, record in enumerate(pending):
            if self.breaker and not await self.breaker.can_attempt():
                stats["skipped"] = len(pending) - position
                self.logger.warning(f"{self.breaker.name} circuit open - {stats['skipped']} notification(s) left "
                                    f"for later (retry in {self.breaker.retry_after():.0f}s)")
                break
            if await self.deliver(record, now):
                stats["sent"] += 1
            else:
                stats["failed"] += 1

        self.logger.info(f"Notification sweep: {stats['sent']} sent, {stats['failed']} failed, "
                         f"{stats['skipped']} skipped")
        return stats

    async def sweep(self, now: Optional[float] = None) -> Dict[str, int]:
        """Attempt every due pending notification once"""
        async with self._sweep_lock:
            return await self._sweep_locked(now)

    async def sweep_loop(self, interval: float = 60):
        """Scheduled sweep; runs until cancelled"""
        try:
            while True:
                try:
                    await self.sweep()
                except Exception as e:
                    self.logger.error(f"Notification sweep failed: {e}", exc_info=True)
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            pass

    async def close(self, timeout: float = 5.0):
        """Let in-flight background sweeps finish (bounded), then cancel the rest"""
        if not self._tasks:
            return
        done, pending = await asyncio.wait(list(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
