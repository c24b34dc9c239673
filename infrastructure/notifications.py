"""
Guest and owner notifications.

Only trigger points and payloads live here; delivery is pluggable. Set
BOOKING_SMTP_HOST / BOOKING_SMTP_USER / BOOKING_SMTP_PASSWORD to send real
e-mail, otherwise notifications are only logged.
"""
import asyncio
import logging
import smtplib
from abc import ABC, abstractmethod
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from apscheduler.job import Job
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.schedulers.base import BaseScheduler
from pydantic import BaseModel, Field

from domain.entities import Reservation
from domain.enums import CancellationActor, NotificationKind

logger = logging.getLogger(__name__)

JOB_PREFIX = "notify"
MISFIRE_GRACE_SECONDS = 12 * 3600

SUBJECTS = {
    NotificationKind.GUEST_CONFIRMATION: "Your {property} Booking Confirmation",
    NotificationKind.OWNER_NEW_BOOKING: "New Booking: {name}, {check_in} to {check_out}",
    NotificationKind.PRE_ARRIVAL: "Your stay at {property} starts on {check_in}",
    NotificationKind.CANCELLATION: "Booking {reservation_id} cancelled",
    NotificationKind.OWNER_ALERT: "ACTION REQUIRED: {title}",
}


class Notification(BaseModel):
    notification_id: UUID = Field(default_factory=uuid4)
    kind: NotificationKind
    recipient: str
    subject: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    due_at: Optional[datetime] = None


def reservation_payload(reservation: Reservation) -> Dict[str, Any]:
    return {
        "reservation_id": str(reservation.reservation_id),
        "check_in": reservation.stay.check_in.isoformat(),
        "check_out": reservation.stay.check_out.isoformat(),
        "nights": reservation.get_nights(),
        "name": reservation.guest.name,
        "email": reservation.guest.email,
        "phone": reservation.guest.phone,
        "adults": reservation.guests.adults,
        "children": reservation.guests.children,
        "special_requests": reservation.special_requests,
        "total": f"{reservation.total_amount.major:.2f}",
        "currency": reservation.total_amount.currency,
        "provider": reservation.provider.kind.value if reservation.provider else None,
        "status": reservation.status.value,
    }


def render_body(notification: Notification) -> str:
    lines = [notification.subject, ""]
    for key, value in notification.payload.items():
        if value in (None, ""):
            continue
        lines.append(f"{key.replace('_', ' ').capitalize()}: {value}")
    return "\n".join(lines)


class NotificationSender(ABC):

    @abstractmethod
    async def send(self, notification: Notification) -> None:
        """Deliver or raise"""
        pass


class LoggingNotificationSender(NotificationSender):
    """Default sender: writes notifications to the log and remembers them"""

    def __init__(self):
        self.sent: List[Notification] = []

    async def send(self, notification: Notification) -> None:
        logger.info("Notification %s to %s: %s", notification.kind.value, notification.recipient, notification.subject)
        self.sent.append(notification)


class SmtpNotificationSender(NotificationSender):

    def __init__(self, host: str, port: int, user: str, password: str, from_addr: str = ""):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.from_addr = from_addr or f"Bookings <{user}>"

    async def send(self, notification: Notification) -> None:
        await asyncio.to_thread(self._send_sync, notification)

    def _send_sync(self, notification: Notification) -> None:
        body = render_body(notification)
        msg = MIMEMultipart("alternative")
        msg["Subject"] = notification.subject
        msg["From"] = self.from_addr
        msg["To"] = notification.recipient
        msg.attach(MIMEText(body, "plain"))
        msg.attach(MIMEText(f"<pre style='font-family:sans-serif'>{body}</pre>", "html"))

        with smtplib.SMTP(self.host, self.port, timeout=10) as server:
            server.starttls()
            server.login(self.user, self.password)
            server.sendmail(self.user, [notification.recipient], msg.as_string())
        logger.info("Email %s sent to %s", notification.kind.value, notification.recipient)


# Jobs reach their dispatcher by name: a persistent job store keeps only
# importable callables and plain arguments
_dispatchers: Dict[str, "NotificationDispatcher"] = {}


def job_id(notification: Notification) -> str:
    return f"{JOB_PREFIX}:{notification.payload.get('reservation_id')}:{notification.kind.value}"


async def deliver_scheduled(dispatcher_name: str, notification_json: str) -> bool:
    """Target of every scheduled notification job"""
    dispatcher = _dispatchers.get(dispatcher_name)
    if dispatcher is None:
        logger.error("No notification dispatcher named %r, scheduled notification dropped", dispatcher_name)
        return False
    return await dispatcher.send(Notification.model_validate_json(notification_json))


class NotificationDispatcher:
    """Builds notifications and hands them to a sender.

    Sending is best effort: a failing sender is logged and never reaches the
    caller, so a booking is never rolled back because an e-mail bounced.
    Deferred notifications are APScheduler date jobs; with a persistent job
    store they survive a restart.
    """

    def __init__(
        self,
        sender: NotificationSender,
        owner_email: str = "",
        property_name: str = "",
        scheduler: Optional[BaseScheduler] = None,
        jobstore: str = "default",
        name: str = "default"
    ):
        self.sender = sender
        self.owner_email = owner_email
        self.property_name = property_name
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self.jobstore = jobstore
        self.name = name
        _dispatchers[name] = self

    # ==================== BUILDERS ====================
    def build(self, kind: NotificationKind, recipient: str, payload: Dict[str, Any]) -> Notification:
        fields = {"property": self.property_name, **payload}
        try:
            subject = SUBJECTS[kind].format(**fields)
        except KeyError:
            subject = kind.value.replace("_", " ").title()
        return Notification(kind=kind, recipient=recipient, subject=subject, payload=payload)

    def for_confirmation(self, reservation: Reservation) -> List[Notification]:
        payload = reservation_payload(reservation)
        notifications = [self.build(NotificationKind.GUEST_CONFIRMATION, reservation.guest.email, payload)]
        if self.owner_email:
            notifications.append(self.build(NotificationKind.OWNER_NEW_BOOKING, self.owner_email, payload))
        return notifications

    def for_pre_arrival(self, reservation: Reservation) -> Notification:
        return self.build(NotificationKind.PRE_ARRIVAL, reservation.guest.email, reservation_payload(reservation))

    def for_cancellation(self, reservation: Reservation, actor: CancellationActor) -> List[Notification]:
        payload = {**reservation_payload(reservation), "cancelled_by": actor.value,
                   "reason": reservation.cancellation_reason}
        notifications = [self.build(NotificationKind.CANCELLATION, reservation.guest.email, payload)]
        if self.owner_email:
            notifications.append(self.build(NotificationKind.CANCELLATION, self.owner_email, payload))
        return notifications

    def for_owner_alert(self, title: str, details: Dict[str, Any]) -> Optional[Notification]:
        if not self.owner_email:
            logger.warning("Owner alert not sent, no owner e-mail configured: %s %s", title, details)
            return None
        return self.build(NotificationKind.OWNER_ALERT, self.owner_email, {"title": title, **details})

    # ==================== DELIVERY ====================
    async def send(self, notification: Optional[Notification]) -> bool:
        if notification is None:
            return False
        try:
            await self.sender.send(notification)
            return True
        except Exception:
            logger.exception("Failed to send %s notification to %s", notification.kind.value, notification.recipient)
            return False

    async def send_all(self, notifications: List[Notification]) -> int:
        return sum([await self.send(n) for n in notifications])

    # ==================== SCHEDULING ====================
    def schedule(self, notification: Notification, due_at: datetime) -> Notification:
        """Send ``notification`` at ``due_at``. One job per reservation and kind."""
        scheduled = notification.model_copy(update={"due_at": due_at})
        self.scheduler.add_job(
            deliver_scheduled,
            "date",
            run_date=due_at,
            args=[self.name, scheduled.model_dump_json()],
            id=job_id(scheduled),
            jobstore=self.jobstore,
            replace_existing=True,
            misfire_grace_time=MISFIRE_GRACE_SECONDS,
        )
        logger.info("Scheduled %s for %s at %s", scheduled.kind.value, scheduled.recipient, due_at.isoformat())
        return scheduled

    def _jobs(self, reservation_id: Optional[str] = None) -> List[Job]:
        prefix = f"{JOB_PREFIX}:{reservation_id}:" if reservation_id else f"{JOB_PREFIX}:"
        return [job for job in self.scheduler.get_jobs(jobstore=self.jobstore) if job.id.startswith(prefix)]

    def scheduled(self) -> List[Notification]:
        return [Notification.model_validate_json(job.args[1]) for job in self._jobs()]

    def cancel_scheduled(self, reservation_id: str) -> int:
        removed = 0
        for job in self._jobs(reservation_id):
            try:
                self.scheduler.remove_job(job.id, jobstore=self.jobstore)
                removed += 1
            except JobLookupError:
                # fired or removed between listing and removal
                continue
        if removed:
            logger.info("Dropped %d scheduled notification(s) for reservation %s", removed, reservation_id)
        return removed
