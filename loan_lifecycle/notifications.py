"""
Notification Dispatcher Module

Outbound SMS for lifecycle events. State transitions hand a template id and
parameters to the dispatcher after they commit; rendering, phone
normalization and delivery happen here, and delivery runs on a background
worker pool so a slow or failing SMS provider never blocks or fails a
transition.
"""

from concurrent.futures import Future, ThreadPoolExecutor, wait
from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Set
from enum import Enum
from abc import ABC, abstractmethod
import logging
import threading
import uuid

import httpx

from .storage import StorageInterface, StorageRecord, parse_datetime
from .audit import AuditTrail, AuditEventType
from .users import UserDirectory
from .phone import normalize_phone_number, is_valid_e164

logger = logging.getLogger("lendflow.notifications")


class NotificationTemplate(Enum):
    """SMS templates sent by the lifecycle"""
    APPLICATION_RECEIVED = "application_received"
    APPLICATION_STATUS = "application_status"
    APPLICATION_APPROVED = "application_approved"
    APPLICATION_REJECTED = "application_rejected"
    CONTRACT_SENT = "contract_sent"
    CONTRACT_READY = "contract_ready"
    CONTRACT_SIGNED = "contract_signed"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_REMINDER = "payment_reminder"


_STATUS_PREFIX = ("Hi {first_name}, the status of your {company_name} loan application "
                  "(Ref: {application_id}) has been updated to: {status}.")

TEMPLATES: Dict[NotificationTemplate, str] = {
    NotificationTemplate.APPLICATION_RECEIVED: (
        "Hi {first_name}, thank you for your loan application with {company_name}. "
        "Your application reference number is {application_id}. "
        "We're processing your application and will update you soon."
    ),
    NotificationTemplate.APPLICATION_STATUS: _STATUS_PREFIX,
    NotificationTemplate.APPLICATION_APPROVED: _STATUS_PREFIX + (
        " Congratulations! Please log in to your account to view the details "
        "and complete the process."
    ),
    NotificationTemplate.APPLICATION_REJECTED: _STATUS_PREFIX + (
        " Please contact our customer support for more information."
    ),
    NotificationTemplate.CONTRACT_SENT: (
        "Hi {first_name}, your {company_name} loan contract is ready for signature. "
        "Sign it here before {date_expires}: {signature_url}"
    ),
    NotificationTemplate.CONTRACT_READY: (
        "Hi {first_name}, your {company_name} loan contract is ready for signature. "
        "Sign it here: {signature_url}"
    ),
    NotificationTemplate.CONTRACT_SIGNED: (
        "Hi {first_name}, thank you for signing your {company_name} loan contract "
        "(Ref: {contract_id}). Your loan of {amount} is now active."
    ),
    NotificationTemplate.PAYMENT_RECEIVED: (
        "Hi {first_name}, we've received your payment of {amount}. Thank you! "
        "You can view your updated loan statement by logging into your {company_name} account."
    ),
    NotificationTemplate.PAYMENT_REMINDER: (
        "Hi {first_name}, this is a reminder that your loan payment of {amount} is due on "
        "{due_date}. Please ensure your account has sufficient funds for the debit order."
    ),
}


def format_rand(amount: Any) -> str:
    """Format an amount as whole Rand, e.g. R12,500"""
    value = Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return f"R{value:,}"


def render_template(template: NotificationTemplate, params: Dict[str, Any]) -> str:
    """Render a template body; KeyError when a placeholder is missing"""
    return TEMPLATES[template].format(**params)


# Senders

@dataclass
class SendResult:
    """Outcome of a single send attempt"""
    ok: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class SMSSender(ABC):
    """Abstract outbound SMS sender"""

    @abstractmethod
    def send(self, to_e164: str, body: str) -> SendResult:
        """Send one message. Should return a failed SendResult rather than raise."""
        pass

    def close(self) -> None:
        pass


class LogSMSSender(SMSSender):
    """Development sender that only logs the message"""

    def send(self, to_e164: str, body: str) -> SendResult:
        logger.info(f"SMS to {to_e164}: {body[:100]}")
        return SendResult(ok=True, message_id=f"LOG-{uuid.uuid4().hex[:12]}")


class TwilioSMSSender(SMSSender):
    """Twilio Messages REST API sender"""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        api_url: str = "https://api.twilio.com/2010-04-01",
        timeout: float = 5.0,  # Must stay independent of the store timeout
        client: Optional[httpx.Client] = None
    ):
        self.account_sid = account_sid
        self.from_number = from_number
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout, auth=(account_sid, auth_token))

    @property
    def messages_url(self) -> str:
        return f"{self.api_url}/Accounts/{self.account_sid}/Messages.json"

    def send(self, to_e164: str, body: str) -> SendResult:
        try:
            response = self._client.post(
                self.messages_url,
                data={"To": to_e164, "From": self.from_number, "Body": body}
            )
        except httpx.HTTPError as e:
            logger.error(f"Twilio request failed: {e}")
            return SendResult(ok=False, error=str(e))

        if response.status_code >= 400:
            try:
                detail = response.json().get("message")
            except ValueError:
                detail = None
            error = detail or f"API Error: {response.status_code}"
            logger.warning(f"Twilio returned {response.status_code}: {error}")
            return SendResult(ok=False, error=error)

        return SendResult(ok=True, message_id=response.json().get("sid"))

    def close(self) -> None:
        self._client.close()


def build_sender(config) -> SMSSender:
    """Pick the sender configured by sms_provider"""
    if config.sms_provider == "twilio":
        if not (config.twilio_account_sid and config.twilio_auth_token):
            logger.warning("Missing Twilio credentials, falling back to log sender")
            return LogSMSSender()
        return TwilioSMSSender(
            account_sid=config.twilio_account_sid,
            auth_token=config.twilio_auth_token,
            from_number=config.twilio_from_number,
            api_url=config.twilio_api_url,
            timeout=config.sms_timeout_seconds
        )
    return LogSMSSender()


# Records

class NotificationStatus(Enum):
    """Delivery status of a notification"""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class Notification(StorageRecord):
    """One dispatched SMS and its delivery outcome"""
    user_id: str
    template_id: str
    recipient: str
    body: str
    status: NotificationStatus = NotificationStatus.PENDING
    attempts: int = 0
    failed_reason: Optional[str] = None
    provider_message_id: Optional[str] = None
    sent_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Notification':
        data = dict(data)
        data['status'] = NotificationStatus(data['status'])
        data['sent_at'] = parse_datetime(data.get('sent_at'))
        return super().from_dict(data)


class NotificationDispatcher:
    """
    Renders, records and delivers SMS notifications on a worker pool.

    dispatch() never raises: lookup, rendering and delivery failures are
    logged and recorded, and the caller's transition is unaffected.
    """

    def __init__(
        self,
        storage: StorageInterface,
        users: UserDirectory,
        sender: Optional[SMSSender] = None,
        audit_trail: Optional[AuditTrail] = None,
        max_retries: int = 2,
        workers: int = 2,
        company_name: str = "JB Capital",
        enabled: bool = True
    ):
        self.storage = storage
        self.users = users
        self.sender = sender or LogSMSSender()
        self.audit_trail = audit_trail
        self.max_retries = max_retries
        self.company_name = company_name
        self.enabled = enabled
        self.table_name = "notifications"

        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="lendflow-sms")
        self._pending: Set[Future] = set()
        self._pending_lock = threading.Lock()

    def dispatch(self, user_id: str, template: NotificationTemplate,
                 params: Optional[Dict[str, Any]] = None) -> Optional[Notification]:
        """
        Queue an SMS for a user

        Args:
            user_id: Recipient user
            template: Template to render
            params: Template parameters; first_name and company_name are filled in

        Returns:
            The recorded Notification (pending until the worker finishes), or
            None when it could not be recorded at all
        """
        try:
            return self._dispatch(user_id, template, params or {})
        except Exception as e:
            logger.error(f"Failed to dispatch {template.value} to user {user_id}: {e}", exc_info=True)
            return None

    def _dispatch(self, user_id: str, template: NotificationTemplate,
                  params: Dict[str, Any]) -> Optional[Notification]:
        user = self.users.find(user_id)
        if user is None:
            logger.warning(f"Skipping {template.value}: user {user_id} not found")
            return None

        context = {"first_name": user.first_name, "company_name": self.company_name}
        context.update(params)

        now = datetime.now(timezone.utc)
        notification = Notification(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            template_id=template.value,
            recipient=normalize_phone_number(user.phone or ""),
            body=""
        )

        try:
            notification.body = render_template(template, context)
        except KeyError as e:
            notification.status = NotificationStatus.FAILED
            notification.failed_reason = f"Missing template parameter: {e}"
            logger.error(f"Template {template.value} missing parameter {e}")
            self._save(notification)
            return notification

        if not self.enabled:
            notification.status = NotificationStatus.SKIPPED
            notification.failed_reason = "SMS disabled"
            self._save(notification)
            return notification

        if not is_valid_e164(notification.recipient):
            notification.status = NotificationStatus.FAILED
            notification.failed_reason = f"Invalid recipient number: {notification.recipient}"
            logger.error(f"Not sending {template.value} to user {user_id}: no valid phone number")
            self._save(notification)
            return notification

        self._save(notification)

        future = self._executor.submit(self._deliver, notification)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return notification

    def _forget(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _deliver(self, notification: Notification) -> Notification:
        """Worker body: send with retries, record the outcome"""
        result = SendResult(ok=False, error="not attempted")
        for attempt in range(1, self.max_retries + 2):
            notification.attempts = attempt
            try:
                result = self.sender.send(notification.recipient, notification.body)
            except Exception as e:
                result = SendResult(ok=False, error=str(e))
                logger.warning(f"SMS sender raised on attempt {attempt} for {notification.id}: {e}")
            if result.ok:
                break
            logger.warning(f"SMS attempt {attempt} failed for notification {notification.id}: {result.error}")

        now = notification.touch()
        if result.ok:
            notification.status = NotificationStatus.SENT
            notification.sent_at = now
            notification.provider_message_id = result.message_id
            notification.failed_reason = None
            logger.info(f"Sent {notification.template_id} to user {notification.user_id}")
        else:
            notification.status = NotificationStatus.FAILED
            notification.failed_reason = result.error
            logger.error(f"Giving up on notification {notification.id} after "
                         f"{notification.attempts} attempts: {result.error}")

        try:
            self._save(notification)
            if self.audit_trail:
                self.audit_trail.log_event(
                    AuditEventType.NOTIFICATION_SENT if result.ok else AuditEventType.NOTIFICATION_FAILED,
                    "notification", notification.id,
                    {"user_id": notification.user_id, "template": notification.template_id,
                     "attempts": notification.attempts}
                )
        except Exception as e:
            logger.error(f"Failed to record outcome of notification {notification.id}: {e}", exc_info=True)

        return notification

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for queued deliveries; True when all finished in time"""
        with self._pending_lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_pending: bool = True) -> None:
        """Stop the worker pool and close the sender"""
        self._executor.shutdown(wait=wait_for_pending)
        self.sender.close()

    def get(self, notification_id: str) -> Optional[Notification]:
        data = self.storage.load(self.table_name, notification_id)
        return Notification.from_dict(data) if data else None

    def list_for_user(self, user_id: str) -> List[Notification]:
        notifications = [Notification.from_dict(d) for d in self.storage.find(self.table_name, {"user_id": user_id})]
        notifications.sort(key=lambda n: n.created_at)
        return notifications

    def delete_for_user(self, user_id: str) -> int:
        removed = 0
        for data in self.storage.find(self.table_name, {"user_id": user_id}):
            if self.storage.delete(self.table_name, data['id']):
                removed += 1
        return removed

    def _save(self, notification: Notification) -> None:
        self.storage.save(self.table_name, notification.id, notification.to_dict())
