import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor, wait

from models import EmergencyStatus


logger = logging.getLogger(__name__)

EMERGENCY_SUBMITTED = "emergency_submitted"
STATUS_UPDATE = "status_update"
CANCELLATION = "cancellation"

_STATUS_MESSAGES = {
    EmergencyStatus.AMBULANCE_DISPATCHED: "Ambulance has been dispatched to your location.",
    EmergencyStatus.EN_ROUTE: "Ambulance is on the way to your location.",
    EmergencyStatus.ARRIVED_AT_SCENE: "Ambulance has arrived at your location.",
    EmergencyStatus.TRANSPORTED: "You are being transported to the hospital.",
    EmergencyStatus.ARRIVED_AT_HOSPITAL: "You have arrived at the hospital and are receiving care.",
    EmergencyStatus.COMPLETED: "Emergency response has been completed. We hope you are feeling better.",
}


def _mask_phone(phone_number):
    digits = str(phone_number or "")
    return "*" * max(0, len(digits) - 4) + digits[-4:]


def build_submission_message(emergency):
    hospital = emergency.assigned_hospital
    hospital_text = f"Hospital: {hospital.name}" if hospital else "Finding nearest hospital."
    ambulance_text = (
        f"Ambulance {emergency.ambulance.unit} dispatched, ETA {emergency.ambulance.eta_minutes} min."
        if emergency.ambulance
        else "Ambulance dispatch pending."
    )
    return f"Emergency {emergency.id} submitted successfully. {ambulance_text} {hospital_text}"


def build_status_message(emergency):
    message = _STATUS_MESSAGES.get(emergency.status, f"Status changed to {emergency.status.value}.")
    return f"Emergency {emergency.id} update: {message}"


def build_cancellation_message(emergency, reason):
    return f"Emergency {emergency.id} has been cancelled. Reason: {reason}"


class NotificationGateway:
    def notify(self, emergency, event_kind, payload):
        raise NotImplementedError


class LoggingNotificationGateway(NotificationGateway):
    """
    Stands in for SMS / email / push providers: every message is written to
    the log, and the most recent ones are kept in `sent` so operators can
    audit what went out.
    """

    def __init__(self, history_size=200):
        self.sent = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def _send(self, channel, to, message):
        logger.info("%s sent to %s: %s", channel.upper(), _mask_phone(to) if channel == "sms" else to, message)
        with self._lock:
            self.sent.append({"channel": channel, "to": to, "message": message})

    def notify(self, emergency, event_kind, payload):
        if event_kind == EMERGENCY_SUBMITTED:
            self._send("sms", emergency.patient.phone_number, build_submission_message(emergency))
            hospital = emergency.assigned_hospital
            if hospital is not None:
                self._send(
                    "sms",
                    hospital.phone,
                    f"Incoming {emergency.severity.value} {emergency.emergency_type.value} patient, "
                    f"emergency {emergency.id}, ETA {hospital.eta} minutes",
                )
            dispatch_phone = (payload or {}).get("dispatchPhone")
            if dispatch_phone:
                self._send(
                    "sms",
                    dispatch_phone,
                    f"New {emergency.priority} priority emergency {emergency.id} at {emergency.address}",
                )
        elif event_kind == STATUS_UPDATE:
            self._send("sms", emergency.patient.phone_number, build_status_message(emergency))
        elif event_kind == CANCELLATION:
            reason = (payload or {}).get("reason", "")
            self._send("sms", emergency.patient.phone_number, build_cancellation_message(emergency, reason))
            hospital = emergency.assigned_hospital
            if hospital is not None:
                self._send("sms", hospital.phone, build_cancellation_message(emergency, reason))
        else:
            logger.warning("Unknown notification kind %s for %s", event_kind, emergency.id)


class NotificationDispatcher:
    """
    Fire-and-forget delivery on a thread pool. Failures are logged and never
    reach the caller.
    """

    def __init__(self, gateway, max_workers=4, executor=None):
        self.gateway = gateway
        self._executor = executor or ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")
        self._pending = set()
        self._lock = threading.Lock()

    def dispatch(self, emergency, event_kind, payload=None):
        try:
            future = self._executor.submit(self._deliver, emergency, event_kind, payload)
        except RuntimeError:
            logger.warning("Notification executor is shut down; dropped %s for %s", event_kind, emergency.id)
            return None
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _deliver(self, emergency, event_kind, payload):
        try:
            self.gateway.notify(emergency, event_kind, payload)
        except Exception:
            logger.exception("Failed to send %s notification for %s", event_kind, emergency.id)

    def _forget(self, future):
        with self._lock:
            self._pending.discard(future)

    def flush(self, timeout=None):
        with self._lock:
            pending = list(self._pending)
        wait(pending, timeout=timeout)

    def shutdown(self, wait_for_pending=True):
        self._executor.shutdown(wait=wait_for_pending)
