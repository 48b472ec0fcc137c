"""Anonymous usage telemetry.

Two event types share one dispatcher, :class:`TelemetryQueue`, which owns the
pending queue, the single in-flight request and the persisted
:class:`~mapsdk.models.EventState`. What differs per event type lives in an
admission policy:

* :class:`ResourceLoadPolicy` sends ``map.load`` once per subject id.
* :class:`DailyUsagePolicy` sends ``appUserTurnstile`` at most once per
  calendar day.

Delivery is at most once per report: a failed request is not retried, the
next report of the same activity simply queues a new entry.
"""
import json
import logging
import time
from collections import deque
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Protocol

from pydantic import ValidationError

from mapsdk.config import Settings, settings
from mapsdk.models import DeliveryRequest, EventState, ResourceLoadEntry
from mapsdk.services import Cancelable, Transport, new_uuid, validate_uuid
from mapsdk.storage import KeyValueStorage, StorageError
from mapsdk.utils import format_locator, is_first_party_http, parse_locator, warn_once

logger = logging.getLogger(__name__)

STORAGE_NAMESPACE = "mapsdk.eventData"
DAY_MILLIS = 24 * 60 * 60 * 1000


def now_millis() -> int:
    return int(time.time() * 1000)


def iso_timestamp(epoch_millis: int) -> str:
    """Format epoch millis as UTC ISO-8601 with millisecond precision, e.g. 2024-05-01T12:00:00.000Z"""
    seconds, millis = divmod(epoch_millis, 1000)
    created = datetime.fromtimestamp(seconds, tz=timezone.utc) + timedelta(milliseconds=millis)
    return created.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class AdmissionPolicy(Protocol):
    event_name: str
    # Whether a skipped entry lets the queue move on to the next one
    drain_on_skip: bool

    def is_due(self, entry: Any, queue: "TelemetryQueue") -> bool: ...

    def build_payload(self, entry: Any, state: EventState, config: Settings) -> Dict[str, Any]: ...

    def on_success(self, entry: Any, state: EventState, config: Settings) -> EventState: ...


class TelemetryQueue:
    """Serialized delivery queue for a single telemetry event type

    At most one request is outstanding at a time; entries are considered in
    FIFO order and each one is dropped once a decision is made about it.
    """

    def __init__(
        self,
        policy: AdmissionPolicy,
        transport: Transport,
        storage: KeyValueStorage,
        config: Optional[Settings] = None,
    ) -> None:
        self.policy = policy
        self.transport = transport
        self.storage = storage
        self.config = config or settings
        self.state = EventState(last_access_token=self.config.access_token)
        self.queue: Deque[Any] = deque()
        self.pending_request: Optional[Cancelable] = None

    @property
    def storage_key(self) -> str:
        # Keyed by the current token, so a token switch addresses a different slot
        return f"{STORAGE_NAMESPACE}.{self.policy.event_name}:{self.config.access_token or ''}"

    def is_enabled(self, resource_locators: Iterable[str]) -> bool:
        """Telemetry only runs with a token set and at least one first-party HTTP resource"""
        if not self.config.access_token or isinstance(resource_locators, str):
            return False
        return any(is_first_party_http(locator) for locator in resource_locators)

    def report(self, resource_locators: Iterable[str], entry: Any) -> None:
        if not self.is_enabled(resource_locators):
            return
        self.queue.append(entry)
        self.dispatch()

    def dispatch(self) -> None:
        """Send the next entry that is due, unless a request is already in flight."""
        while self.pending_request is None and self.queue:
            entry = self.queue.popleft()

            if not self.policy.is_due(entry, self):
                if self.policy.drain_on_skip:
                    continue
                return

            self.ensure_identity()
            request = self._build_request(entry)
            self.pending_request = self.transport.post_data(request, partial(self._on_complete, entry))

    def load_state(self) -> None:
        """Replace the in-memory state with the persisted one, when there is one."""
        if not self.storage.is_available():
            return

        try:
            data = self.storage.get_item(self.storage_key)
        except StorageError:
            warn_once("Unable to read telemetry event data from storage")
            return

        if not data:
            return

        try:
            self.state = EventState.model_validate_json(data)
        except ValidationError:
            warn_once("Discarding unreadable telemetry event data")

    def save_state(self) -> None:
        if not self.storage.is_available():
            return

        try:
            self.storage.set_item(self.storage_key, self.state.model_dump_json(by_alias=True))
        except StorageError:
            warn_once("Unable to write telemetry event data to storage")

    def ensure_identity(self) -> bool:
        """Give the state a valid anonymous id; True when a new one had to be generated."""
        if validate_uuid(self.state.anonymous_id):
            return False
        self.state = self.state.model_copy(update={"anonymous_id": new_uuid()})
        return True

    def _build_request(self, entry: Any) -> DeliveryRequest:
        events_parts = parse_locator(self.config.events_url)
        events_parts.params.append(f"access_token={self.config.access_token or ''}")
        payload = self.policy.build_payload(entry, self.state, self.config)
        return DeliveryRequest(
            url=format_locator(events_parts),
            # text/plain avoids a CORS preflight round-trip
            headers={"Content-Type": "text/plain"},
            body=json.dumps([payload]),
        )

    def _on_complete(self, entry: Any, error: Optional[BaseException]) -> None:
        self.pending_request = None
        if error is not None:
            logger.debug("Dropping %s event after failed delivery: %s", self.policy.event_name, error)
            return

        self.state = self.policy.on_success(entry, self.state, self.config)
        self.save_state()
        self.dispatch()


class ResourceLoadPolicy:
    """One ``map.load`` event per subject id for the lifetime of the process"""

    event_name = "map.load"
    # A duplicate stops the queue until the next report, even with other entries waiting
    drain_on_skip = False

    def __init__(self) -> None:
        self.succeeded: Dict[int, bool] = {}

    def is_due(self, entry: ResourceLoadEntry, queue: TelemetryQueue) -> bool:
        if self.succeeded.get(entry.subject_id):
            return False
        if not queue.state.anonymous_id:
            queue.load_state()
        return True

    def build_payload(self, entry: ResourceLoadEntry, state: EventState, config: Settings) -> Dict[str, Any]:
        return {
            "event": self.event_name,
            "created": iso_timestamp(entry.timestamp),
            "sdkIdentifier": config.sdk_identifier,
            "sdkVersion": config.sdk_version,
            "userId": state.anonymous_id,
        }

    def on_success(self, entry: ResourceLoadEntry, state: EventState, config: Settings) -> EventState:
        self.succeeded[entry.subject_id] = True
        return state


class DailyUsagePolicy:
    """At most one ``appUserTurnstile`` event per local calendar day"""

    event_name = "appUserTurnstile"
    drain_on_skip = True

    def is_due(self, timestamp: int, queue: TelemetryQueue) -> bool:
        current_token = queue.config.access_token
        last_token = queue.state.last_access_token

        # A rotated token starts a new identity
        due = bool(last_token) and last_token != current_token
        if due:
            queue.state = queue.state.model_copy(update={"anonymous_id": None, "last_success": None})

        if not queue.state.anonymous_id or queue.state.last_success is None:
            queue.load_state()

        if queue.ensure_identity():
            due = True

        last_success = queue.state.last_success
        if last_success is None:
            return True

        days_elapsed = (timestamp - last_success) / DAY_MILLIS
        last_day = datetime.fromtimestamp(last_success / 1000).day
        next_day = datetime.fromtimestamp(timestamp / 1000).day
        return due or days_elapsed >= 1 or days_elapsed < -1 or last_day != next_day

    def build_payload(self, timestamp: int, state: EventState, config: Settings) -> Dict[str, Any]:
        return {
            "event": self.event_name,
            "created": iso_timestamp(timestamp),
            "sdkIdentifier": config.sdk_identifier,
            "sdkVersion": config.sdk_version,
            # Always false: this event is sent regardless of the telemetry opt-in
            "enabled.telemetry": False,
            "userId": state.anonymous_id,
        }

    def on_success(self, timestamp: int, state: EventState, config: Settings) -> EventState:
        return state.model_copy(update={"last_success": timestamp, "last_access_token": config.access_token})


class MapSdkContext:
    """Top-level SDK handle owning one telemetry queue per event type

    Reporting is fire-and-forget: nothing raised while queueing or sending
    telemetry reaches the caller.
    """

    def __init__(
        self,
        transport: Transport,
        storage: KeyValueStorage,
        config: Optional[Settings] = None,
        clock: Callable[[], int] = now_millis,
    ) -> None:
        self.config = config or settings
        self.storage = storage
        self.clock = clock
        self.resource_load = TelemetryQueue(ResourceLoadPolicy(), transport, storage, self.config)
        self.daily_usage = TelemetryQueue(DailyUsagePolicy(), transport, storage, self.config)

    def cancel_pending(self) -> List[Cancelable]:
        """Cancel in-flight deliveries on shutdown and return their handles

        A cancelled delivery completes as a failure, so its entry is dropped
        and nothing is written to storage.
        """
        pending = []
        for queue in (self.resource_load, self.daily_usage):
            if queue.pending_request is not None:
                queue.pending_request.cancel()
                pending.append(queue.pending_request)
        return pending

    def report_resource_load(self, resource_locators: Iterable[str], subject_id: int) -> None:
        try:
            entry = ResourceLoadEntry(subject_id=subject_id, timestamp=self.clock())
            self.resource_load.report(resource_locators, entry)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error reporting resource load: %s", exc)

    def report_usage_tick(self, resource_locators: Iterable[str]) -> None:
        try:
            self.daily_usage.report(resource_locators, self.clock())
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error reporting usage: %s", exc)
