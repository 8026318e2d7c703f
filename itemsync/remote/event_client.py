"""MQTT client delivering item change notifications."""

import logging
import threading
import uuid
from typing import Any, Callable

import paho.mqtt.client as mqtt

from ..config import EventsConfig
from ..errors import MalformedNotification, TransportError
from ..models import ChangeNotification

logger = logging.getLogger(__name__)


EventCallback = Callable[[ChangeNotification], None]
ClosedCallback = Callable[[], None]
FailureCallback = Callable[[Exception], None]


class ItemEventClient:
    """Subscribes to the server's item change topic.

    Callbacks run on paho's network thread. A connection that fails or drops
    is not re-established; the owner gets ``on_failure`` and is expected to
    open a new connection when it wants one.
    """

    def __init__(self, config: EventsConfig, client_id: str | None = None):
        self.config = config
        self._client_id = client_id or f"itemsync-{uuid.uuid4().hex[:12]}"
        self._client: mqtt.Client | None = None
        self._token: str | None = None
        self._lock = threading.Lock()
        self._closing = False
        self._finished = False

        self._on_event: EventCallback | None = None
        self._on_closed: ClosedCallback | None = None
        self._on_failure: FailureCallback | None = None

    def authorize(self, token: str | None) -> None:
        """Set the bearer token sent when the next connection is made."""
        self._token = token

    def _apply_credentials(self, client: mqtt.Client) -> None:
        if self._token:
            client.username_pw_set(self.config.username or "bearer", self._token)
        elif self.config.username:
            client.username_pw_set(self.config.username)

    def open(
        self,
        on_event: EventCallback,
        on_closed: ClosedCallback,
        on_failure: FailureCallback,
    ) -> None:
        """Connect to the broker and start delivering notifications.

        Raises:
            TransportError: If the connection cannot be started.
        """
        with self._lock:
            if self._client is not None:
                logger.debug("Event client already open")
                return

            self._on_event = on_event
            self._on_closed = on_closed
            self._on_failure = on_failure
            self._closing = False
            self._finished = False

            client = mqtt.Client(
                mqtt.CallbackAPIVersion.VERSION2,
                client_id=self._client_id,
            )
            client.on_connect = self._handle_connect
            client.on_connect_fail = self._handle_connect_fail
            client.on_message = self._handle_message
            client.on_disconnect = self._handle_disconnect
            self._apply_credentials(client)
            self._client = client

        try:
            client.connect_async(
                self.config.broker,
                self.config.port,
                keepalive=self.config.keepalive_seconds,
            )
            client.loop_start()
        except Exception as e:
            with self._lock:
                self._client = None
            raise TransportError(
                f"Cannot connect to {self.config.broker}:{self.config.port}: {e}"
            ) from e

        logger.info(f"Event client connecting to {self.config.broker}:{self.config.port}")

    def close(self) -> None:
        """Disconnect and stop the network loop. Safe to call repeatedly."""
        with self._lock:
            client = self._client
            if client is None:
                return
            self._closing = True
            self._client = None

        try:
            client.disconnect()
        except Exception as e:
            logger.debug(f"Disconnect failed: {e}")
        client.loop_stop()
        self._finish(None)
        logger.info("Event client closed")

    @property
    def is_open(self) -> bool:
        return self._client is not None

    def _finish(self, error: Exception | None) -> None:
        """Fire exactly one of on_closed / on_failure per connection."""
        with self._lock:
            if self._finished:
                return
            self._finished = True
            on_closed, on_failure = self._on_closed, self._on_failure

        if error is None:
            if on_closed:
                on_closed()
        elif on_failure:
            on_failure(error)

    def _fail(self, client: mqtt.Client, error: Exception) -> None:
        logger.error(f"Event stream failed: {error}")
        with self._lock:
            if self._client is client:
                self._client = None
        # Stop paho from reconnecting on its own; called from the network thread
        client.loop_stop()
        self._finish(error)

    def _handle_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        """Handle connection to broker."""
        if reason_code == 0:
            logger.info(f"Connected to MQTT broker at {self.config.broker}:{self.config.port}")
            client.subscribe(self.config.topic)
            logger.info(f"Subscribed to topic: {self.config.topic}")
        else:
            self._fail(client, TransportError(f"Broker refused connection: {reason_code}"))

    def _handle_connect_fail(self, client: mqtt.Client, userdata: Any) -> None:
        self._fail(client, TransportError("Could not reach MQTT broker"))

    def _handle_message(
        self,
        client: mqtt.Client,
        userdata: Any,
        msg: mqtt.MQTTMessage,
    ) -> None:
        """Decode an incoming message and hand it to on_event."""
        try:
            notification = ChangeNotification.from_json(msg.payload)
        except MalformedNotification as e:
            logger.warning(f"Dropping malformed notification on {msg.topic}: {e}")
            return

        logger.debug(f"Received {notification.kind.value} for {notification.key}")
        if self._on_event:
            self._on_event(notification)

    def _handle_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        disconnect_flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        """Handle disconnection from broker."""
        if self._closing:
            return
        self._fail(client, TransportError(f"Disconnected from MQTT broker: {reason_code}"))
