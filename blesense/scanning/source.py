"""
Observation sources.

The scheduler consumes any :class:`ObservationSource`. The bundled
implementation drives a bleak ``BleakScanner`` on a private asyncio loop
running in a daemon thread, so the rest of the engine stays synchronous.
"""

from __future__ import annotations

import asyncio
import logging
import queue
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from bleak import BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from .models import RawObservation, ScanConfig, SourceUnavailableError

logger = logging.getLogger('blesense.scanning.source')

ObservationCallback = Callable[[RawObservation], None]
ErrorCallback = Callable[[str], None]

# Seconds to wait for the radio to start or stop
SOURCE_CALL_TIMEOUT = 10.0

# Advertisements buffered between the bleak loop and the subscriber
DELIVERY_QUEUE_SIZE = 5000

# Test scan length used by is_ready()
READY_CHECK_SECONDS = 0.1


class ObservationSource(ABC):
    """Push stream of raw advertisement observations."""

    @abstractmethod
    def is_ready(self) -> bool:
        """True if the radio is present, powered on and authorized."""

    @abstractmethod
    def subscribe(
        self,
        config: ScanConfig,
        on_observation: ObservationCallback,
        on_error: ErrorCallback,
    ) -> None:
        """
        Start delivering observations.

        Raises:
            SourceUnavailableError: if the radio cannot start scanning.
        """

    @abstractmethod
    def unsubscribe(self) -> None:
        """
        Stop delivering observations.

        A delivery already in flight may still complete; consumers must ignore
        callbacks from a closed subscription.
        """

    def close(self) -> None:
        """Release background resources. The source is not reused afterwards."""
        self.unsubscribe()


def observation_from_advertisement(device: BLEDevice, adv: AdvertisementData) -> RawObservation:
    """Convert a bleak detection callback pair into a RawObservation."""
    return RawObservation(
        device_id=device.address.upper(),
        rssi=adv.rssi,
        platform_name=device.name or '',
        local_name=adv.local_name or None,
        service_uuids=tuple(adv.service_uuids or ()),
        manufacturer_data={str(k): bytes(v) for k, v in (adv.manufacturer_data or {}).items()},
        service_data={str(k): bytes(v) for k, v in (adv.service_data or {}).items()},
        connectable=getattr(adv, 'connectable', True),
        tx_power=adv.tx_power,
    )


class BleakObservationSource(ObservationSource):
    """
    Observation source backed by bleak.

    Detections are queued on the loop thread and handed to the subscriber
    from a separate delivery thread, so a subscriber holding its own lock
    while calling ``unsubscribe()`` never waits on itself.

    When ``allow_duplicates`` is off, only the first advertisement per device
    is forwarded for each subscription.
    """

    def __init__(self, adapter: Optional[str] = None, queue_size: int = DELIVERY_QUEUE_SIZE):
        self.adapter = adapter
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._scanner: Optional[BleakScanner] = None
        self._on_observation: Optional[ObservationCallback] = None
        self._on_error: Optional[ErrorCallback] = None
        self._allow_duplicates = True
        self._seen: set[str] = set()
        self._lock = threading.Lock()

        self._deliveries: queue.Queue = queue.Queue(maxsize=queue_size)
        self._delivery_thread: Optional[threading.Thread] = None
        self._delivery_stop = threading.Event()
        self._dropped = 0

    # -------------------------------------------------------------------------
    # Threads
    # -------------------------------------------------------------------------

    def _ensure_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            loop = asyncio.new_event_loop()
            loop.set_exception_handler(self._handle_loop_exception)
            self._thread = threading.Thread(
                target=loop.run_forever,
                name='blesense-bleak',
                daemon=True,
            )
            self._loop = loop
            self._thread.start()
        return self._loop

    def _ensure_delivery(self) -> None:
        if self._delivery_thread is not None and self._delivery_thread.is_alive():
            return
        self._delivery_stop.clear()
        self._delivery_thread = threading.Thread(
            target=self._delivery_loop,
            name='blesense-delivery',
            daemon=True,
        )
        self._delivery_thread.start()

    def _run(self, coro: Any, timeout: float = SOURCE_CALL_TIMEOUT) -> Any:
        future = asyncio.run_coroutine_threadsafe(coro, self._ensure_loop())
        return future.result(timeout=timeout)

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict) -> None:
        message = context.get('message') or str(context.get('exception'))
        logger.warning(f"Scanner loop error: {message}")
        on_error = self._on_error
        if on_error is not None:
            self._offer(on_error, f"Scan error: {message}")

    def close(self) -> None:
        """Stop the background threads."""
        self.unsubscribe()
        self._delivery_stop.set()
        if self._delivery_thread is not None:
            self._delivery_thread.join(timeout=2.0)
            self._delivery_thread = None
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._loop.stop)
            if self._thread is not None:
                self._thread.join(timeout=2.0)
            self._loop.close()
            self._loop = None
            self._thread = None

    # -------------------------------------------------------------------------
    # ObservationSource
    # -------------------------------------------------------------------------

    def is_ready(self) -> bool:
        try:
            self._run(self._check_radio())
            return True
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Bluetooth adapter not ready: {e}")
            return False

    async def _check_radio(self) -> None:
        kwargs = {'adapter': self.adapter} if self.adapter else {}
        scanner = BleakScanner(**kwargs)
        await scanner.start()
        await asyncio.sleep(READY_CHECK_SECONDS)
        await scanner.stop()

    def subscribe(
        self,
        config: ScanConfig,
        on_observation: ObservationCallback,
        on_error: ErrorCallback,
    ) -> None:
        with self._lock:
            if self._scanner is not None:
                raise SourceUnavailableError('Scanner already subscribed')

            self._on_observation = on_observation
            self._on_error = on_error
            self._allow_duplicates = config.allow_duplicates
            self._seen = set()

            kwargs: dict[str, Any] = {'detection_callback': self._detection_callback}
            if config.service_uuids:
                kwargs['service_uuids'] = list(config.service_uuids)
            if self.adapter:
                kwargs['adapter'] = self.adapter

            try:
                scanner = BleakScanner(**kwargs)
                self._run(scanner.start())
            except (BleakError, OSError, asyncio.TimeoutError) as e:
                self._on_observation = None
                self._on_error = None
                raise SourceUnavailableError(f"Failed to start scan: {e}") from e

            self._scanner = scanner
            self._ensure_delivery()
            logger.info("Bleak scanner started")

    def unsubscribe(self) -> None:
        with self._lock:
            scanner = self._scanner
            self._scanner = None
            self._on_observation = None
            self._on_error = None
            if scanner is None:
                return
            try:
                self._run(scanner.stop())
                logger.info("Bleak scanner stopped")
            except (BleakError, OSError, asyncio.TimeoutError) as e:
                logger.warning(f"Error stopping scanner: {e}")

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    def _detection_callback(self, device: BLEDevice, adv: AdvertisementData) -> None:
        callback = self._on_observation
        if callback is None:
            return
        address = device.address.upper()
        if not self._allow_duplicates:
            if address in self._seen:
                return
            self._seen.add(address)
        try:
            observation = observation_from_advertisement(device, adv)
        except (TypeError, ValueError) as e:
            logger.debug(f"Error processing advertisement from {address}: {e}")
            return
        self._offer(callback, observation)

    def _offer(self, handler: Callable[[Any], None], payload: Any) -> None:
        try:
            self._deliveries.put_nowait((handler, payload))
        except queue.Full:
            self._dropped += 1
            if self._dropped % 1000 == 1:
                logger.warning(f"Delivery queue full, dropped {self._dropped} advertisements")

    def _delivery_loop(self) -> None:
        while not self._delivery_stop.is_set():
            try:
                handler, payload = self._deliveries.get(timeout=0.5)
            except queue.Empty:
                continue
            if handler is not self._on_observation and handler is not self._on_error:
                continue
            try:
                handler(payload)
            except Exception as e:
                logger.exception(f"Observation handler failed: {e}")
