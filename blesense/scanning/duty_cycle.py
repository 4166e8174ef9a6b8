"""
Duty-cycle scheduler.

Alternates active-scan and rest phases according to a battery profile and is
the only component that opens or closes the observation source subscription.

State transitions and observation dispatch are serialized by one re-entrant
lock. Every subscription and phase timer carries a token; callbacks holding a
stale token are ignored, so nothing leaks across stop/start.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from .models import (
    BatteryProfile,
    RawObservation,
    ScanConfig,
    ScanState,
)
from .source import ObservationSource
from .timers import Clock, SystemClock, TimerGroup

logger = logging.getLogger('blesense.scanning.duty_cycle')

PHASE_TIMER = 'phase'
AUTO_STOP_TIMER = 'auto_stop'

StateListener = Callable[[ScanState, ScanState], None]


class DutyCycleScheduler:
    """
    Timed state machine gating the observation source.

    Hooks (all optional, invoked with the scheduler lock held):
        on_observation(obs): an observation that passed the RSSI floor.
        on_error(message): a transient or fatal scan error.
        on_state_change(old, new): every state transition.
        on_stop(): while in STOPPING, after the source is closed.
    """

    def __init__(
        self,
        source: ObservationSource,
        clock: Optional[Clock] = None,
        profile: Optional[BatteryProfile] = None,
        timers: Optional[TimerGroup] = None,
    ):
        self._source = source
        self._clock = clock or SystemClock()
        self._profile = profile or BatteryProfile.default()
        self._profile.validate()
        self._pending_profile: Optional[BatteryProfile] = None
        self._config = ScanConfig()
        self._timers = timers or TimerGroup(self._clock)
        self._lock = threading.RLock()

        self._state = ScanState.IDLE
        self._error: Optional[str] = None
        self._generation = 0
        self._subscribed = False
        self._subscription_token = 0
        self._phase_started_at: Optional[datetime] = None
        self._scan_started_at: Optional[datetime] = None

        self.cycle_count = 0
        self.discarded_count = 0

        self.on_observation: Optional[Callable[[RawObservation], None]] = None
        self.on_error: Optional[Callable[[str], None]] = None
        self.on_state_change: Optional[StateListener] = None
        self.on_stop: Optional[Callable[[], None]] = None

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ScanState:
        return self._state

    @property
    def profile(self) -> BatteryProfile:
        """The profile in effect for the current phase."""
        return self._profile

    @property
    def pending_profile(self) -> Optional[BatteryProfile]:
        """A profile waiting for the next phase boundary, if any."""
        return self._pending_profile

    @property
    def config(self) -> ScanConfig:
        return self._config

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def is_subscribed(self) -> bool:
        return self._subscribed

    @property
    def timers(self) -> TimerGroup:
        return self._timers

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    @property
    def phase_started_at(self) -> Optional[datetime]:
        return self._phase_started_at

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self, config: Optional[ScanConfig] = None) -> bool:
        """
        Start scanning.

        Returns:
            True if scanning started. False if already running or the
            source was unavailable (state is then ERROR).

        Raises:
            ConfigurationError: if ``config`` is invalid. State is unchanged.
        """
        config = config or ScanConfig()
        config.validate()

        with self._lock:
            if self._state not in (ScanState.IDLE, ScanState.ERROR):
                logger.warning(f"Scan already in progress (state={self._state})")
                return False

            self._apply_pending_profile()
            self._config = config
            self._error = None
            self._generation += 1
            self._set_state(ScanState.INITIALIZING)
            self._scan_started_at = self._clock.now()
            logger.info(f"Starting scan with config: {config.to_dict()} profile: {self._profile.to_dict()}")

            try:
                ready = self._source.is_ready()
            except Exception as e:
                logger.error(f"Error checking Bluetooth state: {e}")
                ready = False

            if not ready:
                self._fail('Bluetooth is not available or not turned on')
                return False

            if not self._open_subscription():
                return False

            if self._profile.duty_cycling:
                self._enter_active_phase()
            else:
                self._enter_continuous()
            return True

    def stop(self) -> None:
        """
        Stop scanning from any state.

        Idempotent. When this returns no timer is pending, the source is
        closed and no further observation will be dispatched.
        """
        with self._lock:
            if self._state == ScanState.IDLE and not self._subscribed and not len(self._timers):
                return

            logger.info(f"Stopping scan (state={self._state})")
            self._generation += 1
            self._set_state(ScanState.STOPPING)
            self._timers.cancel_all()
            self._close_subscription()
            self._apply_pending_profile()
            self._phase_started_at = None
            self._scan_started_at = None

            if self.on_stop is not None:
                try:
                    self.on_stop()
                except Exception as e:
                    logger.exception(f"Error finalizing scan: {e}")

            self._error = None
            self._set_state(ScanState.IDLE)

    def set_battery_profile(self, profile: BatteryProfile) -> None:
        """
        Swap in a new battery profile.

        While cycling, the profile takes effect at the next phase boundary so
        an in-progress phase is never truncated.

        Raises:
            ConfigurationError: if the profile is invalid. The previous
                profile stays in effect.
        """
        profile.validate()

        with self._lock:
            if self._state in (ScanState.ACTIVE_SCAN, ScanState.RESTING, ScanState.INITIALIZING):
                self._pending_profile = profile
                logger.info(f"Battery profile queued for next phase: {profile.to_dict()}")
            elif self._state == ScanState.CONTINUOUS:
                self._profile = profile
                self._pending_profile = None
                logger.info(f"Battery profile applied: {profile.to_dict()}")
                if profile.duty_cycling:
                    # The open subscription becomes the first active phase
                    self._timers.cancel(AUTO_STOP_TIMER)
                    self._enter_active_phase()
            else:
                self._profile = profile
                self._pending_profile = None
                logger.info(f"Battery profile set: {profile.to_dict()}")

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    def _enter_active_phase(self) -> None:
        self.cycle_count += 1
        self._phase_started_at = self._clock.now()
        self._set_state(ScanState.ACTIVE_SCAN)
        self._start_phase_timer(self._profile.scan_duration)

    def _enter_rest_phase(self) -> None:
        self._phase_started_at = self._clock.now()
        self._set_state(ScanState.RESTING)
        self._start_phase_timer(self._profile.rest_duration)

    def _enter_continuous(self) -> None:
        self._phase_started_at = self._clock.now()
        self._set_state(ScanState.CONTINUOUS)
        self._arm_auto_stop()

    def _arm_auto_stop(self) -> None:
        # Measured from the scan start, not from entering CONTINUOUS
        elapsed = 0.0
        if self._scan_started_at is not None:
            elapsed = (self._clock.now() - self._scan_started_at).total_seconds()
        remaining = max(0.0, self._config.scan_duration - elapsed)
        generation = self._generation
        self._timers.start(AUTO_STOP_TIMER, remaining, lambda: self._on_auto_stop(generation))

    def _start_phase_timer(self, delay: float) -> None:
        generation = self._generation
        self._timers.start(PHASE_TIMER, delay, lambda: self._on_phase_elapsed(generation))

    def _on_phase_elapsed(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._timers.discard(PHASE_TIMER)

            if self._state == ScanState.ACTIVE_SCAN:
                self._apply_pending_profile()
                if self._profile.duty_cycling:
                    self._close_subscription()
                    self._enter_rest_phase()
                else:
                    self._enter_continuous()

            elif self._state == ScanState.RESTING:
                self._apply_pending_profile()
                if not self._open_subscription():
                    return
                if self._profile.duty_cycling:
                    self._enter_active_phase()
                else:
                    self._enter_continuous()

    def _on_auto_stop(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._timers.discard(AUTO_STOP_TIMER)
            logger.info("Scan duration reached, stopping scan")
        self.stop()

    def _apply_pending_profile(self) -> None:
        if self._pending_profile is not None:
            self._profile = self._pending_profile
            self._pending_profile = None
            logger.info(f"Battery profile applied: {self._profile.to_dict()}")

    # -------------------------------------------------------------------------
    # Subscription
    # -------------------------------------------------------------------------

    def _open_subscription(self) -> bool:
        if self._subscribed:
            return True

        self._subscription_token += 1
        token = self._subscription_token
        self._subscribed = True
        try:
            self._source.subscribe(
                self._config,
                lambda obs: self._dispatch(token, obs),
                lambda message: self._dispatch_error(token, message),
            )
        except Exception as e:
            self._subscribed = False
            self._subscription_token += 1
            self._fail(f"Failed to start scan: {e}")
            return False
        return True

    def _close_subscription(self) -> None:
        if not self._subscribed:
            return
        self._subscribed = False
        self._subscription_token += 1
        try:
            self._source.unsubscribe()
        except Exception as e:
            logger.warning(f"Error stopping scan: {e}")

    def _dispatch(self, token: int, observation: RawObservation) -> None:
        with self._lock:
            if token != self._subscription_token or not self._subscribed:
                return
            if self._state not in (ScanState.ACTIVE_SCAN, ScanState.CONTINUOUS):
                return
            if observation.rssi < self._profile.min_rssi_threshold:
                self.discarded_count += 1
                return
            if self.on_observation is None:
                return
            try:
                self.on_observation(observation)
            except Exception as e:
                logger.exception(f"Error processing scan result from {observation.device_id}: {e}")

    def _dispatch_error(self, token: int, message: str) -> None:
        with self._lock:
            if token != self._subscription_token:
                return
            logger.warning(f"Transient scan fault: {message}")
            self._error = message
            if self.on_error is not None:
                self.on_error(message)

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    def _fail(self, reason: str) -> None:
        logger.error(f"Scan failed: {reason}")
        self._generation += 1
        self._timers.cancel_all()
        self._close_subscription()
        self._phase_started_at = None
        self._error = reason
        self._set_state(ScanState.ERROR)
        if self.on_error is not None:
            self.on_error(reason)

    def _set_state(self, new_state: ScanState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        logger.debug(f"Scheduler state {old_state} -> {new_state}")
        if self.on_state_change is not None:
            self.on_state_change(old_state, new_state)
