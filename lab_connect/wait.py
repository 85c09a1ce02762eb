"""
Bounded, cancellable wait for a remote resource to reach a state.

The state is polled at `poll_interval` (slow, to stay cheap against the
provider API) while the progress line redraws at the renderer's own, faster
interval.
"""
import logging
import sys
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, TextIO

from .config import DEFAULT_CONNECT_TIMEOUT, DEFAULT_POLL_INTERVAL
from .errors import ResourceErrorState, WaitCancelled, WaitTimeout

FAILURE_MARKERS = ("error", "failed")
INSTANCE_WAIT_DURATION = 600.0


class WaitOutcome(Enum):
    SATISFIED = "satisfied"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    ERROR_STATE = "error_state"


@dataclass
class WaitCondition:
    resource_name: str
    target_state: str
    current_state_fn: Callable[[], str]
    poll_interval: float = DEFAULT_POLL_INTERVAL
    max_duration: float = DEFAULT_CONNECT_TIMEOUT
    operation: str = "instance"


def format_elapsed(seconds: float) -> str:
    seconds = int(round(seconds))
    minutes, seconds = divmod(seconds, 60)
    return f"{minutes}m{seconds:02d}s" if minutes else f"{seconds}s"


def is_failure_state(state: str) -> bool:
    lowered = state.lower()
    return any(marker in lowered for marker in FAILURE_MARKERS)


@dataclass
class WaitResult:
    outcome: WaitOutcome
    condition: WaitCondition
    state: Optional[str]
    elapsed: float

    @property
    def ok(self) -> bool:
        return self.outcome is WaitOutcome.SATISFIED

    def raise_for_outcome(self):
        c = self.condition
        if self.outcome is WaitOutcome.ERROR_STATE:
            raise ResourceErrorState(f"{c.operation} {c.resource_name} entered error state: {self.state}")
        if self.outcome is WaitOutcome.TIMED_OUT:
            raise WaitTimeout(
                f"timeout waiting for {c.operation} {c.resource_name} after {format_elapsed(self.elapsed)}"
                f" (last state: {self.state or 'unknown'})"
            )
        if self.outcome is WaitOutcome.CANCELLED:
            raise WaitCancelled(f"wait for {c.operation} {c.resource_name} cancelled")


class ProgressRenderer:
    FRAMES = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"

    def __init__(self, stream: Optional[TextIO] = None, interval: float = 0.1, animate: Optional[bool] = None):
        self.stream = stream or sys.stderr
        self.interval = interval
        if animate is None:
            animate = hasattr(self.stream, "isatty") and self.stream.isatty()
        self.animate = animate
        self._frame = 0

    def _write(self, text: str):
        self.stream.write(text)
        self.stream.flush()

    def _clear(self):
        if self.animate:
            self._write("\r\033[K")

    def start(self, condition: WaitCondition, state: Optional[str]):
        self._write(f"⏳ Waiting for {condition.operation} {condition.resource_name} "
                    f"to reach state '{condition.target_state}' (current: {state or 'unknown'})\n")

    def tick(self, condition: WaitCondition, state: Optional[str], elapsed: float):
        if not self.animate:
            return
        frame = self.FRAMES[self._frame % len(self.FRAMES)]
        self._frame += 1
        self._write(f"\r  {frame} {condition.resource_name}: {state or 'unknown'} → "
                    f"{condition.target_state} (elapsed: {format_elapsed(elapsed)})")

    def transition(self, condition: WaitCondition, old: Optional[str], new: str, elapsed: float):
        self._clear()
        self._write(f"  🔄 {condition.resource_name}: {old or 'unknown'} → {new} "
                    f"(elapsed: {format_elapsed(elapsed)})\n")

    def finish(self, result: WaitResult):
        self._clear()
        c = result.condition
        if result.outcome is WaitOutcome.SATISFIED:
            self._write(f"✅ {c.operation} {c.resource_name} reached state '{c.target_state}' "
                        f"after {format_elapsed(result.elapsed)}\n")


def wait_for_state(condition: WaitCondition, cancel: Optional[threading.Event] = None,
                   progress: Optional[ProgressRenderer] = None,
                   clock: Callable[[], float] = time.monotonic,
                   sleep: Optional[Callable[[float], object]] = None) -> WaitResult:
    progress = progress or ProgressRenderer()
    if sleep is None:
        # Waiting on the event wakes up as soon as the caller cancels
        sleep = cancel.wait if cancel is not None else time.sleep

    start = clock()
    deadline = start + condition.max_duration
    state = None

    def poll() -> Optional[str]:
        try:
            return condition.current_state_fn()
        except Exception as e:
            # Transient; the deadline still bounds the wait
            logging.debug(f"[WAIT] State check for {condition.resource_name} failed: {e}")
            return None

    def resolve(outcome: WaitOutcome) -> WaitResult:
        result = WaitResult(outcome, condition, state, clock() - start)
        progress.finish(result)
        if outcome is not WaitOutcome.SATISFIED:
            logging.debug(f"[WAIT] {condition.resource_name}: {outcome.value} after {format_elapsed(result.elapsed)}")
        return result

    def terminal(current: Optional[str]) -> Optional[WaitOutcome]:
        if current is None:
            return None
        if current == condition.target_state:
            return WaitOutcome.SATISFIED
        if is_failure_state(current):
            return WaitOutcome.ERROR_STATE
        return None

    try:
        state = poll()
        outcome = terminal(state)
        if outcome is not None:
            return resolve(outcome)
        progress.start(condition, state)

        next_poll = start + condition.poll_interval
        while True:
            if cancel is not None and cancel.is_set():
                return resolve(WaitOutcome.CANCELLED)
            now = clock()
            if now >= deadline:
                return resolve(WaitOutcome.TIMED_OUT)

            if now >= next_poll:
                next_poll = now + condition.poll_interval
                current = poll()
                if current is not None and current != state:
                    progress.transition(condition, state, current, now - start)
                    state = current
                outcome = terminal(current)
                if outcome is not None:
                    return resolve(outcome)

            progress.tick(condition, state, now - start)
            sleep(max(0.0, min(progress.interval, next_poll - now, deadline - now)))
    except KeyboardInterrupt:
        return resolve(WaitOutcome.CANCELLED)


def wait_for_instance_state(instance_name: str, target_state: str, state_fn: Callable[[], str],
                            cancel: Optional[threading.Event] = None, **kwargs) -> WaitResult:
    condition = WaitCondition(
        resource_name=instance_name,
        target_state=target_state,
        current_state_fn=state_fn,
        poll_interval=DEFAULT_POLL_INTERVAL,
        # Instance operations can take longer
        max_duration=INSTANCE_WAIT_DURATION,
    )
    return wait_for_state(condition, cancel=cancel, **kwargs)
