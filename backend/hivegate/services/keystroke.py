"""
Keystroke dynamics capture and fingerprint extraction.

A KeystrokeCapture collects timestamped key transitions for one input field;
extract_pattern() reduces them to a RhythmPattern that can be stored at
registration and compared at login.
"""
import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from hivegate.schemas.keystroke import KeyPress, KeystrokeEvent, RhythmPattern

logger = logging.getLogger(__name__)

# Modifier and navigation keys carry no rhythm signal and would shift the sequence
EXCLUDED_KEYS = frozenset({"Shift", "Control", "Alt", "Meta", "Tab", "CapsLock", "Escape"})


def is_captured_key(key: str) -> bool:
    return key not in EXCLUDED_KEYS


def extract_pattern(events: Iterable[KeystrokeEvent], captured_at: Optional[datetime] = None) -> RhythmPattern:
    """Reduce an ordered stream of key events to a rhythm fingerprint.

    Each UP is paired with the earliest still-unmatched DOWN of the same key,
    so repeated keys and auto-repeat produce one dwell time per press. An UP
    with nothing to pair is not part of the capture.
    """
    sequence: List[KeyPress] = []
    intervals: List[int] = []
    dwell_times: List[int] = []
    # [key, timestamp, matched] per DOWN, in arrival order
    downs: List[list] = []
    first_ts: Optional[int] = None
    last_ts: Optional[int] = None
    retained = 0
    last_down_ts: Optional[int] = None

    for event in events:
        if not is_captured_key(event.key):
            continue
        if event.phase == "down":
            sequence.append(KeyPress(key=event.key))
            if last_down_ts is not None:
                intervals.append(max(0, event.timestamp - last_down_ts))
            last_down_ts = event.timestamp
            downs.append([event.key, event.timestamp, False])
        else:
            pending = next((d for d in downs if d[0] == event.key and not d[2]), None)
            if pending is None:
                continue
            pending[2] = True
            dwell_times.append(max(0, event.timestamp - pending[1]))

        if first_ts is None:
            first_ts = event.timestamp
        last_ts = event.timestamp
        retained += 1

    duration = (last_ts - first_ts) if retained >= 2 else 0
    average = (sum(intervals) / len(intervals)) if intervals else 0.0

    return RhythmPattern(
        sequence=sequence,
        intervals=intervals,
        dwell_times=dwell_times,
        duration_millis=max(0, duration),
        average_interval_millis=average,
        captured_at=captured_at,
    )


class KeystrokeCapture:
    """Capture session for a single field, owned by whoever handles the input."""

    def __init__(self):
        self._events: List[KeystrokeEvent] = []
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    @property
    def events(self) -> List[KeystrokeEvent]:
        return list(self._events)

    def start(self) -> None:
        self._events = []
        self._active = True
        logger.debug("Keystroke capture started")

    def stop(self) -> List[KeystrokeEvent]:
        self._active = False
        logger.debug("Keystroke capture stopped, captured %d events", len(self._events))
        return self.events

    def record(self, event: KeystrokeEvent) -> bool:
        """Append an event; returns False when it was ignored."""
        if not self._active or not is_captured_key(event.key):
            return False
        self._events.append(event)
        return True

    def key_down(self, key: str, timestamp: int) -> bool:
        return self.record(KeystrokeEvent(key=key, timestamp=timestamp, phase="down"))

    def key_up(self, key: str, timestamp: int) -> bool:
        return self.record(KeystrokeEvent(key=key, timestamp=timestamp, phase="up"))

    def pattern(self) -> RhythmPattern:
        return extract_pattern(self._events, captured_at=datetime.now(timezone.utc))
