import logging
from typing import Callable, Dict, Optional, Union

from hivegate.schemas.keystroke import RhythmPattern, TimingPattern

logger = logging.getLogger(__name__)

DEFAULT_RHYTHM_TOLERANCE = 0.6
INTERVAL_TOLERANCE_FLOOR = 0.5
DURATION_TOLERANCE_FACTOR = 1.5
DURATION_TOLERANCE_FLOOR = 0.8

DEFAULT_TIMING_TOLERANCE = 0.3
TIMING_REQUIRED_RATIO = 0.7

Pattern = Union[RhythmPattern, TimingPattern]


def rhythm_matches(stored: Optional[RhythmPattern], current: Optional[RhythmPattern],
                   base_tolerance: float = DEFAULT_RHYTHM_TOLERANCE) -> bool:
    """Compare two rhythm fingerprints.

    Key count and key identity must match exactly. Average interval and total
    duration are compared against bands proportional to the stored values,
    with floors of 50% and 80% so that ordinary run-to-run variation passes.
    """
    if stored is None or current is None or stored.sequence is None or current.sequence is None:
        logger.debug("Missing pattern data")
        return False

    if len(stored.sequence) != len(current.sequence):
        logger.debug("Different key counts: %d vs %d", len(stored.sequence), len(current.sequence))
        return False

    for i, (expected, actual) in enumerate(zip(stored.sequence, current.sequence)):
        if expected.key != actual.key:
            logger.debug("Different keys at position %d", i)
            return False

    interval_tolerance = max(base_tolerance, INTERVAL_TOLERANCE_FLOOR)
    interval_diff = abs(stored.average_interval_millis - current.average_interval_millis)
    interval_threshold = stored.average_interval_millis * interval_tolerance
    if interval_diff > interval_threshold:
        logger.debug("Timing pattern too different: diff=%.1f threshold=%.1f", interval_diff, interval_threshold)
        return False

    duration_tolerance = max(base_tolerance * DURATION_TOLERANCE_FACTOR, DURATION_TOLERANCE_FLOOR)
    duration_diff = abs(stored.duration_millis - current.duration_millis)
    duration_threshold = stored.duration_millis * duration_tolerance
    if duration_diff > duration_threshold:
        logger.debug("Duration pattern too different: diff=%d threshold=%.1f", duration_diff, duration_threshold)
        return False

    return True


def timing_matches(stored: Optional[TimingPattern], current: Optional[TimingPattern],
                   tolerance: float = DEFAULT_TIMING_TOLERANCE,
                   required_ratio: float = TIMING_REQUIRED_RATIO) -> bool:
    """Per-element similarity over two timing arrays of the same declared length."""
    if stored is None or current is None:
        return False
    if stored.length != current.length or len(stored.timings) != len(current.timings):
        return False
    if not stored.timings:
        return False

    matches = 0
    for stored_time, current_time in zip(stored.timings, current.timings):
        largest = max(stored_time, current_time)
        if largest <= 0:
            if stored_time == current_time:
                matches += 1
            continue
        similarity = 1 - abs(stored_time - current_time) / largest
        if similarity >= 1 - tolerance:
            matches += 1

    ratio = matches / len(stored.timings)
    logger.debug("Timing similarity: %d/%d elements matched", matches, len(stored.timings))
    return ratio >= required_ratio


MATCHERS: Dict[str, Callable[..., bool]] = {
    "rhythm": rhythm_matches,
    "timings": timing_matches,
}


def patterns_match(stored: Optional[Pattern], current: Optional[Pattern], tolerance: Optional[float] = None) -> bool:
    """Dispatch on the stored pattern's kind; patterns of different kinds never match."""
    if stored is None or current is None:
        return False
    if stored.kind != current.kind:
        logger.info("Pattern kind mismatch: stored=%s current=%s", stored.kind, current.kind)
        return False
    matcher = MATCHERS[stored.kind]
    if tolerance is None:
        return matcher(stored, current)
    return matcher(stored, current, tolerance)
