from pydantic import BaseModel, Field, TypeAdapter
from typing import Annotated, List, Literal, Optional, Union
from datetime import datetime


class KeystrokeEvent(BaseModel):
    """A single key transition reported by the input-capture client."""
    key: str
    timestamp: int = Field(alias="timestampMillis", ge=0)
    phase: Literal["down", "up"] = Field(alias="type")

    class Config:
        populate_by_name = True


class KeyPress(BaseModel):
    key: str


class RhythmPattern(BaseModel):
    """Fingerprint reduced from real key-down/key-up events."""
    kind: Literal["rhythm"] = "rhythm"
    sequence: List[KeyPress] = []
    intervals: List[int] = []
    dwell_times: List[int] = Field(default_factory=list, alias="dwellTimes")
    duration_millis: int = Field(0, alias="durationMillis")
    average_interval_millis: float = Field(0.0, alias="averageIntervalMillis")
    captured_at: Optional[datetime] = Field(None, alias="capturedAt")

    class Config:
        populate_by_name = True

    @property
    def keys(self) -> List[str]:
        return [press.key for press in self.sequence]


class TimingPattern(BaseModel):
    """Per-character timing array captured on password re-entry."""
    kind: Literal["timings"] = "timings"
    length: int = Field(ge=0)
    timings: List[float] = []
    captured_at: Optional[datetime] = Field(None, alias="capturedAt")

    class Config:
        populate_by_name = True


KeystrokePattern = Annotated[Union[RhythmPattern, TimingPattern], Field(discriminator="kind")]

pattern_adapter = TypeAdapter(KeystrokePattern)


def load_pattern(raw: Optional[dict]) -> Optional[Union[RhythmPattern, TimingPattern]]:
    """Rebuild a stored pattern from its JSON column; None stays None."""
    if raw is None:
        return None
    return pattern_adapter.validate_python(raw)


def dump_pattern(pattern: Optional[Union[RhythmPattern, TimingPattern]]) -> Optional[dict]:
    if pattern is None:
        return None
    return pattern.model_dump(mode="json")
