"""
Pydantic schemas for render timelines.

A timeline is an ordered list of clips; each clip shows one still image with a
text overlay for a whole number of seconds. Limits are process-wide constants.
"""

from typing import Any, Dict, List

from pydantic import BaseModel, Field, HttpUrl, ValidationError

from ..core.errors import InvalidClip, InvalidTimeline, TimelineTooLong, TooManyClips

# Timeline limits
MAX_CLIPS = 10
MAX_TOTAL_DURATION = 120  # seconds
MAX_TEXT_LENGTH = 200
MIN_CLIP_DURATION = 1
MAX_CLIP_DURATION = 30


class Clip(BaseModel):
    """A single still-image segment of the output video."""

    model_config = {"frozen": True}

    image: HttpUrl = Field(..., description="URL of the source image")
    text: str = Field(
        ...,
        max_length=MAX_TEXT_LENGTH,
        description="Text overlay drawn near the bottom of the frame",
    )
    duration: int = Field(
        ...,
        ge=MIN_CLIP_DURATION,
        le=MAX_CLIP_DURATION,
        description="Clip duration in whole seconds",
    )


class Timeline(BaseModel):
    """Ordered clips making up one render."""

    model_config = {"frozen": True}

    clips: List[Clip] = Field(..., min_length=1, description="Clips in playback order")

    @property
    def total_duration(self) -> int:
        return sum(clip.duration for clip in self.clips)

    def to_payload(self) -> Dict[str, Any]:
        """JSON-compatible form used for queue payloads and the jobs table."""
        return self.model_dump(mode="json")


def validate_timeline(data: Dict[str, Any]) -> Timeline:
    """
    Parse and validate a raw timeline dictionary.

    Checks, in order:
    - structure and per-clip constraints (pydantic)
    - clip count <= MAX_CLIPS
    - total duration <= MAX_TOTAL_DURATION

    Args:
        data: Raw timeline, e.g. {"clips": [{"image": ..., "text": ..., "duration": 3}]}

    Returns:
        Timeline: Validated, immutable timeline

    Raises:
        InvalidClip: If a clip fails validation
        InvalidTimeline: If the timeline shape is invalid
        TooManyClips: If there are more than MAX_CLIPS clips
        TimelineTooLong: If the total duration exceeds MAX_TOTAL_DURATION
    """
    try:
        timeline = Timeline.model_validate(data)
    except ValidationError as e:
        errors = e.errors()
        first = errors[0]
        loc = first.get("loc", ())
        details = {"errors": [{"loc": list(err["loc"]), "msg": err["msg"]} for err in errors]}
        # loc looks like ("clips", <index>, <field>) for per-clip problems
        if len(loc) >= 2 and loc[0] == "clips" and isinstance(loc[1], int):
            raise InvalidClip(f"Clip {loc[1]} is invalid: {first['msg']}", details) from e
        raise InvalidTimeline(f"Timeline is invalid: {first['msg']}", details) from e

    if len(timeline.clips) > MAX_CLIPS:
        raise TooManyClips(
            f"Too many clips. Maximum {MAX_CLIPS} allowed",
            {"clip_count": len(timeline.clips)},
        )

    if timeline.total_duration > MAX_TOTAL_DURATION:
        raise TimelineTooLong(
            f"Total duration exceeds {MAX_TOTAL_DURATION} seconds",
            {"total_duration": timeline.total_duration},
        )

    return timeline
