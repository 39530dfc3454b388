"""Audio transcription from inline data URLs or remote references."""

from __future__ import annotations

import base64
import binascii
import mimetypes
import re
from typing import Any

from study_pipeline.jobs.models import JobInputError, UsageReport
from study_pipeline.provider.base import AudioPayload
from study_pipeline.provider.pricing import calculate_transcription_cost
from study_pipeline.tasks.context import TaskContext, TaskOutcome, payload_mapping

FEATURE = "transcribe_audio"
DEFAULT_AUDIO_TYPE = "audio/m4a"
# Rough compressed-speech bitrate used when nobody reports a duration.
ESTIMATED_BYTES_PER_SECOND = 16_000

_DATA_URL = re.compile(r"^data:(?P<mime>[^;,]*)(?:;[^,]*)?;base64,(?P<data>.*)$", re.DOTALL)


def handle_transcribe(payload: Any, context: TaskContext) -> TaskOutcome:
    data = payload_mapping(payload)
    audio_url = str(data.get("audioUrl") or "").strip()
    if not audio_url:
        raise JobInputError("audioUrl is required")
    language = str(data.get("language") or "").strip() or None

    if audio_url.startswith("data:"):
        audio = decode_data_url(audio_url)
    elif audio_url.startswith(("http://", "https://")):
        audio = context.provider.fetch_audio(audio_url)
    else:
        raise JobInputError("audioUrl must be a base64 data URL or an http(s) URL")

    transcription = context.provider.transcribe(audio, language=language)
    duration, duration_source = resolve_duration(
        reported=transcription.duration_seconds,
        declared=data.get("durationSeconds"),
        audio_bytes=len(audio.content),
    )
    cost = calculate_transcription_cost(
        duration,
        price_per_minute=context.transcription_price_per_minute,
    )
    return TaskOutcome(
        result={"text": transcription.text, "durationSeconds": duration},
        usage=UsageReport(
            feature=FEATURE,
            model=transcription.model,
            input_cost_usd=cost,
            output_cost_usd=0.0,
            cost_usd=cost,
            audio_duration_seconds=duration,
            metadata={"durationSource": duration_source, "bytes": len(audio.content)},
        ),
    )


def decode_data_url(data_url: str) -> AudioPayload:
    match = _DATA_URL.match(data_url)
    if match is None:
        raise JobInputError("Invalid data URL")
    try:
        content = base64.b64decode(match.group("data"), validate=False)
    except (binascii.Error, ValueError) as error:
        raise JobInputError("Invalid base64 audio payload") from error
    if not content:
        raise JobInputError("Audio payload is empty")
    content_type = match.group("mime").strip() or DEFAULT_AUDIO_TYPE
    extension = mimetypes.guess_extension(content_type) or ".m4a"
    return AudioPayload(content=content, content_type=content_type, filename=f"audio{extension}")


def resolve_duration(
    *,
    reported: float | None,
    declared: Any,
    audio_bytes: int,
) -> tuple[float, str]:
    """Pick the audio duration used for pricing: reported, declared, then estimated."""

    if reported is not None and reported > 0:
        return float(reported), "reported"
    if isinstance(declared, int | float) and not isinstance(declared, bool) and declared > 0:
        return float(declared), "payload"
    return round(audio_bytes / ESTIMATED_BYTES_PER_SECOND, 3), "estimated"
