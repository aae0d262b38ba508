"""Lookup hash computation for idempotent submission.

The lookup hash is the business key of a job: the same clip request must
always map to the same hash so resubmissions find the existing record.
"""

import hashlib
import json
from typing import Any, Dict, Union

from .models import ClipPayload, JobPayload, parse_payload


def compute_lookup_hash(payload: Union[JobPayload, Dict[str, Any]]) -> str:
    """Compute deterministic lookup hash for a clip request.

    Args:
        payload: ClipPayload or raw dict

    Returns:
        SHA-256 hex digest of "{feed_id}-{guid}-{time}"

    Time component precedence:
        1. Explicit timestamps override ("start-end")
        2. Clip time context ("start-end"), only when both ends are set
        3. Share link

    Clips without feed or episode identity fall back to a fingerprint of the
    whole clip description.

    Raises:
        pydantic.ValidationError: If a raw dict is not a valid payload
    """
    payload = parse_payload(payload)
    clip = payload.clip

    if not clip.feed_id and not clip.guid:
        return compute_payload_fingerprint(payload)

    context = clip.time_context
    if payload.timestamps:
        time_data = f"{payload.timestamps[0]}-{payload.timestamps[1]}"
    elif context.start_time is not None and context.end_time is not None:
        time_data = f"{context.start_time}-{context.end_time}"
    else:
        time_data = clip.share_link or ""

    key = f"{clip.feed_id}-{clip.guid}-{time_data}"
    return hashlib.sha256(key.encode()).hexdigest()


def compute_payload_fingerprint(payload: ClipPayload) -> str:
    """SHA-256 of the clip part of the payload serialized with sorted keys.

    Scheduling fields (not_before, subtitles) are excluded so they do not
    change the identity of the work.
    """
    clip_dict = payload.model_dump(mode="json", include={"clip", "timestamps"})
    clip_json = json.dumps(clip_dict, sort_keys=True, indent=None)
    return hashlib.sha256(clip_json.encode()).hexdigest()
