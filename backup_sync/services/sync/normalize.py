"""
Record Normalization
Pure functions turning PBX rows and filenames into backup records.
"""
import json
import logging
import posixpath
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from backup_sync.core.errors import TransformError

logger = logging.getLogger(__name__)


# ============================================================================
# CHAT
# ============================================================================

CHANNEL_RULES: List[Tuple[Tuple[str, ...], str]] = [
    (("sms",), "sms"),
    (("mms",), "mms"),
    (("facebook", "fb"), "facebook"),
    (("whatsapp", "wa"), "whatsapp"),
    (("livechat", "webchat"), "livechat"),
    (("telegram",), "telegram"),
    (("teams",), "teams"),
]

IMAGE_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (r"\[image\]", r"\.jpe?g$", r"\.png$", r"\.gif$", r"\.webp$")]
VIDEO_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (r"\[video\]", r"\.mp4$", r"\.mov$")]
FILE_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (r"\[file\]", r"\[document\]")]


def map_channel(provider_type: Optional[str]) -> str:
    """PBX provider type -> channel type."""
    if not provider_type:
        return "internal"
    lowered = provider_type.lower()
    for needles, channel in CHANNEL_RULES:
        if any(needle in lowered for needle in needles):
            return channel
    return "internal"


def detect_media(message: Optional[str]) -> Tuple[bool, str]:
    """(has_media, message_type) from the message text."""
    if not message:
        return False, "text"
    text = message.strip()
    for patterns, kind in ((IMAGE_PATTERNS, "image"), (VIDEO_PATTERNS, "video"), (FILE_PATTERNS, "file")):
        if any(p.search(text) for p in patterns):
            return True, kind
    return False, "text"


@dataclass
class Participant:
    extension: str
    name: str


def parse_participants(raw: Optional[str]) -> List[Participant]:
    """
    Participant list from the PBX conversation row.

    Accepts a JSON array of {extension, name} objects or "ext:name,ext:name".
    Unparseable input yields an empty list.
    """
    if not raw:
        return []
    raw = raw.strip()

    if raw.startswith("["):
        try:
            items = json.loads(raw)
        except ValueError:
            logger.warning(f"Failed to parse participants array: {raw[:100]}")
            return []
        participants = []
        for item in items:
            if isinstance(item, dict):
                ext = str(item.get("extension") or item.get("ext") or "")
                name = str(item.get("name") or ext)
            else:
                ext = name = str(item)
            if ext:
                participants.append(Participant(ext, name))
        return participants

    participants = []
    for chunk in raw.split(","):
        parts = chunk.strip().split(":")
        ext = parts[0].strip()
        if not ext:
            continue
        name = parts[1].strip() if len(parts) > 1 and parts[1].strip() else ext
        participants.append(Participant(ext, name))
    return participants


def normalize_message(row: Dict[str, Any], conversation_id: str) -> Dict[str, Any]:
    if row.get("message_id") is None or row.get("time_sent") is None:
        raise TransformError("Message row missing id or timestamp", {"row": str(row)[:200]})
    has_media, message_type = detect_media(row.get("message"))
    return {
        "conversation_id": conversation_id,
        "threecx_message_id": str(row["message_id"]),
        "sender_identifier": row.get("sender_participant_no"),
        "sender_name": row.get("sender_participant_name"),
        "content": row.get("message"),
        "message_type": message_type,
        "has_media": has_media,
        "sent_at": ensure_utc(row["time_sent"]).isoformat(),
    }


# ============================================================================
# CALL DETAIL RECORDS
# ============================================================================

INTERNAL_NUMBER = re.compile(r"^\d{2,5}$")


def is_internal_number(number: Optional[str]) -> bool:
    return bool(number) and bool(INTERNAL_NUMBER.match(number.strip()))


def derive_direction(caller: Optional[str], callee: Optional[str]) -> str:
    """inbound / outbound / internal from caller and callee numbers."""
    caller_internal = is_internal_number(caller)
    callee_internal = is_internal_number(callee)
    if caller_internal and callee_internal:
        return "internal"
    if caller_internal:
        return "outbound"
    if callee_internal:
        return "inbound"
    return "unknown"


def normalize_call_record(row: Dict[str, Any]) -> Dict[str, Any]:
    if row.get("call_id") is None or row.get("call_started_at") is None:
        raise TransformError("Call record missing id or start time", {"row": str(row)[:200]})
    direction = row.get("direction") or derive_direction(row.get("caller_number"), row.get("callee_number"))
    return {
        "threecx_call_id": str(row["call_id"]),
        "caller_number": row.get("caller_number"),
        "caller_name": row.get("caller_name"),
        "callee_number": row.get("callee_number"),
        "callee_name": row.get("callee_name"),
        "extension": row.get("extension_number"),
        "direction": direction,
        "call_type": row.get("call_type"),
        "status": row.get("status"),
        "ring_duration_seconds": row.get("ring_duration"),
        "talk_duration_seconds": row.get("talk_duration"),
        "total_duration_seconds": row.get("total_duration"),
        "call_started_at": ensure_utc(row["call_started_at"]).isoformat(),
        "call_answered_at": iso_or_none(row.get("call_answered_at")),
        "call_ended_at": iso_or_none(row.get("call_ended_at")),
        "has_recording": bool(row.get("has_recording")),
    }


# ============================================================================
# FILE METADATA
# ============================================================================

STAMP = re.compile(r"(?<!\d)(\d{8})_(\d{6})(?!\d)")
EXTENSION_FOLDER = re.compile(r"^\d{2,4}$")
PHONE = re.compile(r"(\+?\d{10,15})")

INBOUND_TOKENS = {"in", "inbound", "incoming", "recv", "received"}
OUTBOUND_TOKENS = {"out", "outbound", "outgoing", "sent"}

MEETING_PATTERNS = [
    ("conference", re.compile(r"^Conference_ext(\d+)_(\d{8})_(\d{6})$", re.IGNORECASE)),
    ("webmeeting", re.compile(r"^Webmeeting_(\w+?)_(\d{8})$", re.IGNORECASE)),
    ("named", re.compile(r"^(.+?)_(\d{8})_(\d{6})$")),
]


def parse_stamp(date_part: str, time_part: str = "000000") -> Optional[datetime]:
    try:
        return datetime.strptime(date_part + time_part, "%Y%m%d%H%M%S").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def find_stamp(name: str) -> Optional[datetime]:
    match = STAMP.search(name)
    return parse_stamp(match.group(1), match.group(2)) if match else None


def parse_voicemail_path(relative_path: str) -> Dict[str, Any]:
    """Extension from the nearest numeric parent folder, urgency and timestamp from the name."""
    parts = relative_path.split("/")
    extension = None
    for folder in reversed(parts[:-1]):
        if EXTENSION_FOLDER.match(folder):
            extension = folder
            break
    filename = parts[-1]
    return {
        "extension": extension,
        "is_urgent": "urgent" in filename.lower(),
        "recorded_at": find_stamp(filename),
    }


def parse_fax_path(relative_path: str) -> Dict[str, Any]:
    tokens = set(re.split(r"[/_\-.\s]+", relative_path.lower()))
    if tokens & INBOUND_TOKENS:
        direction = "inbound"
    elif tokens & OUTBOUND_TOKENS:
        direction = "outbound"
    else:
        direction = None
    filename = posixpath.basename(relative_path)
    phone = PHONE.search(STAMP.sub("", filename))
    return {
        "direction": direction,
        "remote_number": phone.group(1) if phone else None,
        "received_at": find_stamp(filename),
    }


def parse_meeting_filename(filename: str) -> Dict[str, Any]:
    stem = posixpath.splitext(filename)[0]
    for kind, pattern in MEETING_PATTERNS:
        match = pattern.match(stem)
        if not match:
            continue
        if kind == "conference":
            return {
                "meeting_name": f"Conference (ext {match.group(1)})",
                "host_extension": match.group(1),
                "recorded_at": parse_stamp(match.group(2), match.group(3)),
            }
        if kind == "webmeeting":
            return {
                "meeting_name": f"Web Meeting {match.group(1)}",
                "host_extension": None,
                "recorded_at": parse_stamp(match.group(2)),
            }
        return {
            "meeting_name": match.group(1).replace("_", " "),
            "host_extension": None,
            "recorded_at": parse_stamp(match.group(2), match.group(3)),
        }
    return {"meeting_name": stem.replace("_", " "), "host_extension": None, "recorded_at": find_stamp(stem)}


# ============================================================================
# TIME
# ============================================================================

def ensure_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def iso_or_none(value: Optional[datetime]) -> Optional[str]:
    return ensure_utc(value).isoformat() if value else None
