"""
Remote Media Locations
Well-known PBX folders per media category, tried after the tenant's custom path.
"""
from typing import Dict, List, Optional

DEFAULT_PATHS: Dict[str, List[str]] = {
    "chat_media": [
        "/var/lib/3cxpbx/Instance1/Data/Chat",
        "/var/lib/3cxpbx/Instance1/Data/Http/Files/Chat Files",
        "/var/lib/3cxpbx/Data/Http/Files/Chat Files",
        "/var/lib/3cxpbx/Data/Chat",
        "/home/phonesystem/.3CXPhone System/Data/Http/Files/Chat Files",
        "/var/lib/3cxpbx/Instance1/Data/Http/Files",
    ],
    "recordings": [
        "/var/lib/3cxpbx/Instance1/Data/Recordings",
        "/var/lib/3cxpbx/Data/Recordings",
    ],
    "voicemails": [
        "/var/lib/3cxpbx/Instance1/Data/Voicemail",
        "/var/lib/3cxpbx/Data/Voicemail",
    ],
    "faxes": [
        "/var/lib/3cxpbx/Instance1/Data/Fax",
        "/var/lib/3cxpbx/Data/Fax",
    ],
    "meetings": [
        "/var/lib/3cxpbx/Instance1/Data/Recordings/Meetings",
        "/var/lib/3cxpbx/Instance1/Data/WebMeetings",
        "/var/lib/3cxpbx/Data/Recordings/Meetings",
        "/var/lib/3cxpbx/Data/WebMeetings",
        "/home/phonesystem/.3CXPhone System/Data/Recordings/Meetings",
    ],
}

FILE_EXTENSIONS: Dict[str, Optional[List[str]]] = {
    "chat_media": None,
    "voicemails": [".wav", ".mp3"],
    "faxes": [".pdf", ".tif", ".tiff"],
    "meetings": [".mp4", ".webm", ".mkv", ".wav", ".mp3"],
}


def candidate_paths(category: str, custom: Optional[str]) -> List[str]:
    """Custom path first, then the defaults, without repeats."""
    paths = [custom] if custom else []
    for path in DEFAULT_PATHS.get(category, []):
        if path not in paths:
            paths.append(path)
    return paths
