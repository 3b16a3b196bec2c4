# recstream/layout.py
# On-disk convention for a recording session:
#   {base_dir}/{session_id}/chunk-{index}.<raw-ext>   (transient)
#   {base_dir}/{session_id}/segment-{index}.ts
#   {base_dir}/{session_id}/playlist.m3u8

import os
import re
from typing import Optional

from .common import HLS_BASE_DIR, RAW_CHUNK_EXT, validate_session_id

PLAYLIST_NAME = "playlist.m3u8"
LOCK_NAME = ".playlist.lock"

_SEGMENT_RE = re.compile(r"^segment-(\d+)\.ts$")


def segment_name(index: int) -> str:
    return f"segment-{index}.ts"


def segment_index(name: str) -> Optional[int]:
    """Index embedded in a `segment-{i}.ts` name, or None for anything else."""
    m = _SEGMENT_RE.match(os.path.basename(name or ''))
    return int(m.group(1)) if m else None


class SessionLayout:
    def __init__(self, base_dir: str = HLS_BASE_DIR, raw_ext: str = RAW_CHUNK_EXT):
        self.base_dir = base_dir
        self.raw_ext = raw_ext.lstrip('.')

    def session_dir(self, session_id: str) -> str:
        return os.path.join(self.base_dir, validate_session_id(session_id))

    def chunk_path(self, session_id: str, index: int) -> str:
        return os.path.join(self.session_dir(session_id), f"chunk-{index}.{self.raw_ext}")

    def segment_path(self, session_id: str, index: int) -> str:
        return os.path.join(self.session_dir(session_id), segment_name(index))

    def playlist_path(self, session_id: str) -> str:
        return os.path.join(self.session_dir(session_id), PLAYLIST_NAME)

    def lock_path(self, session_id: str) -> str:
        return os.path.join(self.session_dir(session_id), LOCK_NAME)

    def relative_playlist_path(self, session_id: str) -> str:
        # what the application stores on the interview record
        return "/".join(("hls", validate_session_id(session_id), PLAYLIST_NAME))

    def ensure_session_dir(self, session_id: str) -> str:
        d = self.session_dir(session_id)
        os.makedirs(d, exist_ok=True)
        return d

    def session_exists(self, session_id: str) -> bool:
        return os.path.isdir(self.session_dir(session_id))

    def segment_indices(self, session_id: str):
        """Sorted indices of segment files currently on disk."""
        try:
            names = os.listdir(self.session_dir(session_id))
        except FileNotFoundError:
            return []
        found = (segment_index(n) for n in names)
        return sorted(i for i in found if i is not None)
