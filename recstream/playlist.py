# recstream/playlist.py
# Authoritative per-session HLS manifest.
#
# The manifest is the only shared-mutable resource of the pipeline. Every
# read-modify-write happens under a per-session lock (thread lock + flock on
# a lock file inside the session directory) and lands via os.replace, so a
# reader sees either the previous or the new manifest, never a partial one.

import os
import math
import fcntl
import logging
import threading
import weakref
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import List, Optional

from .common import (
    PlaylistWriteError, SegmentStatus, SessionClosedError, time_now,
)
from .layout import SessionLayout, segment_index, segment_name
from .transcoder import SEGMENT_SECONDS

logger = logging.getLogger(__name__)

HEADER = "#EXTM3U"
END_MARKER = "#EXT-X-ENDLIST"


@dataclass
class SegmentRecord:
    index: int
    path: str
    duration: float = float(SEGMENT_SECONDS)
    status: SegmentStatus = SegmentStatus.PENDING
    error: Optional[str] = None
    updated_at: float = field(default_factory=time_now)

    def mark(self, status: SegmentStatus, error: Optional[str] = None):
        self.status = status
        self.error = error
        self.updated_at = time_now()

    @property
    def uri(self) -> str:
        return os.path.basename(self.path)


@dataclass
class PlaylistEntry:
    index: int
    uri: str
    duration: float = float(SEGMENT_SECONDS)


def _fmt_duration(d: float) -> str:
    return f"{d:.1f}" if round(d, 1) == d else f"{d:.3f}"


@dataclass
class Playlist:
    entries: List[PlaylistEntry] = field(default_factory=list)
    ended: bool = False
    version: int = 3
    media_sequence: int = 0
    segment_duration: float = float(SEGMENT_SECONDS)

    @property
    def target_duration(self) -> int:
        # one second of headroom over the nominal length: 6 for 5s segments
        return int(math.ceil(self.segment_duration)) + 1

    @property
    def indices(self) -> List[int]:
        return [e.index for e in self.entries]

    def add(self, entry: PlaylistEntry) -> None:
        """Insert or replace by index, then restore ascending index order."""
        by_index = {e.index: e for e in self.entries}
        by_index[entry.index] = entry
        self.entries = [by_index[i] for i in sorted(by_index)]

    @classmethod
    def parse(cls, text: str, segment_duration: float = float(SEGMENT_SECONDS)) -> "Playlist":
        """
        Recover the structured manifest from its text.

        Only `segment-{i}.ts` URI lines are taken as entries and the order
        is rebuilt from their numeric index, not from line order.
        """
        pl = cls(segment_duration=segment_duration)
        pending_duration = None
        for raw in (text or '').splitlines():
            line = raw.strip()
            if not line:
                continue
            if line == END_MARKER:
                pl.ended = True
            elif line.startswith("#EXTINF:"):
                value = line[len("#EXTINF:"):].split(',', 1)[0]
                try:
                    pending_duration = float(value)
                except ValueError:
                    pending_duration = None
            elif line.startswith("#EXT-X-VERSION:"):
                try: pl.version = int(line.split(':', 1)[1])
                except ValueError: pass
            elif line.startswith("#"):
                continue
            else:
                idx = segment_index(line)
                if idx is None:
                    logger.warning(f"Ignoring unrecognised playlist entry {line!r}")
                else:
                    pl.add(PlaylistEntry(idx, line, pending_duration or segment_duration))
                pending_duration = None
        return pl

    def serialize(self) -> str:
        lines = [
            HEADER,
            f"#EXT-X-VERSION:{self.version}",
            f"#EXT-X-TARGETDURATION:{self.target_duration}",
            f"#EXT-X-MEDIA-SEQUENCE:{self.media_sequence}",
        ]
        for e in self.entries:
            lines.append(f"#EXTINF:{_fmt_duration(e.duration)},")
            lines.append(e.uri)
        if self.ended:
            lines.append(END_MARKER)
        return "\n".join(lines) + "\n"


class PlaylistManager:
    def __init__(self, layout: SessionLayout, segment_duration: float = float(SEGMENT_SECONDS)):
        self.layout = layout
        self.segment_duration = segment_duration
        # entries drop once no thread holds or waits on the lock
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    # ---- locking ----

    def _thread_lock(self, session_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = self._locks[session_id] = threading.Lock()
            return lock

    @contextmanager
    def session_lock(self, session_id: str):
        """
        Serialize manifest mutation for one session across threads and
        processes. Never creates the session directory.
        """
        with self._thread_lock(session_id):
            try:
                fd = os.open(self.layout.lock_path(session_id), os.O_RDWR | os.O_CREAT, 0o644)
            except FileNotFoundError:
                raise SessionClosedError(session_id, "session directory is gone")
            try:
                fcntl.flock(fd, fcntl.LOCK_EX)
                yield
            finally:
                try:
                    fcntl.flock(fd, fcntl.LOCK_UN)
                finally:
                    os.close(fd)

    def forget(self, session_id: str) -> None:
        with self._locks_guard:
            self._locks.pop(session_id, None)

    # ---- read / write ----

    def read(self, session_id: str) -> Optional[Playlist]:
        try:
            with open(self.layout.playlist_path(session_id), 'r', encoding='utf-8') as f:
                return Playlist.parse(f.read(), self.segment_duration)
        except FileNotFoundError:
            return None

    def _write(self, session_id: str, playlist: Playlist) -> str:
        path = self.layout.playlist_path(session_id)
        tmp_path = path + ".tmp"
        try:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                f.write(playlist.serialize())
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            try: os.remove(tmp_path)
            except OSError: pass
            if not self.layout.session_exists(session_id):
                raise SessionClosedError(session_id, "session directory is gone") from e
            raise PlaylistWriteError(f"[{session_id}] playlist write failed: {e}") from e
        return path

    # ---- operations ----

    def append_segment(self, session_id: str, record: SegmentRecord) -> str:
        """
        Add `record` to the session manifest and rewrite it in index order.
        Returns the manifest path.
        """
        with self.session_lock(session_id):
            playlist = self.read(session_id) or Playlist(segment_duration=self.segment_duration)
            if playlist.ended:
                raise SessionClosedError(session_id, "playlist already finalized")
            playlist.add(PlaylistEntry(record.index, segment_name(record.index), record.duration))
            path = self._write(session_id, playlist)
        record.mark(SegmentStatus.APPENDED)
        logger.info(f"[{session_id}] Updated playlist with {len(playlist.entries)} segments")
        return path

    def finalize(self, session_id: str) -> bool:
        """
        Append the end-of-stream marker once. Returns True when the manifest
        was written, False when it was already finalized.
        """
        with self.session_lock(session_id):
            playlist = self.read(session_id)
            if playlist is not None and playlist.ended:
                return False
            if playlist is None:
                logger.warning(f"[{session_id}] Finalizing a session with no segments")
                playlist = Playlist(segment_duration=self.segment_duration)
            playlist.ended = True
            self._write(session_id, playlist)
        logger.info(f"[{session_id}] Finalized playlist ({len(playlist.entries)} segments)")
        return True
