# recstream/processor.py
# Public operations of the recording pipeline:
#   process_chunk / finalize_playlist / cleanup / get_playlist_path
# plus the idempotent worker step used by the queue.

import os
import errno
import shutil
import logging
from dataclasses import dataclass
from typing import Optional

from .common import (
    HLS_BASE_DIR, ChunkNotFoundError, SegmentStatus, SessionClosedError,
    SessionState, TranscodeError, get_redis,
)
from .layout import SessionLayout
from .playlist import PlaylistManager, SegmentRecord
from .sessions import SessionRegistry
from .transcoder import Transcoder

logger = logging.getLogger(__name__)

# directory sweeps before giving up on a session that keeps gaining files
CLEANUP_SWEEPS = 5


@dataclass
class ChunkResult:
    session_id: str
    chunk_index: int
    segment_path: str
    playlist_path: str


def _check_index(chunk_index) -> int:
    if isinstance(chunk_index, bool) or not isinstance(chunk_index, int) or chunk_index < 0:
        raise ValueError(f"chunk index must be a non-negative integer, got {chunk_index!r}")
    return chunk_index


class HLSProcessor:
    def __init__(
        self,
        base_dir: str = HLS_BASE_DIR,
        registry: Optional[SessionRegistry] = None,
        transcoder: Optional[Transcoder] = None,
        layout: Optional[SessionLayout] = None,
    ):
        self.layout = layout or SessionLayout(base_dir)
        self.registry = registry or SessionRegistry(get_redis())
        self.transcoder = transcoder or Transcoder()
        self.playlists = PlaylistManager(self.layout)

    # ---- chunk intake ----

    def store_chunk(self, session_id: str, chunk_index: int, payload: bytes) -> str:
        """
        Persist a raw chunk at its conventional path. Opens the session on
        its first chunk. A redelivered index simply overwrites the file.
        """
        _check_index(chunk_index)
        if not payload:
            raise ValueError(f"[{session_id}] chunk {chunk_index} is empty")
        self.registry.open(session_id)
        self.layout.ensure_session_dir(session_id)

        chunk_path = self.layout.chunk_path(session_id, chunk_index)
        tmp_path = chunk_path + ".uploading"
        with open(tmp_path, 'wb') as f:
            f.write(payload)
        os.replace(tmp_path, chunk_path)
        logger.info(f"[{session_id}] Stored chunk {chunk_index} ({len(payload)} bytes)")
        return chunk_path

    def transcode_stored_chunk(self, session_id: str, chunk_index: int) -> SegmentRecord:
        """
        Worker step: chunk on disk -> segment -> manifest.

        Safe to repeat. When an earlier attempt already produced the
        segment (and removed the chunk) only the manifest append is redone.
        """
        _check_index(chunk_index)
        self.registry.ensure_recording(session_id)
        if not self.layout.session_exists(session_id):
            raise SessionClosedError(session_id, "session directory is gone")

        chunk_path = self.layout.chunk_path(session_id, chunk_index)
        segment_path = self.layout.segment_path(session_id, chunk_index)
        record = SegmentRecord(chunk_index, segment_path)

        if os.path.isfile(chunk_path):
            try:
                self.transcoder.convert(chunk_path, segment_path, chunk_index)
            except TranscodeError as e:
                record.mark(SegmentStatus.FAILED, str(e))
                if not self.layout.session_exists(session_id):
                    raise SessionClosedError(session_id, "session directory removed during transcode") from e
                raise
        elif os.path.isfile(segment_path):
            logger.info(f"[{session_id}] Chunk {chunk_index} already transcoded; re-appending")
        elif not self.layout.session_exists(session_id):
            raise SessionClosedError(session_id, "session directory is gone")
        else:
            raise ChunkNotFoundError(f"[{session_id}] chunk {chunk_index} not found at {chunk_path}")

        record.mark(SegmentStatus.TRANSCODED)
        self.playlists.append_segment(session_id, record)
        return record

    def process_chunk(self, session_id: str, chunk_index: int, payload: bytes) -> ChunkResult:
        """Synchronous path: store, transcode and append one chunk."""
        self.store_chunk(session_id, chunk_index, payload)
        try:
            record = self.transcode_stored_chunk(session_id, chunk_index)
        except Exception:
            logger.exception(f"[{session_id}] HLS processing error for chunk {chunk_index}")
            raise
        return ChunkResult(
            session_id=session_id,
            chunk_index=chunk_index,
            segment_path=record.path,
            playlist_path=self.layout.playlist_path(session_id),
        )

    # ---- lifecycle ----

    def finalize_playlist(self, session_id: str) -> None:
        """Close the manifest with the end-of-stream marker. Idempotent."""
        if not self.layout.session_exists(session_id):
            raise SessionClosedError(session_id, "no session directory to finalize")
        self.registry.mark_finalized(session_id)
        self.playlists.finalize(session_id)

    def cleanup(self, session_id: str) -> None:
        """
        Reclaim the session. It is marked RECLAIMED first so workers stop
        landing new files, then every file and the directory are removed.
        Files that in-flight work lands meanwhile are swept by another pass.
        Missing files are logged and skipped; calling it twice is a no-op.
        """
        self.registry.mark_reclaimed(session_id)
        session_dir = self.layout.session_dir(session_id)
        try:
            for sweep in range(1, CLEANUP_SWEEPS + 1):
                try:
                    names = os.listdir(session_dir)
                except FileNotFoundError:
                    logger.info(f"[{session_id}] Nothing to clean up; {session_dir} is already gone")
                    return

                for name in names:
                    path = os.path.join(session_dir, name)
                    try:
                        if os.path.isdir(path) and not os.path.islink(path):
                            shutil.rmtree(path)
                        else:
                            os.remove(path)
                    except FileNotFoundError:
                        logger.debug(f"[{session_id}] {name} vanished during cleanup")

                try:
                    os.rmdir(session_dir)
                except FileNotFoundError:
                    logger.debug(f"[{session_id}] Session directory vanished during cleanup")
                    return
                except OSError as e:
                    if e.errno not in (errno.ENOTEMPTY, errno.EEXIST) or sweep == CLEANUP_SWEEPS:
                        raise
                    logger.info(f"[{session_id}] Files landed during cleanup; sweeping again")
                    continue
                logger.info(f"[{session_id}] Cleaned up session directory")
                return
        finally:
            self.playlists.forget(session_id)

    # ---- lookups ----

    def get_playlist_path(self, session_id: str) -> str:
        return self.layout.playlist_path(session_id)

    def get_relative_playlist_path(self, session_id: str) -> str:
        return self.layout.relative_playlist_path(session_id)

    def session_info(self, session_id: str) -> dict:
        row = self.registry.get(session_id)
        state = row.get("state")
        playlist = self.playlists.read(session_id)
        try:
            playlist_size = os.path.getsize(self.get_playlist_path(session_id))
        except OSError:
            playlist_size = 0
        return {
            "session_id": session_id,
            "state": SessionState.parse(state).value if state else None,
            "created_at": float(row.get("created_at") or 0),
            "finalized_at": float(row.get("finalized_at") or 0),
            "directory_exists": self.layout.session_exists(session_id),
            "segments_on_disk": self.layout.segment_indices(session_id),
            "playlist_segments": playlist.indices if playlist else [],
            "playlist_ended": bool(playlist and playlist.ended),
            "playlist_size": playlist_size,
        }
