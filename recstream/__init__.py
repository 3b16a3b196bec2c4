"""
Live interview recording -> HLS pipeline.

Raw chunks are transcoded into MPEG-TS segments by a huey worker and kept
in an index-ordered, continuously extendable playlist per session.
"""

from .common import (
    QueuePolicy, DEFAULT_POLICY, Status, SessionState, SegmentStatus,
    RecstreamError, InvalidSessionId, SessionClosedError, ChunkNotFoundError,
    TranscodeError, PlaylistWriteError,
)
from .layout import SessionLayout
from .playlist import Playlist, PlaylistEntry, PlaylistManager, SegmentRecord
from .processor import ChunkResult, HLSProcessor
from .sessions import SessionRegistry
from .transcoder import Transcoder

__version__ = "0.1.0"
