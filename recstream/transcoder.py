# recstream/transcoder.py
# One raw chunk -> one MPEG-TS segment, fixed output profile.

import os
import logging
import subprocess
from typing import List

from .common import FFMPEG_BIN, TRANSCODE_TIMEOUT_SEC, TranscodeError

logger = logging.getLogger(__name__)

SEGMENT_SECONDS = 5

# Baseline H.264 + AAC, capped for interview-quality video.
VIDEO_ARGS = [
    '-c:v', 'libx264',
    '-profile:v', 'baseline',
    '-level', '3.0',
    '-preset', 'veryfast',
    '-crf', '23',
    '-maxrate', '1500k',
    '-bufsize', '3000k',
]
AUDIO_ARGS = ['-c:a', 'aac']

STDERR_TAIL = 1000
PART_SUFFIX = ".part"


def _safe_remove(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not delete {path}: {e}")


class Transcoder:
    """
    Stateless ffmpeg wrapper. Safe to call concurrently, including for
    two chunks of the same session.
    """

    def __init__(self, ffmpeg_bin: str = FFMPEG_BIN, timeout: float = TRANSCODE_TIMEOUT_SEC):
        self.ffmpeg_bin = ffmpeg_bin
        self.timeout = timeout

    def build_command(self, chunk_path: str, segment_path: str, chunk_index: int) -> List[str]:
        return [
            self.ffmpeg_bin, '-hide_banner', '-y',
            '-nostats', '-loglevel', 'error',
            '-i', chunk_path,
            *VIDEO_ARGS,
            *AUDIO_ARGS,
            '-start_number', str(chunk_index),
            '-hls_time', str(SEGMENT_SECONDS),
            '-hls_list_size', '0',
            '-f', 'mpegts',
            segment_path,
        ]

    def convert(self, chunk_path: str, segment_path: str, chunk_index: int) -> str:
        """
        Transcode `chunk_path` into `segment_path`.

        ffmpeg writes to `segment_path + '.part'`, which is moved onto the
        segment path only on success, so an existing segment is never
        truncated or deleted by a later attempt. On success the raw chunk is
        removed and the segment path returned. On any failure the raw chunk
        is kept for a retry and TranscodeError is raised with the tail of
        ffmpeg's stderr.
        """
        if not os.path.isfile(chunk_path):
            raise TranscodeError(f"chunk {chunk_index} not found at {chunk_path}")

        part_path = segment_path + PART_SUFFIX
        cmd = self.build_command(chunk_path, part_path, chunk_index)
        logger.info(f"Transcode chunk {chunk_index}: {' '.join(cmd)}")

        try:
            pr = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired as e:
            _safe_remove(part_path)
            stderr = e.stderr or ''
            if isinstance(stderr, bytes):
                stderr = stderr.decode('utf-8', 'replace')
            raise TranscodeError(
                f"ffmpeg timed out after {self.timeout}s on chunk {chunk_index}",
                stderr=stderr[-STDERR_TAIL:],
            ) from e
        except OSError as e:
            _safe_remove(part_path)
            raise TranscodeError(f"could not run {self.ffmpeg_bin}: {e}") from e

        if pr.returncode != 0 or not os.path.exists(part_path):
            _safe_remove(part_path)
            err_tail = (pr.stderr or '')[-STDERR_TAIL:]
            logger.error(f"Transcode chunk {chunk_index} failed (rc={pr.returncode}): {err_tail}")
            raise TranscodeError(
                f"ffmpeg failed on chunk {chunk_index}",
                returncode=pr.returncode,
                stderr=err_tail,
            )

        try:
            os.replace(part_path, segment_path)
        except OSError as e:
            _safe_remove(part_path)
            raise TranscodeError(f"could not move segment {chunk_index} into place: {e}") from e

        _safe_remove(chunk_path)
        return segment_path
