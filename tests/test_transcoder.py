"""Unit tests for the ffmpeg wrapper (subprocess is mocked)."""

import os
import subprocess

import pytest

from recstream import transcoder as transcoder_mod
from recstream.common import TranscodeError
from recstream.transcoder import Transcoder


@pytest.fixture
def chunk(tmp_path):
    path = tmp_path / "chunk-7.webm"
    path.write_bytes(b"\x1a\x45\xdf\xa3webm")
    return str(path)


@pytest.fixture
def segment(tmp_path):
    return str(tmp_path / "segment-7.ts")


def _fake_run(returncode=0, stderr='', write_output=True):
    calls = []

    def run(cmd, capture_output, text, timeout):
        calls.append({'cmd': cmd, 'timeout': timeout})
        if write_output:
            with open(cmd[-1], 'wb') as f:
                f.write(b'\x47' * 188)
        return subprocess.CompletedProcess(cmd, returncode, stdout='', stderr=stderr)

    run.calls = calls
    return run


@pytest.mark.unit
class TestTranscoder:

    def test_command_uses_fixed_profile(self, chunk, segment):
        cmd = Transcoder(ffmpeg_bin='ffmpeg').build_command(chunk, segment, 7)

        assert cmd[0] == 'ffmpeg'
        assert cmd[cmd.index('-i') + 1] == chunk
        assert cmd[-1] == segment
        pairs = dict(zip(cmd, cmd[1:]))
        assert pairs['-c:v'] == 'libx264'
        assert pairs['-profile:v'] == 'baseline'
        assert pairs['-c:a'] == 'aac'
        assert pairs['-maxrate'] == '1500k'
        assert pairs['-bufsize'] == '3000k'
        assert pairs['-hls_time'] == '5'
        assert pairs['-start_number'] == '7'
        assert pairs['-f'] == 'mpegts'

    def test_success_removes_chunk(self, chunk, segment, monkeypatch):
        run = _fake_run()
        monkeypatch.setattr(transcoder_mod.subprocess, 'run', run)

        out = Transcoder(timeout=30).convert(chunk, segment, 7)

        assert out == segment
        assert os.path.exists(segment)
        assert not os.path.exists(chunk)
        assert run.calls[0]['timeout'] == 30

    def test_failure_keeps_chunk_and_reports_stderr(self, chunk, segment, monkeypatch):
        monkeypatch.setattr(transcoder_mod.subprocess, 'run',
                            _fake_run(returncode=1, stderr='EBML header parsing failed'))

        with pytest.raises(TranscodeError) as exc:
            Transcoder().convert(chunk, segment, 7)

        assert exc.value.returncode == 1
        assert 'EBML header parsing failed' in str(exc.value)
        assert os.path.exists(chunk)
        assert not os.path.exists(segment)

    def test_zero_exit_without_output_is_a_failure(self, chunk, segment, monkeypatch):
        monkeypatch.setattr(transcoder_mod.subprocess, 'run', _fake_run(write_output=False))
        with pytest.raises(TranscodeError):
            Transcoder().convert(chunk, segment, 7)
        assert os.path.exists(chunk)

    def test_timeout_is_a_transcode_error(self, chunk, segment, monkeypatch):
        def run(cmd, capture_output, text, timeout):
            raise subprocess.TimeoutExpired(cmd, timeout, stderr=b'frame=  12')

        monkeypatch.setattr(transcoder_mod.subprocess, 'run', run)
        with pytest.raises(TranscodeError) as exc:
            Transcoder(timeout=1).convert(chunk, segment, 7)

        assert 'timed out' in str(exc.value)
        assert 'frame=  12' in exc.value.stderr
        assert os.path.exists(chunk)

    def test_missing_binary(self, chunk, segment):
        with pytest.raises(TranscodeError):
            Transcoder(ffmpeg_bin='/nonexistent/ffmpeg').convert(chunk, segment, 7)
        assert os.path.exists(chunk)

    def test_missing_chunk(self, tmp_path, segment):
        with pytest.raises(TranscodeError):
            Transcoder().convert(str(tmp_path / "chunk-9.webm"), segment, 9)

    def test_output_lands_via_part_file(self, chunk, segment, monkeypatch):
        run = _fake_run()
        monkeypatch.setattr(transcoder_mod.subprocess, 'run', run)

        Transcoder().convert(chunk, segment, 7)

        assert run.calls[0]['cmd'][-1] == segment + '.part'
        assert os.path.exists(segment)
        assert not os.path.exists(segment + '.part')

    def test_failure_leaves_existing_segment_alone(self, chunk, segment, monkeypatch):
        with open(segment, 'wb') as f:
            f.write(b'\x47' + b'\x01' * 187)
        monkeypatch.setattr(transcoder_mod.subprocess, 'run',
                            _fake_run(returncode=1, stderr='Invalid data found'))

        with pytest.raises(TranscodeError):
            Transcoder().convert(chunk, segment, 7)

        with open(segment, 'rb') as f:
            assert f.read() == b'\x47' + b'\x01' * 187
        assert not os.path.exists(segment + '.part')
        assert os.path.exists(chunk)
