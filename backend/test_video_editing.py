"""Tests for edit validation, FFmpeg argument construction and the FFmpeg runner"""

import io
import json
import math
import subprocess
from types import SimpleNamespace

import pytest

from video_editing import (
    OUTPUT_FLAGS,
    EditValidationError,
    FFmpegProcessor,
    build_ffmpeg_args,
    estimate_processing_time,
    generate_edit_id,
    validate_operation,
    validate_operations,
)
from video_errors import VideoError, VideoErrorType


def op(op_type, **params):
    return {'type': op_type, 'parameters': params}


# ============================================================
# VALIDATION
# ============================================================

@pytest.mark.parametrize('operation', [
    op('trim', start_time=0, end_time=5),
    op('crop', x=0, y=0, width=720, height=1280),
    op('rotate', degrees=90),
    op('filter', filter_type='blur'),
    op('filter', filter_type='contrast', intensity=100),
    op('speed', multiplier=1.5),
    op('volume', level=0),
])
def test_valid_operations_pass(operation):
    assert validate_operation(operation) is operation


@pytest.mark.parametrize('operation, message', [
    (op('trim', start_time=5, end_time=5), 'before end_time'),
    (op('trim', start_time=-1, end_time=5), 'start_time must be >= 0'),
    (op('trim', start_time=0), 'requires end_time'),
    (op('crop', x=0, y=0, width=0, height=10), 'must be > 0'),
    (op('crop', x=-1, y=0, width=10, height=10), 'x and y'),
    (op('rotate', degrees='90'), 'must be a number'),
    (op('filter', filter_type='sepia'), 'filter_type must be one of'),
    (op('filter', filter_type='blur', intensity=101), 'between 0 and 100'),
    (op('speed', multiplier=0), 'multiplier must be > 0'),
    (op('volume', level=150), 'between 0 and 100'),
    (op('fade'), 'Unknown operation type'),
])
def test_invalid_operations_rejected(operation, message):
    with pytest.raises(EditValidationError) as exc:
        validate_operation(operation)
    assert message in exc.value.message


def test_boolean_is_not_a_number():
    with pytest.raises(EditValidationError):
        validate_operation(op('rotate', degrees=True))


def test_validate_operations_reports_index():
    operations = [op('trim', start_time=0, end_time=5), op('volume', level=500)]
    with pytest.raises(EditValidationError) as exc:
        validate_operations(operations)
    assert exc.value.operation_index == 1
    assert exc.value.message.startswith('Operation 1:')


def test_validate_operations_requires_non_empty_list():
    with pytest.raises(EditValidationError):
        validate_operations([])
    with pytest.raises(EditValidationError):
        validate_operations({'type': 'trim'})


def test_validate_operations_enforces_maximum():
    operations = [op('rotate', degrees=90)] * 3
    with pytest.raises(EditValidationError) as exc:
        validate_operations(operations, max_operations=2)
    assert 'At most 2' in exc.value.message


# ============================================================
# FFMPEG ARGUMENTS
# ============================================================

def test_trim_adds_seek_flags():
    args = build_ffmpeg_args('in.mp4', 'out.mp4', [op('trim', start_time=1, end_time=5.5)])
    assert args[:6] == ['-i', 'in.mp4', '-ss', '1', '-to', '5.5']
    assert '-vf' not in args
    assert args[-1] == 'out.mp4'


def test_video_and_audio_filters_are_chained():
    args = build_ffmpeg_args('in.mp4', 'out.mp4', [
        op('crop', x=10, y=20, width=640, height=480),
        op('filter', filter_type='blur', intensity=50),
        op('speed', multiplier=2),
        op('volume', level=50),
    ])
    vf = args[args.index('-vf') + 1]
    af = args[args.index('-af') + 1]
    assert vf == 'crop=640:480:10:20,boxblur=5:5,setpts=PTS/2'
    assert af == 'atempo=2,volume=0.5'


def test_rotate_converts_degrees_to_radians():
    args = build_ffmpeg_args('in.mp4', 'out.mp4', [op('rotate', degrees=90)])
    assert args[args.index('-vf') + 1] == f"rotate={math.pi / 2!r}"


@pytest.mark.parametrize('filter_type, intensity, expected', [
    ('brightness', 50, 'eq=brightness=0'),
    ('brightness', 100, 'eq=brightness=1'),
    ('contrast', 75, 'eq=contrast=1.5'),
    ('saturation', 0, 'eq=saturation=0'),
    ('sharpen', 50, 'unsharp=5:5:1:5:5:0.0'),
])
def test_filter_intensity_mapping(filter_type, intensity, expected):
    args = build_ffmpeg_args('in.mp4', 'out.mp4', [op('filter', filter_type=filter_type, intensity=intensity)])
    assert args[args.index('-vf') + 1] == expected


def test_output_flags_precede_output_path():
    args = build_ffmpeg_args('in.mp4', 'out.mp4', [op('volume', level=100)])
    assert args[-len(OUTPUT_FLAGS) - 1:-1] == OUTPUT_FLAGS


def test_estimate_processing_time():
    assert estimate_processing_time([op('trim', start_time=0, end_time=1)]) == '1-2 minutes'
    heavy = [op('speed', multiplier=2)] * 3  # 10 + 75 seconds
    assert estimate_processing_time(heavy) == '2-3 minutes'


def test_generate_edit_id_format():
    edit_id = generate_edit_id('vid42')
    prefix, video_id, millis = edit_id.split('_')
    assert prefix == 'edit'
    assert video_id == 'vid42'
    assert millis.isdigit()


# ============================================================
# FFMPEG RUNNER
# ============================================================

class FakePopen:
    """Stands in for an FFmpeg process that prints progress to stderr"""

    def __init__(self, lines, returncode=0):
        self.stderr = io.StringIO(''.join(lines))
        self.returncode = returncode

    def wait(self, timeout=None):
        return self.returncode

    def poll(self):
        return self.returncode

    def kill(self):
        pass


@pytest.fixture
def fake_ffmpeg(monkeypatch):
    state = {'lines': ['Stream mapping:\n', 'frame=10 time=00:00:05.00 bitrate=1k\n'], 'returncode': 0, 'cmds': []}

    def fake_run(cmd, **kwargs):
        return SimpleNamespace(returncode=0, stdout=json.dumps({'format': {'duration': '10.0'}}), stderr='')

    def fake_popen(cmd, **kwargs):
        state['cmds'].append(cmd)
        return FakePopen(state['lines'], state['returncode'])

    monkeypatch.setattr(subprocess, 'run', fake_run)
    monkeypatch.setattr(subprocess, 'Popen', fake_popen)
    return state


@pytest.fixture
def processor(tmp_path):
    return FFmpegProcessor(ffmpeg_path='ffmpeg', temp_dir=tmp_path / 'tmp', output_dir=tmp_path / 'out')


def test_process_video_reports_progress(processor, fake_ffmpeg, tmp_path):
    progress = []
    result = processor.process_video(tmp_path / 'in.mp4', tmp_path / 'out.mp4',
                                     [op('rotate', degrees=90)], progress.append)

    assert progress == [50.0, 100.0]
    assert result['success']
    assert result['duration'] == 10.0
    assert fake_ffmpeg['cmds'][0][0] == 'ffmpeg'
    assert fake_ffmpeg['cmds'][0][-1] == str(tmp_path / 'out.mp4')


def test_process_video_failure_raises(processor, fake_ffmpeg, tmp_path):
    fake_ffmpeg['lines'] = ['Invalid data found when processing input\n']
    fake_ffmpeg['returncode'] = 1

    with pytest.raises(VideoError) as exc:
        processor.process_video(tmp_path / 'in.mp4', tmp_path / 'out.mp4', [op('rotate', degrees=90)])
    assert exc.value.error_type == VideoErrorType.PROCESSING_FAILED
    assert 'Invalid data' in exc.value.message


def test_duration_falls_back_to_banner(processor, monkeypatch):
    def fake_run(cmd, **kwargs):
        if cmd[0] == 'ffmpeg':
            return SimpleNamespace(returncode=1, stdout='', stderr='  Duration: 00:01:02.50, start: 0')
        raise FileNotFoundError('ffprobe')

    monkeypatch.setattr(subprocess, 'run', fake_run)
    assert processor.get_video_duration('clip.mp4') == 62.5


def test_download_rejects_plain_http(processor):
    with pytest.raises(VideoError) as exc:
        processor.download_video('http://cdn.example.com/a.mp4')
    assert exc.value.error_type == VideoErrorType.INSUFFICIENT_PERMISSIONS


def test_store_output_and_cleanup(processor, tmp_path):
    source = tmp_path / 'result.mp4'
    source.write_bytes(b'video')

    assert processor.store_output(source, 'user1', 'edit_1') == '/outputs/user1/edit_1.mp4'
    assert (tmp_path / 'out' / 'user1' / 'edit_1.mp4').read_bytes() == b'video'

    processor.cleanup([source, None, tmp_path / 'missing.mp4'])
    assert not source.exists()
