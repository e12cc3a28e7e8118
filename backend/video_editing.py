"""
Video editing for ClipsCommerce
Operation validation, FFmpeg argument construction and the FFmpeg runner
"""

import os
import re
import json
import math
import time
import shutil
import logging
import subprocess
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import imageio_ffmpeg

from http_client import get_http_session, is_safe_url
from video_errors import VideoError, VideoErrorType

logger = logging.getLogger(__name__)

_BACKEND_DIR = Path(__file__).parent.resolve()
TEMP_DIR = Path(os.getenv('TEMP_DIR', '/tmp/clipscommerce-video'))
OUTPUT_DIR = Path(os.getenv('OUTPUT_DIR', str(_BACKEND_DIR / 'outputs')))
OUTPUT_URL_PREFIX = '/outputs'

MAX_DOWNLOAD_BYTES = 500 * 1024 * 1024  # 500MB
FFMPEG_TIMEOUT = int(os.getenv('FFMPEG_TIMEOUT', '1800'))

OPERATION_TYPES = ('trim', 'crop', 'rotate', 'filter', 'speed', 'volume')
FILTER_TYPES = ('blur', 'sharpen', 'brightness', 'contrast', 'saturation')
DEFAULT_INTENSITY = 50

# Seconds of work each operation adds on top of the base
BASE_PROCESSING_SECONDS = 10
OPERATION_SECONDS = {
    'trim': 5,
    'crop': 15,
    'rotate': 10,
    'filter': 20,
    'speed': 25,
    'volume': 5,
}

OUTPUT_FLAGS = [
    '-c:v', 'libx264',
    '-preset', 'medium',
    '-crf', '23',
    '-c:a', 'aac',
    '-b:a', '128k',
    '-movflags', '+faststart',
    '-y',
]

_TIME_RE = re.compile(r'time=(\d+):(\d+):(\d+(?:\.\d+)?)')
_DURATION_RE = re.compile(r'Duration: (\d+):(\d+):(\d+(?:\.\d+)?)')


def get_ffmpeg_path() -> str:
    """FFMPEG_PATH if set, otherwise the imageio_ffmpeg bundled binary"""
    return os.getenv('FFMPEG_PATH') or imageio_ffmpeg.get_ffmpeg_exe()


def get_ffprobe_path() -> str:
    return os.getenv('FFPROBE_PATH', 'ffprobe')

# ==============================================================================
# VALIDATION
# ==============================================================================

class EditValidationError(ValueError):
    """Raised when an edit operation is malformed"""

    def __init__(self, message: str, operation_index: int = None):
        super().__init__(message)
        self.message = message
        self.operation_index = operation_index


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _require_numbers(params: Dict, names, op_type: str):
    for name in names:
        if name not in params or params[name] is None:
            raise EditValidationError(f"{op_type} operation requires {name}")
        if not _is_number(params[name]):
            raise EditValidationError(f"{op_type} {name} must be a number")


def validate_operation(operation: Dict[str, Any]) -> Dict[str, Any]:
    """Validate one {type, parameters} operation, returns it unchanged"""
    if not isinstance(operation, dict):
        raise EditValidationError("Operation must be an object")

    op_type = operation.get('type')
    params = operation.get('parameters') or {}
    if not isinstance(params, dict):
        raise EditValidationError("Operation parameters must be an object")

    if op_type == 'trim':
        _require_numbers(params, ('start_time', 'end_time'), 'trim')
        if params['start_time'] < 0:
            raise EditValidationError("trim start_time must be >= 0")
        if params['start_time'] >= params['end_time']:
            raise EditValidationError("trim start_time must be before end_time")

    elif op_type == 'crop':
        _require_numbers(params, ('x', 'y', 'width', 'height'), 'crop')
        if params['x'] < 0 or params['y'] < 0:
            raise EditValidationError("crop x and y must be >= 0")
        if params['width'] <= 0 or params['height'] <= 0:
            raise EditValidationError("crop width and height must be > 0")

    elif op_type == 'rotate':
        _require_numbers(params, ('degrees',), 'rotate')

    elif op_type == 'filter':
        if params.get('filter_type') not in FILTER_TYPES:
            raise EditValidationError(
                f"filter_type must be one of: {', '.join(FILTER_TYPES)}")
        intensity = params.get('intensity')
        if intensity is not None and (not _is_number(intensity) or not 0 <= intensity <= 100):
            raise EditValidationError("filter intensity must be between 0 and 100")

    elif op_type == 'speed':
        _require_numbers(params, ('multiplier',), 'speed')
        if params['multiplier'] <= 0:
            raise EditValidationError("speed multiplier must be > 0")

    elif op_type == 'volume':
        _require_numbers(params, ('level',), 'volume')
        if not 0 <= params['level'] <= 100:
            raise EditValidationError("volume level must be between 0 and 100")

    else:
        raise EditValidationError(f"Unknown operation type: {op_type}")

    return operation


def validate_operations(operations, max_operations: int = 20) -> List[Dict[str, Any]]:
    if not isinstance(operations, list) or not operations:
        raise EditValidationError("operations must be a non-empty list")
    if len(operations) > max_operations:
        raise EditValidationError(f"At most {max_operations} operations are allowed")

    for index, operation in enumerate(operations):
        try:
            validate_operation(operation)
        except EditValidationError as e:
            raise EditValidationError(f"Operation {index}: {e.message}", operation_index=index)
    return operations

# ==============================================================================
# FFMPEG ARGUMENTS
# ==============================================================================

def _num(value) -> str:
    """Render 5.0 as '5' and keep real fractions"""
    value = float(value)
    return str(int(value)) if value.is_integer() else repr(value)


def _video_filter(params: Dict) -> Optional[str]:
    intensity = params.get('intensity', DEFAULT_INTENSITY)
    if intensity is None:
        intensity = DEFAULT_INTENSITY
    filter_type = params.get('filter_type')

    if filter_type == 'blur':
        radius = _num(intensity / 100 * 10)
        return f"boxblur={radius}:{radius}"
    if filter_type == 'sharpen':
        return f"unsharp=5:5:{_num(intensity / 100 * 2)}:5:5:0.0"
    if filter_type == 'brightness':
        return f"eq=brightness={_num((intensity - 50) / 50)}"
    if filter_type == 'contrast':
        return f"eq=contrast={_num(1 + (intensity - 50) / 50)}"
    if filter_type == 'saturation':
        return f"eq=saturation={_num(1 + (intensity - 50) / 50)}"
    return None


def build_ffmpeg_args(input_path: str, output_path: str, operations: List[Dict]) -> List[str]:
    """Translate edit operations into an FFmpeg argument list (binary excluded)"""
    args = ['-i', str(input_path)]
    video_filters = []
    audio_filters = []

    for operation in operations:
        op_type = operation['type']
        params = operation.get('parameters') or {}

        if op_type == 'trim':
            args += ['-ss', _num(params['start_time']), '-to', _num(params['end_time'])]
        elif op_type == 'crop':
            video_filters.append(
                f"crop={_num(params['width'])}:{_num(params['height'])}:"
                f"{_num(params.get('x', 0))}:{_num(params.get('y', 0))}")
        elif op_type == 'rotate':
            video_filters.append(f"rotate={_num(params['degrees'] * math.pi / 180)}")
        elif op_type == 'filter':
            vf = _video_filter(params)
            if vf:
                video_filters.append(vf)
        elif op_type == 'speed':
            video_filters.append(f"setpts=PTS/{_num(params['multiplier'])}")
            audio_filters.append(f"atempo={_num(params['multiplier'])}")
        elif op_type == 'volume':
            audio_filters.append(f"volume={_num(params['level'] / 100)}")

    if video_filters:
        args += ['-vf', ','.join(video_filters)]
    if audio_filters:
        args += ['-af', ','.join(audio_filters)]

    return args + OUTPUT_FLAGS + [str(output_path)]


def estimate_processing_time(operations: List[Dict]) -> str:
    total = BASE_PROCESSING_SECONDS + sum(
        OPERATION_SECONDS.get(op.get('type'), 0) for op in operations)
    minutes = math.ceil(total / 60)
    return f"{minutes}-{minutes + 1} minutes"


def generate_edit_id(video_id: str) -> str:
    return f"edit_{video_id}_{int(time.time() * 1000)}"

# ==============================================================================
# FFMPEG PROCESSOR
# ==============================================================================

def _seconds(hours: str, minutes: str, seconds: str) -> float:
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


class FFmpegProcessor:
    """Runs FFmpeg jobs and moves media in and out of the temp area"""

    def __init__(self, ffmpeg_path: str = None, temp_dir: Path = None, output_dir: Path = None):
        self.ffmpeg_path = ffmpeg_path or get_ffmpeg_path()
        self.temp_dir = Path(temp_dir or TEMP_DIR)
        self.output_dir = Path(output_dir or OUTPUT_DIR)

    def _ensure_dirs(self):
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def get_video_duration(self, path) -> Optional[float]:
        """Duration in seconds via ffprobe, falling back to ffmpeg's banner"""
        try:
            result = subprocess.run([
                get_ffprobe_path(), '-v', 'quiet', '-print_format', 'json', '-show_format', str(path)
            ], capture_output=True, text=True, timeout=30)
            if result.returncode == 0:
                duration = json.loads(result.stdout).get('format', {}).get('duration')
                if duration is not None:
                    return float(duration)
        except (OSError, subprocess.SubprocessError, ValueError) as e:
            logger.debug(f"[EDIT] ffprobe unavailable: {e}")

        try:
            result = subprocess.run([self.ffmpeg_path, '-i', str(path)],
                                    capture_output=True, text=True, timeout=30)
            match = _DURATION_RE.search(result.stderr or '')
            if match:
                return _seconds(*match.groups())
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"[EDIT] Could not read duration of {path}: {e}")
        return None

    def process_video(self, input_path, output_path, operations: List[Dict],
                      progress_callback: Callable[[float], None] = None) -> Dict[str, Any]:
        """Run FFmpeg, reporting percent complete from its time= output"""
        self._ensure_dirs()
        total = self.get_video_duration(input_path)
        cmd = [self.ffmpeg_path] + build_ffmpeg_args(input_path, output_path, operations)
        logger.info(f"[EDIT] Running FFmpeg with {len(operations)} operations")

        start_time = time.time()
        process = subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE,
                                   text=True, errors='replace')
        tail: List[str] = []
        try:
            for line in iter(process.stderr.readline, ''):
                tail.append(line)
                tail = tail[-20:]
                match = _TIME_RE.search(line)
                if match and progress_callback and total:
                    progress_callback(min(100.0, _seconds(*match.groups()) / total * 100))
                if time.time() - start_time > FFMPEG_TIMEOUT:
                    process.kill()
                    raise subprocess.TimeoutExpired(cmd, FFMPEG_TIMEOUT)
            returncode = process.wait(timeout=60)
        finally:
            if process.poll() is None:
                process.kill()

        if returncode != 0:
            raise VideoError(VideoErrorType.PROCESSING_FAILED,
                             f"FFmpeg exited with code {returncode}: {''.join(tail)[-500:]}",
                             details={'returncode': returncode}, operation='edit')

        if progress_callback:
            progress_callback(100.0)

        output = Path(output_path)
        return {
            'success': True,
            'output_path': str(output),
            'duration': self.get_video_duration(output),
            'file_size': output.stat().st_size if output.exists() else None,
            'elapsed_seconds': round(time.time() - start_time, 2)
        }

    def download_video(self, url: str) -> Path:
        """Stream a remote video into the temp area"""
        if not is_safe_url(url):
            raise VideoError(VideoErrorType.INSUFFICIENT_PERMISSIONS,
                             "Video URL must be HTTPS on an allowed host", operation='download')

        self._ensure_dirs()
        target = self.temp_dir / f"input_{int(time.time() * 1000)}.mp4"
        response = get_http_session().get(url, stream=True, timeout=120)
        response.raise_for_status()

        written = 0
        with open(target, 'wb') as f:
            for chunk in response.iter_content(chunk_size=1024 * 1024):
                written += len(chunk)
                if written > MAX_DOWNLOAD_BYTES:
                    f.close()
                    self.cleanup([target])
                    raise VideoError(VideoErrorType.FILE_TOO_LARGE,
                                     "Video is too large to process", operation='download')
                f.write(chunk)

        logger.info(f"[EDIT] Downloaded {written / (1024 * 1024):.1f}MB to {target.name}")
        return target

    def store_output(self, path, user_id: str, edit_id: str) -> str:
        """Copy a finished file into OUTPUT_DIR, returns its public URL path"""
        dest_dir = self.output_dir / user_id
        dest_dir.mkdir(parents=True, exist_ok=True)
        dest = dest_dir / f"{edit_id}.mp4"
        shutil.copyfile(str(path), str(dest))
        return f"{OUTPUT_URL_PREFIX}/{user_id}/{edit_id}.mp4"

    def cleanup(self, paths):
        for path in paths:
            if not path:
                continue
            try:
                Path(path).unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"[EDIT] Failed to clean up {path}: {e}")
