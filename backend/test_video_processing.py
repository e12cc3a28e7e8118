"""Tests for the edit job service using a scripted processor in place of FFmpeg"""

from pathlib import Path

import pytest
import requests

from video_errors import VideoError, VideoErrorType, get_error_statistics, retry_with_backoff
from video_processing import (
    VideoProcessingService,
    create_edit,
    edit_status_payload,
    get_edit,
    get_edits_for_video,
    update_edit,
)

OPERATIONS = [{'type': 'trim', 'parameters': {'start_time': 0, 'end_time': 5}}]


class ScriptedProcessor:
    """Processor whose process_video step raises the queued failures in order"""

    def __init__(self, tmp_path, failures=None, on_download=None):
        self.temp_dir = Path(tmp_path)
        self.failures = list(failures or [])
        self.on_download = on_download
        self.calls = 0
        self.cleaned = []

    def download_video(self, url):
        if self.on_download:
            self.on_download()
        return self.temp_dir / 'input.mp4'

    def process_video(self, input_path, output_path, operations, progress_callback=None):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        if progress_callback:
            progress_callback(50.0)
            progress_callback(100.0)
        return {'success': True, 'output_path': str(output_path)}

    def store_output(self, output_path, user_id, edit_id):
        return f"/outputs/{user_id}/{edit_id}.mp4"

    def cleanup(self, paths):
        self.cleaned.extend(p for p in paths if p)


@pytest.fixture
def edit(user):
    return create_edit(user.id, 'vid1', 'https://cdn.example.com/v.mp4', OPERATIONS)


def make_service(processor):
    return VideoProcessingService(processor=processor, max_workers=1, sleep=lambda _: None)


def test_create_edit_is_queued(edit, user):
    assert edit['status'] == 'queued'
    assert edit['progress'] == 0
    assert edit['operations'] == OPERATIONS
    assert edit['estimated_time'] == '1-2 minutes'
    assert get_edits_for_video(user.id, 'vid1')[0]['id'] == edit['id']


def test_successful_job_completes(edit, user, tmp_path):
    processor = ScriptedProcessor(tmp_path)
    status = make_service(processor).run_job(edit['id'])

    assert status == 'completed'
    stored = get_edit(edit['id'])
    assert stored['status'] == 'completed'
    assert stored['progress'] == 100
    assert stored['output_url'] == f"/outputs/{user.id}/{edit['id']}.mp4"
    assert stored['completed_at'] is not None
    assert processor.cleaned


def test_retryable_failure_is_retried(edit, tmp_path):
    processor = ScriptedProcessor(tmp_path, failures=[requests.ConnectionError('reset by peer')])
    status = make_service(processor).run_job(edit['id'])

    assert status == 'completed'
    assert processor.calls == 2
    assert get_edit(edit['id'])['retry_count'] == 1


def test_non_retryable_failure_fails_immediately(edit, tmp_path):
    failure = VideoError(VideoErrorType.INVALID_FORMAT, 'unsupported codec', operation='edit')
    processor = ScriptedProcessor(tmp_path, failures=[failure])
    status = make_service(processor).run_job(edit['id'])

    assert status == 'failed'
    assert processor.calls == 1
    stored = get_edit(edit['id'])
    assert stored['error_type'] == 'INVALID_FORMAT'
    payload = edit_status_payload(stored)
    assert payload['user_message'].startswith('Invalid video format')


def test_retries_stop_at_strategy_limit(edit, tmp_path):
    # PROCESSING_FAILED allows two retries
    failures = [VideoError(VideoErrorType.PROCESSING_FAILED, 'ffmpeg exited') for _ in range(5)]
    processor = ScriptedProcessor(tmp_path, failures=failures)
    status = make_service(processor).run_job(edit['id'])

    assert status == 'failed'
    assert processor.calls == 3
    assert get_edit(edit['id'])['retry_count'] == 2


def test_failures_are_logged_for_statistics(edit, user, tmp_path):
    failure = VideoError(VideoErrorType.CORRUPTED_FILE, 'moov atom not found', operation='edit')
    make_service(ScriptedProcessor(tmp_path, failures=[failure])).run_job(edit['id'])

    stats = get_error_statistics('1h', user_id=user.id)
    assert stats['total'] == 1
    assert stats['by_type'] == {'CORRUPTED_FILE': 1}
    assert stats['critical_count'] == 1
    assert stats['recent_errors'][0]['video_id'] == 'vid1'


def test_cancel_during_download_stops_job(edit, user, tmp_path):
    processor = ScriptedProcessor(tmp_path)
    service = make_service(processor)
    processor.on_download = lambda: service.cancel_processing(edit['id'], user.id)

    assert service.run_job(edit['id']) == 'cancelled'
    assert processor.calls == 0
    assert get_edit(edit['id'])['status'] == 'cancelled'


def test_cancel_checks_owner_and_state(edit, user, other_user, tmp_path):
    service = make_service(ScriptedProcessor(tmp_path))

    result = service.cancel_processing(edit['id'], other_user.id)
    assert result['error_code'] == 'NOT_FOUND'

    update_edit(edit['id'], status='completed')
    result = service.cancel_processing(edit['id'], user.id)
    assert result['error_code'] == 'INVALID_STATE'


def test_cancelled_edit_is_not_run(edit, user, tmp_path):
    processor = ScriptedProcessor(tmp_path)
    service = make_service(processor)
    service.cancel_processing(edit['id'], user.id)

    assert service.run_job(edit['id']) == 'cancelled'
    assert processor.calls == 0
    assert service.start_processing(edit['id'])['success'] is False


def test_active_jobs_and_stats(edit, user, other_user, tmp_path):
    create_edit(other_user.id, 'vid2', 'https://cdn.example.com/w.mp4', OPERATIONS)
    service = make_service(ScriptedProcessor(tmp_path))

    assert [j['edit_id'] for j in service.get_active_jobs(user.id)] == [edit['id']]
    assert len(service.get_active_jobs()) == 2

    service.run_job(edit['id'])
    stats = service.get_processing_stats(user.id)
    assert stats['completed'] == 1
    assert stats['queued'] == 0
    assert stats['total'] == 1


def test_cancel_during_finalization_is_kept(edit, user, tmp_path):
    service = make_service(ScriptedProcessor(tmp_path))
    run_stage = service._stage

    def stage_then_cancel(edit_id, stage):
        run_stage(edit_id, stage)
        if stage == 'finalization':
            service.cancel_processing(edit_id, user.id)

    service._stage = stage_then_cancel
    assert service.run_job(edit['id']) == 'cancelled'
    assert get_edit(edit['id'])['status'] == 'cancelled'
    assert get_edit(edit['id'])['output_url'] is None


def test_cancel_during_failure_is_kept(edit, user, tmp_path):
    processor = ScriptedProcessor(tmp_path, failures=[requests.ConnectionError('reset by peer')])
    service = make_service(processor)
    process_video = processor.process_video

    def cancel_then_process(*args, **kwargs):
        service.cancel_processing(edit['id'], user.id)
        return process_video(*args, **kwargs)

    processor.process_video = cancel_then_process
    assert service.run_job(edit['id']) == 'cancelled'
    assert processor.calls == 1
    assert get_edit(edit['id'])['status'] == 'cancelled'


def test_get_processing_status(edit, tmp_path):
    service = make_service(ScriptedProcessor(tmp_path))
    assert service.get_processing_status('edit_missing') is None

    service.run_job(edit['id'])
    status = service.get_processing_status(edit['id'])
    assert status['edit_id'] == edit['id']
    assert status['status'] == 'completed'
    assert status['progress'] == 100


# ============================================================
# RETRY WITH BACKOFF
# ============================================================

def flaky(failures, result='ok'):
    pending = list(failures)

    def call():
        if pending:
            raise pending.pop(0)
        return result
    return call


def test_retry_with_backoff_recovers():
    delays, retries = [], []
    fn = flaky([requests.ConnectionError('reset'), requests.ConnectionError('reset')])

    result = retry_with_backoff(fn, VideoErrorType.NETWORK_ERROR, sleep=delays.append,
                                on_retry=lambda attempt, e: retries.append(attempt))
    assert result == 'ok'
    assert delays == [2.0, 4.0]
    assert retries == [1, 2]


def test_retry_with_backoff_stops_at_strategy_limit():
    delays = []
    fn = flaky([requests.Timeout('slow')] * 5)

    with pytest.raises(requests.Timeout):
        retry_with_backoff(fn, VideoErrorType.TIMEOUT_ERROR, sleep=delays.append)
    assert delays == [15.0, 30.0]


def test_retry_with_backoff_skips_non_retryable_errors():
    delays = []
    fn = flaky([VideoError(VideoErrorType.INVALID_FORMAT, 'unsupported codec')])

    with pytest.raises(VideoError):
        retry_with_backoff(fn, VideoErrorType.NETWORK_ERROR, sleep=delays.append)
    assert delays == []
