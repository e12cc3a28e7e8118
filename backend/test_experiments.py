"""Tests for A/B experiment lifecycle, assignment and significance"""

import pytest

from experiments import (
    ExperimentError,
    assign_variant,
    calculate_results,
    compare_to_control,
    create_experiment,
    delete_experiment,
    get_experiment,
    list_experiments,
    record_result,
    transition_experiment,
    validate_experiment,
)


def experiment_payload(**overrides):
    payload = {
        'name': 'Hook test',
        'platform': 'tiktok',
        'target_metric': 'engagement_rate',
        'variants': [
            {'id': 'a', 'name': 'Control', 'content': 'Original hook', 'weight': 0.5},
            {'id': 'b', 'name': 'Question', 'content': 'Did you know?', 'weight': 0.5},
        ],
        'minimum_sample_size': 10,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def running(user):
    experiment = create_experiment(user.id, experiment_payload())
    return transition_experiment(experiment['id'], user.id, 'start')


# ============================================================
# VALIDATION
# ============================================================

def test_validate_normalises_fields():
    fields = validate_experiment(experiment_payload(name='  Hook test  '))
    assert fields['name'] == 'Hook test'
    assert fields['confidence_level'] == 0.95
    assert fields['duration_days'] == 7


@pytest.mark.parametrize('overrides, message', [
    ({'name': ''}, 'name is required'),
    ({'platform': 'myspace'}, 'platform must be one of'),
    ({'target_metric': 'revenue'}, 'target_metric must be one of'),
    ({'variants': [{'id': 'a', 'name': 'A', 'content': 'x', 'weight': 1.0}]}, '2-5 variants'),
    ({'variants': [
        {'id': 'a', 'name': 'A', 'content': 'x', 'weight': 0.5},
        {'id': 'a', 'name': 'B', 'content': 'y', 'weight': 0.5},
    ]}, 'Duplicate variant id'),
    ({'variants': [
        {'id': 'a', 'name': 'A', 'content': 'x', 'weight': 0.7},
        {'id': 'b', 'name': 'B', 'content': 'y', 'weight': 0.7},
    ]}, 'must sum to 1'),
    ({'minimum_sample_size': 5}, 'minimum_sample_size'),
    ({'confidence_level': 0.5}, 'confidence_level'),
    ({'duration_days': 45}, 'duration_days'),
])
def test_validate_rejects(overrides, message):
    with pytest.raises(ExperimentError) as exc:
        validate_experiment(experiment_payload(**overrides))
    assert message in exc.value.message


# ============================================================
# LIFECYCLE
# ============================================================

def test_create_starts_in_draft(user):
    experiment = create_experiment(user.id, experiment_payload())
    assert experiment['id'].startswith('exp_')
    assert experiment['status'] == 'draft'
    assert [v['id'] for v in experiment['variants']] == ['a', 'b']
    assert [e['id'] for e in list_experiments(user.id, 'draft')] == [experiment['id']]


def test_experiments_are_private(user, other_user):
    experiment = create_experiment(user.id, experiment_payload())
    assert get_experiment(experiment['id'], other_user.id) is None
    with pytest.raises(ExperimentError) as exc:
        transition_experiment(experiment['id'], other_user.id, 'start')
    assert exc.value.status_code == 404


def test_start_sets_schedule(running):
    assert running['status'] == 'running'
    assert running['started_at'] is not None
    assert running['ends_at'] > running['started_at']


def test_invalid_transition(user):
    experiment = create_experiment(user.id, experiment_payload())
    with pytest.raises(ExperimentError) as exc:
        transition_experiment(experiment['id'], user.id, 'pause')
    assert exc.value.error_code == 'INVALID_TRANSITION'
    assert exc.value.status_code == 409


def test_running_limit(user):
    for _ in range(3):
        experiment = create_experiment(user.id, experiment_payload())
        transition_experiment(experiment['id'], user.id, 'start')

    with pytest.raises(ExperimentError) as exc:
        create_experiment(user.id, experiment_payload())
    assert exc.value.error_code == 'EXPERIMENT_LIMIT'


def test_running_experiment_cannot_be_deleted(user, running):
    with pytest.raises(ExperimentError) as exc:
        delete_experiment(running['id'], user.id)
    assert exc.value.error_code == 'EXPERIMENT_RUNNING'

    transition_experiment(running['id'], user.id, 'pause')
    assert delete_experiment(running['id'], user.id)
    assert get_experiment(running['id']) is None


# ============================================================
# ASSIGNMENT & RESULTS
# ============================================================

def test_assignment_is_deterministic(running):
    first = assign_variant(running, 'viewer-1')
    assert all(assign_variant(running, 'viewer-1') == first for _ in range(5))
    assigned = {assign_variant(running, f'viewer-{i}')['id'] for i in range(200)}
    assert assigned == {'a', 'b'}


def test_results_require_running_experiment(user):
    experiment = create_experiment(user.id, experiment_payload())
    with pytest.raises(ExperimentError) as exc:
        record_result(experiment['id'], 'a', 1.0, user_id=user.id)
    assert exc.value.error_code == 'EXPERIMENT_NOT_RUNNING'


def test_unknown_variant_rejected(user, running):
    with pytest.raises(ExperimentError, match='Unknown variant'):
        record_result(running['id'], 'z', 1.0, user_id=user.id)


def test_no_data_results(user, running):
    results = calculate_results(running['id'], user.id)
    assert results['status'] == 'no_data'
    assert results['winner'] is None
    assert results['variants'][0]['is_control']


def test_significant_winner(user, running):
    for i in range(10):
        record_result(running['id'], 'a', 1.0 + i % 2, user_id=user.id)
        record_result(running['id'], 'b', 10.0 + i % 2, conversion_event=True, user_id=user.id)

    results = calculate_results(running['id'], user.id)
    assert results['status'] == 'significant'
    assert results['winner'] == 'b'
    assert results['total_samples'] == 20

    test_variant = results['variants'][1]
    assert test_variant['conversion_rate'] == 1.0
    assert test_variant['confidence'] >= 0.95
    assert test_variant['lift_percent'] > 0

    completed = transition_experiment(running['id'], user.id, 'complete')
    assert completed['winner_variant_id'] == 'b'


def test_small_samples_are_inconclusive(user, running):
    record_result(running['id'], 'a', 1.0, user_id=user.id)
    record_result(running['id'], 'b', 50.0, user_id=user.id)

    results = calculate_results(running['id'], user.id)
    assert results['status'] == 'inconclusive'
    assert results['winner'] is None


def test_results_cache_invalidated_by_new_result(user, running):
    assert calculate_results(running['id'], user.id)['total_samples'] == 0
    record_result(running['id'], 'a', 3.0, user_id=user.id)
    assert calculate_results(running['id'], user.id)['total_samples'] == 1


def test_compare_to_control_zero_variance():
    control = {'mean': 1.0, 'standard_error': 0.0}
    test = {'mean': 2.0, 'standard_error': 0.0}
    comparison = compare_to_control(control, test)
    assert comparison['confidence'] == 0.99
    assert comparison['lift_percent'] == 100.0
