"""
A/B content experiments
Variant definitions, deterministic assignment, result recording and significance testing
"""

import json
import math
import hashlib
import secrets
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from cache import get_cache
from database import get_db, log_audit, row_to_dict, to_db_time, utc_now

logger = logging.getLogger(__name__)

PLATFORMS = ('instagram', 'tiktok', 'youtube')
TARGET_METRICS = ('engagement_rate', 'likes', 'comments', 'shares', 'views', 'saves')

MIN_VARIANTS = 2
MAX_VARIANTS = 5
WEIGHT_TOLERANCE = 0.01
MAX_RUNNING_EXPERIMENTS = 3

DEFAULT_SAMPLE_SIZE = 100
DEFAULT_CONFIDENCE = 0.95
DEFAULT_DURATION_DAYS = 7

Z_95 = 1.96
MAX_CONFIDENCE = 0.999
RESULTS_CACHE_TTL = 300

# action -> (allowed current statuses, new status)
TRANSITIONS = {
    'start': (('draft', 'paused'), 'running'),
    'pause': (('running',), 'paused'),
    'complete': (('running', 'paused'), 'completed'),
}


class ExperimentError(Exception):
    def __init__(self, message: str, status_code: int = 400, error_code: str = 'INVALID_EXPERIMENT'):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code


def _number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)

# ==============================================================================
# VALIDATION
# ==============================================================================

def validate_experiment(data: Dict[str, Any]) -> Dict[str, Any]:
    """Validate a create request, returns the normalised experiment fields"""
    if not isinstance(data, dict):
        raise ExperimentError("Experiment must be an object")

    name = (data.get('name') or '').strip() if isinstance(data.get('name'), str) else ''
    if not name:
        raise ExperimentError("Experiment name is required")

    if data.get('platform') not in PLATFORMS:
        raise ExperimentError(f"platform must be one of: {', '.join(PLATFORMS)}")

    if data.get('target_metric') not in TARGET_METRICS:
        raise ExperimentError(f"target_metric must be one of: {', '.join(TARGET_METRICS)}")

    variants = data.get('variants')
    if not isinstance(variants, list) or not MIN_VARIANTS <= len(variants) <= MAX_VARIANTS:
        raise ExperimentError(f"An experiment needs {MIN_VARIANTS}-{MAX_VARIANTS} variants")

    seen = set()
    for index, variant in enumerate(variants):
        if not isinstance(variant, dict):
            raise ExperimentError(f"Variant {index} must be an object")
        for field in ('id', 'name', 'content'):
            if not variant.get(field):
                raise ExperimentError(f"Variant {index} is missing {field}")
        if variant['id'] in seen:
            raise ExperimentError(f"Duplicate variant id: {variant['id']}")
        seen.add(variant['id'])
        weight = variant.get('weight')
        if not _number(weight) or not 0 <= weight <= 1:
            raise ExperimentError(f"Variant {index} weight must be between 0 and 1")

    total_weight = sum(v['weight'] for v in variants)
    if abs(total_weight - 1) > WEIGHT_TOLERANCE:
        raise ExperimentError(f"Variant weights must sum to 1 (got {total_weight:.3f})")

    sample_size = data.get('minimum_sample_size', DEFAULT_SAMPLE_SIZE)
    if not isinstance(sample_size, int) or isinstance(sample_size, bool) or sample_size < 10:
        raise ExperimentError("minimum_sample_size must be an integer >= 10")

    confidence = data.get('confidence_level', DEFAULT_CONFIDENCE)
    if not _number(confidence) or not 0.8 <= confidence <= 0.99:
        raise ExperimentError("confidence_level must be between 0.8 and 0.99")

    duration = data.get('duration_days', DEFAULT_DURATION_DAYS)
    if not isinstance(duration, int) or isinstance(duration, bool) or not 1 <= duration <= 30:
        raise ExperimentError("duration_days must be between 1 and 30")

    return {
        'name': name,
        'description': data.get('description'),
        'platform': data['platform'],
        'target_metric': data['target_metric'],
        'variants': [
            {'id': str(v['id']), 'name': v['name'], 'content': v['content'], 'weight': float(v['weight'])}
            for v in variants
        ],
        'minimum_sample_size': sample_size,
        'confidence_level': float(confidence),
        'duration_days': duration,
    }

# ==============================================================================
# CRUD
# ==============================================================================

def _count_running(user_id: str) -> int:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute("SELECT COUNT(*) FROM ab_experiments WHERE user_id = ? AND status = 'running'",
                       (user_id,))
        return cursor.fetchone()[0]


def create_experiment(user_id: str, data: Dict[str, Any]) -> Dict:
    fields = validate_experiment(data)

    if _count_running(user_id) >= MAX_RUNNING_EXPERIMENTS:
        raise ExperimentError(f"You can run at most {MAX_RUNNING_EXPERIMENTS} experiments at once",
                              status_code=409, error_code='EXPERIMENT_LIMIT')

    experiment_id = f"exp_{secrets.token_hex(8)}"
    now = utc_now()
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO ab_experiments
                (id, user_id, name, description, platform, target_metric, variants, status,
                 minimum_sample_size, confidence_level, duration_days, prior_alpha, prior_beta,
                 created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, 'draft', ?, ?, ?, 1, 1, ?, ?)
        ''', (experiment_id, user_id, fields['name'], fields['description'], fields['platform'],
              fields['target_metric'], json.dumps(fields['variants']), fields['minimum_sample_size'],
              fields['confidence_level'], fields['duration_days'], now, now))

    log_audit(user_id, None, 'experiment.created', 'experiment', experiment_id, {'name': fields['name']})
    logger.info(f"[EXPERIMENT] Created {experiment_id} ({len(fields['variants'])} variants)")
    return get_experiment(experiment_id)


def get_experiment(experiment_id: str, user_id: str = None) -> Optional[Dict]:
    """Fetch an experiment; with user_id, only if that user owns it"""
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT * FROM ab_experiments WHERE id = ?', (experiment_id,))
        experiment = row_to_dict(cursor.fetchone(), ('variants',))

    if experiment and user_id is not None and experiment['user_id'] != user_id:
        return None
    return experiment


def _get_owned(experiment_id: str, user_id: str = None) -> Dict:
    experiment = get_experiment(experiment_id, user_id)
    if not experiment:
        raise ExperimentError("Experiment not found", status_code=404, error_code='NOT_FOUND')
    return experiment


def list_experiments(user_id: str, status: str = None) -> List[Dict]:
    query = 'SELECT * FROM ab_experiments WHERE user_id = ?'
    params = [user_id]
    if status:
        query += ' AND status = ?'
        params.append(status)
    query += ' ORDER BY created_at DESC, id'

    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(query, params)
        return [row_to_dict(row, ('variants',)) for row in cursor.fetchall()]


def delete_experiment(experiment_id: str, user_id: str) -> bool:
    experiment = _get_owned(experiment_id, user_id)
    if experiment['status'] == 'running':
        raise ExperimentError("Pause or complete the experiment before deleting it",
                              status_code=409, error_code='EXPERIMENT_RUNNING')

    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('DELETE FROM experiment_results WHERE experiment_id = ?', (experiment_id,))
        cursor.execute('DELETE FROM ab_experiments WHERE id = ?', (experiment_id,))

    get_cache().invalidate_by_tags([f"experiment:{experiment_id}"])
    log_audit(user_id, None, 'experiment.deleted', 'experiment', experiment_id)
    return True


def transition_experiment(experiment_id: str, user_id: str, action: str) -> Dict:
    """Apply start, pause or complete"""
    if action not in TRANSITIONS:
        raise ExperimentError(f"Unknown action: {action}")

    experiment = _get_owned(experiment_id, user_id)
    allowed, new_status = TRANSITIONS[action]
    if experiment['status'] not in allowed:
        raise ExperimentError(f"Cannot {action} an experiment that is {experiment['status']}",
                              status_code=409, error_code='INVALID_TRANSITION')

    fields = {'status': new_status, 'updated_at': utc_now()}

    if action == 'start':
        if _count_running(experiment['user_id']) >= MAX_RUNNING_EXPERIMENTS:
            raise ExperimentError(f"You can run at most {MAX_RUNNING_EXPERIMENTS} experiments at once",
                                  status_code=409, error_code='EXPERIMENT_LIMIT')
        if not experiment['started_at']:
            started = datetime.utcnow()
            fields['started_at'] = to_db_time(started)
            fields['ends_at'] = to_db_time(started + timedelta(days=experiment['duration_days']))

    if action == 'complete':
        fields['completed_at'] = utc_now()
        fields['winner_variant_id'] = calculate_results(experiment_id)['winner']

    assignments = ', '.join(f"{name} = ?" for name in fields)
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(f'UPDATE ab_experiments SET {assignments} WHERE id = ?',
                       list(fields.values()) + [experiment_id])

    log_audit(user_id, None, f'experiment.{action}', 'experiment', experiment_id)
    logger.info(f"[EXPERIMENT] {experiment_id} {experiment['status']} -> {new_status}")
    return get_experiment(experiment_id)

# ==============================================================================
# ASSIGNMENT & RESULTS
# ==============================================================================

def assign_variant(experiment: Dict, subject_id: str) -> Dict:
    """Deterministic weighted bucket for a subject"""
    digest = hashlib.sha256(f"{experiment['id']}:{subject_id}".encode()).hexdigest()
    bucket = int(digest[:8], 16) / 0x100000000

    cumulative = 0.0
    for variant in experiment['variants']:
        cumulative += variant['weight']
        if bucket < cumulative:
            return variant
    return experiment['variants'][-1]


def record_result(experiment_id: str, variant_id: str, metric_value: float, post_id: str = None,
                  conversion_event: bool = False, user_id: str = None) -> int:
    experiment = _get_owned(experiment_id, user_id)
    if experiment['status'] != 'running':
        raise ExperimentError("Results can only be recorded while the experiment is running",
                              status_code=409, error_code='EXPERIMENT_NOT_RUNNING')
    if variant_id not in {v['id'] for v in experiment['variants']}:
        raise ExperimentError(f"Unknown variant: {variant_id}")
    if not _number(metric_value):
        raise ExperimentError("metric_value must be a number")

    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO experiment_results (experiment_id, variant_id, post_id, metric_value, conversion_event, recorded_at)
            VALUES (?, ?, ?, ?, ?, ?)
        ''', (experiment_id, variant_id, post_id, float(metric_value), int(bool(conversion_event)), utc_now()))
        result_id = cursor.lastrowid

    get_cache().invalidate_by_tags([f"experiment:{experiment_id}"])
    return result_id


def _variant_stats(values: List[float], conversions: int) -> Dict[str, Any]:
    n = len(values)
    if n == 0:
        return {'sample_size': 0, 'mean': 0.0, 'std': 0.0, 'standard_error': 0.0,
                'ci95': [0.0, 0.0], 'conversions': 0, 'conversion_rate': 0.0}

    mean = sum(values) / n
    std = math.sqrt(sum((v - mean) ** 2 for v in values) / n)
    se = std / math.sqrt(n)
    return {
        'sample_size': n,
        'mean': round(mean, 6),
        'std': round(std, 6),
        'standard_error': round(se, 6),
        'ci95': [round(mean - Z_95 * se, 6), round(mean + Z_95 * se, 6)],
        'conversions': conversions,
        'conversion_rate': round(conversions / n, 6)
    }


def compare_to_control(control: Dict, test: Dict) -> Dict[str, float]:
    """z-score on the pooled standard error, mapped to a confidence in (0, 0.999]"""
    pooled_se = math.sqrt(control['standard_error'] ** 2 + test['standard_error'] ** 2)
    if pooled_se == 0:
        z = 0.0
        confidence = 0.99 if test['mean'] > control['mean'] else 0.01
    else:
        z = (test['mean'] - control['mean']) / pooled_se
        confidence = min(MAX_CONFIDENCE, 1 - math.exp(-abs(z)))

    lift = 0.0 if control['mean'] == 0 else (test['mean'] - control['mean']) / control['mean'] * 100
    return {'z_score': round(z, 4), 'confidence': round(confidence, 4), 'lift_percent': round(lift, 2)}


def _compute_results(experiment: Dict) -> Dict[str, Any]:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            SELECT variant_id, metric_value, conversion_event FROM experiment_results
            WHERE experiment_id = ?
        ''', (experiment['id'],))
        rows = cursor.fetchall()

    values: Dict[str, List[float]] = {v['id']: [] for v in experiment['variants']}
    conversions: Dict[str, int] = {v['id']: 0 for v in experiment['variants']}
    for row in rows:
        if row['variant_id'] in values:
            values[row['variant_id']].append(row['metric_value'])
            conversions[row['variant_id']] += row['conversion_event']

    control_id = experiment['variants'][0]['id']
    variants = []
    for variant in experiment['variants']:
        stats = _variant_stats(values[variant['id']], conversions[variant['id']])
        stats.update({'variant_id': variant['id'], 'name': variant['name'],
                      'is_control': variant['id'] == control_id})
        variants.append(stats)

    control = variants[0]
    winner = None
    for stats in variants[1:]:
        stats.update(compare_to_control(control, stats))
        qualifies = (stats['sample_size'] >= experiment['minimum_sample_size']
                     and control['sample_size'] >= experiment['minimum_sample_size']
                     and stats['confidence'] >= experiment['confidence_level']
                     and stats['mean'] > control['mean'])
        if qualifies and (winner is None or stats['mean'] > winner['mean']):
            winner = stats

    if not rows:
        status = 'no_data'
    elif winner:
        status = 'significant'
    else:
        status = 'inconclusive'

    return {
        'experiment_id': experiment['id'],
        'target_metric': experiment['target_metric'],
        'status': status,
        'total_samples': len(rows),
        'winner': winner['variant_id'] if winner else None,
        'variants': variants
    }


def calculate_results(experiment_id: str, user_id: str = None) -> Dict[str, Any]:
    experiment = _get_owned(experiment_id, user_id)
    return get_cache().get_or_set(
        f"experiment_results:{experiment_id}",
        lambda: _compute_results(experiment),
        ttl=RESULTS_CACHE_TTL,
        tags=[f"experiment:{experiment_id}"]
    )
