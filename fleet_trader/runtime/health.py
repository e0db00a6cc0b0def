"""
Health classification for a running (or expected-running) agent.
"""
from datetime import datetime, timedelta

from ..config import FleetSettings
from ..schemas import HealthStatus, LifecycleState


def stale_after(state: LifecycleState, settings: FleetSettings) -> timedelta:
    interval_ms = state.interval_ms or settings.default_tick_interval_ms
    return timedelta(milliseconds=max(settings.stale_floor_ms, settings.stale_missed_intervals * interval_ms))


def assess_health(
    state: LifecycleState,
    settings: FleetSettings,
    now: datetime,
    running: bool,
    expected_running: bool = False,
) -> HealthStatus:
    """
    stopped:   no scheduler and none expected
    unhealthy: expected to run but no scheduler, or too many consecutive errors
    degraded:  some consecutive errors, an error burst, or no tick for too long
    """
    if not running:
        return HealthStatus.UNHEALTHY if expected_running else HealthStatus.STOPPED

    if state.error_count >= settings.unhealthy_error_threshold:
        return HealthStatus.UNHEALTHY
    if state.error_count >= settings.degraded_error_threshold:
        return HealthStatus.DEGRADED

    window_start = now - timedelta(milliseconds=settings.recent_error_window_ms)
    recent = [e for e in state.recent_errors if e.at >= window_start]
    if len(recent) >= settings.recent_error_burst:
        return HealthStatus.DEGRADED

    reference = state.last_tick_at or state.started_at
    if reference is not None and now - reference > stale_after(state, settings):
        return HealthStatus.DEGRADED

    return HealthStatus.HEALTHY
