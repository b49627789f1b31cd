"""
Tests for the site time ledger: tracking, daily reset, blocking and quotas.
"""
from datetime import timedelta

import pytest
from sqlalchemy import select

from backend.core.database import get_db_session, tracked_sites, users
from backend.core.errors import ConflictError, NotFoundError, QuotaExceededError, ValidationError
from backend.features.sites.service import (
    add_site,
    get_sites_time_status,
    list_sites,
    record_time_spent,
    remove_site,
    reset_daily_times,
)
from backend.features.stats.service import detect_drift


def _row(site_id):
    with get_db_session() as session:
        return session.execute(select(tracked_sites).where(tracked_sites.c.id == site_id)).first()


def _sites_blocked(user_id):
    with get_db_session() as session:
        return session.execute(
            select(users.c.total_sites_blocked).where(users.c.user_id == user_id)
        ).scalar()


def test_add_site_normalizes_and_defaults(make_user, now):
    user = make_user()
    result = add_site(user, "https://www.YouTube.com/watch?v=1", now=now)

    site = result["site"]
    assert result["reactivated"] is False
    assert site["id"] == f"{user}_youtube.com"
    assert site["url"] == "youtube.com"
    assert site["timeLimit"] == 1800
    assert site["timeRemaining"] == 1800
    assert site["lastResetDate"] == "2026-03-15"
    assert _sites_blocked(user) == 1


def test_add_duplicate_site_conflicts(make_user, now):
    user = make_user()
    add_site(user, "youtube.com", now=now)
    with pytest.raises(ConflictError) as exc:
        add_site(user, "http://www.youtube.com/", now=now)
    assert exc.value.code == "site_already_tracked"


def test_free_plan_site_limit(make_user, now):
    user = make_user()
    for domain in ("a.com", "b.com", "c.com"):
        add_site(user, domain, now=now)
    with pytest.raises(QuotaExceededError):
        add_site(user, "d.com", now=now)


def test_paid_plan_has_no_site_limit(make_user, now):
    user = make_user(plan="pro")
    for i in range(6):
        add_site(user, f"site{i}.com", now=now)
    assert len(list_sites(user)) == 6


def test_time_tracking_blocks_at_limit(make_user, now):
    user = make_user()
    add_site(user, "reddit.com", time_limit=600, now=now)

    first = record_time_spent(user, "reddit.com", 400, now=now)
    assert first["timeRemaining"] == 200
    assert first["isBlocked"] is False

    second = record_time_spent(user, "reddit.com", 300, now=now)
    assert second["timeRemaining"] == 0
    assert second["timeSpentToday"] == 700
    assert second["isBlocked"] is True
    assert second["blockedUntil"].startswith("2026-03-16T00:00:00")

    row = _row(f"{user}_reddit.com")
    assert row.access_count == 2
    assert row.total_time_spent == 700
    assert row.daily_usage == {"2026-03-15": 700}


def test_negative_elapsed_rejected(make_user, now):
    user = make_user()
    add_site(user, "reddit.com", now=now)
    with pytest.raises(ValidationError):
        record_time_spent(user, "reddit.com", -5, now=now)


def test_untracked_site_not_found(make_user, now):
    user = make_user()
    with pytest.raises(NotFoundError):
        record_time_spent(user, "nowhere.com", 10, now=now)


def test_stale_day_resets_before_applying_delta(make_user, now):
    user = make_user()
    add_site(user, "reddit.com", time_limit=600, now=now)
    record_time_spent(user, "reddit.com", 600, now=now)

    tomorrow = now + timedelta(days=1)
    result = record_time_spent(user, "reddit.com", 60, now=tomorrow)

    assert result["timeSpentToday"] == 60
    assert result["timeRemaining"] == 540
    assert result["isBlocked"] is False
    row = _row(f"{user}_reddit.com")
    assert row.last_reset_date == "2026-03-16"
    assert row.total_time_spent == 660


def test_status_read_does_not_persist_reset(make_user, now):
    user = make_user()
    add_site(user, "reddit.com", time_limit=600, now=now)
    record_time_spent(user, "reddit.com", 600, now=now)

    status = get_sites_time_status(user, now=now + timedelta(days=1))
    assert status[0]["isBlocked"] is False
    assert status[0]["timeRemaining"] == 600

    row = _row(f"{user}_reddit.com")
    assert row.last_reset_date == "2026-03-15"
    assert row.is_blocked is True


def test_reset_daily_times_only_touches_stale_sites(make_user, now):
    user = make_user()
    add_site(user, "a.com", time_limit=600, now=now)
    record_time_spent(user, "a.com", 600, now=now)

    assert reset_daily_times(user, now=now) == 0
    assert reset_daily_times(user, now=now + timedelta(days=1)) == 1

    row = _row(f"{user}_a.com")
    assert row.time_remaining == 600
    assert row.is_blocked is False
    assert row.last_reset_date == "2026-03-16"


def test_remove_and_reactivate_preserves_settings(make_user, now):
    user = make_user()
    add_site(user, "reddit.com", time_limit=900, now=now)
    record_time_spent(user, "reddit.com", 100, now=now)

    remove_site(user, "reddit.com", now=now)
    assert list_sites(user) == []
    assert _sites_blocked(user) == 0

    result = add_site(user, "reddit.com", now=now)
    assert result["reactivated"] is True
    assert "Reactivated" in result["message"]
    assert result["site"]["timeLimit"] == 900
    assert result["site"]["totalTimeSpent"] == 100
    assert _sites_blocked(user) == 1
    assert detect_drift() == []
