"""
Tests for the aggregate upserts and unique-visitor accounting.
"""

import datetime
import sqlite3

import pytest

from theia.aggregation_store import AggregationStore, StoreReadError


def test_three_distinct_visitors_in_one_hour(store, db_rows, make_event):
    for i, path in enumerate(["/a", "/b", "/c"]):
        store.apply(make_event(fingerprint=f"visitor-{i}", path=path))

    assert len(db_rows("visitor_hashes")) == 3
    stats = db_rows("hourly_stats")
    assert len(stats) == 3
    assert stats[-1]["path"] == "/c"
    assert stats[-1]["unique_visitors"] == 3


def test_same_key_adds_views_and_overwrites_unique_visitors(store, db_rows, make_event):
    store.apply(make_event(fingerprint="v1"))
    store.apply(make_event(fingerprint="v1"))
    store.apply(make_event(fingerprint="v2", is_bot=True))

    stats = db_rows("hourly_stats")
    assert len(stats) == 1
    assert stats[0]["page_views"] == 2
    assert stats[0]["bot_views"] == 1
    # Snapshot of two fingerprints, not 1 + 1 + 2
    assert stats[0]["unique_visitors"] == 2


def test_repeat_visitor_is_not_reinserted(store, db_rows, make_event):
    first = store.apply(make_event(fingerprint="v1"), now=datetime.datetime(2025, 12, 24, 9, 0))
    store.apply(make_event(fingerprint="v1", path="/other"))

    hashes = db_rows("visitor_hashes")
    assert len(hashes) == 1
    assert hashes[0]["first_seen"] == "2025-12-24 09:00:00"
    assert hashes[0]["hour_bucket"] == 10
    assert first["visitor_hashes"] is True


def test_unique_visitors_ignore_day_and_year(store, db_rows, make_event):
    store.apply(make_event(fingerprint="old", timestamp=datetime.datetime(
        2024, 2, 1, 10, 5, tzinfo=datetime.timezone.utc)))
    store.apply(make_event(fingerprint="other-hour", timestamp=datetime.datetime(
        2025, 12, 24, 11, 5, tzinfo=datetime.timezone.utc)))
    store.apply(make_event(fingerprint="new"))

    latest = [row for row in db_rows("hourly_stats") if row["year"] == 2025 and row["hour"] == 10]
    assert latest[0]["unique_visitors"] == 2


def test_bot_and_static_flags(store, db_rows, make_event):
    store.apply(make_event(fingerprint="bot", path="/api/data", is_bot=True))
    store.apply(make_event(fingerprint="css", path="/style.css", is_static=True))

    rows = {row["path"]: row for row in db_rows("hourly_stats")}
    assert rows["/api/data"]["bot_views"] == 1
    assert rows["/api/data"]["page_views"] == 0
    assert rows["/style.css"]["page_views"] == 1
    assert rows["/style.css"]["is_static"] == 1


def test_time_bucket_key(store, db_rows, make_event):
    # 31 Dec of a leap year is day 366
    store.apply(make_event(timestamp=datetime.datetime(
        2024, 12, 31, 23, 59, 59, tzinfo=datetime.timezone(datetime.timedelta(hours=-5)))))

    row = db_rows("hourly_stats")[0]
    assert (row["hour"], row["year_day"], row["year"]) == (23, 366, 2024)


def test_status_codes_and_referrers_count(store, db_rows, make_event):
    store.apply(make_event(fingerprint="v1", status_code=200))
    store.apply(make_event(fingerprint="v2", status_code=200, referrer="-"))
    store.apply(make_event(fingerprint="v3", status_code=404))

    codes = {row["status_code"]: row["count"] for row in db_rows("hourly_status_codes")}
    assert codes == {200: 2, 404: 1}

    referrers = {row["referrer"]: row["count"] for row in db_rows("hourly_referrers")}
    assert referrers == {"https://google.com": 2, "-": 1}


def test_host_is_part_of_the_key(store, db_rows, make_event):
    store.apply(make_event(fingerprint="v1", host="a.example"))
    store.apply(make_event(fingerprint="v2", host="b.example"))

    assert {row["host"] for row in db_rows("hourly_stats")} == {"a.example", "b.example"}


def test_failed_step_does_not_abort_the_rest(store, db_rows, make_event, temp_db, caplog):
    conn = sqlite3.connect(temp_db)
    conn.execute("DROP TABLE hourly_status_codes")
    conn.commit()
    conn.close()

    results = store.apply(make_event(fingerprint="v1"))

    assert results["hourly_status_codes"] is False
    assert results["hourly_stats"] is True
    assert results["hourly_referrers"] is True
    assert len(db_rows("hourly_referrers")) == 1
    assert "unable to write hourly_status_codes" in caplog.text


def test_oversized_value_fails_only_its_own_step(store, db_rows, make_event, caplog):
    results = store.apply(make_event(fingerprint="v1", status_code=10**20))

    assert results["hourly_status_codes"] is False
    assert results["hourly_stats"] is True
    assert results["hourly_referrers"] is True
    assert db_rows("hourly_status_codes") == []
    assert len(db_rows("hourly_referrers")) == 1
    assert "unable to write hourly_status_codes" in caplog.text


def test_failed_lookup_is_logged_and_processing_continues(store, db_rows, make_event, monkeypatch, caplog):
    def broken_lookup(conn, fingerprint):
        raise StoreReadError("could not look up visitor hash: disk I/O error")

    monkeypatch.setattr(store, "lookup_fingerprint", broken_lookup)

    results = store.apply(make_event(fingerprint="v1"))

    assert results["visitor_hashes"] is False
    assert results["hourly_stats"] is True
    assert db_rows("visitor_hashes") == []
    assert db_rows("hourly_stats")[0]["unique_visitors"] == 0
    assert "could not look up visitor hash" in caplog.text


def test_count_unique_visitors_wraps_sqlite_errors(temp_db):
    store = AggregationStore(temp_db)
    conn = sqlite3.connect(":memory:")
    with pytest.raises(StoreReadError):
        store.count_unique_visitors(conn, 10)
    conn.close()


def test_delete_older_than_rejects_unknown_tables(store):
    with pytest.raises(ValueError):
        store.delete_older_than("visitor_hashes", datetime.date(2025, 1, 1))
