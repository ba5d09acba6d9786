from datetime import date

import pytest

import agency_control
from conftest import link
from errors import ServiceError

TODAY = date(2024, 3, 10)


def _row(client_id, day, spend, revenue=0, conversions=0):
    return {"client_id": client_id, "platform": "meta", "date": day,
            "spend": spend, "revenue": revenue, "conversions": conversions}


@pytest.fixture
def agency(fake_db):
    link(fake_db, "m1", "c-stable", client_label="Academia Sol", strategy_type="demand")
    link(fake_db, "m1", "c-critical", client_label="Boutique Lua", strategy_type="REVENUE")
    link(fake_db, "m2", "c-other", client_label="Outro")
    fake_db.rows("daily_metrics").extend(
        [
            _row("c-critical", "2024-02-28", 100, revenue=300),
            _row("c-critical", "2024-03-05", 100, revenue=200),
            _row("c-stable", "2024-02-28", 100, conversions=10),
            _row("c-stable", "2024-03-05", 100, conversions=10),
        ]
    )
    return fake_db


def test_snapshot_ratios():
    assert agency_control.snapshot([]) == {"spend": 0, "revenue": 0, "conversions": 0, "roas": 0.0, "cpa": 0.0}
    result = agency_control.snapshot([_row("c", "2024-03-01", 50, revenue=100, conversions=5)])
    assert result["roas"] == 2
    assert result["cpa"] == 10


def test_agency_health_orders_by_priority(agency):
    result = agency_control.agency_health("m1", "LAST_7_DAYS", today=TODAY)

    assert [entry["client_id"] for entry in result["clients"]] == ["c-critical", "c-stable"]
    critical, stable = result["clients"]
    assert critical["status"] == "CRITICAL"
    assert critical["strategy_type"] == "REVENUE"
    assert critical["metrics_current"]["roas"] == 2
    assert stable["status"] == "STABLE"
    assert stable["strategy_type"] == "DEMAND"
    assert stable["tasks"] == {"todo": 0, "in_progress": 0, "done": 0}
    assert result["summary"] == {"CRITICAL": 1, "ATTENTION": 0, "STABLE": 1, "GROWING": 0}
    assert fake_tasks(agency) == []


def test_agency_health_generates_tasks(agency):
    result = agency_control.agency_health("m1", "LAST_7_DAYS", today=TODAY, generate_tasks=True)

    tasks = fake_tasks(agency)
    assert [task["client_id"] for task in tasks] == ["c-critical"]
    assert result["clients"][0]["tasks"]["todo"] == 1


def test_agency_health_invalid_range(agency):
    with pytest.raises(ServiceError) as exc:
        agency_control.agency_health("m1", "LAST_90_DAYS", today=TODAY)
    assert exc.value.status == 400


def fake_tasks(db):
    return db.rows("optimization_tasks")
