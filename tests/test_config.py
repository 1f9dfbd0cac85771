from datetime import timedelta

from app.config import Settings
from app.db.store import SqlStore
from app.factory import build_flow
from services.notifier.outbound import PushGatewayNotifier


def test_defaults_match_the_documented_timings():
    options = Settings().flow_options()
    assert options == {
        "reminder_lead_time": timedelta(minutes=15),
        "overdue_grace": timedelta(minutes=30),
        "snooze_delay": timedelta(minutes=15),
        "horizon": timedelta(days=30),
        "log_match_tolerance": timedelta(hours=12),
    }


def test_environment_overrides_timings(monkeypatch):
    monkeypatch.setenv("SNOOZE_MINUTES", "10")
    monkeypatch.setenv("MATERIALIZE_HORIZON_DAYS", "7")

    options = Settings().flow_options()

    assert options["snooze_delay"] == timedelta(minutes=10)
    assert options["horizon"] == timedelta(days=7)


def test_build_flow_wires_sql_store_and_push_notifier(tmp_path):
    config = Settings(DATABASE_URL=f"sqlite:///{tmp_path / 'petmeds.db'}", SNOOZE_MINUTES=20)

    flow = build_flow(config)

    assert isinstance(flow.store, SqlStore)
    assert isinstance(flow.scanner.notifier, PushGatewayNotifier)
    assert flow.snooze_delay == timedelta(minutes=20)
    flow.scanner.notifier.close()
