from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from dateutil.relativedelta import relativedelta
from hypothesis import given, settings
from hypothesis import strategies as st

from petmeds import occurrences
from shared.contracts.models import build_schedule

UTC = timezone.utc


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=UTC)


def test_interval_schedule_includes_both_window_boundaries():
    schedule = build_schedule(interval_quantity=8, interval_unit="hour", active_window={"start": date(2024, 1, 1)})

    result = list(occurrences(schedule, utc(2024, 1, 1), utc(2024, 1, 2)))

    assert result == [utc(2024, 1, 1, 0), utc(2024, 1, 1, 8), utc(2024, 1, 1, 16), utc(2024, 1, 2, 0)]


def test_fixed_times_on_filtered_weekdays():
    schedule = build_schedule(
        times_of_day=["08:00", "20:00"],
        weekday_filter={0, 2, 4},
        active_window={"start": date(2024, 1, 1)},
    )

    # 2024-01-01 is a Monday
    result = list(occurrences(schedule, utc(2024, 1, 1), utc(2024, 1, 7, 23, 59)))

    assert len(result) == 6
    assert {instant.weekday() for instant in result} == {0, 2, 4}
    assert {instant.time() for instant in result} == {time(8), time(20)}


def test_series_can_be_walked_twice():
    schedule = build_schedule(interval_quantity=6, interval_unit="hour", active_window={"start": date(2024, 1, 1)})
    series = occurrences(schedule, utc(2024, 1, 1), utc(2024, 1, 3))

    assert list(series) == list(series)
    assert len(list(series)) == 9


def test_as_needed_schedule_generates_nothing():
    schedule = build_schedule(
        times_of_day=["08:00"],
        as_needed=True,
        active_window={"start": date(2024, 1, 1)},
    )
    assert list(occurrences(schedule, utc(2024, 1, 1), utc(2024, 12, 31))) == []


def test_inverted_window_generates_nothing():
    schedule = build_schedule(active_window={"start": date(2024, 1, 1)})
    assert list(occurrences(schedule, utc(2024, 1, 2), utc(2024, 1, 1))) == []


def test_active_window_end_day_is_inclusive():
    schedule = build_schedule(
        times_of_day=["09:00"],
        active_window={"start": date(2024, 3, 1), "end": date(2024, 3, 3)},
    )

    result = list(occurrences(schedule, utc(2024, 2, 1), utc(2024, 4, 1)))

    assert result == [utc(2024, 3, 1, 9), utc(2024, 3, 2, 9), utc(2024, 3, 3, 9)]


def test_interval_phase_survives_a_rolling_window():
    schedule = build_schedule(interval_quantity=8, interval_unit="hour", active_window={"start": date(2024, 1, 1)})

    result = list(occurrences(schedule, utc(2024, 1, 5, 3, 17), utc(2024, 1, 6)))

    assert result == [utc(2024, 1, 5, 8), utc(2024, 1, 5, 16), utc(2024, 1, 6, 0)]


def test_overlapping_windows_agree_on_shared_instants():
    schedule = build_schedule(interval_quantity=7, interval_unit="hour", active_window={"start": date(2024, 1, 1)})
    whole = list(occurrences(schedule, utc(2024, 1, 1), utc(2024, 1, 10)))
    first = list(occurrences(schedule, utc(2024, 1, 1), utc(2024, 1, 5, 12)))
    second = list(occurrences(schedule, utc(2024, 1, 4), utc(2024, 1, 10)))

    assert sorted(set(first) | set(second)) == whole


def test_anchor_moves_the_interval_phase():
    schedule = build_schedule(interval_quantity=8, interval_unit="hour", active_window={"start": date(2024, 1, 1)})

    result = list(occurrences(schedule, utc(2024, 1, 5), utc(2024, 1, 5, 23), anchor=utc(2024, 1, 5, 3)))

    assert result == [utc(2024, 1, 5, 3), utc(2024, 1, 5, 11), utc(2024, 1, 5, 19)]


def test_interval_series_starts_no_earlier_than_active_start():
    schedule = build_schedule(interval_quantity=12, interval_unit="hour", active_window={"start": date(2024, 1, 3)})

    result = list(occurrences(schedule, utc(2024, 1, 1), utc(2024, 1, 3, 12)))

    assert result == [utc(2024, 1, 3, 0), utc(2024, 1, 3, 12)]


def test_monthly_series_clamps_to_month_end():
    schedule = build_schedule(interval_quantity=1, interval_unit="month", active_window={"start": date(2024, 1, 31)})

    result = list(occurrences(schedule, utc(2024, 1, 1), utc(2024, 4, 30)))

    assert result == [utc(2024, 1, 31), utc(2024, 2, 29), utc(2024, 3, 29), utc(2024, 4, 29)]


def test_fixed_times_follow_local_wall_clock_across_dst():
    schedule = build_schedule(
        times_of_day=["08:00"],
        timezone="America/New_York",
        active_window={"start": date(2024, 3, 9)},
    )

    result = list(occurrences(schedule, utc(2024, 3, 9), utc(2024, 3, 11)))

    assert result == [utc(2024, 3, 9, 13), utc(2024, 3, 10, 12)]


def test_times_collapsing_into_a_dst_gap_are_emitted_once():
    schedule = build_schedule(
        times_of_day=["02:00", "03:00"],
        timezone="America/New_York",
        active_window={"start": date(2024, 3, 10), "end": date(2024, 3, 10)},
    )

    result = list(occurrences(schedule, utc(2024, 3, 10), utc(2024, 3, 11)))

    assert result == [utc(2024, 3, 10, 7)]


def test_weekday_filter_uses_the_local_calendar_day():
    schedule = build_schedule(
        times_of_day=["23:30"],
        weekday_filter=[0],
        timezone="America/Los_Angeles",
        active_window={"start": date(2024, 1, 1)},
    )

    result = list(occurrences(schedule, utc(2024, 1, 1), utc(2024, 1, 8)))

    # Monday 23:30 in Los Angeles is Tuesday morning in UTC
    assert result == [utc(2024, 1, 2, 7, 30)]


def test_day_interval_counts_elapsed_time():
    schedule = build_schedule(
        interval_quantity=1,
        interval_unit="day",
        timezone="America/New_York",
        active_window={"start": date(2024, 3, 9)},
    )

    result = list(occurrences(schedule, utc(2024, 3, 9), utc(2024, 3, 11, 12)))

    assert result == [utc(2024, 3, 9, 5), utc(2024, 3, 10, 5), utc(2024, 3, 11, 5)]


windows = st.tuples(
    st.integers(min_value=0, max_value=60 * 24 * 400),
    st.integers(min_value=0, max_value=60 * 24 * 10),
)
base = utc(2023, 6, 1)


@settings(max_examples=60, deadline=None)
@given(
    times=st.sets(st.times().map(lambda t: t.replace(second=0, microsecond=0, fold=0)), min_size=1, max_size=4),
    weekdays=st.one_of(st.none(), st.sets(st.integers(min_value=0, max_value=6), min_size=1)),
    zone=st.sampled_from(["UTC", "Europe/London", "America/New_York", "Asia/Kolkata"]),
    window=windows,
)
def test_fixed_time_instants_are_listed_times_on_allowed_days(times, weekdays, zone, window):
    schedule = build_schedule(
        times_of_day=sorted(times),
        weekday_filter=weekdays,
        timezone=zone,
        active_window={"start": date(2023, 1, 1)},
    )
    start = base + timedelta(minutes=window[0])
    end = start + timedelta(minutes=window[1])

    result = list(occurrences(schedule, start, end))

    assert result == sorted(set(result))
    for instant in result:
        assert start <= instant <= end
        local = instant.astimezone(ZoneInfo(zone))
        if weekdays is not None:
            assert local.weekday() in weekdays
        # gap times resolve onto the following wall-clock hour
        assert local.time() in times or local.replace(hour=(local.hour - 1) % 24).time() in times


@settings(max_examples=60, deadline=None)
@given(
    quantity=st.integers(min_value=1, max_value=48),
    unit=st.sampled_from(["minute", "hour", "day", "week"]),
    zone=st.sampled_from(["UTC", "America/New_York", "Australia/Sydney"]),
    window=windows,
)
def test_interval_instants_are_evenly_spaced(quantity, unit, zone, window):
    schedule = build_schedule(
        interval_quantity=quantity,
        interval_unit=unit,
        timezone=zone,
        active_window={"start": date(2023, 1, 1)},
    )
    start = base + timedelta(minutes=window[0])
    end = start + timedelta(minutes=window[1])

    result = list(occurrences(schedule, start, end))

    step = schedule.interval_step()
    for earlier, later in zip(result, result[1:]):
        assert later - earlier == step
    for instant in result:
        assert start <= instant <= end
    if result:
        assert result[0] - step < start


@settings(max_examples=40, deadline=None)
@given(
    quantity=st.integers(min_value=1, max_value=6),
    start_day=st.dates(min_value=date(2023, 1, 1), max_value=date(2024, 12, 31)),
)
def test_monthly_instants_step_by_calendar_months(quantity, start_day):
    schedule = build_schedule(
        interval_quantity=quantity,
        interval_unit="month",
        active_window={"start": start_day},
    )
    start = datetime.combine(start_day, time(0), tzinfo=UTC)

    result = list(occurrences(schedule, start, start + timedelta(days=800)))

    assert result[0] == start
    for earlier, later in zip(result, result[1:]):
        assert later == earlier + relativedelta(months=quantity)


@settings(max_examples=30, deadline=None)
@given(
    times=st.lists(st.sampled_from(["06:00", "12:30", "21:45"]), min_size=1, unique=True),
    window=windows,
)
def test_as_needed_is_always_empty(times, window):
    schedule = build_schedule(times_of_day=times, as_needed=True, active_window={"start": date(2023, 1, 1)})
    start = base + timedelta(minutes=window[0])
    assert list(occurrences(schedule, start, start + timedelta(minutes=window[1]))) == []
