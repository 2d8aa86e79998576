from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from livefolio.schemas.portfolio import MarketStatus

MARKET_TZ = ZoneInfo("America/New_York")
MARKET_OPEN_TIME = time(9, 30)
MARKET_CLOSE_TIME = time(16, 0)


def to_market_time(value: datetime | None = None, tz: ZoneInfo = MARKET_TZ) -> datetime:
    """Return ``value`` in market-local time; naive values are taken as market-local."""
    if value is None:
        return datetime.now(tz)
    if value.tzinfo is None:
        return value.replace(tzinfo=tz)
    return value.astimezone(tz)


def is_trading_day(day: date) -> bool:
    return day.weekday() < 5


def next_trading_day(day: date) -> date:
    candidate = day + timedelta(days=1)
    while not is_trading_day(candidate):
        candidate += timedelta(days=1)
    return candidate


def is_market_open(now: datetime | None = None, tz: ZoneInfo = MARKET_TZ) -> bool:
    """Return whether the regular equity session is open in market-local time."""
    local_now = to_market_time(now, tz)
    if not is_trading_day(local_now.date()):
        return False
    return MARKET_OPEN_TIME <= local_now.time() < MARKET_CLOSE_TIME


def market_has_opened_since(
    purchased_at: datetime,
    now: datetime | None = None,
    tz: ZoneInfo = MARKET_TZ,
) -> bool:
    """Whether a session has traded since ``purchased_at``.

    Same calendar day: today must be a weekday, ``now`` at/after the open and the
    purchase itself before the close (an after-hours buy waits for the next
    session). Earlier day: true once the open of the first weekday after the
    purchase day has been reached.
    """
    local_buy = to_market_time(purchased_at, tz)
    local_now = to_market_time(now, tz)

    if local_buy.date() == local_now.date():
        return (
            is_trading_day(local_now.date())
            and local_now.time() >= MARKET_OPEN_TIME
            and local_buy.time() < MARKET_CLOSE_TIME
        )

    if local_buy.date() > local_now.date():
        return False

    first_session = datetime.combine(next_trading_day(local_buy.date()), MARKET_OPEN_TIME, tzinfo=tz)
    return local_now >= first_session


def _minutes_between(start: datetime, end: datetime) -> int:
    # same-tzinfo subtraction ignores DST offsets, so compare in UTC
    delta = end.astimezone(timezone.utc) - start.astimezone(timezone.utc)
    return max(int(delta.total_seconds() // 60), 0)


def market_status(now: datetime | None = None, tz: ZoneInfo = MARKET_TZ) -> MarketStatus:
    local_now = to_market_time(now, tz)
    today = local_now.date()

    if is_market_open(local_now, tz):
        close_at = datetime.combine(today, MARKET_CLOSE_TIME, tzinfo=tz)
        return MarketStatus(is_open=True, minutes_until_close=_minutes_between(local_now, close_at))

    if is_trading_day(today) and local_now.time() < MARKET_OPEN_TIME:
        open_day = today
    else:
        open_day = next_trading_day(today)
    open_at = datetime.combine(open_day, MARKET_OPEN_TIME, tzinfo=tz)
    return MarketStatus(is_open=False, minutes_until_open=_minutes_between(local_now, open_at))
