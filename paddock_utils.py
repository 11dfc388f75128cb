import logging
import re
from datetime import date, datetime, timedelta
from typing import Any, Final, Optional
from zoneinfo import ZoneInfo

import structlog

DUBLIN = ZoneInfo("Europe/Dublin")

BASE_URL: Final[str] = "https://betting.betfair.com"
RACECARDS_URL: Final[str] = f"{BASE_URL}/horse-racing/racecards/"
RACECARD_SEGMENT: Final[str] = "/racecards/"
RESULTS_SEGMENT: Final[str] = "/results/"
HORSE_PROFILE_SEGMENT: Final[str] = "/horse-racing/horse/"

ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# Odds patterns, checked in this order
DECIMAL_ODDS_RE = re.compile(r"^\d+(\.\d+)?$")
FRACTIONAL_ODDS_RE = re.compile(r"^(\d+)\s*/\s*(\d+)$")
EMBEDDED_ODDS_RE = re.compile(r"(\d+(?:\.\d+)?)(?:\s*/\s*(\d+))?")


def clean_text(text: Any) -> str:
    """Strips leading/trailing whitespace and collapses internal whitespace (incl. NBSP)."""
    if not text:
        return ""
    return " ".join(str(text).replace("\xa0", " ").split())


def normalize_name(name: Optional[str]) -> str:
    """Case- and whitespace-insensitive key used to match horse names."""
    return clean_text(name).lower()


def names_match(a: Optional[str], b: Optional[str]) -> bool:
    na, nb = normalize_name(a), normalize_name(b)
    return bool(na) and na == nb


def _fractional(numerator: str, denominator: str) -> Optional[float]:
    den = float(denominator)
    if den <= 0:
        return None
    return float(numerator) / den + 1.0


def parse_odds_to_decimal(odds: Any) -> Optional[float]:
    """
    Parses decimal ("3.7"), fractional ("5/2") or source-tagged ("EXC 4.8")
    odds text into decimal odds. Returns None when nothing usable is found.

    The fractional pattern is tried before the embedded-number scan so that
    "5/2" is never read as the decimal 5.
    """
    if odds is None:
        return None
    s = clean_text(odds)
    if not s:
        return None

    value: Optional[float] = None
    if DECIMAL_ODDS_RE.match(s):
        value = float(s)
    elif m := FRACTIONAL_ODDS_RE.match(s):
        value = _fractional(m.group(1), m.group(2))
    elif m := EMBEDDED_ODDS_RE.search(s):
        if m.group(2) is not None:
            value = _fractional(m.group(1), m.group(2))
        else:
            value = float(m.group(1))

    # Decimal odds always pay back more than the stake
    if value is None or value <= 1.0:
        return None
    return value


def today_iso(now: Optional[datetime] = None) -> str:
    return (now or datetime.now(DUBLIN)).strftime("%Y-%m-%d")


def yesterday_iso(now: Optional[datetime] = None) -> str:
    current = now or datetime.now(DUBLIN)
    return (current.date() - timedelta(days=1)).isoformat()


def parse_iso_date(value: str) -> Optional[date]:
    """Strict YYYY-MM-DD parsing; returns None for anything else."""
    value = value.strip()
    if not ISO_DATE_RE.match(value):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def configure_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="%H:%M:%S"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=False,
    )
