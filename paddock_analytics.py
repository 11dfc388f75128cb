from __future__ import annotations
# paddock_analytics.py
# Result harvesting for Paddock: finds each archived race's winner and scores the shortlist

import argparse
import asyncio
import random
import re
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Final, List, Optional, Tuple
from urllib.parse import urlparse

import structlog
from playwright.async_api import BrowserContext
from playwright.async_api import Error as PlaywrightError
from pydantic import Field, field_validator
from selectolax.parser import HTMLParser, Node

from paddock import (
    InvalidDateError,
    PaddockBaseModel,
    PaddockConfig,
    PaddockException,
    browser_context,
    dismiss_cookie_banner,
    load_json,
    map_pool,
    open_page,
    write_json,
)
from paddock_archive import archive_path_for, results_path_for
from paddock_utils import (
    HORSE_PROFILE_SEGMENT,
    RACECARD_SEGMENT,
    RESULTS_SEGMENT,
    clean_text,
    configure_logging,
    names_match,
    parse_iso_date,
    yesterday_iso,
)

TABLE_SELECTOR: Final[str] = "table, .results_table, .result_table"
CARD_SELECTOR: Final[str] = ".result_runner, .runner, .card, .result__runner"
HORSE_LINK_SELECTOR: Final[str] = f'a[href*="{HORSE_PROFILE_SEGMENT}"]'

WINNER_POSITION_RE = re.compile(r"^1(st)?$", re.I)
# Some tables print "1/9" (position / field size)
WINNER_OF_FIELD_RE = re.compile(r"^1/\d+")

logger = structlog.get_logger("paddock_analytics")


# --- MODELS ---
class WinnerRecord(PaddockBaseModel):
    name: str = Field(..., min_length=1)
    sp: Optional[str] = None
    jockey: Optional[str] = None
    trainer: Optional[str] = None

    @field_validator("sp", "jockey", "trainer", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        return clean_text(v) or None


class ResultRecord(PaddockBaseModel):
    course: str
    time: str
    url: str
    winner: Optional[WinnerRecord] = None
    hit: bool = False
    error: Optional[str] = Field(None, alias="_error")


# --- DATES & URLS ---
def resolve_target_date(value: Optional[str] = None, now: Optional[datetime] = None) -> str:
    """An explicit YYYY-MM-DD date, or yesterday in Europe/Dublin."""
    if value is None:
        return yesterday_iso(now)
    parsed = parse_iso_date(value)
    if parsed is None:
        raise InvalidDateError(f"Invalid date {value!r}; expected YYYY-MM-DD")
    return parsed.isoformat()


def to_results_url(url: str) -> str:
    """Maps a racecard URL onto its results page, dropping any query string."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return url.replace(RACECARD_SEGMENT, RESULTS_SEGMENT)
    if not parsed.scheme or not parsed.netloc:
        return url.replace(RACECARD_SEGMENT, RESULTS_SEGMENT)
    return f"{parsed.scheme}://{parsed.netloc}{parsed.path.replace(RACECARD_SEGMENT, RESULTS_SEGMENT)}"


# --- WINNER STRATEGIES ---
def _first_text(node: Node, selector: str) -> Optional[str]:
    found = node.css_first(selector)
    if found is None:
        return None
    return clean_text(found.text(separator=" ")) or None


def _is_winning_position(text: Optional[str], allow_field_size: bool = False) -> bool:
    text = clean_text(text)
    if WINNER_POSITION_RE.match(text):
        return True
    return allow_field_size and bool(WINNER_OF_FIELD_RE.match(text))


def _winner_from_row(row: Node) -> Optional[WinnerRecord]:
    cells = row.css("td")
    position = clean_text(cells[0].text()) if cells else _first_text(row, ".position, .pos")
    if not _is_winning_position(position, allow_field_size=True):
        return None
    name = _first_text(row, f"{HORSE_LINK_SELECTOR}, .name a, .runner_name a, .horse a")
    if not name:
        return None
    return WinnerRecord(
        name=name,
        sp=_first_text(row, "td.sp, td.price, .sp, .odds, .returned_sp"),
        jockey=_first_text(row, ".jockey, td.jockey, .runner_jockey"),
        trainer=_first_text(row, ".trainer, td.trainer, .runner_trainer"),
    )


def winner_from_table(parser: HTMLParser) -> Optional[WinnerRecord]:
    for table in parser.css(TABLE_SELECTOR):
        for row in table.css("tbody tr"):
            if row.css_first("td, th") is None:
                continue
            if winner := _winner_from_row(row):
                return winner
    return None


def winner_from_cards(parser: HTMLParser) -> Optional[WinnerRecord]:
    for card in parser.css(CARD_SELECTOR):
        if not _is_winning_position(_first_text(card, ".position, .pos, .badge")):
            continue
        name = _first_text(card, f"{HORSE_LINK_SELECTOR}, .name a")
        if not name:
            continue
        return WinnerRecord(
            name=name,
            sp=_first_text(card, ".sp, .odds, .price"),
            jockey=_first_text(card, ".jockey"),
            trainer=_first_text(card, ".trainer"),
        )
    return None


def winner_from_horse_link(parser: HTMLParser) -> Optional[WinnerRecord]:
    """Last resort: the first horse-profile link on the page."""
    anchor = parser.css_first(HORSE_LINK_SELECTOR)
    if anchor is None:
        return None
    name = clean_text(anchor.text())
    return WinnerRecord(name=name) if name else None


WINNER_STRATEGIES: Tuple[Callable[[HTMLParser], Optional[WinnerRecord]], ...] = (
    winner_from_table,
    winner_from_cards,
    winner_from_horse_link,
)


def extract_winner(html_content: str) -> Optional[WinnerRecord]:
    parser = HTMLParser(html_content)
    for strategy in WINNER_STRATEGIES:
        if winner := strategy(parser):
            return winner
    return None


def shortlist_hit(winner: Optional[WinnerRecord], shortlist: Optional[List[Dict[str, Any]]]) -> bool:
    if winner is None:
        return False
    return any(names_match(winner.name, pick.get("name")) for pick in shortlist or [] if isinstance(pick, dict))


# --- HARVESTING ---
async def fetch_result(context: BrowserContext, race: Dict[str, Any], config: PaddockConfig) -> ResultRecord:
    """Never raises: a failed page is returned as a record with ``error`` set."""
    course = clean_text(race.get("course"))
    time = clean_text(race.get("time"))
    url = to_results_url(race.get("url") or "")
    log = logger.bind(course=course, time=time, url=url)
    try:
        async with open_page(context) as page:
            await page.goto(url, wait_until="domcontentloaded", timeout=config.results_navigation_timeout_ms)
            await dismiss_cookie_banner(page)
            await asyncio.sleep(config.results_settle_ms / 1000)
            winner = extract_winner(await page.content())
    except Exception as e:
        log.error("result_failed", error=str(e))
        return ResultRecord(course=course, time=time, url=url, error=str(e))

    if winner is None:
        log.warning("winner_not_found")
    hit = shortlist_hit(winner, race.get("shortlist"))
    return ResultRecord(course=course, time=time, url=url, winner=winner, hit=hit)


async def fetch_results(context: BrowserContext, races: List[Dict[str, Any]], config: PaddockConfig) -> List[ResultRecord]:
    async def fetch_one(race: Dict[str, Any], index: int) -> ResultRecord:
        await asyncio.sleep(config.base_delay_s + random.random() * config.jitter_s)
        return await fetch_result(context, race, config)

    return await map_pool(races, config.concurrency, fetch_one)


def merge_results(races: List[Dict[str, Any]], results: List[ResultRecord]) -> List[Dict[str, Any]]:
    """Attaches ``result`` and ``hit`` to each archived race, keeping everything else."""
    merged = []
    for race, record in zip(races, results):
        updated = {**race, "result": record.winner.to_record() if record.winner else None, "hit": record.hit}
        if record.error:
            updated["_error"] = record.error
        merged.append(updated)
    return merged


async def run_results(date_str: str, config: PaddockConfig, context: Optional[BrowserContext] = None) -> Optional[Path]:
    """
    Reconciles the archived picks of ``date_str`` with the published results.

    Returns the results file path, or None when no picks were archived for
    that date. An unreadable archive raises ArchiveError.
    """
    picks_path = archive_path_for(date_str, config.docs_dir)
    if not picks_path.exists():
        logger.warning("no_archived_picks", path=str(picks_path))
        return None
    picks = load_json(picks_path)
    races = [r for r in picks.get("races") or [] if isinstance(r, dict)]

    if context is None:
        async with browser_context(config) as ctx:
            results = await fetch_results(ctx, races, config)
    else:
        results = await fetch_results(context, races, config)

    results_path = results_path_for(date_str, config.docs_dir)
    write_json(results_path, {"date": date_str, "results": [r.to_record() for r in results]})
    write_json(picks_path, {**picks, "races": merge_results(races, results)})

    logger.info(
        "results_saved",
        path=str(results_path),
        races=len(results),
        winners=sum(1 for r in results if r.winner),
        hits=sum(1 for r in results if r.hit),
    )
    return results_path


async def main_results(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Paddock result reconciliation")
    parser.add_argument("--date", type=str, help="Race date YYYY-MM-DD (default: yesterday, Europe/Dublin)")
    parser.add_argument("--docs", type=Path, help="Archive root (default: docs)")
    parser.add_argument("--concurrency", type=int, help="Pages in flight")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        date_str = resolve_target_date(args.date)
        config = PaddockConfig.from_env(docs_dir=args.docs, concurrency=args.concurrency)
        await run_results(date_str, config)
    except (PaddockException, PlaywrightError, ValueError) as e:
        logger.error("results_failed", error=str(e))
        return 1
    return 0


def run_main_results() -> None:
    sys.exit(asyncio.run(main_results()))


if __name__ == "__main__":
    run_main_results()
