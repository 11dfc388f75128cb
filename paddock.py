from __future__ import annotations
# paddock.py
# Racecard harvesting for Paddock: models, the bounded task pool, and the
# Playwright-driven race-link discovery and runner extraction.

"""
Paddock - daily racecard harvesting.

Discovers every race on the Betfair racecards index, visits each racecard with
a small pool of browser pages and writes the structured runners to
``betfair-racecards-<date>.json``.
"""
import argparse
import asyncio
import json
import os
import random
import re
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    ClassVar,
    Dict,
    Final,
    List,
    Optional,
    Sequence,
    TypeVar,
)
from urllib.parse import urljoin

import structlog
from playwright.async_api import BrowserContext, Page, Route, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from pydantic import BaseModel, ConfigDict, Field, field_validator
from selectolax.parser import HTMLParser, Node

from paddock_utils import (
    BASE_URL,
    RACECARDS_URL,
    RESULTS_SEGMENT,
    clean_text,
    configure_logging,
    today_iso,
)

# --- TYPE VARIABLES ---
T = TypeVar("T")
R = TypeVar("R")

# --- CONSTANTS ---
DEFAULT_CONCURRENCY: Final[int] = 2
SKIPPED_FINISHED: Final[str] = "skipped_finished"

CHROME_USER_AGENT: Final[str] = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)

BLOCKED_RESOURCE_TYPES: Final[frozenset] = frozenset({"image", "font", "media"})

COOKIE_ACCEPT_SELECTOR: Final[str] = 'button:has-text("Accept")'
COURSE_HEADING_SELECTOR: Final[str] = "h2.typography-h280"
RACE_LIST_CLASS: Final[str] = "race_navigation"
RACE_LINK_SELECTOR: Final[str] = "li.race_navigation__item a"
RUNNER_CARD_SELECTOR: Final[str] = ".featured_runner"

# "J: A P McCoy" -> "A P McCoy"
LABEL_PREFIX_RE = re.compile(r"^[A-Za-z]{1,3}\s*:\s*")

logger = structlog.get_logger("paddock")


# --- EXCEPTIONS ---
class PaddockException(Exception):
    """Base exception for all Paddock errors."""
    pass


class ConfigurationError(PaddockException):
    pass


class NoLinksFound(PaddockException):
    def __init__(self, url: str):
        self.url = url
        super().__init__(f"No race links found on index {url}")


class ArchiveError(PaddockException):
    def __init__(self, path: Path, message: str):
        self.path = path
        super().__init__(f"{path}: {message}")


class InvalidDateError(PaddockException, ValueError):
    pass


class AnalysisError(PaddockException):
    pass


class AnalysisHttpError(AnalysisError):
    def __init__(self, status_code: int, url: str, body: str = ""):
        self.status_code = status_code
        self.url = url
        detail = f" | body: {body}" if body else ""
        super().__init__(f"Received HTTP {status_code} from {url}{detail}")

    @property
    def retryable(self) -> bool:
        return self.status_code == 429 or self.status_code >= 500


# --- MODELS ---
class PaddockBaseModel(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True,
        str_strip_whitespace=True,
    )

    def to_record(self) -> Dict[str, Any]:
        """JSON-ready dict; diagnostic "_" fields are only written when set."""
        data = self.model_dump(mode="json", by_alias=True)
        return {k: v for k, v in data.items() if not (k.startswith("_") and v is None)}


class RaceLink(PaddockBaseModel):
    model_config = ConfigDict(frozen=True)

    course: str
    time: str
    url: str

    @property
    def key(self) -> tuple:
        return (self.course, self.time, self.url)


class RunnerOdds(PaddockBaseModel):
    bookmaker: Optional[str] = None
    exchange: Optional[str] = None

    @field_validator("bookmaker", "exchange", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        return clean_text(v) or None


class Runner(PaddockBaseModel):
    name: str = Field(..., min_length=1)
    jockey: str = ""
    trainer: str = ""
    form: str = ""
    odds: RunnerOdds = Field(default_factory=RunnerOdds)

    @field_validator("name", "jockey", "trainer", "form", mode="before")
    @classmethod
    def clean(cls, v: Any) -> str:
        return clean_text(v)


class Race(PaddockBaseModel):
    course: str
    time: str
    url: str
    runners: List[Runner] = Field(default_factory=list)
    note: Optional[str] = Field(None, alias="_note")
    error: Optional[str] = Field(None, alias="_error")

    @classmethod
    def from_link(cls, link: RaceLink, **kwargs: Any) -> "Race":
        return cls(course=link.course, time=link.time, url=link.url, **kwargs)


class PaddockConfig(PaddockBaseModel):
    """Every tunable of a run. Defaults are the production values."""
    ENV_PREFIX: ClassVar[str] = "PADDOCK_"

    base_url: str = BASE_URL
    racecards_url: str = RACECARDS_URL
    concurrency: int = Field(DEFAULT_CONCURRENCY, ge=1, le=16)
    base_delay_s: float = Field(0.4, ge=0)
    jitter_s: float = Field(0.3, ge=0)
    retry_on_empty: int = Field(1, ge=0, le=5)
    retry_delay_s: float = Field(1.2, ge=0)
    navigation_timeout_ms: int = Field(30_000, ge=1_000)
    results_navigation_timeout_ms: int = Field(45_000, ge=1_000)
    selector_timeout_ms: int = Field(15_000, ge=0)
    results_settle_ms: int = Field(800, ge=0)
    headless: bool = True
    device: str = "Desktop Chrome"
    locale: str = "en-GB"
    timezone_id: str = "Europe/Dublin"
    user_agent: str = CHROME_USER_AGENT
    docs_dir: Path = Path("docs")
    analysis_url: str = "https://api.perplexity.ai/chat/completions"
    analysis_model: str = "sonar-pro"
    analysis_max_tokens: int = 800
    analysis_temperature: float = 0.1
    analysis_timeout_s: float = 60.0
    analysis_attempts: int = Field(3, ge=1, le=10)
    api_key: Optional[str] = Field(None, repr=False)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, **overrides: Any) -> "PaddockConfig":
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            raw = env.get(f"{cls.ENV_PREFIX}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        api_key = env.get("PERPLEXITY_API_KEY") or env.get("PPLX_API_KEY")
        if api_key and "api_key" not in values:
            values["api_key"] = api_key
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


# --- CONCURRENCY POOL ---
async def map_pool(items: Sequence[T], limit: int, worker: Callable[[T, int], Awaitable[R]]) -> List[R]:
    """
    Runs ``worker(item, index)`` over every item with at most ``limit`` in flight.

    Results are positioned by input index, not completion order. The first
    worker exception propagates once raised; workers already running are not
    cancelled.
    """
    if not items:
        return []
    if limit < 1:
        raise ValueError(f"limit must be >= 1, got {limit}")

    results: List[Any] = [None] * len(items)
    semaphore = asyncio.Semaphore(limit)

    async def run_slot(index: int, item: T) -> None:
        async with semaphore:
            results[index] = await worker(item, index)

    await asyncio.gather(*(run_slot(i, item) for i, item in enumerate(items)))
    return results


# --- BROWSER ---
async def block_heavy_resources(route: Route) -> None:
    if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
        await route.abort()
    else:
        await route.continue_()


@asynccontextmanager
async def browser_context(config: PaddockConfig) -> AsyncIterator[BrowserContext]:
    async with async_playwright() as p:
        browser = await p.chromium.launch(headless=config.headless)
        try:
            device = {k: v for k, v in p.devices[config.device].items() if k != "default_browser_type"}
            context = await browser.new_context(
                **{
                    **device,
                    "locale": config.locale,
                    "timezone_id": config.timezone_id,
                    "user_agent": config.user_agent,
                }
            )
            try:
                yield context
            finally:
                await context.close()
        finally:
            await browser.close()


@asynccontextmanager
async def open_page(context: BrowserContext, block_resources: bool = True) -> AsyncIterator[Page]:
    """A fresh page that is always closed, whatever happens inside the block."""
    page = await context.new_page()
    try:
        if block_resources:
            await page.route("**/*", block_heavy_resources)
        yield page
    finally:
        try:
            await page.close()
        except PlaywrightError as e:
            logger.debug("page_close_failed", error=str(e))


async def dismiss_cookie_banner(page: Page) -> None:
    """Best effort; a missing or stubborn banner is not an error."""
    try:
        button = await page.query_selector(COOKIE_ACCEPT_SELECTOR)
        if button:
            await button.click(timeout=1000)
    except PlaywrightError as e:
        logger.debug("cookie_banner_not_dismissed", error=str(e))


# --- RACE LINK DISCOVERY ---
def _has_class(node: Node, class_name: str) -> bool:
    return class_name in (node.attributes.get("class") or "").split()


def _race_list_for(heading: Node) -> Optional[Node]:
    sibling = heading.next
    while sibling is not None:
        if sibling.tag == "ul" and _has_class(sibling, RACE_LIST_CLASS):
            return sibling
        # A list never belongs to an earlier course
        if sibling.tag == "h2":
            return None
        sibling = sibling.next
    return None


def parse_race_links(html_content: str, page_url: str = RACECARDS_URL) -> List[RaceLink]:
    parser = HTMLParser(html_content)
    links: List[RaceLink] = []
    seen = set()
    for heading in parser.css(COURSE_HEADING_SELECTOR):
        course = clean_text(heading.text())
        race_list = _race_list_for(heading)
        if race_list is None:
            continue
        for anchor in race_list.css(RACE_LINK_SELECTOR):
            href = anchor.attributes.get("href")
            if not href:
                continue
            link = RaceLink(course=course, time=clean_text(anchor.text()), url=urljoin(page_url, href))
            if link.key in seen:
                continue
            seen.add(link.key)
            links.append(link)
    return links


async def discover_race_links(context: BrowserContext, config: PaddockConfig) -> List[RaceLink]:
    async with open_page(context, block_resources=False) as page:
        await page.goto(config.racecards_url, wait_until="domcontentloaded", timeout=config.navigation_timeout_ms)
        await dismiss_cookie_banner(page)
        try:
            await page.wait_for_selector(COURSE_HEADING_SELECTOR, timeout=config.selector_timeout_ms)
        except PlaywrightTimeoutError:
            logger.warning("course_headings_missing", url=config.racecards_url)
        links = parse_race_links(await page.content(), page.url or config.racecards_url)
    if not links:
        raise NoLinksFound(config.racecards_url)
    return links


# --- RUNNER EXTRACTION ---
def _strip_label(text: str) -> str:
    return LABEL_PREFIX_RE.sub("", clean_text(text), count=1).strip()


def _team_field(team: Optional[Node], title_fragment: str, position: int) -> str:
    """
    Picks the jockey/trainer/form item from a runner's team list: by the
    ``abbr`` title when the markup carries one, else by position.
    """
    if team is None:
        return ""
    items = team.css("li")
    titled = False
    for item in items:
        abbr = item.css_first("abbr")
        title = ((abbr.attributes.get("title") if abbr else None) or "").lower()
        if title:
            titled = True
        if title_fragment in title:
            return _strip_label(item.text(separator=" "))
    if not titled and position < len(items):
        return _strip_label(items[position].text(separator=" "))
    return ""


def _price_text(card: Node, selector: str, label: str) -> Optional[str]:
    node = card.css_first(selector)
    if node is None:
        return None
    text = re.sub(label, "", clean_text(node.text(separator=" ")), count=1, flags=re.I)
    return clean_text(text) or None


def parse_runner(card: Node) -> Optional[Runner]:
    name_node = card.css_first("h4.name a") or card.css_first("h4.name")
    name = clean_text(name_node.text()) if name_node else ""
    if not name:
        return None
    team = card.css_first("ul.team")
    return Runner(
        name=name,
        jockey=_team_field(team, "jock", 0),
        trainer=_team_field(team, "trainer", 1),
        form=_team_field(team, "form", 2),
        odds=RunnerOdds(
            bookmaker=_price_text(card, ".market_odds__sbk .price_button", "SBK"),
            exchange=_price_text(card, ".market_odds__exc .price_button--exc", "EXC"),
        ),
    )


def parse_runners(html_content: str) -> List[Runner]:
    parser = HTMLParser(html_content)
    runners: List[Runner] = []
    for card in parser.css(RUNNER_CARD_SELECTOR):
        if runner := parse_runner(card):
            runners.append(runner)
    return runners


async def scrape_race(context: BrowserContext, link: RaceLink, config: PaddockConfig) -> Race:
    """
    Extracts one racecard. Never raises: failures come back as a Race with no
    runners and ``error`` set, finished races with ``note`` set.
    """
    log = logger.bind(course=link.course, time=link.time, url=link.url)
    attempt = 0
    while True:
        try:
            async with open_page(context) as page:
                await page.goto(link.url, wait_until="domcontentloaded", timeout=config.navigation_timeout_ms)
                if RESULTS_SEGMENT in page.url:
                    log.warning("race_already_finished", landed=page.url)
                    return Race.from_link(link, note=SKIPPED_FINISHED)
                await dismiss_cookie_banner(page)
                await page.wait_for_selector(RUNNER_CARD_SELECTOR, timeout=config.selector_timeout_ms)
                runners = parse_runners(await page.content())
        except Exception as e:
            log.error("race_failed", error=str(e))
            return Race.from_link(link, error=str(e))

        if runners or attempt >= config.retry_on_empty:
            if not runners:
                log.warning("no_runners_found", attempts=attempt + 1)
            return Race.from_link(link, runners=runners)
        attempt += 1
        log.info("no_runners_retrying", attempt=attempt)
        await asyncio.sleep(config.retry_delay_s)


async def scrape_racecards(config: PaddockConfig) -> List[Race]:
    async with browser_context(config) as context:
        links = await discover_race_links(context, config)
        logger.info("race_links_found", count=len(links))

        async def scrape_one(link: RaceLink, index: int) -> Race:
            await asyncio.sleep(config.base_delay_s + random.random() * config.jitter_s)
            return await scrape_race(context, link, config)

        return await map_pool(links, config.concurrency, scrape_one)


def racecards_filename(date_str: str) -> str:
    return f"betfair-racecards-{date_str}.json"


def load_json(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ArchiveError(path, f"not valid JSON ({e})") from e
    if not isinstance(data, dict):
        raise ArchiveError(path, f"expected a JSON object, got {type(data).__name__}")
    return data


def write_json(path: Path, payload: Dict[str, Any]) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, ensure_ascii=False)
        f.write("\n")


async def run_scrape(config: PaddockConfig, out_path: Optional[Path] = None, date_str: Optional[str] = None) -> Path:
    date_str = date_str or today_iso()
    races = await scrape_racecards(config)
    path = out_path or Path(racecards_filename(date_str))
    write_json(path, {"date": date_str, "races": [r.to_record() for r in races]})
    with_runners = sum(1 for r in races if r.runners)
    logger.info("racecards_saved", races=len(races), with_runners=with_runners, path=str(path))
    return path


async def main_scrape(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Paddock racecard scraper")
    parser.add_argument("--out", type=Path, help="Output JSON file (default: betfair-racecards-<date>.json)")
    parser.add_argument("--date", type=str, help="Date label for the output (default: today, Europe/Dublin)")
    parser.add_argument("--concurrency", type=int, help=f"Pages in flight (default: {DEFAULT_CONCURRENCY})")
    parser.add_argument("--headed", action="store_true", help="Show the browser window")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        config = PaddockConfig.from_env(concurrency=args.concurrency, headless=False if args.headed else None)
        await run_scrape(config, out_path=args.out, date_str=args.date)
    except (PaddockException, PlaywrightError, ValueError) as e:
        logger.error("scrape_failed", error=str(e))
        return 1
    return 0


def run_main_scrape() -> None:
    sys.exit(asyncio.run(main_scrape()))


if __name__ == "__main__":
    run_main_scrape()
