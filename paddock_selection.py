from __future__ import annotations
# paddock_selection.py
# Odds-based probability model and the top-three value selection for Paddock

import argparse
import sys
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Final, List, Optional, Type

import structlog
from pydantic import Field, ValidationError, field_validator

from paddock import (
    ArchiveError,
    PaddockBaseModel,
    PaddockConfig,
    PaddockException,
    load_json,
)
from paddock_archive import archive_selection
from paddock_utils import DUBLIN, clean_text, configure_logging, parse_odds_to_decimal, today_iso

MAX_PROBABILITY: Final[float] = 0.99
HIGH_CONFIDENCE_FACTOR: Final[float] = 1.10
MEDIUM_CONFIDENCE_FACTOR: Final[float] = 1.05
RECENT_WIN_FACTOR: Final[float] = 1.05
RECENT_LAST_FACTOR: Final[float] = 0.95
SHORTLIST_SIZE: Final[int] = 3

log = structlog.get_logger("paddock_selection")


# --- MODELS ---
class AnalysisPick(PaddockBaseModel):
    name: str = Field(..., min_length=1)
    jockey: str = ""
    trainer: str = ""
    form: str = ""
    odds_note: str = ""
    rationale: str = ""
    confidence: str = ""
    exchange: Optional[str] = None
    odds: Optional[str] = None

    @field_validator("name", "jockey", "trainer", "form", "odds_note", "rationale", "confidence", mode="before")
    @classmethod
    def as_text(cls, v: Any) -> str:
        return clean_text(v)

    @field_validator("exchange", "odds", mode="before")
    @classmethod
    def as_optional_text(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        return clean_text(v) or None

    @property
    def odds_text(self) -> Optional[str]:
        """Explicit prices win over the analyst's free-text note."""
        return self.exchange or self.odds or self.odds_note or None


class ScoredPick(AnalysisPick):
    odds_dec: Optional[float] = Field(None, alias="oddsDec")
    probability: float = Field(0.0, ge=0.0, le=MAX_PROBABILITY)
    expected_value: float = -1.0


class SelectionResult(PaddockBaseModel):
    course: str
    time: str
    url: str
    shortlist: List[ScoredPick] = Field(..., min_length=1, max_length=SHORTLIST_SIZE)
    combo_profit_check: float = Field(..., gt=0)


# --- PROBABILITY MODEL ---
def implied_probability(odds_dec: Optional[float]) -> float:
    if odds_dec is None or odds_dec <= 1:
        return 0.0
    return 1.0 / odds_dec


def adjusted_probability(odds_dec: Optional[float], confidence: Optional[str] = None, form: Optional[str] = None) -> float:
    """
    Implied probability nudged by the analyst's confidence and the runner's
    recent form, clamped to [0, 0.99].
    """
    p = implied_probability(odds_dec)
    conf = (confidence or "").lower()
    if "high" in conf:
        p *= HIGH_CONFIDENCE_FACTOR
    elif "medium" in conf:
        p *= MEDIUM_CONFIDENCE_FACTOR

    form = form or ""
    if "1" in form:
        p *= RECENT_WIN_FACTOR
    if "0" in form:
        p *= RECENT_LAST_FACTOR
    return max(0.0, min(p, MAX_PROBABILITY))


# --- SELECTION ENGINE ---
def expected_value(probability: Optional[float], odds_dec: Optional[float]) -> float:
    """Net return per unit stake; -1 when either input is missing or zero."""
    if not probability or not odds_dec:
        return -1.0
    return probability * (odds_dec - 1) - (1 - probability)


def combo_profit_check(picks: List[ScoredPick], stake_units: int = SHORTLIST_SIZE) -> float:
    """
    Profit when one unit is staked on each of ``stake_units`` picks and exactly
    one wins: the first pick, in rank order, whose odds clear the outlay.
    """
    for pick in picks:
        if pick.odds_dec and pick.odds_dec - stake_units > 0:
            return pick.odds_dec - stake_units
    return -1.0


def score_pick(pick: AnalysisPick) -> ScoredPick:
    odds_dec = parse_odds_to_decimal(pick.odds_text)
    probability = adjusted_probability(odds_dec, pick.confidence, pick.form)
    return ScoredPick(
        **pick.model_dump(include=set(AnalysisPick.model_fields)),
        odds_dec=odds_dec,
        probability=probability,
        expected_value=expected_value(probability, odds_dec),
    )


class BaseAnalyzer(ABC):
    """The interface every shortlist analyzer implements."""

    def __init__(self, **kwargs):
        pass

    @abstractmethod
    def qualify_races(self, races: List[Dict[str, Any]]) -> Dict[str, Any]:
        pass


class TopThreeValueAnalyzer(BaseAnalyzer):
    """
    Keeps the positive-EV picks of each race, ranks them by adjusted
    probability, caps them at three and requires the combo stake to be
    recoverable by at least one of them. Races that fail are dropped.

    ``min_profitable`` is the number of positive-EV picks a race needs before
    the combo check is attempted: 1 by default, 3 for the strict variant.
    """

    def __init__(self, min_profitable: int = 1, max_picks: int = SHORTLIST_SIZE, stake_units: int = SHORTLIST_SIZE, **kwargs):
        super().__init__(**kwargs)
        if not 1 <= min_profitable <= max_picks:
            raise ValueError(f"min_profitable must be between 1 and {max_picks}")
        self.min_profitable = min_profitable
        self.max_picks = max_picks
        self.stake_units = stake_units

    @property
    def name(self) -> str:
        return "top3_strict" if self.min_profitable >= self.max_picks else "top3"

    @property
    def criteria(self) -> Dict[str, Any]:
        return {
            "mode": self.name,
            "min_profitable": self.min_profitable,
            "max_picks": self.max_picks,
            "stake_units": self.stake_units,
        }

    def rank(self, picks: List[AnalysisPick]) -> List[ScoredPick]:
        scored = [score_pick(p) for p in picks]
        profitable = [p for p in scored if p.expected_value > 0]
        # sorted() is stable: equal probabilities keep their input order
        return sorted(profitable, key=lambda p: p.probability, reverse=True)[: self.max_picks]

    def select_race(self, course: str, time: str, url: str, picks: List[AnalysisPick]) -> Optional[SelectionResult]:
        shortlist = self.rank(picks)
        if len(shortlist) < self.min_profitable:
            return None
        potential = combo_profit_check(shortlist, self.stake_units)
        if potential <= 0:
            return None
        return SelectionResult(course=course, time=time, url=url, shortlist=shortlist, combo_profit_check=potential)

    def qualify_races(self, races: List[Dict[str, Any]]) -> Dict[str, Any]:
        qualified: List[SelectionResult] = []
        for race in races:
            course = clean_text(race.get("course"))
            time = clean_text(race.get("time"))
            picks: List[AnalysisPick] = []
            for raw in race.get("shortlist") or []:
                try:
                    picks.append(AnalysisPick.model_validate(raw))
                except ValidationError as e:
                    log.warning("invalid_pick_skipped", course=course, time=time, error=str(e))
            result = self.select_race(course, time, race.get("url") or "", picks)
            if result is None:
                log.debug("race_not_qualified", course=course, time=time, picks=len(picks))
                continue
            log.info(
                "race_qualified",
                course=course,
                time=time,
                picks=len(result.shortlist),
                combo_profit=round(result.combo_profit_check, 2),
            )
            qualified.append(result)

        if not qualified:
            log.warning("no_races_qualified", criteria=self.criteria)
        return {"criteria": self.criteria, "races": qualified}


ANALYZERS: Dict[str, Type[BaseAnalyzer]] = {"top3": TopThreeValueAnalyzer}


def get_analyzer(name: str, **kwargs) -> BaseAnalyzer:
    if name == "top3_strict":
        return TopThreeValueAnalyzer(min_profitable=SHORTLIST_SIZE, **kwargs)
    analyzer_class = ANALYZERS.get(name)
    if not analyzer_class:
        log.error("analyzer_not_found", requested_analyzer=name)
        raise ValueError(f"Analyzer '{name}' not found.")
    return analyzer_class(**kwargs)


# --- ORCHESTRATION ---
def build_selection_payload(data: Dict[str, Any], analyzer: BaseAnalyzer) -> Dict[str, Any]:
    result = analyzer.qualify_races(data.get("races") or [])
    return {
        "date": data.get("date") or today_iso(),
        "generated_at": datetime.now(DUBLIN).isoformat(),
        "note": "Filtered to top 3 profitable picks per race",
        "criteria": result["criteria"],
        "races": [r.to_record() for r in result["races"]],
    }


def run_selection(input_path: Path, config: PaddockConfig, analyzer_name: str = "top3") -> Path:
    if not Path(input_path).exists():
        raise ArchiveError(Path(input_path), "picks file not found")
    data = load_json(Path(input_path))
    payload = build_selection_payload(data, get_analyzer(analyzer_name))
    return archive_selection(payload["date"], payload, config.docs_dir)


def main_select(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Paddock top-three value selection")
    parser.add_argument("input", type=Path, help="Analyzed picks file (betfair-racecards-picks-<date>.json)")
    parser.add_argument("--strict", action="store_true", help="Require three positive-EV picks per race")
    parser.add_argument("--docs", type=Path, help="Archive root (default: docs)")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        config = PaddockConfig.from_env(docs_dir=args.docs)
        run_selection(args.input, config, "top3_strict" if args.strict else "top3")
    except (PaddockException, ValueError, OSError) as e:
        log.error("selection_failed", error=str(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main_select())
