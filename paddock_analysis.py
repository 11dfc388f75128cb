from __future__ import annotations
# paddock_analysis.py
# Sends each scraped race to the Perplexity chat API and collects its shortlist

import argparse
import asyncio
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Final, List, Optional, Tuple

import httpx
import structlog
from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from paddock import (
    AnalysisError,
    AnalysisHttpError,
    ArchiveError,
    ConfigurationError,
    PaddockConfig,
    PaddockException,
    Race,
    map_pool,
    load_json,
    write_json,
)
from paddock_utils import DUBLIN, clean_text, configure_logging, normalize_name, today_iso

SYSTEM_PROMPT: Final[str] = " ".join([
    "You are a professional horse racing analyst.",
    "Return only valid JSON matching the requested shape.",
    "Use current odds and form logic. Exclude longshots.",
    "Use the supplied race URL for context (web is enabled).",
])

RESPONSE_SCHEMA: Final[Dict[str, Any]] = {
    "type": "object",
    "properties": {
        "race": {
            "type": "object",
            "properties": {
                "course": {"type": "string"},
                "time": {"type": "string"},
                "url": {"type": "string"},
            },
            "required": ["course", "time", "url"],
        },
        "shortlist": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "jockey": {"type": "string"},
                    "trainer": {"type": "string"},
                    "form": {"type": "string"},
                    "odds_note": {"type": "string"},
                    "rationale": {"type": "string"},
                    "confidence": {"type": "string"},
                },
                "required": ["name", "rationale"],
            },
            "minItems": 1,
        },
    },
    "required": ["race", "shortlist"],
    "additionalProperties": False,
}

PICK_TEXT_FIELDS: Final[Tuple[str, ...]] = ("jockey", "trainer", "form")

logger = structlog.get_logger("paddock_analysis")


def picks_filename(date_str: str) -> str:
    return f"betfair-racecards-picks-{date_str}.json"


def build_messages(race: Race) -> List[Dict[str, str]]:
    race_json = {
        "race": {"course": race.course, "time": race.time, "url": race.url},
        "runners": [r.model_dump(mode="json") for r in race.runners],
    }
    user = "\n".join([
        'Given the following race JSON (course, time, url, runners with name, jockey, trainer, recent form "F", and odds), analyze the field as a professional.',
        "Rules:",
        "- Research each runner using the provided details and the race URL.",
        "- Exclude outsiders/longshots by current exchange/bookmaker odds.",
        "- From remaining runners, return ONLY your strongest potential winners with brief justifications (form, odds value, connections).",
        "- Do NOT include horses needing major improvement.",
        "",
        "Return strict JSON only, matching this shape:",
        json.dumps(RESPONSE_SCHEMA, indent=2),
        "",
        "Race JSON:",
        json.dumps(race_json, indent=2, ensure_ascii=False),
    ])
    return [{"role": "system", "content": SYSTEM_PROMPT}, {"role": "user", "content": user}]


def try_parse_json(text: str) -> Dict[str, Any]:
    """
    Parses the model's reply. Falls back to the first balanced ``{...}`` block
    that parses, and finally to ``{"_raw": text}``.
    """
    text = text or ""
    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    start = text.find("{")
    if start < 0:
        return {"_raw": text}
    # Braces inside JSON strings can close a candidate early; keep widening it
    depth = 0
    for i in range(start, len(text)):
        ch = text[i]
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth <= 0:
                try:
                    candidate = json.loads(text[start:i + 1])
                except json.JSONDecodeError:
                    continue
                if isinstance(candidate, dict):
                    return candidate
    return {"_raw": text}


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, AnalysisHttpError):
        return exc.retryable
    return isinstance(exc, httpx.TransportError)


class PerplexityClient:
    """Chat-completions client; retries rate limits and server errors with a growing wait."""

    def __init__(self, config: PaddockConfig, client: Optional[httpx.AsyncClient] = None, retry_wait_s: float = 1.0):
        if not config.api_key:
            raise ConfigurationError("Missing PERPLEXITY_API_KEY env var.")
        self.config = config
        self.retry_wait_s = retry_wait_s
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(config.analysis_timeout_s))
        self._owns_client = client is None
        self.logger = structlog.get_logger(self.__class__.__name__)

    async def __aenter__(self) -> "PerplexityClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        self.logger.warning("analysis_retry", attempt=retry_state.attempt_number, error=str(error))

    async def _post(self, messages: List[Dict[str, str]]) -> Dict[str, Any]:
        body = {
            "model": self.config.analysis_model,
            "messages": messages,
            "max_tokens": self.config.analysis_max_tokens,
            "temperature": self.config.analysis_temperature,
            "return_citations": False,
        }
        headers = {"Authorization": f"Bearer {self.config.api_key}", "Content-Type": "application/json"}
        resp = await self._client.post(self.config.analysis_url, json=body, headers=headers)
        if resp.status_code >= 400:
            raise AnalysisHttpError(resp.status_code, self.config.analysis_url, resp.text[:500])
        try:
            api = resp.json()
        except ValueError as e:
            raise AnalysisError(f"Non-JSON API response: {e}") from e
        if not isinstance(api, dict):
            raise AnalysisError(f"Unexpected API body: expected an object, got {type(api).__name__}")
        return api

    async def complete(self, messages: List[Dict[str, str]]) -> Tuple[Dict[str, Any], Dict[str, Any], str]:
        """Returns (parsed reply, raw API body, reply text)."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.analysis_attempts),
            wait=wait_incrementing(start=self.retry_wait_s, increment=self.retry_wait_s),
            retry=retry_if_exception(_is_retryable),
            before_sleep=self._log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                api = await self._post(messages)
        content = self._reply_text(api)
        return try_parse_json(content), api, content

    @staticmethod
    def _reply_text(api: Dict[str, Any]) -> str:
        choices = api.get("choices")
        choice = choices[0] if isinstance(choices, list) and choices else None
        message = choice.get("message") if isinstance(choice, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        return content if isinstance(content, str) else ""


def merge_pick(item: Dict[str, Any], race: Race) -> Dict[str, Any]:
    """Completes an analyst pick with the scraped runner's connections and form."""
    runner = next((r for r in race.runners if normalize_name(r.name) == normalize_name(item.get("name"))), None)
    pick = {
        "name": clean_text(item.get("name")),
        "odds_note": clean_text(item.get("odds_note")),
        "rationale": clean_text(item.get("rationale")),
        "confidence": clean_text(item.get("confidence")),
    }
    for field in PICK_TEXT_FIELDS:
        pick[field] = clean_text(item.get(field)) or (getattr(runner, field) if runner else "")
    return pick


async def analyze_race(client: PerplexityClient, race: Race) -> Dict[str, Any]:
    entry: Dict[str, Any] = {"course": race.course, "time": race.time, "url": race.url, "shortlist": [], "_status": "pending"}
    log = logger.bind(course=race.course, time=race.time, url=race.url)
    if not race.runners:
        entry["_status"] = "no_runners"
        return entry

    try:
        parsed, api, raw = await client.complete(build_messages(race))
    except AnalysisHttpError as e:
        log.error("analysis_failed", status=e.status_code, error=str(e))
        entry.update({"_status": f"error_{e.status_code}", "_error": str(e)})
        return entry
    except (AnalysisError, httpx.HTTPError) as e:
        log.error("analysis_failed", error=str(e))
        entry.update({"_status": "error_unknown", "_error": str(e)})
        return entry

    shortlist = parsed.get("shortlist")
    if not isinstance(shortlist, list):
        log.warning("analysis_bad_json")
        entry.update({"_status": "bad_json", "_raw": parsed.get("_raw", raw)})
        return entry

    entry["shortlist"] = [
        merge_pick(item, race) for item in shortlist if isinstance(item, dict) and clean_text(item.get("name"))
    ]
    entry["_status"] = "ok"
    if usage := api.get("usage"):
        entry["_usage"] = usage
    return entry


def load_races(path: Path) -> Tuple[Optional[str], List[Race]]:
    """Reads a racecards file; plain name lists from older scrapes become runner records."""
    if not path.exists():
        raise ArchiveError(path, "input not found")
    data = load_json(path)
    races: List[Race] = []
    for raw in data.get("races") or []:
        if not isinstance(raw, dict):
            logger.warning("invalid_race_skipped", error=f"expected an object, got {type(raw).__name__}")
            continue
        runners = raw.get("runners") or []
        if runners and isinstance(runners[0], str):
            raw = {**raw, "runners": [{"name": name} for name in runners if clean_text(name)]}
        try:
            races.append(Race.model_validate(raw))
        except ValidationError as e:
            logger.warning("invalid_race_skipped", course=raw.get("course"), time=raw.get("time"), error=str(e))
    return data.get("date"), races


async def run_analysis(input_path: Path, config: PaddockConfig, out_path: Optional[Path] = None,
                       client: Optional[PerplexityClient] = None) -> Path:
    date_str, races = load_races(Path(input_path))
    date_str = date_str or today_iso()
    owned = client is None
    client = client or PerplexityClient(config)
    try:
        async def analyze_one(race: Race, index: int) -> Dict[str, Any]:
            return await analyze_race(client, race)

        entries = await map_pool(races, config.concurrency, analyze_one)
    finally:
        if owned:
            await client.close()

    out = {
        "date": date_str,
        "model": config.analysis_model,
        "generated_at": datetime.now(DUBLIN).isoformat(),
        "races": entries,
    }
    path = out_path or Path(picks_filename(date_str))
    write_json(path, out)
    ok = sum(1 for e in entries if e["_status"] == "ok")
    logger.info("picks_saved", path=str(path), analyzed=ok, races=len(entries))
    return path


async def main_analyze(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Paddock race analysis")
    parser.add_argument("input", nargs="?", type=Path, help="Racecards file (default: today's betfair-racecards-<date>.json)")
    parser.add_argument("--out", type=Path, help="Output picks file")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    input_path = args.input or Path(f"betfair-racecards-{today_iso()}.json")
    try:
        config = PaddockConfig.from_env()
        await run_analysis(input_path, config, out_path=args.out)
    except (PaddockException, ValueError, OSError) as e:
        logger.error("analysis_run_failed", error=str(e))
        return 1
    return 0


def run_main_analyze() -> None:
    sys.exit(asyncio.run(main_analyze()))


if __name__ == "__main__":
    run_main_analyze()
