import json

import httpx
import pytest
import respx

from paddock import ArchiveError, ConfigurationError, PaddockConfig, Race, Runner
from paddock_analysis import (
    PerplexityClient,
    analyze_race,
    build_messages,
    load_races,
    main_analyze,
    run_analysis,
    try_parse_json,
)

API_URL = "https://api.perplexity.ai/chat/completions"

RACE = Race(
    course="Ascot",
    time="13:30",
    url="https://betting.betfair.com/horse-racing/racecards/ascot/1330",
    runners=[
        Runner(name="Thunder Bolt", jockey="R Moore", trainer="A O'Brien", form="1-21"),
        Runner(name="Quiet Storm", jockey="P Townend", trainer="W Mullins", form="0-3"),
    ],
)


def _reply(content, usage=None):
    body = {"choices": [{"message": {"role": "assistant", "content": content}}]}
    if usage:
        body["usage"] = usage
    return httpx.Response(200, json=body)


def test_try_parse_json_direct_and_salvaged():
    assert try_parse_json('{"shortlist": []}') == {"shortlist": []}
    fenced = 'Here you go:\n```json\n{"shortlist": [{"name": "A", "note": "{tight}"}]}\n```\nGood luck!'
    assert try_parse_json(fenced) == {"shortlist": [{"name": "A", "note": "{tight}"}]}
    stray = 'Sure: {"shortlist": [{"name": "A", "rationale": "price } drifting"}]} thanks'
    assert try_parse_json(stray) == {"shortlist": [{"name": "A", "rationale": "price } drifting"}]}


@pytest.mark.parametrize("text", ["No picks today.", "[1, 2]", '{"unterminated": ', ""])
def test_try_parse_json_keeps_raw_text(text):
    assert try_parse_json(text) == {"_raw": text}


def test_build_messages_embeds_race():
    system, user = build_messages(RACE)
    assert system["role"] == "system"
    assert "Thunder Bolt" in user["content"]
    assert RACE.url in user["content"]
    assert '"shortlist"' in user["content"]


def test_client_requires_api_key():
    with pytest.raises(ConfigurationError):
        PerplexityClient(PaddockConfig(api_key=None))


@pytest.mark.asyncio
async def test_analyze_race_completes_picks_from_runners():
    content = json.dumps({
        "race": {"course": "Ascot", "time": "13:30", "url": RACE.url},
        "shortlist": [
            {"name": "thunder bolt", "rationale": "Won last time", "confidence": "High", "odds_note": "5/2"},
            {"name": "Unknown Horse", "rationale": "Dark horse", "jockey": "J Doe"},
            {"rationale": "missing name"},
        ],
    })
    with respx.mock:
        route = respx.post(API_URL).mock(return_value=_reply(content, usage={"total_tokens": 900}))
        async with PerplexityClient(PaddockConfig(api_key="k"), retry_wait_s=0) as client:
            entry = await analyze_race(client, RACE)

    assert route.call_count == 1
    request = json.loads(route.calls[0].request.content)
    assert request["model"] == "sonar-pro"
    assert request["max_tokens"] == 800
    assert route.calls[0].request.headers["Authorization"] == "Bearer k"

    assert entry["_status"] == "ok"
    assert entry["_usage"] == {"total_tokens": 900}
    first, second = entry["shortlist"]
    assert (first["jockey"], first["trainer"], first["form"]) == ("R Moore", "A O'Brien", "1-21")
    assert first["confidence"] == "High"
    assert (second["jockey"], second["trainer"]) == ("J Doe", "")


@pytest.mark.asyncio
async def test_analyze_race_retries_rate_limit():
    with respx.mock:
        route = respx.post(API_URL).mock(side_effect=[
            httpx.Response(429, text="slow down"),
            httpx.Response(503, text="busy"),
            _reply('{"shortlist": [{"name": "Quiet Storm", "rationale": "r"}]}'),
        ])
        async with PerplexityClient(PaddockConfig(api_key="k"), retry_wait_s=0) as client:
            entry = await analyze_race(client, RACE)

    assert route.call_count == 3
    assert entry["_status"] == "ok"
    assert entry["shortlist"][0]["name"] == "Quiet Storm"


@pytest.mark.asyncio
async def test_analyze_race_gives_up_after_three_attempts():
    with respx.mock:
        route = respx.post(API_URL).mock(return_value=httpx.Response(500, text="oops"))
        async with PerplexityClient(PaddockConfig(api_key="k"), retry_wait_s=0) as client:
            entry = await analyze_race(client, RACE)

    assert route.call_count == 3
    assert entry["_status"] == "error_500"
    assert "HTTP 500" in entry["_error"]
    assert entry["shortlist"] == []


@pytest.mark.asyncio
async def test_analyze_race_client_errors_are_not_retried():
    with respx.mock:
        route = respx.post(API_URL).mock(return_value=httpx.Response(401, text="bad key"))
        async with PerplexityClient(PaddockConfig(api_key="k"), retry_wait_s=0) as client:
            entry = await analyze_race(client, RACE)

    assert route.call_count == 1
    assert entry["_status"] == "error_401"


@pytest.mark.asyncio
async def test_analyze_race_bad_json_keeps_raw_reply():
    with respx.mock:
        respx.post(API_URL).mock(return_value=_reply("I cannot help with that."))
        async with PerplexityClient(PaddockConfig(api_key="k"), retry_wait_s=0) as client:
            entry = await analyze_race(client, RACE)

    assert entry["_status"] == "bad_json"
    assert entry["_raw"] == "I cannot help with that."


@pytest.mark.asyncio
async def test_analyze_race_non_object_api_body_is_recorded():
    with respx.mock:
        respx.post(API_URL).mock(return_value=httpx.Response(200, json=["unexpected"]))
        async with PerplexityClient(PaddockConfig(api_key="k"), retry_wait_s=0) as client:
            entry = await analyze_race(client, RACE)

    assert entry["_status"] == "error_unknown"
    assert "Unexpected API body" in entry["_error"]
    assert entry["shortlist"] == []


@pytest.mark.parametrize("body", [
    {"choices": ["not a choice"]},
    {"choices": [{"message": "plain text"}]},
    {"choices": {"0": {}}},
    {"choices": [{"message": {"content": ["a", "b"]}}]},
])
@pytest.mark.asyncio
async def test_analyze_race_malformed_choices_are_bad_json(body):
    with respx.mock:
        respx.post(API_URL).mock(return_value=httpx.Response(200, json=body))
        async with PerplexityClient(PaddockConfig(api_key="k"), retry_wait_s=0) as client:
            entry = await analyze_race(client, RACE)

    assert entry["_status"] == "bad_json"
    assert entry["_raw"] == ""


@pytest.mark.asyncio
async def test_run_analysis_survives_malformed_api_body(tmp_path):
    second = RACE.model_copy(update={"time": "14:05"})
    cards = tmp_path / "cards.json"
    cards.write_text(json.dumps({"date": "2026-03-01", "races": [RACE.to_record(), second.to_record()]}), encoding="utf-8")
    config = PaddockConfig(api_key="k", concurrency=1)

    with respx.mock:
        respx.post(API_URL).mock(side_effect=[
            httpx.Response(200, json=["unexpected"]),
            _reply('{"shortlist": [{"name": "Quiet Storm", "rationale": "r"}]}'),
        ])
        async with PerplexityClient(config, retry_wait_s=0) as client:
            path = await run_analysis(cards, config, out_path=tmp_path / "picks.json", client=client)

    races = json.loads(path.read_text(encoding="utf-8"))["races"]
    assert [r["_status"] for r in races] == ["error_unknown", "ok"]


@pytest.mark.asyncio
async def test_analyze_race_skips_races_without_runners():
    async with PerplexityClient(PaddockConfig(api_key="k")) as client:
        entry = await analyze_race(client, Race(course="Ascot", time="15:00", url=RACE.url, _note="skipped_finished"))
    assert entry["_status"] == "no_runners"


def test_load_races_upgrades_name_lists(tmp_path):
    path = tmp_path / "cards.json"
    path.write_text(json.dumps({
        "date": "2026-03-01",
        "races": [
            {"course": "Ascot", "time": "13:30", "url": RACE.url, "runners": ["Thunder Bolt", " ", "Quiet Storm"]},
            {"course": "Ascot", "time": "14:05"},
            "Ascot 15:10",
            None,
        ],
    }), encoding="utf-8")

    date_str, races = load_races(path)

    assert date_str == "2026-03-01"
    assert len(races) == 1
    assert [r.name for r in races[0].runners] == ["Thunder Bolt", "Quiet Storm"]


def test_load_races_missing_or_invalid_input(tmp_path):
    with pytest.raises(ArchiveError):
        load_races(tmp_path / "missing.json")
    broken = tmp_path / "broken.json"
    broken.write_text("{", encoding="utf-8")
    with pytest.raises(ArchiveError):
        load_races(broken)


@pytest.mark.asyncio
async def test_run_analysis_writes_picks_file(tmp_path):
    cards = tmp_path / "betfair-racecards-2026-03-01.json"
    cards.write_text(json.dumps({"date": "2026-03-01", "races": [RACE.to_record()]}), encoding="utf-8")
    out = tmp_path / "picks.json"
    config = PaddockConfig(api_key="k")

    with respx.mock:
        respx.post(API_URL).mock(return_value=_reply('{"shortlist": [{"name": "Thunder Bolt", "rationale": "r"}]}'))
        async with PerplexityClient(config, retry_wait_s=0) as client:
            path = await run_analysis(cards, config, out_path=out, client=client)

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["date"] == "2026-03-01"
    assert data["model"] == "sonar-pro"
    assert data["races"][0]["_status"] == "ok"
    assert data["races"][0]["shortlist"][0]["form"] == "1-21"


@pytest.mark.asyncio
async def test_main_analyze_without_key_fails(tmp_path, monkeypatch):
    monkeypatch.delenv("PERPLEXITY_API_KEY", raising=False)
    monkeypatch.delenv("PPLX_API_KEY", raising=False)
    monkeypatch.delenv("PADDOCK_API_KEY", raising=False)
    cards = tmp_path / "cards.json"
    cards.write_text(json.dumps({"date": "2026-03-01", "races": [RACE.to_record()]}), encoding="utf-8")

    assert await main_analyze([str(cards)]) == 1
