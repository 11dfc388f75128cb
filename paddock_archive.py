# paddock_archive.py
# Date-keyed JSON archive: docs/picks, docs/results, latest.json and the month index.

import re
from pathlib import Path
from typing import Any, Dict, List, Union

import structlog

from paddock import write_json

PathLike = Union[str, Path]

DAY_FILE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}\.json$")

logger = structlog.get_logger("paddock_archive")


def _dated_path(kind: str, date_str: str, docs_dir: PathLike) -> Path:
    year, month, _ = date_str.split("-")
    return Path(docs_dir) / kind / year / month / f"{date_str}.json"


def archive_path_for(date_str: str, docs_dir: PathLike = "docs") -> Path:
    return _dated_path("picks", date_str, docs_dir)


def results_path_for(date_str: str, docs_dir: PathLike = "docs") -> Path:
    return _dated_path("results", date_str, docs_dir)


def publish_latest(payload: Dict[str, Any], docs_dir: PathLike = "docs") -> Path:
    """Overwrites docs/latest.json; safe to repeat."""
    path = Path(docs_dir) / "latest.json"
    write_json(path, payload)
    return path


def build_index(docs_dir: PathLike = "docs") -> Dict[str, Any]:
    """Scans docs/picks/YYYY/MM/*.json into {"months": {"YYYY-MM": [{date, path}]}}."""
    root = Path(docs_dir) / "picks"
    months: Dict[str, List[Dict[str, str]]] = {}
    if not root.exists():
        return {"months": months}
    for year_dir in sorted(p for p in root.iterdir() if p.is_dir() and re.fullmatch(r"\d{4}", p.name)):
        for month_dir in sorted(p for p in year_dir.iterdir() if p.is_dir() and re.fullmatch(r"\d{2}", p.name)):
            days = sorted(f.name for f in month_dir.iterdir() if DAY_FILE_RE.match(f.name))
            if not days:
                continue
            months[f"{year_dir.name}-{month_dir.name}"] = [
                {"date": name[:-5], "path": f"picks/{year_dir.name}/{month_dir.name}/{name}"} for name in days
            ]
    return {"months": months}


def archive_selection(date_str: str, payload: Dict[str, Any], docs_dir: PathLike = "docs") -> Path:
    """Writes the day's shortlist archive, then refreshes latest.json and the index."""
    path = archive_path_for(date_str, docs_dir)
    write_json(path, payload)
    publish_latest(payload, docs_dir)
    write_json(Path(docs_dir) / "picks" / "index.json", build_index(docs_dir))
    logger.info("picks_archived", path=str(path), races=len(payload.get("races", [])))
    return path
