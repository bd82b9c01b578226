"""
CricHeroes scorecard scraper.

CricHeroes renders match pages with Next.js; the full match state is embedded
as JSON in ``<script id="__NEXT_DATA__">``.  We fetch the summary page, pull
that blob out with BeautifulSoup, and flatten the parts we use:

    props.pageProps.summaryData.data
        .status                    "live" | "past" | "upcoming"
        .team_a / .team_b          {name, summary, innings[0].overs_played, innings[0].summary.rr}
        .winning_team, .win_by
        .best_performances.batting [{player_name, team_name, runs, balls, 4s, 6s, ...}]
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import requests
from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml",
}


class ScoreFeedError(Exception):
    """Scorecard could not be fetched or parsed."""

    pass


@dataclass
class TopBatter:
    player_name: str
    team_name: str
    runs: int
    balls: int = 0
    fours: int = 0
    sixes: int = 0
    strike_rate: Optional[str] = None
    inning: Optional[int] = None


@dataclass
class ScoreFeedUpdate:
    status: str
    team_a: str
    team_b: str
    score_a: Optional[str] = None
    score_b: Optional[str] = None
    overs_a: Optional[str] = None
    overs_b: Optional[str] = None
    crr_a: Optional[str] = None
    crr_b: Optional[str] = None
    result: Optional[str] = None
    winning_team: Optional[str] = None
    toss: Optional[str] = None
    top_batters: List[TopBatter] = field(default_factory=list)

    @property
    def is_finished(self) -> bool:
        return self.status == "past"

    @property
    def top_scorer(self) -> Optional[TopBatter]:
        """Highest run-scorer; the first listed wins a tie."""
        best = None
        for batter in self.top_batters:
            if best is None or batter.runs > best.runs:
                best = batter
        return best


def _base_url() -> str:
    return os.getenv("CRICHEROES_BASE_URL", "https://cricheroes.com").rstrip("/")


def summary_url(match_id: str, slug: Optional[str] = None) -> str:
    if slug:
        return f"{_base_url()}/scorecard/{match_id}/{slug}/summary"
    return f"{_base_url()}/scorecard/{match_id}/summary"


def _int(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _first_innings(team: Dict) -> Dict:
    innings = team.get("innings") or []
    return innings[0] if innings else {}


def parse_summary(html: str) -> ScoreFeedUpdate:
    """Extract a ScoreFeedUpdate from a CricHeroes summary page."""
    soup = BeautifulSoup(html, "lxml")
    script = soup.find("script", id="__NEXT_DATA__")
    if script is None or not script.string:
        raise ScoreFeedError("Could not find __NEXT_DATA__ on CricHeroes page")

    try:
        next_data = json.loads(script.string)
    except json.JSONDecodeError as exc:
        raise ScoreFeedError(f"Malformed __NEXT_DATA__ JSON: {exc}") from exc

    summary = ((next_data.get("props") or {}).get("pageProps") or {}).get("summaryData") or {}
    data = summary.get("data")
    if not summary.get("status") or not data:
        raise ScoreFeedError("Match data not available")

    team_a = data.get("team_a") or {}
    team_b = data.get("team_b") or {}
    innings_a = _first_innings(team_a)
    innings_b = _first_innings(team_b)

    batters = [
        TopBatter(
            player_name=b.get("player_name", ""),
            team_name=b.get("team_name", ""),
            runs=_int(b.get("runs")),
            balls=_int(b.get("balls")),
            fours=_int(b.get("4s")),
            sixes=_int(b.get("6s")),
            strike_rate=b.get("strike_rate"),
            inning=b.get("inning"),
        )
        for b in (data.get("best_performances") or {}).get("batting") or []
        if b.get("player_name")
    ]

    winning_team = data.get("winning_team") or None
    win_by = data.get("win_by")

    return ScoreFeedUpdate(
        status=data.get("status", ""),
        team_a=team_a.get("name", ""),
        team_b=team_b.get("name", ""),
        score_a=team_a.get("summary"),
        score_b=team_b.get("summary"),
        overs_a=innings_a.get("overs_played"),
        overs_b=innings_b.get("overs_played"),
        crr_a=(innings_a.get("summary") or {}).get("rr"),
        crr_b=(innings_b.get("summary") or {}).get("rr"),
        result=f"{winning_team} won by {win_by}" if win_by and winning_team else None,
        winning_team=winning_team,
        toss=data.get("toss_details"),
        top_batters=batters,
    )


def fetch_match_summary(match_id: str, slug: Optional[str] = None) -> ScoreFeedUpdate:
    """Fetch and parse one scorecard. Raises ScoreFeedError on any failure."""
    url = summary_url(match_id, slug)
    try:
        resp = requests.get(url, headers=_HEADERS, timeout=15)
        resp.raise_for_status()
    except requests.RequestException as exc:
        raise ScoreFeedError(f"CricHeroes fetch failed for {match_id}: {exc}") from exc

    update = parse_summary(resp.text)
    logger.debug("CricHeroes %s: status=%s %s / %s", match_id, update.status, update.score_a, update.score_b)
    return update
