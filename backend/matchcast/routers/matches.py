"""
backend/matchcast/routers/matches.py

Purpose:
    Read API over the authoritative store: combined match statistics view
    and match listing by status.

Dependencies:
    - matchcast.services.match_store
    - matchcast.models.match
"""

import logging

from fastapi import APIRouter, HTTPException, Query, status

from matchcast.models.match import MatchStatsView, MatchStatus, MatchSummary
from matchcast.services import match_store

logger = logging.getLogger("matchcast.matches")

router = APIRouter(tags=["matches"])


def _parse_status(raw: str) -> MatchStatus:
    token = raw.strip().replace("_", "").replace("-", "").lower()
    for candidate in MatchStatus:
        if candidate.value.lower() == token:
            return candidate
    valid = ", ".join(s.value for s in MatchStatus)
    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail=f"Invalid match status. Valid values: {valid}.",
    )


@router.get("/api/match-statistics/{match_id}", response_model=MatchStatsView)
async def get_match_statistics(match_id: str):
    """Match record merged with its statistics counters."""
    match = await match_store.get_match(match_id)
    stats = await match_store.get_statistics(match_id)
    if match is None and stats is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Match not found.")
    return MatchStatsView.combine(match_id, match, stats)


@router.get("/api/matches/status/{match_status}", response_model=list[MatchSummary])
async def list_matches_by_status(
    match_status: str,
    limit: int = Query(100, ge=1, le=500),
):
    parsed = _parse_status(match_status)
    matches = await match_store.list_matches_by_status(parsed, limit=limit)
    return [
        MatchSummary(
            match_id=m.match_id,
            home_team_name=m.home_team_name,
            away_team_name=m.away_team_name,
            home_score=m.home_score,
            away_score=m.away_score,
            status=m.status,
        )
        for m in matches
    ]
