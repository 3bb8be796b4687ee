"""
backend/matchcast/routers/odds.py

Purpose:
    Live odds read endpoint backed by the in-process odds engine.

Dependencies:
    - matchcast.services.odds_engine
    - matchcast.services.match_store
"""

from fastapi import APIRouter, HTTPException, status

from matchcast.models.match import OddsResponse
from matchcast.services import match_store
from matchcast.services.odds_engine import odds_engine

router = APIRouter(prefix="/api/odds", tags=["odds"])


@router.get("/{match_id}", response_model=OddsResponse)
async def get_odds(match_id: str):
    state = await odds_engine.get_odds(match_id)
    if state is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No odds for this match.")
    match = await match_store.get_match(match_id)
    return OddsResponse(
        match_id=match_id,
        home_team_name=match.home_team_name if match else "",
        away_team_name=match.away_team_name if match else "",
        home_win_odds=round(state.home_win, 2),
        draw_odds=round(state.draw, 2),
        away_win_odds=round(state.away_win, 2),
    )
