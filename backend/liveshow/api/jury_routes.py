"""
评委打分API路由（评委凭二维码令牌访问）
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import List
from liveshow.core.database import get_db
from liveshow.core.errors import LiveEventError
from liveshow.models.jury_score import JuryScore
from liveshow.services.scoring_service import ScoringService
from liveshow.schemas.live_schemas import JuryScoreSubmit, JuryScoreResponse

router = APIRouter()

@router.get("/{token}")
async def get_juror(token: str, db: Session = Depends(get_db)):
    """评委信息与打分标准"""
    scoring = ScoringService(db)
    try:
        juror = scoring.get_juror_by_token(token)
        criteria = scoring.get_criteria(juror.session_id)
    except LiveEventError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return {
        "id": juror.id,
        "session_id": juror.session_id,
        "display_name": juror.display_name,
        "role": juror.role,
        "criteria": criteria,
    }

@router.get("/{token}/scores", response_model=List[JuryScoreResponse])
async def list_scores(token: str, db: Session = Depends(get_db)):
    """评委已提交的打分"""
    try:
        juror = ScoringService(db).get_juror_by_token(token)
    except LiveEventError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return db.query(JuryScore).filter(JuryScore.juror_id == juror.id).order_by(JuryScore.id).all()

@router.post("/{token}/scores", response_model=JuryScoreResponse)
async def submit_score(
    token: str,
    body: JuryScoreSubmit,
    db: Session = Depends(get_db)
):
    """提交或修改打分"""
    scoring = ScoringService(db)
    try:
        juror = scoring.get_juror_by_token(token)
        return scoring.submit_jury_score(juror, body.candidate_id, body.event_type, body.scores, body.comment)
    except LiveEventError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
