"""
直播活动相关的数据模式
"""

from pydantic import BaseModel, Field, field_serializer
from typing import Optional, List, Dict, Literal
from datetime import datetime

from liveshow.core.utils import format_timestamp_with_timezone

EventType = Literal["semifinal", "final"]
EventStatus = Literal["pending", "live", "paused", "completed"]


class CandidateBrief(BaseModel):
    """候选人展示信息（阵容中的反规范化字段）"""
    id: int
    first_name: str
    last_name: str
    stage_name: Optional[str] = None
    display_name: str
    category: Optional[str] = None
    status: str
    photo_url: Optional[str] = None
    song_title: Optional[str] = None

    class Config:
        from_attributes = True


class LiveEventResponse(BaseModel):
    """直播活动响应模式"""
    id: int
    session_id: int
    event_type: str
    status: str
    current_candidate_id: Optional[int] = None
    is_voting_open: bool
    winner_candidate_id: Optional[int] = None
    winner_revealed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @field_serializer('winner_revealed_at', 'created_at')
    def serialize_dt(self, dt: Optional[datetime]) -> Optional[str]:
        return format_timestamp_with_timezone(dt)

    class Config:
        from_attributes = True


class LineupEntryInfo(BaseModel):
    """阵容条目"""
    id: int
    live_event_id: int
    candidate_id: int
    position: int
    status: str
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    vote_opened_at: Optional[datetime] = None
    vote_closed_at: Optional[datetime] = None
    candidate: Optional[CandidateBrief] = None

    @field_serializer('started_at', 'ended_at', 'vote_opened_at', 'vote_closed_at')
    def serialize_dt(self, dt: Optional[datetime]) -> Optional[str]:
        return format_timestamp_with_timezone(dt)

    class Config:
        from_attributes = True


class EventCreate(BaseModel):
    """创建直播活动的请求模式"""
    session_id: int
    event_type: EventType
    ordered_candidate_ids: Optional[List[int]] = Field(default=None, description="决赛出场顺序，不填则按组别自动排序")


class EventStatusUpdate(BaseModel):
    status: EventStatus


class LineupEntryRef(BaseModel):
    lineup_entry_id: int


class CandidateRef(BaseModel):
    candidate_id: int


class ReorderRequest(BaseModel):
    ordered_candidate_ids: List[int]


class ReplacementCreate(BaseModel):
    candidate_id: int
    position: int = Field(ge=0)


class VotingToggle(BaseModel):
    is_open: bool


class ScoringWeights(BaseModel):
    """评分权重（百分比），按存储值原样返回"""
    jury: float
    public: float
    social: float


class ScoringWeightsUpdate(BaseModel):
    """更新评分权重请求"""
    jury: float = Field(ge=0, le=100)
    public: float = Field(ge=0, le=100)
    social: float = Field(ge=0, le=100)


class JuryScoresReset(BaseModel):
    session_id: int
    candidate_id: int
    event_type: str


class JuryScoreSubmit(BaseModel):
    """评委打分请求"""
    candidate_id: int
    event_type: str
    scores: Dict[str, float]
    comment: Optional[str] = Field(default=None, max_length=2000)


class JuryScoreResponse(BaseModel):
    id: int
    juror_id: int
    candidate_id: int
    event_type: str
    total_score: float
    comment: Optional[str] = None

    class Config:
        from_attributes = True


class PublicVoteCreate(BaseModel):
    """观众投票请求"""
    candidate_id: int
    fingerprint: str = Field(min_length=8, max_length=128)


class VoteResult(BaseModel):
    candidate_id: int
    accepted: bool
    already_voted: bool = False


class RankingRow(BaseModel):
    """排名中的一行（派生数据，不持久化）"""
    rank: int
    candidate_id: int
    display_name: str
    category: Optional[str] = None
    jury_total: float
    jury_count: int
    jury_normalized: float
    public_votes: int
    public_normalized: float
    social_votes: int
    social_normalized: float
    total: float


class RankingResponse(BaseModel):
    event_id: int
    category: Optional[str] = None
    weights: ScoringWeights
    tie_break: str = Field(default="insertion_order", description="同分时保持出场顺序，并非公平性规则")
    rows: List[RankingRow]


class ActionResult(BaseModel):
    """控制室操作结果：成功标记或错误信息，二者之一"""
    success: bool = False
    error: Optional[str] = None
    event_id: Optional[int] = None


class CheckinStatus(BaseModel):
    event_id: int
    checked_in_ids: List[int]


class PushPayload(BaseModel):
    """推送内容"""
    title: str
    body: str
    url: Optional[str] = None
    tag: Optional[str] = None


class PushResult(BaseModel):
    sent: int = 0
    failed: int = 0
    expired: int = 0
