"""
投票与评分汇总服务

排名由三个独立写入的数据源（评委打分、观众投票、社交互动）按需计算，
不缓存、不修改任何数据源。
"""

import json
from typing import Dict, List, Optional, Sequence
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from loguru import logger

from liveshow.core.config import settings
from liveshow.core.errors import PreconditionFailed, NotFound
from liveshow.models.candidate import Candidate
from liveshow.models.competition_session import CompetitionSession
from liveshow.models.juror import Juror
from liveshow.models.jury_score import JuryScore
from liveshow.models.lineup import LineupEntry
from liveshow.models.live_event import LiveEvent
from liveshow.models.public_vote import PublicVote
from liveshow.schemas.live_schemas import (
    ScoringWeights, RankingRow, RankingResponse, VoteResult
)


class CandidateTotals:
    """单个候选人的原始指标"""

    def __init__(self, candidate_id: int, display_name: str, category: Optional[str] = None,
                 jury_total: float = 0, jury_count: int = 0, public_votes: int = 0,
                 social_votes: int = 0):
        self.candidate_id = candidate_id
        self.display_name = display_name
        self.category = category
        self.jury_total = jury_total
        self.jury_count = jury_count
        self.public_votes = public_votes
        self.social_votes = social_votes


def normalize(value: float, max_value: float) -> float:
    """按范围内最大值归一化到0-100；最大值为0时返回0"""
    if max_value <= 0:
        return 0.0
    return value / max_value * 100


def compute_ranking(totals: Sequence[CandidateTotals], weights: ScoringWeights) -> List[RankingRow]:
    """计算加权综合排名

    权重按字面使用，即使三者之和不是100也不做修正（由配置方负责校验）。
    同分时保持输入顺序（稳定排序），这是刻意的简化，不是公平性规则。
    """
    max_jury = max((t.jury_total for t in totals), default=0)
    max_public = max((t.public_votes for t in totals), default=0)
    max_social = max((t.social_votes for t in totals), default=0)

    scored = []
    for t in totals:
        jury_normalized = normalize(t.jury_total, max_jury)
        public_normalized = normalize(t.public_votes, max_public)
        social_normalized = normalize(t.social_votes, max_social)
        total = (
            jury_normalized * weights.jury / 100
            + public_normalized * weights.public / 100
            + social_normalized * weights.social / 100
        )
        scored.append((t, jury_normalized, public_normalized, social_normalized, total))

    scored = sorted(scored, key=lambda item: item[4], reverse=True)

    return [
        RankingRow(
            rank=index,
            candidate_id=t.candidate_id,
            display_name=t.display_name,
            category=t.category,
            jury_total=t.jury_total,
            jury_count=t.jury_count,
            jury_normalized=jury_normalized,
            public_votes=t.public_votes,
            public_normalized=public_normalized,
            social_votes=t.social_votes,
            social_normalized=social_normalized,
            total=total,
        )
        for index, (t, jury_normalized, public_normalized, social_normalized, total)
        in enumerate(scored, start=1)
    ]


class ScoringService:
    """评分服务：权重配置、评委打分、观众投票与排名"""

    def __init__(self, db: Session):
        self.db = db

    # ---- 场次配置 ----

    def _get_session(self, session_id: int) -> CompetitionSession:
        session = self.db.query(CompetitionSession).filter(CompetitionSession.id == session_id).first()
        if not session:
            raise NotFound("Session introuvable.")
        return session

    def get_weights(self, session_id: int) -> ScoringWeights:
        config = self._get_session(session_id).get_config()
        return ScoringWeights(
            jury=config.get("jury_weight_percent", settings.DEFAULT_JURY_WEIGHT),
            public=config.get("public_weight_percent", settings.DEFAULT_PUBLIC_WEIGHT),
            social=config.get("social_weight_percent", settings.DEFAULT_SOCIAL_WEIGHT),
        )

    def update_weights(self, session_id: int, jury: float, public: float, social: float) -> ScoringWeights:
        """更新评分权重；三者必须在0-100之间且总和为100"""
        for value in (jury, public, social):
            if value < 0 or value > 100:
                raise PreconditionFailed("Chaque poids doit être compris entre 0 et 100.")
        if abs(jury + public + social - 100) > 1e-6:
            raise PreconditionFailed("La somme des poids doit être égale à 100.")

        session = self._get_session(session_id)
        config = session.get_config()
        config.update({
            "jury_weight_percent": jury,
            "public_weight_percent": public,
            "social_weight_percent": social,
        })
        session.set_config(config)
        self.db.commit()
        logger.info("⚖️ 场次 {} 权重更新: 评委{} 观众{} 社交{}", session_id, jury, public, social)
        return ScoringWeights(jury=jury, public=public, social=social)

    def get_criteria(self, session_id: int) -> List[dict]:
        config = self._get_session(session_id).get_config()
        return config.get("jury_criteria") or settings.DEFAULT_JURY_CRITERIA

    # ---- 评委打分 ----

    def get_juror_by_token(self, token: str) -> Juror:
        juror = self.db.query(Juror).filter(Juror.qr_token == token, Juror.is_active.is_(True)).first()
        if not juror:
            raise NotFound("Juré introuvable.")
        return juror

    def submit_jury_score(self, juror: Juror, candidate_id: int, event_type: str,
                          scores: Dict[str, float], comment: Optional[str] = None) -> JuryScore:
        """提交或覆盖评委打分（每个评委/候选人/活动类型只有一条记录）"""
        candidate = self.db.query(Candidate).filter(Candidate.id == candidate_id).first()
        if not candidate or candidate.session_id != juror.session_id:
            raise NotFound("Candidat introuvable.")

        criteria = {c["name"]: c["max_score"] for c in self.get_criteria(juror.session_id)}
        unknown = set(scores) - set(criteria)
        if unknown:
            raise PreconditionFailed(f"Critère inconnu : {', '.join(sorted(unknown))}.")
        missing = set(criteria) - set(scores)
        if missing:
            raise PreconditionFailed(f"Critère manquant : {', '.join(sorted(missing))}.")
        for name, value in scores.items():
            if value < 0 or value > criteria[name]:
                raise PreconditionFailed(f"Note hors limites pour {name} (max {criteria[name]}).")

        total = sum(scores.values())
        values = {
            "scores": json.dumps(scores, ensure_ascii=False),
            "total_score": total,
            "comment": comment,
        }

        row = self._find_score(juror.id, candidate_id, event_type)
        if row is None:
            row = JuryScore(
                session_id=juror.session_id,
                juror_id=juror.id,
                candidate_id=candidate_id,
                event_type=event_type,
                **values
            )
            self.db.add(row)
            try:
                self.db.commit()
            except IntegrityError:
                # 同一评委并发提交：后写覆盖
                self.db.rollback()
                row = self._find_score(juror.id, candidate_id, event_type)
                self._apply(row, values)
                self.db.commit()
        else:
            self._apply(row, values)
            self.db.commit()

        self.db.refresh(row)
        logger.info("🎯 评委 {} 给候选人 {} 打分 {} ({})", juror.id, candidate_id, total, event_type)
        return row

    def _find_score(self, juror_id: int, candidate_id: int, event_type: str) -> Optional[JuryScore]:
        return self.db.query(JuryScore).filter(
            JuryScore.juror_id == juror_id,
            JuryScore.candidate_id == candidate_id,
            JuryScore.event_type == event_type
        ).first()

    @staticmethod
    def _apply(row: JuryScore, values: dict):
        for key, value in values.items():
            setattr(row, key, value)

    def reset_jury_scores(self, session_id: int, candidate_id: int, event_type: str) -> int:
        """管理员重置某候选人的评委打分"""
        rows = self.db.query(JuryScore).filter(
            JuryScore.session_id == session_id,
            JuryScore.candidate_id == candidate_id,
            JuryScore.event_type == event_type
        ).all()
        for row in rows:
            self.db.delete(row)
        self.db.commit()
        logger.info("🧹 场次 {} 候选人 {} 的 {} 打分已重置 ({} 条)", session_id, candidate_id, event_type, len(rows))
        return len(rows)

    def jury_score_count(self, session_id: int, candidate_id: int, event_type: str) -> int:
        return self.db.query(JuryScore).filter(
            JuryScore.session_id == session_id,
            JuryScore.candidate_id == candidate_id,
            JuryScore.event_type == event_type
        ).count()

    # ---- 观众投票 ----

    def cast_public_vote(self, event_id: int, candidate_id: int, fingerprint: str) -> VoteResult:
        """观众投票；同一设备对同一候选人重复投票会被去重"""
        event = self.db.query(LiveEvent).filter(LiveEvent.id == event_id).first()
        if not event:
            raise NotFound("Événement introuvable.")
        if event.status == "completed" or not event.is_voting_open:
            raise PreconditionFailed("Le vote est fermé.")

        in_lineup = self.db.query(LineupEntry.id).filter(
            LineupEntry.live_event_id == event_id,
            LineupEntry.candidate_id == candidate_id
        ).first()
        if not in_lineup:
            raise NotFound("Candidat absent du lineup.")

        existing = self.db.query(PublicVote.id).filter(
            PublicVote.session_id == event.session_id,
            PublicVote.candidate_id == candidate_id,
            PublicVote.fingerprint == fingerprint
        ).first()
        if existing:
            return VoteResult(candidate_id=candidate_id, accepted=False, already_voted=True)

        self.db.add(PublicVote(
            session_id=event.session_id,
            live_event_id=event_id,
            candidate_id=candidate_id,
            fingerprint=fingerprint
        ))
        try:
            self.db.commit()
        except IntegrityError:
            # 并发重试由唯一约束去重
            self.db.rollback()
            return VoteResult(candidate_id=candidate_id, accepted=False, already_voted=True)
        return VoteResult(candidate_id=candidate_id, accepted=True)

    def vote_counts(self, event_id: int) -> Dict[int, int]:
        rows = self.db.query(PublicVote.candidate_id, func.count(PublicVote.id)).filter(
            PublicVote.live_event_id == event_id
        ).group_by(PublicVote.candidate_id).all()
        return {candidate_id: count for candidate_id, count in rows}

    # ---- 排名 ----

    def build_ranking(self, event_id: int, category: Optional[str] = None) -> RankingResponse:
        """计算活动的加权排名（可按组别限定范围）"""
        event = self.db.query(LiveEvent).filter(LiveEvent.id == event_id).first()
        if not event:
            raise NotFound("Événement introuvable.")

        query = self.db.query(LineupEntry, Candidate).join(
            Candidate, Candidate.id == LineupEntry.candidate_id
        ).filter(LineupEntry.live_event_id == event_id)
        if category:
            query = query.filter(Candidate.category == category)
        entries = query.order_by(LineupEntry.position, LineupEntry.id).all()

        jury_rows = self.db.query(
            JuryScore.candidate_id, func.sum(JuryScore.total_score), func.count(JuryScore.id)
        ).filter(
            JuryScore.session_id == event.session_id,
            JuryScore.event_type == event.event_type
        ).group_by(JuryScore.candidate_id).all()
        jury = {candidate_id: (total or 0, count) for candidate_id, total, count in jury_rows}
        votes = self.vote_counts(event_id)

        totals = []
        for _entry, candidate in entries:
            jury_total, jury_count = jury.get(candidate.id, (0, 0))
            totals.append(CandidateTotals(
                candidate_id=candidate.id,
                display_name=candidate.display_name,
                category=candidate.category,
                jury_total=float(jury_total),
                jury_count=jury_count,
                public_votes=votes.get(candidate.id, 0),
                social_votes=candidate.likes_count or 0,
            ))

        weights = self.get_weights(event.session_id)
        return RankingResponse(
            event_id=event_id,
            category=category,
            weights=weights,
            rows=compute_ranking(totals, weights),
        )
