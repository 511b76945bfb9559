import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from liveshow.core.database import Base, get_db, import_models
from liveshow.core.errors import UpstreamUnavailable
from liveshow.models.candidate import Candidate
from liveshow.models.competition_session import CompetitionSession
from liveshow.models.juror import Juror
from liveshow.schemas.live_schemas import PushPayload, PushResult
from liveshow.services.change_feed import install_change_capture
from liveshow.services.live_event_service import LiveEventService
from liveshow.services.push_service import PushNotifier


class FakeClock:
    """可手动推进的时钟"""

    def __init__(self, start=datetime(2026, 6, 20, 20, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def tick(self, seconds=1):
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeNotifier(PushNotifier):
    """记录推送内容，可模拟推送服务故障"""

    def __init__(self, fail=False):
        super().__init__(url="http://push.invalid", token="")
        self.fail = fail
        self.sent = []

    async def notify(self, session_id: int, role: str, payload: PushPayload) -> PushResult:
        if self.fail:
            raise UpstreamUnavailable("push down")
        self.sent.append((session_id, role, payload))
        return PushResult(sent=1)

    def tags(self):
        return [payload.tag for _, _, payload in self.sent]


class Seeder:
    """测试数据构造"""

    def __init__(self, db):
        self.db = db
        self._tokens = 0

    def session(self, name="Saison 2026", config=None):
        session = CompetitionSession(name=name, slug=name.lower().replace(" ", "-"))
        if config:
            session.set_config(config)
        self.db.add(session)
        self.db.commit()
        return session

    def candidate(self, session, first_name, last_name="Martin", category="Adulte",
                  status="finalist", likes=0, stage_name=None):
        candidate = Candidate(
            session_id=session.id,
            first_name=first_name,
            last_name=last_name,
            stage_name=stage_name,
            category=category,
            status=status,
            likes_count=likes,
        )
        self.db.add(candidate)
        self.db.commit()
        return candidate

    def juror(self, session, first_name="Claire"):
        self._tokens += 1
        juror = Juror(session_id=session.id, first_name=first_name, last_name="Juré",
                      qr_token=f"juror-token-{session.id}-{self._tokens}")
        self.db.add(juror)
        self.db.commit()
        return juror

    def final(self, session, candidates):
        return LiveEventService(self.db).create_event(
            session.id, "final", [candidate.id for candidate in candidates]
        )

    def semifinal(self, session):
        return LiveEventService(self.db).create_event(session.id, "semifinal")


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    import_models()
    install_change_capture()
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def seed(db):
    return Seeder(db)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def failing_notifier():
    return FakeNotifier(fail=True)


@pytest.fixture
def client(session_factory, notifier):
    from main import app
    from liveshow.api.websocket_routes import get_session_factory
    from liveshow.services.push_service import get_push_notifier

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_push_notifier] = lambda: notifier
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
