import json
from types import SimpleNamespace

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.core.config import settings

# Override settings for tests
settings.app_env = "test"
settings.gemini_api_key = ""
settings.openai_api_key = ""
settings.reputation_llm_extraction = False
settings.classifier_base_retry_delay = 0.0
settings.youtube_metadata_enabled = False

from app.analysis.response_shapes import ResponseRecord  # noqa: E402
from app.analysis.types import AnalysisConfig, AnalysisKind, CategoryFamilyConfig, MarketConfig, Question  # noqa: E402
from app.db.base import Base  # noqa: E402
from app.gateway.types import DualResponse, GatewayResponse, ProviderName, RequestStatus  # noqa: E402
from app.models import Report  # noqa: E402, F401
from app.services.progress import ProgressRegistry  # noqa: E402


@pytest.fixture
async def engine(tmp_path):
    """Per-test SQLite file; NullPool gives every session its own connection."""
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False, poolclass=NullPool)

    @event.listens_for(test_engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def progress():
    return ProgressRegistry(queue_size=500)


# ---------------------------------------------------------------------------
# Configs
# ---------------------------------------------------------------------------


@pytest.fixture
def legacy_config() -> AnalysisConfig:
    return AnalysisConfig(entity="Nike", category="running shoes", competitors=["Adidas", "Puma"])


@pytest.fixture
def multi_market_config() -> AnalysisConfig:
    return AnalysisConfig(
        entity="Nike",
        category="running shoes",
        competitors=["Adidas"],
        markets=[
            MarketConfig(country="United States", language="English", market_code="us-en", is_primary=True),
            MarketConfig(country="Germany", language="German", market_code="de-de"),
        ],
        category_families=[
            CategoryFamilyConfig(
                id="cat_1a2b3c4d",
                canonical_name="Running shoes",
                translations={"us-en": "Running shoes", "de-de": "Laufschuhe"},
                competitors={"us-en": ["Adidas", "Hoka"], "de-de": ["Adidas", "Puma"]},
            )
        ],
    )


# ---------------------------------------------------------------------------
# Stored responses
# ---------------------------------------------------------------------------


def make_row(
    question_id: str,
    kind: str,
    sequence: int = 0,
    gemini: dict | None = None,
    openai: dict | None = None,
    gemini_sources: list | None = None,
    openai_sources: list | None = None,
    gemini_error: str | None = None,
    openai_error: str | None = None,
    question_text: str = "",
):
    """Stand-in for a RawResponse row."""
    return SimpleNamespace(
        question_id=question_id,
        question_text=question_text or question_id,
        analysis_kind=kind,
        sequence=sequence,
        gemini_data=gemini,
        gemini_text=json.dumps(gemini) if gemini is not None else None,
        gemini_sources=gemini_sources or [],
        gemini_error=gemini_error,
        openai_data=openai,
        openai_text=json.dumps(openai) if openai is not None else None,
        openai_sources=openai_sources or [],
        openai_error=openai_error,
    )


@pytest.fixture
def make_record():
    def _make(*args, **kwargs) -> ResponseRecord:
        return ResponseRecord.from_row(make_row(*args, **kwargs))

    return _make


def ranking(*names: str) -> dict:
    """An ``entities_ranking`` body ranking ``names`` in order."""
    return {"entities_ranking": [{"rank": i, "name": n, "comment": f"{n} comment"} for i, n in enumerate(names, 1)]}


# ---------------------------------------------------------------------------
# Fake gateway
# ---------------------------------------------------------------------------


def ok_response(provider: ProviderName, body, citations: list | None = None) -> GatewayResponse:
    return GatewayResponse(
        provider=provider,
        status=RequestStatus.SUCCESS,
        text=body if isinstance(body, str) else json.dumps(body),
        citations=list(citations or []),
    )


def failed_response(provider: ProviderName, status=RequestStatus.VENDOR_ERROR, code: str = "500") -> GatewayResponse:
    return GatewayResponse(provider=provider, status=status, error_code=code, error_message="boom")


class FakeGateway:
    """Scripted gateway.

    ``answers`` maps question id → (gemini, openai) responses; unknown ids
    get a vendor error from both. ``utility`` answers every single-provider
    call (classification, brand grouping) and defaults to a vendor error.
    """

    def __init__(self, answers: dict | None = None, utility=None):
        self.answers = answers or {}
        self.utility = utility
        self.asked: list[str] = []
        self.utility_calls = 0

    async def ask_both(self, prompt: str, *, report_id: str = "", question_id: str = "") -> DualResponse:
        self.asked.append(question_id)
        pair = self.answers.get(question_id)
        if pair is None:
            return DualResponse(
                gemini=failed_response(ProviderName.GEMINI), openai=failed_response(ProviderName.OPENAI)
            )
        gemini, openai = pair
        return DualResponse(gemini=gemini, openai=openai)

    async def ask(self, provider, prompt, **kwargs) -> GatewayResponse:
        self.utility_calls += 1
        if callable(self.utility):
            return self.utility(prompt)
        if self.utility is not None:
            return self.utility
        return failed_response(provider, code="400")


# ---------------------------------------------------------------------------
# Scripted job
# ---------------------------------------------------------------------------

NYT = {"url": "https://www.nytimes.com/wirecutter/shoes", "title": "Wirecutter", "domain": "nytimes.com"}
REDDIT = {"url": "https://www.reddit.com/r/running/1", "title": "r/running", "domain": "reddit.com"}

REPUTATION_TEXT = (
    "Nike is a great brand with excellent comfort. "
    "However some say Nike shoes are expensive for beginners."
)


def scripted_questions() -> list[Question]:
    return [
        Question(id="CAT_Q1", text="Which categories is Nike known for?", kind=AnalysisKind.CATEGORY),
        Question(id="VIS_Q1", text="Best running shoes?", kind=AnalysisKind.VISIBILITY),
        Question(id="REP_Q1", text="How is Nike perceived?", kind=AnalysisKind.REPUTATION),
        Question(id="VIS_Q2", text="Top running shoe brands?", kind=AnalysisKind.VISIBILITY),
    ]


def scripted_answers() -> dict:
    """VIS_Q2 is left out, so both providers fail it."""
    return {
        "REP_Q1": (
            ok_response(ProviderName.GEMINI, {"raw_response": REPUTATION_TEXT}, [NYT]),
            ok_response(ProviderName.OPENAI, {"raw_response": "Nike is popular with runners everywhere."}, [REDDIT]),
        ),
        "VIS_Q1": (
            ok_response(ProviderName.GEMINI, ranking("Adidas", "Nike", "Puma"), [NYT]),
            ok_response(ProviderName.OPENAI, ranking("Nike", "Adidas"), [NYT, REDDIT]),
        ),
        "CAT_Q1": (
            ok_response(ProviderName.GEMINI, {"categories": [{"rank": 1, "name": "Running shoes"}]}),
            failed_response(ProviderName.OPENAI, status=RequestStatus.TIMEOUT, code=""),
        ),
    }


FAMILY_ID = "cat_1a2b3c4d"


def multi_market_questions() -> list[Question]:
    return [
        Question(id="REP__us-en__Q1", text="How is Nike perceived?", kind=AnalysisKind.REPUTATION, market_code="us-en"),
        Question(id="REP__de-de__Q1", text="Wie wird Nike gesehen?", kind=AnalysisKind.REPUTATION, market_code="de-de"),
        Question(
            id=f"VIS__us-en__{FAMILY_ID}__Q1",
            text="Best running shoes?",
            kind=AnalysisKind.VISIBILITY,
            market_code="us-en",
            category_id=FAMILY_ID,
        ),
        Question(
            id=f"VIS__de-de__{FAMILY_ID}__Q1",
            text="Beste Laufschuhe?",
            kind=AnalysisKind.VISIBILITY,
            market_code="de-de",
            category_id=FAMILY_ID,
        ),
    ]


def multi_market_answers() -> dict:
    """REP__de-de__Q1 is left out, so both providers fail it."""
    return {
        "REP__us-en__Q1": (
            ok_response(ProviderName.GEMINI, {"raw_response": REPUTATION_TEXT}, [NYT]),
            ok_response(ProviderName.OPENAI, {"raw_response": REPUTATION_TEXT}),
        ),
        f"VIS__us-en__{FAMILY_ID}__Q1": (
            ok_response(ProviderName.GEMINI, ranking("Adidas", "Nike", "Hoka"), [NYT]),
            ok_response(ProviderName.OPENAI, ranking("Nike", "Adidas"), [NYT, REDDIT]),
        ),
        f"VIS__de-de__{FAMILY_ID}__Q1": (
            ok_response(ProviderName.GEMINI, ranking("Puma", "Nike"), [REDDIT]),
            ok_response(ProviderName.OPENAI, ranking("Nike")),
        ),
    }
