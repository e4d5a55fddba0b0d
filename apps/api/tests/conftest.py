import asyncio
from typing import Any, Dict, List, Optional, Sequence

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
from services.credits import CreditsManager
from services.generation import GeneratedImage, ImageProvider
from services.session_token import create_session_token
from services.storage import StorageProvider
from services.ttl_store import MemoryTTLStore
from services.vision import VisionAnalyzer


TEST_USER_ID = "genpire-test-user"
ADMIN_USER_ID = "genpire-admin"


def auth_header(user_id: str = TEST_USER_ID) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_session_token(user_id)['token']}"}


class FakeImageProvider(ImageProvider):
    """Records prompts and hands back deterministic URLs."""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.error: Optional[BaseException] = None
        self.delay: float = 0.0

    async def generate_image(self, prompt: str, reference_images: Sequence[str] = ()) -> GeneratedImage:
        self.calls.append({"prompt": prompt, "references": list(reference_images)})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return GeneratedImage(url=f"https://images.genpire.test/{len(self.calls)}.png", prompt=prompt)


class FakeVisionAnalyzer(VisionAnalyzer):
    def __init__(self, features: Optional[Dict[str, Any]] = None):
        super().__init__(client=None)
        self.features = features or {
            "colors": [{"name": "navy", "hex": "#1F2A44"}],
            "materials": ["canvas"],
            "key_elements": ["zip pocket"],
            "estimated_dimensions": {"width": "30cm", "height": "40cm"},
            "description": "Navy canvas backpack",
        }
        self.error: Optional[BaseException] = None
        self.calls: List[str] = []

    async def extract_features(self, image_url: str) -> Dict[str, Any]:
        self.calls.append(image_url)
        if self.error is not None:
            raise self.error
        return dict(self.features)


@pytest.fixture(autouse=True)
def disable_rate_limits():
    """Keep rate limits out of the way of functional tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    yield
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "genpire.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest.fixture
def credits(session_maker):
    return CreditsManager(session_maker)


@pytest.fixture
def image_provider():
    return FakeImageProvider()


@pytest.fixture
def vision_analyzer():
    return FakeVisionAnalyzer()


@pytest.fixture
def ttl_store():
    return MemoryTTLStore()


@pytest_asyncio.fixture
async def integration_client(session_maker, credits, image_provider, vision_analyzer, ttl_store):
    overrides = {
        "ttl_store": ttl_store,
        "storage_provider": StorageProvider("database", session_maker=session_maker),
        "credits_manager": credits,
        "image_provider": image_provider,
        "vision_analyzer": vision_analyzer,
    }
    previous = {key: getattr(app.state, key) for key in overrides}
    for key, value in overrides.items():
        setattr(app.state, key, value)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    for key, value in previous.items():
        setattr(app.state, key, value)
