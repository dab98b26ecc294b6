"""
Pytest配置文件，提供全局fixture和配置
"""

import uuid
from typing import AsyncGenerator, Dict

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from fileflow.core.config import settings
from fileflow.core.security import create_access_token
from fileflow.db.models import Base
from fileflow.plugins.storage.providers.local import LocalStorageProvider
from fileflow.services.encryption_service import DerivedKeyStore, EncryptionService
from fileflow.services.order_access import StaticOrderAccessResolver
from fileflow.services.processing_dispatcher import ProcessingDispatcher
from fileflow.services.upload_service import UploadService
from tests.utils.fakes import RecordingJobQueue

TEST_DATABASE_URL = "sqlite+aiosqlite://"


def pytest_configure(config):
    """配置pytest"""
    config.addinivalue_line(
        "markers", "integration: mark a test as an integration test"
    )
    config.addinivalue_line("markers", "unit: mark a test as a unit test")


@pytest.fixture
def test_settings():
    """测试配置（较小的限额便于覆盖边界）"""
    return settings.model_copy(
        update={
            "MAX_UPLOAD_SIZE": 1024 * 1024,
            "MAX_CHUNK_SIZE": 64 * 1024,
            "DEFAULT_STORAGE_QUOTA": 10 * 1024 * 1024,
            "ALLOWED_MIME_TYPES": [
                "image/jpeg",
                "image/png",
                "application/pdf",
                "text/plain",
            ],
        }
    )


@pytest_asyncio.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """内存SQLite数据库，每个测试独立"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_maker() as session:
        yield session
        await session.rollback()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def storage(tmp_path) -> LocalStorageProvider:
    return LocalStorageProvider(
        root_dir=str(tmp_path / "storage"),
        download_url_prefix="http://test/api/v1/files/local",
    )


@pytest.fixture
def encryption() -> EncryptionService:
    return EncryptionService(DerivedKeyStore("test-master-key"))


@pytest.fixture
def job_queue() -> RecordingJobQueue:
    return RecordingJobQueue()


@pytest.fixture
def order_access() -> StaticOrderAccessResolver:
    return StaticOrderAccessResolver()


@pytest.fixture
def dispatcher(job_queue) -> ProcessingDispatcher:
    return ProcessingDispatcher(job_queue, thumbnail_sizes=[100, 300])


@pytest.fixture
def upload_service(
    db_session, storage, encryption, dispatcher, order_access, test_settings
) -> UploadService:
    return UploadService(
        db_session,
        storage=storage,
        encryption=encryption,
        dispatcher=dispatcher,
        order_access=order_access,
        config=test_settings,
    )


@pytest.fixture
def owner_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def other_user_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def auth_headers(owner_id) -> Dict[str, str]:
    """上传者的认证头"""
    return {"Authorization": f"Bearer {create_access_token(owner_id)}"}


@pytest.fixture
def other_auth_headers(other_user_id) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(other_user_id)}"}


@pytest_asyncio.fixture
async def client(
    db_session, storage, encryption, job_queue, order_access
) -> AsyncGenerator[AsyncClient, None]:
    """绑定测试数据库和测试依赖的API客户端"""
    from fileflow.api.dependencies import get_db_session
    from fileflow.core.resources import AppResources
    from fileflow.main import create_app

    app = create_app(
        AppResources(
            storage_provider=storage,
            encryption_service=encryption,
            job_queue=job_queue,
            order_access=order_access,
        )
    )

    async def override_get_db_session():
        yield db_session

    app.dependency_overrides[get_db_session] = override_get_db_session

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides = {}
