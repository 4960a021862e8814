"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, sqlite in memory)
- A SessionManager wired to fake WhatsApp clients and a fake completion client
- API test client
- Tenant factory
"""
# הגדרות סביבה לפני ייבוא app — settings נטען פעם אחת
import os
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("GATEWAY_WEBHOOK_SECRET", "test-gateway-secret")

import pytest
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

import app.db.models  # noqa: F401  רישום המודלים ב-metadata
from app.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from app.core.exceptions import CompletionAuthError, CompletionQuotaExceededError
from app.core.rate_limiter import RateLimiter
from app.db.database import Base, get_db
from app.db.models.tenant import BotModeName, Tenant
from app.domain.services.completion import CompletionGateway
from app.domain.services.conversation_history import ConversationHistory
from app.domain.services.file_relay import FileRelay
from app.domain.services.notification_hub import NotificationHub
from app.domain.services.order_repository import SqlOrderRepository
from app.domain.services.session_config import SessionConfig, build_session_config
from app.domain.services.session_manager import SessionManager, reset_session_manager
from app.domain.services.tenant_service import TenantService
from app.state_machine.order_flow import OrderStateMachine
from app.main import app
from tests.fakes import FakeChatClient, make_completion_client


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

OWNER_CHAT_ID = "33699999999@c.us"
BANK_REFERENCE = "IBAN FR76 3000 6000 0112 3456 7890 189"


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ============================================================================
# Session Manager
# ============================================================================

@pytest.fixture
def chat_clients() -> dict[str, FakeChatClient]:
    """כל ה-clients שה-manager יצר, לפי session id"""
    return {}


@pytest.fixture
def client_factory(chat_clients):
    def _factory(session_id: str) -> FakeChatClient:
        client = FakeChatClient(session_id)
        chat_clients[session_id] = client
        return client

    return _factory


@pytest.fixture
def completion_client():
    return make_completion_client()


@pytest.fixture
def completion_breaker() -> CircuitBreaker:
    return CircuitBreaker(
        "completion-test",
        CircuitBreakerConfig(
            failure_threshold=3,
            timeout_seconds=60.0,
            excluded_exceptions=(CompletionQuotaExceededError, CompletionAuthError),
        ),
    )


@pytest.fixture
def gateway_factory(completion_client, completion_breaker):
    def _factory(config: SessionConfig) -> CompletionGateway:
        return CompletionGateway(
            ConversationHistory(),
            client=completion_client,
            circuit_breaker=completion_breaker,
            display_name=config.display_name,
            business_data=config.business_data,
            bot_mode=config.bot_mode,
        )

    return _factory


@pytest.fixture
def file_relay(tmp_path) -> FileRelay:
    return FileRelay(tmp_path / "uploads", max_file_size=1024 * 1024)


@pytest.fixture
def order_machine(session_factory) -> OrderStateMachine:
    return OrderStateMachine(SqlOrderRepository(session_factory))


@pytest.fixture
def library_lookup(session_factory):
    async def _lookup(tenant_id: str, text: str):
        async with session_factory() as db:
            return await TenantService(db).find_library_file(tenant_id, text)

    return _lookup


@pytest.fixture
async def session_manager(
    tmp_path,
    client_factory,
    gateway_factory,
    file_relay,
    order_machine,
    library_lookup,
) -> AsyncGenerator[SessionManager, None]:
    manager = SessionManager(
        hub=NotificationHub(),
        rate_limiter=RateLimiter(),
        order_machine=order_machine,
        file_relay=file_relay,
        library_lookup=library_lookup,
        client_factory=client_factory,
        gateway_factory=gateway_factory,
        init_max_retries=3,
        init_backoff_base_seconds=0.01,
        stop_grace_seconds=0,
        auth_data_dir=str(tmp_path / "auth"),
    )
    yield manager
    await manager.shutdown()


@pytest.fixture
def ecommerce_config() -> SessionConfig:
    return build_session_config(
        "shop1",
        display_name="Shop One",
        bot_mode="ecommerce",
        business_data="T-shirt: 20 EUR\nHoodie: 45 EUR",
        owner_outward_id=OWNER_CHAT_ID,
        bank_reference=BANK_REFERENCE,
        accept_cod=True,
    )


@pytest.fixture
def conversational_config() -> SessionConfig:
    return build_session_config(
        "cafe1",
        display_name="Cafe One",
        business_data="Open 8-18. Espresso 2 EUR.",
    )


# ============================================================================
# API client
# ============================================================================

@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, session_manager: SessionManager):
    """Create test client with database and session manager overrides"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    reset_session_manager(session_manager)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
    reset_session_manager()


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def tenant_factory(db_session: AsyncSession):
    """Factory for creating tenants"""
    async def _create_tenant(
        tenant_id: str = "shop1",
        display_name: str = "Shop One",
        bot_mode: BotModeName = BotModeName.CONVERSATIONAL,
        **fields,
    ) -> Tenant:
        tenant = Tenant(id=tenant_id, display_name=display_name, bot_mode=bot_mode, **fields)
        db_session.add(tenant)
        await db_session.commit()
        await db_session.refresh(tenant)
        return tenant

    return _create_tenant


# ============================================================================
# Circuit Breaker Reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()
