import os
import random
import tempfile
from collections.abc import AsyncGenerator
from unittest.mock import Mock

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from navigator.core.config import settings

# Override settings for tests
settings.jwt_secret_key = "test-secret-key-that-is-at-least-32-bytes-long"
settings.fernet_key = "KxJCocbnA3KD20pkgSN3uUZybasKP1X9lAJDX4oLxoQ="  # test-only Fernet key
settings.app_env = "test"
settings.irs_mock_mode = True
settings.maryland_ifile_environment = "mock"
settings.twilio_account_sid = ""
settings.twilio_auth_token = ""
settings.efile_worker_autostart = False

from navigator.clients.irs_mef import MefClient, get_mef_client  # noqa: E402
from navigator.clients.maryland_ifile import MarylandIFileClient  # noqa: E402
from navigator.core.rate_limit import limiter  # noqa: E402
from navigator.core.security import create_access_token, hash_password  # noqa: E402
from navigator.db.base import Base  # noqa: E402
from navigator.db.postgres import get_db  # noqa: E402
from navigator.efile.circuit_breaker import CircuitBreaker  # noqa: E402
from navigator.main import app  # noqa: E402
from navigator.models.tax_return import FederalTaxReturn, MarylandTaxReturn  # noqa: E402
from navigator.models.tenant import Tenant  # noqa: E402
from navigator.models.user import User  # noqa: E402
from navigator.sms.rate_limiter import sms_rate_limiter  # noqa: E402

# PostgreSQL via TEST_DATABASE_URL; otherwise a throwaway SQLite file.
# NullPool avoids sharing connections between event loops.
TEST_DB_URL = os.environ.get("TEST_DATABASE_URL") or "sqlite+aiosqlite:///" + os.path.join(
    tempfile.gettempdir(), "md_navigator_test.db"
)

test_engine = create_async_engine(TEST_DB_URL, echo=False, poolclass=NullPool)
test_session_factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)

limiter.enabled = False


@pytest.fixture(autouse=True)
async def setup_db():
    """Create all tables before each test and drop after."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(autouse=True)
def reset_shared_state():
    """Process-wide limiter windows and breaker state must not leak between tests."""
    sms_rate_limiter.reset()
    get_mef_client().reset_circuit_breaker()
    yield
    sms_rate_limiter.reset()


async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
    async with test_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


app.dependency_overrides[get_db] = override_get_db


@pytest.fixture
def session_factory() -> async_sessionmaker[AsyncSession]:
    return test_session_factory


@pytest.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    async with test_session_factory() as session:
        yield session


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
async def tenant_and_user(db: AsyncSession) -> tuple[Tenant, User]:
    """Create a test tenant and its admin."""
    tenant = Tenant(name="Baltimore VITA", slug="baltimore-vita")
    db.add(tenant)
    await db.flush()

    user = User(
        tenant_id=tenant.id,
        email="test@example.com",
        password_hash=hash_password("testpassword123"),
        full_name="Test Admin",
        role="admin",
    )
    db.add(user)
    await db.commit()
    return tenant, user


@pytest.fixture
async def auth_headers(tenant_and_user: tuple[Tenant, User]) -> dict[str, str]:
    """Get auth headers with a valid access token."""
    tenant, user = tenant_and_user
    token = create_access_token(user.id, tenant.id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def make_user(db: AsyncSession, tenant_and_user: tuple[Tenant, User]):
    """Factory: make_user(role, email=None, tenant=None) -> (user, headers).

    Passing new_tenant=True puts the user in a separate organisation.
    """
    default_tenant, _ = tenant_and_user
    counter = {"n": 0}

    async def _make(role: str = "taxpayer", email: str | None = None, new_tenant: bool = False):
        counter["n"] += 1
        tenant = default_tenant
        if new_tenant:
            tenant = Tenant(name=f"Other Org {counter['n']}", slug=f"other-org-{counter['n']}")
            db.add(tenant)
            await db.flush()
        user = User(
            tenant_id=tenant.id,
            email=email or f"{role}{counter['n']}@example.com",
            password_hash=hash_password("testpassword123"),
            role=role,
        )
        db.add(user)
        await db.commit()
        headers = {"Authorization": f"Bearer {create_access_token(user.id, tenant.id)}"}
        return user, headers

    return _make


@pytest.fixture
def make_federal_return(db: AsyncSession, tenant_and_user: tuple[Tenant, User]):
    """Factory for a complete, submittable federal return owned by the admin by default."""
    _, default_owner = tenant_and_user

    async def _make(owner: User | None = None, **overrides) -> FederalTaxReturn:
        owner = owner or default_owner
        fields = {
            "tax_year": 2024,
            "filing_status": "single",
            "form_1040_data": {"wages": 42000, "dependents": 0},
            "adjusted_gross_income": 42000,
            "taxable_income": 27400,
            "total_tax": 3040,
            "federal_withholding": 3500,
            "refund_amount": 460,
        }
        fields.update(overrides)
        tax_return = FederalTaxReturn(tenant_id=owner.tenant_id, user_id=owner.id, **fields)
        db.add(tax_return)
        await db.commit()
        return tax_return

    return _make


@pytest.fixture
def make_maryland_return(db: AsyncSession, tenant_and_user: tuple[Tenant, User]):
    """Factory for a Form 502 in Montgomery County whose county tax is correct."""
    _, default_owner = tenant_and_user

    async def _make(owner: User | None = None, **overrides) -> MarylandTaxReturn:
        owner = owner or default_owner
        fields = {
            "tax_year": 2024,
            "filing_status": "single",
            "county": "MO",
            "maryland_taxable_income": 50000,
            "county_tax": 1600,
        }
        fields.update(overrides)
        tax_return = MarylandTaxReturn(tenant_id=owner.tenant_id, user_id=owner.id, **fields)
        db.add(tax_return)
        await db.commit()
        return tax_return

    return _make


# ============================================================================
# Deterministic gateway clients
# ============================================================================


def scripted_rng(*rolls: float) -> Mock:
    """random.Random stand-in: random() returns `rolls` in order, ids are 'abcdefghij'."""
    rng = Mock(spec=random.Random)
    rng.random.side_effect = list(rolls)
    rng.choices.side_effect = lambda population, k: list(population[:k])
    return rng


@pytest.fixture
def rng():
    return scripted_rng


@pytest.fixture
def mef_client():
    """Factory: mef_client(*rolls, threshold=5) -> mock-mode MefClient with its own breaker."""

    def _make(*rolls: float, threshold: int = 5) -> MefClient:
        return MefClient(
            mock_mode=True,
            circuit_breaker=CircuitBreaker(failure_threshold=threshold, cooldown_seconds=300),
            rng=scripted_rng(*rolls),
        )

    return _make


@pytest.fixture
def ifile_client():
    """Factory: ifile_client(*rolls, environment="mock") -> MarylandIFileClient."""

    def _make(*rolls: float, environment: str = "mock") -> MarylandIFileClient:
        return MarylandIFileClient(environment=environment, rng=scripted_rng(*rolls))

    return _make
