# tests/conftest.py — Shared test fixtures
import os
import uuid

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ["SEED_DEMO_DATA"] = "false"

from models import Base, User, Organisation, Role, SystemRole
from auth import AuthService, _login_attempts
from category_access import ensure_system_categories
from database import enable_sqlite_foreign_keys, get_db_session
from roles import ensure_system_roles
from main import app


@pytest.fixture(autouse=True)
def reset_login_attempts():
    _login_attempts.clear()
    yield
    _login_attempts.clear()


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    enable_sqlite_foreign_keys(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine):
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        await ensure_system_roles(session)
        yield session


@pytest_asyncio.fixture(scope="function")
async def session_factory(db_engine):
    """Independent sessions, one connection each, for interleaved writers"""
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def client(db_engine):
    """HTTP test client with overridden DB dependency"""
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ============================================================
# ORGANISATION TREE
#   Acme (root) ── Acme North
#               └─ Acme South
#   Globex (separate root)
# ============================================================

async def _make_org(session: AsyncSession, name: str, parent_id=None) -> Organisation:
    org = Organisation(id=str(uuid.uuid4()), name=name, parent_id=parent_id)
    session.add(org)
    await session.commit()
    await ensure_system_categories(session, org.id)
    return org


@pytest_asyncio.fixture
async def root_org(db_session):
    return await _make_org(db_session, "Acme")


@pytest_asyncio.fixture
async def child_org(db_session, root_org):
    return await _make_org(db_session, "Acme North", root_org.id)


@pytest_asyncio.fixture
async def sibling_org(db_session, root_org):
    return await _make_org(db_session, "Acme South", root_org.id)


@pytest_asyncio.fixture
async def other_root_org(db_session):
    return await _make_org(db_session, "Globex")


@pytest_asyncio.fixture
async def org_tree(root_org, child_org, sibling_org, other_root_org):
    return {"root": root_org, "north": child_org, "south": sibling_org, "globex": other_root_org}


# ============================================================
# USERS
# ============================================================

async def make_user(session: AsyncSession, org: Organisation, role: str, email: str,
                    password: str = "Password123!", is_active: bool = True) -> User:
    user = User(
        id=str(uuid.uuid4()),
        organisation_id=org.id,
        email=email,
        password_hash=AuthService.hash_password(password),
        name=email.split("@")[0].title(),
        role=role,
        is_active=is_active,
    )
    session.add(user)
    await session.commit()
    await session.refresh(user)
    return user


@pytest_asyncio.fixture
async def owner_user(db_session, org_tree):
    return await make_user(db_session, org_tree["root"], SystemRole.OWNER.value, "owner@acme.test", "Owner123!")


@pytest_asyncio.fixture
async def admin_user(db_session, org_tree):
    return await make_user(db_session, org_tree["root"], SystemRole.ADMIN.value, "admin@acme.test", "Admin123!")


@pytest_asyncio.fixture
async def viewer_user(db_session, org_tree):
    return await make_user(db_session, org_tree["root"], SystemRole.VIEWER.value, "viewer@acme.test", "Viewer123!")


@pytest_asyncio.fixture
async def child_admin(db_session, org_tree):
    return await make_user(db_session, org_tree["north"], SystemRole.ADMIN.value, "north.admin@acme.test")


@pytest_asyncio.fixture
async def auditor_role(db_session):
    role = Role(id=str(uuid.uuid4()), name="auditor", description="Reviews tasks", is_system=False)
    db_session.add(role)
    await db_session.commit()
    return role


@pytest_asyncio.fixture
async def auditor_user(db_session, org_tree, auditor_role):
    return await make_user(db_session, org_tree["root"], auditor_role.name, "auditor@acme.test")


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token = AuthService.create_access_token(user)
    return {"Authorization": f"Bearer {token}"}
