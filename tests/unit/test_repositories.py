"""
Unit tests for the asyncpg repositories.

The pool is a MagicMock whose acquire() context yields an AsyncMock
connection, so each test checks the SQL arguments sent and how rows are
mapped back.

Tests cover:
- user_roles reads, writes, listing and the update_user_role function check
- payments inserts and lookups
- auth.users lookups and jsonb metadata merges
- Database errors are re-raised
"""

import json
from datetime import datetime, timezone
from uuid import uuid4
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from api.src.models.billing import AuthUser, UserRoleRecord
from api.src.repositories.auth_user_repo import AuthUserRepository
from api.src.repositories.payment_repo import PaymentRepository
from api.src.repositories.user_role_repo import UserRoleRepository

CREATED = datetime(2025, 6, 1, tzinfo=timezone.utc)


# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture
def conn():
    return AsyncMock()


@pytest.fixture
def pool(conn):
    pool = MagicMock()
    pool.acquire.return_value.__aenter__.return_value = conn
    pool.acquire.return_value.__aexit__.return_value = False
    return pool


@pytest.fixture
def user_id():
    return uuid4()


def role_row(user_id, role="tier1", email="ada@example.com"):
    return {
        "user_id": user_id,
        "role": role,
        "email": email,
        "created_at": CREATED,
        "updated_at": CREATED,
    }


# ============================================================================
# USER ROLES
# ============================================================================


class TestUserRoleRepository:

    @pytest.fixture
    def repo(self, pool):
        return UserRoleRepository(pool)

    @pytest.mark.asyncio
    async def test_get_role_maps_row(self, repo, conn, user_id):
        conn.fetchrow.return_value = role_row(user_id)

        record = await repo.get_role(user_id)

        assert record == UserRoleRecord(
            user_id=user_id, role="tier1", email="ada@example.com", created_at=CREATED, updated_at=CREATED
        )
        assert conn.fetchrow.await_args.args[1] == user_id

    @pytest.mark.asyncio
    async def test_get_role_missing(self, repo, conn, user_id):
        conn.fetchrow.return_value = None

        assert await repo.get_role(user_id) is None

    @pytest.mark.asyncio
    async def test_insert_role(self, repo, conn, user_id):
        conn.fetchrow.return_value = role_row(user_id, role="tier2")

        record = await repo.insert_role(user_id, "tier2", "ada@example.com")

        assert record.role == "tier2"
        query, *args = conn.fetchrow.await_args.args
        assert "INSERT INTO public.user_roles" in query
        assert args == [user_id, "tier2", "ada@example.com"]

    @pytest.mark.asyncio
    async def test_insert_duplicate_is_reraised(self, repo, conn, user_id):
        conn.fetchrow.side_effect = asyncpg.UniqueViolationError("duplicate key")

        with pytest.raises(asyncpg.UniqueViolationError):
            await repo.insert_role(user_id, "tier1")

    @pytest.mark.asyncio
    async def test_update_role(self, repo, conn, user_id):
        conn.fetchrow.return_value = role_row(user_id, role="tier3")

        record = await repo.update_role(user_id, "tier3")

        assert record.role == "tier3"
        assert conn.fetchrow.await_args.args[1:] == (user_id, "tier3")

    @pytest.mark.asyncio
    async def test_update_role_without_row(self, repo, conn, user_id):
        conn.fetchrow.return_value = None

        assert await repo.update_role(user_id, "tier3") is None

    @pytest.mark.asyncio
    async def test_update_error_is_reraised(self, repo, conn, user_id):
        conn.fetchrow.side_effect = asyncpg.PostgresError("permission denied")

        with pytest.raises(asyncpg.PostgresError):
            await repo.update_role(user_id, "tier3")

    @pytest.mark.asyncio
    async def test_call_update_role_function(self, repo, conn, user_id):
        await repo.call_update_role_function(user_id, "tier1")

        conn.execute.assert_awaited_once_with("SELECT public.update_user_role($1, $2)", user_id, "tier1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value,expected", [(True, True), (False, False), (None, False)])
    async def test_role_function_exists(self, repo, conn, value, expected):
        conn.fetchval.return_value = value

        assert await repo.role_function_exists() is expected
        assert "update_user_role" in conn.fetchval.await_args.args[0]

    @pytest.mark.asyncio
    async def test_find_user_id_by_email(self, repo, conn, user_id):
        conn.fetchval.return_value = user_id

        assert await repo.find_user_id_by_email("Ada@Example.com") == user_id
        assert conn.fetchval.await_args.args[1] == "Ada@Example.com"

    @pytest.mark.asyncio
    async def test_create_role_update_notification(self, repo, conn, user_id):
        await repo.create_role_update_notification(user_id, "tier1")

        query, *args = conn.execute.await_args.args
        assert "role_update_notifications" in query
        assert args == [user_id, "tier1"]

    @pytest.mark.asyncio
    async def test_list_without_search(self, repo, conn, user_id):
        conn.fetch.return_value = [role_row(user_id), role_row(uuid4(), role="admin")]

        records = await repo.list_user_roles(limit=20, offset=40)

        assert [r.role for r in records] == ["tier1", "admin"]
        query, *args = conn.fetch.await_args.args
        assert "ILIKE" not in query
        assert args == [20, 40]

    @pytest.mark.asyncio
    async def test_list_with_search(self, repo, conn):
        conn.fetch.return_value = []

        assert await repo.list_user_roles(limit=10, offset=0, search="ada") == []
        query, *args = conn.fetch.await_args.args
        assert "email ILIKE $1" in query
        assert args == ["%ada%", 10, 0]


# ============================================================================
# PAYMENTS
# ============================================================================


class TestPaymentRepository:

    @pytest.fixture
    def repo(self, pool):
        return PaymentRepository(pool)

    @pytest.mark.asyncio
    async def test_create_payment(self, repo, conn, user_id):
        await repo.create_payment(user_id, "sub_123", "ada@example.com", subscription_name="zaptrip-yearly")

        query, *args = conn.execute.await_args.args
        assert "INSERT INTO public.payments" in query
        assert args == [user_id, "sub_123", "zaptrip-yearly", "ada@example.com"]

    @pytest.mark.asyncio
    async def test_create_payment_error_is_reraised(self, repo, conn, user_id):
        conn.execute.side_effect = asyncpg.PostgresError("relation does not exist")

        with pytest.raises(asyncpg.PostgresError):
            await repo.create_payment(user_id, "sub_123", None)

    @pytest.mark.asyncio
    async def test_find_by_subscription(self, repo, conn, user_id):
        other = uuid4()
        conn.fetch.return_value = [{"user_id": user_id}, {"user_id": other}]

        assert await repo.find_user_ids_by_subscription("sub_123") == [user_id, other]
        assert conn.fetch.await_args.args[1] == "sub_123"

    @pytest.mark.asyncio
    async def test_find_by_email(self, repo, conn):
        conn.fetch.return_value = []

        assert await repo.find_user_ids_by_email("ada@example.com") == []


# ============================================================================
# AUTH USERS
# ============================================================================


class TestAuthUserRepository:

    @pytest.fixture
    def repo(self, pool):
        return AuthUserRepository(pool)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", [
        '{"first_name": "Ada"}',
        {"first_name": "Ada"},
    ])
    async def test_get_user_decodes_metadata(self, repo, conn, user_id, raw):
        conn.fetchrow.return_value = {"id": user_id, "email": "ada@example.com", "raw_user_meta_data": raw}

        user = await repo.get_user(user_id)

        assert user == AuthUser(id=user_id, email="ada@example.com", metadata={"first_name": "Ada"})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", [None, "null"])
    async def test_get_user_empty_metadata(self, repo, conn, user_id, raw):
        conn.fetchrow.return_value = {"id": user_id, "email": None, "raw_user_meta_data": raw}

        user = await repo.get_user(user_id)

        assert user.metadata == {}

    @pytest.mark.asyncio
    async def test_get_user_missing(self, repo, conn, user_id):
        conn.fetchrow.return_value = None

        assert await repo.get_user(user_id) is None

    @pytest.mark.asyncio
    async def test_find_user_id_by_email(self, repo, conn, user_id):
        conn.fetchval.return_value = user_id

        assert await repo.find_user_id_by_email("ada@example.com") == user_id

    @pytest.mark.asyncio
    async def test_merge_metadata_sends_json_patch(self, repo, conn, user_id):
        conn.fetchrow.return_value = {
            "id": user_id,
            "email": "ada@example.com",
            "raw_user_meta_data": '{"first_name": "Ada", "role": "tier2"}',
        }

        user = await repo.merge_metadata(user_id, {"role": "tier2"})

        query, *args = conn.fetchrow.await_args.args
        assert "|| $2::jsonb" in query
        assert args[0] == user_id
        assert json.loads(args[1]) == {"role": "tier2"}
        assert user.metadata == {"first_name": "Ada", "role": "tier2"}

    @pytest.mark.asyncio
    async def test_merge_metadata_without_user(self, repo, conn, user_id):
        conn.fetchrow.return_value = None

        assert await repo.merge_metadata(user_id, {"role": "tier2"}) is None

    @pytest.mark.asyncio
    async def test_merge_error_is_reraised(self, repo, conn, user_id):
        conn.fetchrow.side_effect = asyncpg.PostgresError("permission denied for table users")

        with pytest.raises(asyncpg.PostgresError):
            await repo.merge_metadata(user_id, {"role": "tier2"})
