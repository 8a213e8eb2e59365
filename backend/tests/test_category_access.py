# tests/test_category_access.py — Category visibility by role
import uuid

import pytest
from sqlalchemy import select

from category_access import (
    PERSONAL_CATEGORY, ensure_system_categories, filter_visible_tasks,
    list_accessible_categories_for_role, list_categories_for_organisations,
    list_category_role_access, set_category_role_access, visible_category_names,
)
from exceptions import InvalidRole, NotFound
from models import Category, CategoryRoleAccess, Task


async def _custom_category(db, org, name="Finance"):
    category = Category(id=str(uuid.uuid4()), organisation_id=org.id, name=name, is_system=False)
    db.add(category)
    await db.commit()
    return category


def _names(categories):
    return sorted(c.name for c in categories)


@pytest.mark.asyncio
class TestResolver:
    async def test_system_categories_default_open(self, db_session, root_org):
        for role in ("owner", "admin", "viewer", "auditor"):
            visible = await list_accessible_categories_for_role(db_session, [root_org.id], role)
            assert _names(visible) == ["Personal", "Work"]

    async def test_custom_category_without_rows_visible_to_nobody(self, db_session, root_org):
        await _custom_category(db_session, root_org)
        for role in ("owner", "admin", "viewer", "auditor"):
            visible = await list_accessible_categories_for_role(db_session, [root_org.id], role)
            assert "Finance" not in _names(visible)

    async def test_custom_category_with_grant_visible_to_that_role_only(self, db_session, root_org):
        finance = await _custom_category(db_session, root_org)
        await set_category_role_access(db_session, finance.id, ["admin"])

        assert "Finance" in _names(await list_accessible_categories_for_role(db_session, [root_org.id], "admin"))
        assert "Finance" not in _names(await list_accessible_categories_for_role(db_session, [root_org.id], "viewer"))

    async def test_restricted_system_category(self, db_session, root_org):
        work = (await db_session.execute(
            select(Category).where(Category.organisation_id == root_org.id, Category.name == "Work")
        )).scalar_one()
        await set_category_role_access(db_session, work.id, ["viewer"])

        assert "Work" in _names(await list_accessible_categories_for_role(db_session, [root_org.id], "viewer"))
        assert "Work" not in _names(await list_accessible_categories_for_role(db_session, [root_org.id], "admin"))

    async def test_scoped_to_requested_organisations(self, db_session, root_org, other_root_org):
        visible = await list_accessible_categories_for_role(db_session, [root_org.id], "viewer")
        assert {c.organisation_id for c in visible} == {root_org.id}

        both = await list_accessible_categories_for_role(db_session, [root_org.id, other_root_org.id], "viewer")
        assert len(both) == 4

    async def test_empty_inputs_return_empty(self, db_session, root_org):
        assert await list_accessible_categories_for_role(db_session, [], "admin") == []
        assert await list_accessible_categories_for_role(db_session, [root_org.id], "") == []
        assert await list_accessible_categories_for_role(db_session, [root_org.id], None) == []

    async def test_role_is_normalized(self, db_session, root_org):
        finance = await _custom_category(db_session, root_org)
        await set_category_role_access(db_session, finance.id, ["Admin"])
        assert "Finance" in _names(await list_accessible_categories_for_role(db_session, [root_org.id], " ADMIN"))

    async def test_owner_listing_is_unfiltered(self, db_session, root_org):
        await _custom_category(db_session, root_org)
        everything = await list_categories_for_organisations(db_session, [root_org.id])
        assert _names(everything) == ["Finance", "Personal", "Work"]

    async def test_visible_names_for_owner_is_unrestricted(self, db_session, root_org):
        class Owner:
            role = "owner"

        class Viewer:
            role = "viewer"

        assert await visible_category_names(db_session, Owner(), [root_org.id]) is None
        assert await visible_category_names(db_session, Viewer(), [root_org.id]) == {"Work", "Personal"}


@pytest.mark.asyncio
class TestAccessRows:
    async def test_replace_is_total(self, db_session, root_org, auditor_role):
        finance = await _custom_category(db_session, root_org)
        assert await set_category_role_access(db_session, finance.id, ["admin", "viewer"]) == ["admin", "viewer"]
        assert await set_category_role_access(db_session, finance.id, ["auditor"]) == ["auditor"]
        assert await list_category_role_access(db_session, finance.id) == ["auditor"]

    async def test_duplicates_collapse(self, db_session, root_org):
        finance = await _custom_category(db_session, root_org)
        assert await set_category_role_access(db_session, finance.id, ["admin", " ADMIN", "admin"]) == ["admin"]

    async def test_empty_list_restores_default(self, db_session, root_org):
        finance = await _custom_category(db_session, root_org)
        await set_category_role_access(db_session, finance.id, ["viewer"])
        assert await set_category_role_access(db_session, finance.id, []) == []
        assert "Finance" not in _names(await list_accessible_categories_for_role(db_session, [root_org.id], "viewer"))

    async def test_unknown_role_rejected_without_changes(self, db_session, root_org):
        finance = await _custom_category(db_session, root_org)
        await set_category_role_access(db_session, finance.id, ["viewer"])
        with pytest.raises(InvalidRole):
            await set_category_role_access(db_session, finance.id, ["admin", "ghost"])
        assert await list_category_role_access(db_session, finance.id) == ["viewer"]

    async def test_unknown_category(self, db_session, root_org):
        with pytest.raises(NotFound):
            await set_category_role_access(db_session, "missing", ["admin"])

    async def test_rows_removed_with_category(self, db_session, root_org):
        finance = await _custom_category(db_session, root_org)
        await set_category_role_access(db_session, finance.id, ["admin"])
        await db_session.delete(finance)
        await db_session.commit()
        rows = (await db_session.execute(select(CategoryRoleAccess))).scalars().all()
        assert rows == []


@pytest.mark.asyncio
class TestSystemCategories:
    async def test_case_variants_merge(self, db_session, root_org):
        await _custom_category(db_session, root_org, name="work")

        await ensure_system_categories(db_session, root_org.id)
        rows = (await db_session.execute(
            select(Category).where(Category.organisation_id == root_org.id)
        )).scalars().all()
        assert _names(rows) == ["Personal", "Work"]
        assert all(r.is_system for r in rows)

    async def test_idempotent(self, db_session, root_org):
        await ensure_system_categories(db_session, root_org.id)
        await ensure_system_categories(db_session, root_org.id)
        rows = await list_categories_for_organisations(db_session, [root_org.id])
        assert len(rows) == 2


class TestTaskVisibility:
    class _Actor:
        def __init__(self, id):
            self.id = id

    def _task(self, category, created_by):
        return Task(id=str(uuid.uuid4()), organisation_id="org", title="t", category=category, created_by=created_by)

    def test_personal_tasks_only_visible_to_creator(self):
        alice, bob = self._Actor("alice"), self._Actor("bob")
        task = self._task(PERSONAL_CATEGORY, "alice")
        assert filter_visible_tasks([task], alice, None) == [task]
        assert filter_visible_tasks([task], bob, None) == []
        assert filter_visible_tasks([task], bob, {"Work", "Personal"}) == []

    def test_other_tasks_follow_allowed_categories(self):
        actor = self._Actor("bob")
        work, finance = self._task("Work", "alice"), self._task("Finance", "alice")
        assert filter_visible_tasks([work, finance], actor, {"Work"}) == [work]
        assert filter_visible_tasks([work, finance], actor, None) == [work, finance]
        assert filter_visible_tasks([work, finance], actor, set()) == []
