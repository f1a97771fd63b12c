"""
Account Registry -- chart of accounts per cooperative.

Covers creation rules (type, subtype, duplicate code, parent scope),
the hierarchy view, updates, deletion guards and the HTTP surface.
"""
import uuid
from datetime import date

import pytest

from conftest import cr, dr
from coopledger.errors import (
    ConflictError,
    DuplicateAccountCodeError,
    NotFoundError,
    ValidationError,
)
from coopledger.models.enums import AccountType, NormalBalance
from coopledger.services.events import AccountCreated


class TestAccountRegistry:

    async def test_101_normal_balance_follows_type(self, ledger, db, coop_a):
        """Normal balance is derived from the account type, never supplied."""
        registry = ledger.accounts(db)
        expected = {
            "ASSET": NormalBalance.DEBIT,
            "LIABILITY": NormalBalance.CREDIT,
            "EQUITY": NormalBalance.CREDIT,
            "REVENUE": NormalBalance.CREDIT,
            "EXPENSE": NormalBalance.DEBIT,
        }
        for i, (account_type, normal) in enumerate(expected.items()):
            account = await registry.create(coop_a, f"{i + 1}000", f"{account_type} root", account_type)
            assert account.account_type == AccountType(account_type)
            assert account.normal_balance == normal

    async def test_102_lowercase_type_is_accepted(self, ledger, db, coop_a):
        account = await ledger.accounts(db).create(coop_a, "1000", "Cash", "asset")
        assert account.account_type == AccountType.ASSET

    async def test_103_unknown_type_rejected(self, ledger, db, coop_a):
        with pytest.raises(ValidationError) as exc_info:
            await ledger.accounts(db).create(coop_a, "1000", "Cash", "CASH")
        assert "allowed" in exc_info.value.details

    async def test_104_subtype_must_match_type(self, ledger, db, coop_a):
        registry = ledger.accounts(db)
        ok = await registry.create(coop_a, "1000", "Cash", "ASSET", subtype="current")
        assert ok.subtype == "current"
        with pytest.raises(ValidationError):
            await registry.create(coop_a, "1500", "Goodwill", "ASSET", subtype="retained_earnings")

    async def test_105_duplicate_code_rejected(self, ledger, db, coop_a):
        """A duplicate code is both a conflict and a validation failure."""
        registry = ledger.accounts(db)
        await registry.create(coop_a, "1000", "Cash", "ASSET")
        with pytest.raises(DuplicateAccountCodeError) as exc_info:
            await registry.create(coop_a, "1000", "Cash again", "ASSET")
        assert isinstance(exc_info.value, ConflictError)
        assert isinstance(exc_info.value, ValidationError)
        assert exc_info.value.kind == "duplicate_code"

    async def test_106_same_code_allowed_in_other_cooperative(self, ledger, db, coop_a, coop_b):
        registry = ledger.accounts(db)
        a = await registry.create(coop_a, "1000", "Cash", "ASSET")
        b = await registry.create(coop_b, "1000", "Cash", "ASSET")
        assert a.id != b.id

    async def test_107_parent_must_be_in_same_cooperative(self, ledger, db, coop_a, coop_b):
        registry = ledger.accounts(db)
        foreign = await registry.create(coop_b, "1000", "Cash", "ASSET")
        with pytest.raises(ValidationError):
            await registry.create(coop_a, "1010", "Petty Cash", "ASSET", parent_id=foreign.id)

    async def test_108_unknown_cooperative(self, ledger, db):
        with pytest.raises(NotFoundError):
            await ledger.accounts(db).create(uuid.uuid4(), "1000", "Cash", "ASSET")

    async def test_109_create_emits_fact(self, ledger, db, coop_a, facts):
        account = await ledger.accounts(db).create(coop_a, "1000", "Cash", "ASSET")
        created = [f for f in facts if isinstance(f, AccountCreated)]
        assert len(created) == 1
        assert created[0].account_id == account.id
        assert created[0].code == "1000"
        assert created[0].account_type == "ASSET"

    async def test_110_failed_create_emits_nothing(self, ledger, db, coop_a, facts):
        with pytest.raises(ValidationError):
            await ledger.accounts(db).create(coop_a, "1000", "Cash", "BOGUS")
        assert facts == []


class TestAccountHierarchy:

    async def test_111_roots_first_with_levels_and_paths(self, ledger, db, coop_a):
        registry = ledger.accounts(db)
        assets = await registry.create(coop_a, "1000", "Assets", "ASSET")
        await registry.create(coop_a, "2000", "Liabilities", "LIABILITY")
        bank = await registry.create(coop_a, "1200", "Bank", "ASSET", parent_id=assets.id)
        await registry.create(coop_a, "1100", "Cash", "ASSET", parent_id=assets.id)
        await registry.create(coop_a, "1210", "Bank BRI", "ASSET", parent_id=bank.id)

        roots = await registry.get_hierarchy(coop_a)

        assert [n.account.code for n in roots] == ["1000", "2000"]
        assert all(n.level == 1 for n in roots)
        children = roots[0].children
        assert [n.account.code for n in children] == ["1100", "1200"]
        grandchild = children[1].children[0]
        assert grandchild.level == 3
        assert grandchild.path == "1000 > 1200 > 1210"

    async def test_112_hierarchy_is_per_cooperative(self, ledger, db, coop_a, coop_b):
        registry = ledger.accounts(db)
        await registry.create(coop_a, "1000", "Cash", "ASSET")
        await registry.create(coop_b, "9000", "Other", "EXPENSE")
        roots = await registry.get_hierarchy(coop_a)
        assert [n.account.code for n in roots] == ["1000"]


class TestAccountMaintenance:

    async def test_113_update_descriptive_fields(self, ledger, db, coop_a):
        registry = ledger.accounts(db)
        account = await registry.create(coop_a, "1000", "Cash", "ASSET")
        updated = await registry.update(
            coop_a, account.id, name="Cash on hand", description="Front office", is_active=False
        )
        assert updated.name == "Cash on hand"
        assert updated.description == "Front office"
        assert updated.is_active is False
        assert updated.account_type == AccountType.ASSET

    async def test_114_inactive_hidden_from_default_list(self, ledger, db, coop_a):
        registry = ledger.accounts(db)
        account = await registry.create(coop_a, "1000", "Cash", "ASSET")
        await registry.create(coop_a, "1100", "Bank", "ASSET")
        await registry.update(coop_a, account.id, is_active=False)
        assert [a.code for a in await registry.list_accounts(coop_a)] == ["1100"]
        everything = await registry.list_accounts(coop_a, include_inactive=True)
        assert [a.code for a in everything] == ["1000", "1100"]

    async def test_115_get_from_other_cooperative_is_not_found(self, ledger, db, coop_a, coop_b):
        account = await ledger.accounts(db).create(coop_a, "1000", "Cash", "ASSET")
        with pytest.raises(NotFoundError):
            await ledger.accounts(db).get(coop_b, account.id)

    async def test_116_delete_unused_account(self, ledger, db, coop_a):
        registry = ledger.accounts(db)
        account = await registry.create(coop_a, "1000", "Cash", "ASSET")
        account_id = account.id
        await registry.delete(coop_a, account_id)
        with pytest.raises(NotFoundError):
            await registry.get(coop_a, account_id)

    async def test_117_delete_account_with_postings_conflicts(self, ledger, db, coop_a, chart, fy2024):
        await ledger.journal(db).create(
            coop_a, date(2024, 3, 1), [dr(chart["1000"], 100), cr(chart["3000"], 100)]
        )
        with pytest.raises(ConflictError):
            await ledger.accounts(db).delete(coop_a, chart["1000"])

    async def test_118_delete_parent_conflicts(self, ledger, db, coop_a):
        registry = ledger.accounts(db)
        parent = await registry.create(coop_a, "1000", "Assets", "ASSET")
        parent_id = parent.id
        await registry.create(coop_a, "1100", "Cash", "ASSET", parent_id=parent_id)
        with pytest.raises(ConflictError):
            await registry.delete(coop_a, parent_id)


class TestAccountRoutes:

    async def test_119_create_and_fetch(self, client, coop_a, manager_headers):
        r = await client.post(
            f"/api/cooperatives/{coop_a}/accounts",
            headers=manager_headers,
            json={"code": "1000", "name": "Cash", "account_type": "ASSET", "subtype": "current"},
        )
        assert r.status_code == 201, r.text
        body = r.json()
        assert body["normal_balance"] == "debit"

        r = await client.get(f"/api/cooperatives/{coop_a}/accounts/{body['id']}", headers=manager_headers)
        assert r.status_code == 200
        assert r.json()["code"] == "1000"

    async def test_120_duplicate_code_envelope(self, client, coop_a, manager_headers):
        payload = {"code": "1000", "name": "Cash", "account_type": "ASSET"}
        url = f"/api/cooperatives/{coop_a}/accounts"
        assert (await client.post(url, headers=manager_headers, json=payload)).status_code == 201
        r = await client.post(url, headers=manager_headers, json=payload)
        assert r.status_code == 409
        body = r.json()
        assert body["success"] is False
        assert body["error"]["kind"] == "duplicate_code"

    async def test_121_tree_endpoint(self, client, coop_a, manager_headers):
        url = f"/api/cooperatives/{coop_a}/accounts"
        r = await client.post(url, headers=manager_headers,
                              json={"code": "1000", "name": "Assets", "account_type": "ASSET"})
        parent_id = r.json()["id"]
        await client.post(url, headers=manager_headers,
                          json={"code": "1100", "name": "Cash", "account_type": "ASSET",
                                "parent_id": parent_id})

        r = await client.get(f"{url}/tree", headers=manager_headers)
        assert r.status_code == 200
        items = r.json()["items"]
        assert len(items) == 1
        assert items[0]["children"][0]["path"] == "1000 > 1100"
        assert items[0]["children"][0]["level"] == 2

    async def test_122_viewer_cannot_create(self, client, coop_a, viewer_headers):
        r = await client.post(
            f"/api/cooperatives/{coop_a}/accounts",
            headers=viewer_headers,
            json={"code": "1000", "name": "Cash", "account_type": "ASSET"},
        )
        assert r.status_code == 403
        assert r.json()["error"]["kind"] == "http_error"

    async def test_123_delete_route(self, client, coop_a, manager_headers):
        url = f"/api/cooperatives/{coop_a}/accounts"
        r = await client.post(url, headers=manager_headers,
                              json={"code": "1000", "name": "Cash", "account_type": "ASSET"})
        account_id = r.json()["id"]
        r = await client.delete(f"{url}/{account_id}", headers=manager_headers)
        assert r.status_code == 200
        r = await client.get(f"{url}/{account_id}", headers=manager_headers)
        assert r.status_code == 404
        assert r.json()["error"]["kind"] == "not_found"

    async def test_124_system_account_cannot_be_deleted(self, client, ledger, db, coop_a, manager_headers):
        account = await ledger.accounts(db).create(coop_a, "3200", "Retained Earnings", "EQUITY")
        account.is_system = True
        await db.commit()

        url = f"/api/cooperatives/{coop_a}/accounts/{account.id}"
        r = await client.get(url, headers=manager_headers)
        assert r.json()["is_system"] is True

        r = await client.delete(url, headers=manager_headers)
        assert r.status_code == 409
        assert r.json()["error"]["kind"] == "conflict"
