import os
import sys
import unittest
from unittest import mock


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from fastapi.testclient import TestClient

os.environ.pop("USE_SUPABASE", None)
os.environ.pop("CRM_DISABLE_AUTH", None)

import app.main as main
from app.stores import MemoryAuthClient, MemoryDataBackend, MemoryProvisioner
from flexcrm.errors import ProvisioningError


class OneFailureProvisioner(MemoryProvisioner):
    def __init__(self, backend) -> None:
        super().__init__(backend)
        self.failed = False

    async def create_table(self, entity_name, fields):
        if not self.failed:
            self.failed = True
            raise ProvisioningError("edge function unavailable")
        return await super().create_table(entity_name, fields)


def _codes(body):
    return [e["code"] for e in body["errors"]]


class ApiCase(unittest.TestCase):
    def setUp(self) -> None:
        self.ctx = main.build_context()
        self.app = main.create_app(self.ctx)
        self.client = TestClient(self.app)

    def sign_up(self) -> dict:
        res = self.client.post("/auth/sign-up", json={"email": "ada@example.com", "password": "secret1", "full_name": "Ada"})
        self.assertEqual(res.status_code, 201, res.json())
        return res.json()["session"]

    def create_deals(self) -> dict:
        res = self.client.post("/settings/entities", json={"name": "deals", "label": "Deals"})
        self.assertEqual(res.status_code, 201, res.json())
        entity = res.json()["entity"]
        res = self.client.post(
            f"/settings/entities/{entity['id']}/fields",
            json={"name": "amount", "label": "Amount", "type": "number", "is_required": True},
        )
        self.assertEqual(res.status_code, 201, res.json())
        return entity


class TestAuthGuard(ApiCase):
    def test_health_is_public(self) -> None:
        self.assertEqual(self.client.get("/health").json(), {"ok": True})

    def test_requires_session(self) -> None:
        res = self.client.get("/settings/entities")
        self.assertEqual(res.status_code, 401)
        self.assertEqual(_codes(res.json()), ["AUTH_REQUIRED"])

    def test_bearer_token_and_revocation(self) -> None:
        token = self.sign_up()["access_token"]
        self.assertTrue(self.client.get("/auth/session").json()["signed_in"])
        self.client.post("/auth/sign-out")
        self.assertFalse(self.client.get("/auth/session").json()["signed_in"])
        res = self.client.get("/settings/entities", headers={"Authorization": f"Bearer {token}"})
        self.assertEqual(_codes(res.json()), ["AUTH_INVALID_TOKEN"])
        res = self.client.post("/auth/sign-in", json={"email": "ada@example.com", "password": "secret1"})
        token = res.json()["session"]["access_token"]
        self.client.cookies.clear()
        self.assertEqual(self.client.get("/settings/entities").status_code, 401)
        res = self.client.get("/settings/entities", headers={"Authorization": f"Bearer {token}"})
        self.assertEqual(res.status_code, 200)

    def test_sessions_are_per_client(self) -> None:
        owner = self.sign_up()["user"]
        self.create_deals()
        other = TestClient(self.app)
        res = other.post("/settings/entities", json={"name": "tasks", "label": "Tasks"})
        self.assertEqual(res.status_code, 401)
        self.assertEqual(_codes(res.json()), ["AUTH_REQUIRED"])
        self.assertEqual(other.post("/deals", json={"amount": 5}).status_code, 401)
        self.assertFalse(other.get("/auth/session").json()["signed_in"])
        res = other.post("/auth/update-password", json={"password": "taken1"})
        self.assertEqual(res.status_code, 401)

        res = other.post("/auth/sign-up", json={"email": "bob@example.com", "password": "secret2"})
        bob = res.json()["session"]["user"]
        self.assertEqual(other.post("/deals", json={"amount": 7}).json()["record"]["created_by"], bob["id"])
        self.assertEqual(self.client.post("/deals", json={"amount": 8}).json()["record"]["created_by"], owner["id"])
        res = self.client.post("/auth/sign-in", json={"email": "ada@example.com", "password": "secret1"})
        self.assertEqual(res.status_code, 200)

    def test_sign_in_failure(self) -> None:
        res = self.client.post("/auth/sign-in", json={"email": "ada@example.com", "password": "nope"})
        self.assertEqual(res.status_code, 401)
        self.assertEqual(_codes(res.json()), ["AUTH_FAILED"])

    def test_disable_auth_env(self) -> None:
        with mock.patch.dict(os.environ, {"CRM_DISABLE_AUTH": "1"}):
            self.assertEqual(self.client.get("/settings/entities").status_code, 200)


class TestDealsScenario(ApiCase):
    def setUp(self) -> None:
        super().setUp()
        self.user = self.sign_up()["user"]

    def test_create_entity_field_and_record(self) -> None:
        self.create_deals()
        res = self.client.post("/deals", json={"amount": 500})
        self.assertEqual(res.status_code, 201, res.json())
        self.assertEqual(res.json()["record"]["created_by"], self.user["id"])

        res = self.client.get("/deals")
        rows = res.json()["view"]["rows"]
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["amount"], 500)
        self.assertEqual([c["key"] for c in res.json()["view"]["columns"]], ["amount", "created_at", "actions"])

    def test_record_validation_errors(self) -> None:
        self.create_deals()
        res = self.client.post("/deals", json={})
        self.assertEqual(_codes(res.json()), ["REQUIRED_FIELD"])
        self.assertEqual(res.json()["errors"][0]["message"], "Amount is required")
        res = self.client.post("/deals", json={"amount": 5, "colour": "red"})
        self.assertEqual(_codes(res.json()), ["UNKNOWN_FIELD"])
        res = self.client.post("/deals", json={"amount": "NaN"})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(_codes(res.json()), ["TYPE_MISMATCH"])
        self.assertEqual(self.client.get("/deals").status_code, 200)

        record = self.client.post("/deals", json={"amount": 5}).json()["record"]
        res = self.client.put(f"/deals/{record['id']}", json={"amount": "lots"})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(_codes(res.json()), ["TYPE_MISMATCH"])
        res = self.client.put(f"/deals/{record['id']}", json={"amount": "7"})
        self.assertEqual(res.json()["record"]["amount"], 7)

    def test_record_detail_delete_and_not_found(self) -> None:
        self.create_deals()
        record = self.client.post("/deals", json={"amount": 5}).json()["record"]
        form = self.client.get("/deals/new").json()["form"]
        self.assertIsNone(form["record_id"])
        self.assertEqual(form["sections"][0]["fields"][0]["name"], "amount")
        detail = self.client.get(f"/deals/{record['id']}").json()
        self.assertEqual(detail["form"]["values"]["amount"], 5)
        self.assertEqual(self.client.delete(f"/deals/{record['id']}").status_code, 200)
        self.assertEqual(self.client.get(f"/deals/{record['id']}").status_code, 404)
        self.assertEqual(_codes(self.client.get("/ghosts").json()), ["ENTITY_NOT_FOUND"])

    def test_list_sort_and_search(self) -> None:
        entity = self.create_deals()
        self.client.post(f"/settings/entities/{entity['id']}/fields", json={"name": "Company", "label": "Company"})
        for amount, company in ((3, "Acme Corp"), (1, "Globex"), (2, "Acme Inc")):
            self.client.post("/deals", json={"amount": amount, "company": company})
        view = self.client.get("/deals", params={"sort": "amount", "direction": "asc"}).json()["view"]
        self.assertEqual([r["amount"] for r in view["rows"]], [1, 2, 3])
        view = self.client.get("/deals", params={"q": "acme"}).json()["view"]
        self.assertEqual(sorted(r["company"] for r in view["rows"]), ["Acme Corp", "Acme Inc"])

    def test_dashboard_counts(self) -> None:
        self.create_deals()
        self.client.post("/deals", json={"amount": 1})
        summary = self.client.get("/").json()["summary"]
        self.assertEqual(summary["entities"][0]["count"], 1)
        self.assertEqual(len(summary["recent"]), 1)


class TestEntitySettings(ApiCase):
    def setUp(self) -> None:
        super().setUp()
        self.sign_up()

    def test_invalid_and_reserved_names(self) -> None:
        res = self.client.post("/settings/entities", json={"name": "big-deals", "label": "Big Deals"})
        self.assertEqual(_codes(res.json()), ["INVALID_NAME"])
        res = self.client.post("/settings/entities", json={"name": "settings", "label": "Settings"})
        self.assertEqual(_codes(res.json()), ["INVALID_NAME"])
        self.assertEqual(self.ctx.metadata.entities, [])

    def test_name_is_slugified_on_create_and_update(self) -> None:
        entity = self.client.post("/settings/entities", json={"name": "Big Deals", "label": "Big Deals"}).json()["entity"]
        self.assertEqual(entity["name"], "big_deals")
        res = self.client.put(f"/settings/entities/{entity['id']}", json={"name": "Huge Deals", "label": "Huge"})
        self.assertEqual(res.json()["entity"]["name"], "huge_deals")

    def test_delete_is_disabled(self) -> None:
        entity = self.client.post("/settings/entities", json={"name": "deals", "label": "Deals"}).json()["entity"]
        res = self.client.delete(f"/settings/entities/{entity['id']}")
        self.assertEqual(res.status_code, 405)
        self.assertEqual(_codes(res.json()), ["ENTITY_DELETE_DISABLED"])

    def test_field_crud(self) -> None:
        entity = self.create_deals()
        res = self.client.post(f"/settings/entities/{entity['id']}/fields", json={"name": "amount", "label": "Again"})
        self.assertEqual(_codes(res.json()), ["DUPLICATE_VALUE"])
        res = self.client.post(
            f"/settings/entities/{entity['id']}/fields", json={"name": "stage", "label": "Stage", "type": "select", "options": "Open,,Won"}
        )
        self.assertEqual(_codes(res.json()), ["OPTION_EMPTY"])

        fields = self.client.get(f"/settings/entities/{entity['id']}").json()["fields"]
        field_id = fields[0]["id"]
        res = self.client.put(f"/settings/fields/{field_id}", json={"label": "Deal Value"})
        self.assertEqual(res.json()["field"]["label"], "Deal Value")
        self.assertEqual(res.json()["field"]["display_order"], 0)
        self.assertEqual(self.client.delete(f"/settings/fields/{field_id}").status_code, 200)
        self.assertEqual(self.client.delete(f"/settings/fields/{field_id}").status_code, 404)

    def test_provisioning_failure_retry_and_discard(self) -> None:
        backend = MemoryDataBackend()
        auth = MemoryAuthClient()
        ctx = main.AppContext(backend, OneFailureProvisioner(backend), auth, auth.verify_token)
        client = TestClient(main.create_app(ctx))
        with mock.patch.dict(os.environ, {"CRM_DISABLE_AUTH": "1"}):
            res = client.post("/settings/entities", json={"name": "deals", "label": "Deals"})
            self.assertEqual(res.status_code, 502)
            self.assertEqual(_codes(res.json()), ["PROVISIONING_FAILED"])
            creation = res.json()["errors"][0]["detail"]["creation"]
            self.assertEqual(creation["state"], "provisioning_failed")
            pending = client.get("/settings/entities/pending-cleanup").json()["creations"]
            self.assertEqual(len(pending), 1)
            entity_id = creation["entity"]["id"]
            res = client.post(f"/settings/entities/{entity_id}/retry-provisioning")
            self.assertEqual(res.status_code, 200, res.json())
            self.assertTrue(backend.has_table("deals"))
            self.assertEqual(client.get("/settings/entities/pending-cleanup").json()["creations"], [])
            self.assertEqual(client.post(f"/settings/entities/{entity_id}/discard").status_code, 502)


class TestLayoutsAndConsole(ApiCase):
    def setUp(self) -> None:
        super().setUp()
        self.sign_up()
        self.entity = self.create_deals()

    def test_layout_editor_flow(self) -> None:
        entity_id = self.entity["id"]
        state = self.client.get(f"/settings/layouts/{entity_id}").json()["editor"]
        self.assertEqual(state["definition"]["sections"][0]["title"], "Information")
        self.assertIsNone(state["selected_layout_id"])

        res = self.client.post(f"/settings/layouts/{entity_id}/save")
        self.assertEqual(_codes(res.json()), ["NO_LAYOUT_SELECTED"])
        res = self.client.post(f"/settings/layouts/{entity_id}", json={"name": "Main", "is_default": True})
        self.assertEqual(res.status_code, 201, res.json())
        layout_id = res.json()["layout"]["id"]

        res = self.client.post(f"/settings/layouts/{entity_id}/editor", json={"op": "add_section"})
        self.assertEqual(res.json()["editor"]["definition"]["sections"][1]["title"], "Section 2")
        res = self.client.post(f"/settings/layouts/{entity_id}/editor", json={"op": "add_field", "section_index": 1})
        self.assertEqual(_codes(res.json()), ["NO_FIELDS_AVAILABLE"])
        res = self.client.post(f"/settings/layouts/{entity_id}/save")
        self.assertEqual(len(res.json()["layout"]["definition"]["sections"]), 2)

        self.assertEqual(self.client.delete(f"/settings/layouts/item/{layout_id}").status_code, 200)
        layouts = self.client.get(f"/settings/layouts/{entity_id}").json()["layouts"]
        self.assertEqual(layouts, [])

    def test_console_pages(self) -> None:
        res = self.client.get("/console/deals")
        self.assertEqual(res.status_code, 200)
        self.assertIn("No deals yet", res.text)
        self.assertIn("New Deal", res.text)

        res = self.client.post("/console/deals/new", data={"amount": ""})
        self.assertEqual(res.status_code, 400)
        self.assertIn("Amount is required", res.text)

        res = self.client.post("/console/deals/new", data={"amount": "42"}, follow_redirects=False)
        self.assertEqual(res.status_code, 303)
        self.assertEqual(res.headers["location"], "/console/deals")
        res = self.client.get("/console/deals")
        self.assertIn("42", res.text)
        self.assertIn("Dashboard", self.client.get("/console").text)


if __name__ == "__main__":
    unittest.main()
