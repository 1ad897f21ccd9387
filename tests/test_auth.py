import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from jose.exceptions import JWTError

from app.auth import SessionFacade
from app.stores import MemoryAuthClient, MemoryDataBackend


class TestSessionFacade(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.client = MemoryAuthClient(secret="test-secret")
        self.backend = MemoryDataBackend()
        self.session = SessionFacade(self.client, self.backend, reset_redirect="http://localhost:5173/reset-password")

    async def test_sign_up_creates_profile_and_session(self) -> None:
        self.assertIsNone(await self.session.sign_up("ada@example.com", "secret1", "Ada Lovelace"))
        self.assertEqual(self.session.user["email"], "ada@example.com")
        profiles = await self.backend.select("users")
        self.assertEqual(len(profiles), 1)
        self.assertEqual(profiles[0]["full_name"], "Ada Lovelace")
        self.assertEqual(profiles[0]["id"], self.session.user["id"])
        claims = self.client.verify_token(self.session.access_token)
        self.assertEqual(claims["sub"], self.session.user["id"])

    async def test_sign_in_failure_returns_issue(self) -> None:
        issue = await self.session.sign_in("nobody@example.com", "whatever")
        self.assertEqual(issue["code"], "AUTH_FAILED")
        self.assertEqual(issue["message"], "Invalid login credentials")
        self.assertIsNone(self.session.session)

    async def test_sign_out_revokes_token(self) -> None:
        await self.session.sign_up("ada@example.com", "secret1")
        token = self.session.access_token
        self.assertIsNone(await self.session.sign_out())
        self.assertIsNone(self.session.session)
        with self.assertRaises(JWTError):
            self.client.verify_token(token)

    async def test_reset_password_passes_redirect(self) -> None:
        self.assertIsNone(await self.session.reset_password("ada@example.com"))
        self.assertEqual(
            self.client.reset_requests,
            [{"email": "ada@example.com", "redirect_to": "http://localhost:5173/reset-password"}],
        )

    async def test_update_password(self) -> None:
        self.assertEqual((await self.session.update_password("newpass"))["code"], "AUTH_REQUIRED")
        await self.session.sign_up("ada@example.com", "secret1")
        self.assertEqual((await self.session.update_password("abc"))["code"], "AUTH_FAILED")
        self.assertIsNone(await self.session.update_password("newpass"))
        await self.session.sign_out()
        self.assertIsNone(await self.session.sign_in("ada@example.com", "newpass"))

    async def test_duplicate_sign_up(self) -> None:
        await self.session.sign_up("ada@example.com", "secret1")
        issue = await self.session.sign_up("ADA@example.com", "secret1")
        self.assertEqual(issue["message"], "User already registered")


if __name__ == "__main__":
    unittest.main()
