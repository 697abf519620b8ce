import asyncio
import base64
import os
import tempfile
import unittest
import urllib.parse

import httpx

# Ensure local imports work when running this file directly.
THIS_DIR = os.path.dirname(os.path.abspath(__file__))
if THIS_DIR not in os.sys.path:
    os.sys.path.insert(0, THIS_DIR)

from spotify_api.auth import AuthorizationFlow
from spotify_api.credential_store import CredentialStore
from spotify_api.errors import BadResponse, DecodeError, FlowCancelled, RefreshUnavailable, TransportError
from spotify_api.token_manager import AuthState, Session, TokenInfo, TokenManager


CLIENT_ID = "cid"
CLIENT_SECRET = "secret"
REDIRECT_URI = "http://127.0.0.1:8888/callback"
EXPECTED_BASIC = "Basic " + base64.b64encode(f"{CLIENT_ID}:{CLIENT_SECRET}".encode()).decode()


def _form(request: httpx.Request) -> dict:
    pairs = urllib.parse.parse_qsl(request.content.decode("utf-8"), keep_blank_values=True)
    return dict(pairs)


class FakeAccounts:
    """Scripted Spotify accounts service."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            raise AssertionError("FakeAccounts has no scripted response left")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class GatedAccounts(FakeAccounts):
    """Accounts service that holds each request until `release` is set."""

    def __init__(self, *responses):
        super().__init__(*responses)
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.active = 0
        self.max_active = 0

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            self.started.set()
            await self.release.wait()
            # Let any other queued caller run before answering.
            await asyncio.sleep(0.01)
            return super().__call__(request)
        finally:
            self.active -= 1


def token_response(access_token="A1", refresh_token=None):
    body = {"access_token": access_token, "expires_in": 3600, "token_type": "Bearer", "scope": "user-read-playback-state"}
    if refresh_token:
        body["refresh_token"] = refresh_token
    return httpx.Response(200, json=body)


class FakeFlow(AuthorizationFlow):
    def __init__(self, manager=None, code="CODE", error=None):
        self.manager = manager
        self.code = code
        self.error = error
        self.url = None
        self.state_during_flow = None

    async def authorize(self, url):
        self.url = url
        if self.manager is not None:
            self.state_during_flow = self.manager.state
        if self.error is not None:
            raise self.error
        return self.code


class TokenManagerTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.store = CredentialStore(path=os.path.join(self._tmp.name, "creds.json"))

    def tearDown(self):
        self._tmp.cleanup()

    def make_manager(self, accounts, session=None):
        return TokenManager(
            CLIENT_ID,
            CLIENT_SECRET,
            REDIRECT_URI,
            store=self.store,
            session=session,
            transport=httpx.MockTransport(accounts),
        )


class TestCodeExchange(TokenManagerTestCase):
    async def test_exchange_uses_basic_auth_and_form_body_for_any_code(self):
        for code in ("AQB123", "a b&c=d/é", "x" * 300):
            with self.subTest(code=code):
                accounts = FakeAccounts(token_response("A1", "R1"))
                tm = self.make_manager(accounts)
                await tm.exchange_code(code)

                request = accounts.requests[0]
                self.assertEqual(request.method, "POST")
                self.assertEqual(str(request.url), "https://accounts.spotify.com/api/token")
                self.assertEqual(request.headers["Authorization"], EXPECTED_BASIC)
                self.assertTrue(request.headers["Content-Type"].startswith("application/x-www-form-urlencoded"))
                self.assertEqual(
                    _form(request),
                    {"grant_type": "authorization_code", "code": code, "redirect_uri": REDIRECT_URI},
                )

    async def test_successful_exchange_authenticates_and_persists_refresh_token(self):
        tm = self.make_manager(FakeAccounts(token_response("A1", "R1")))
        token = await tm.exchange_code("CODE")

        self.assertIsInstance(token, TokenInfo)
        self.assertEqual(tm.state, AuthState.AUTHENTICATED)
        self.assertEqual(tm.session, Session(access_token="A1", refresh_token="R1", authenticated=True))
        self.assertEqual(self.store.load(), "R1")
        self.assertIsNotNone(tm.expires_at)

    async def test_exchange_failures_leave_no_partial_state(self):
        failures = [
            (httpx.ConnectError("boom"), TransportError),
            (httpx.Response(400, json={"error": "invalid_grant"}), BadResponse),
            (httpx.Response(200, text="<html>"), DecodeError),
            (httpx.Response(200, json={"token_type": "Bearer"}), DecodeError),
        ]
        for response, expected in failures:
            with self.subTest(expected=expected.__name__):
                self.store.clear()
                tm = self.make_manager(FakeAccounts(response))
                tm.start_authentication()
                with self.assertRaises(expected):
                    await tm.exchange_code("CODE")
                self.assertEqual(tm.state, AuthState.UNAUTHENTICATED)
                self.assertEqual(tm.session, Session())
                self.assertIsNone(self.store.load())

    async def test_login_drives_flow_then_exchanges(self):
        accounts = FakeAccounts(token_response("A1", "R1"))
        tm = self.make_manager(accounts)
        flow = FakeFlow(tm, code="THE-CODE")

        await tm.login(flow)

        self.assertEqual(flow.state_during_flow, AuthState.AUTHORIZING)
        self.assertIn("response_type=code", flow.url)
        self.assertEqual(_form(accounts.requests[0])["code"], "THE-CODE")
        self.assertTrue(tm.is_authenticated)

    async def test_cancelled_flow_returns_to_unauthenticated(self):
        accounts = FakeAccounts()
        tm = self.make_manager(accounts)
        with self.assertRaises(FlowCancelled):
            await tm.login(FakeFlow(tm, error=FlowCancelled("closed")))
        self.assertEqual(tm.state, AuthState.UNAUTHENTICATED)
        self.assertEqual(accounts.requests, [])


class TestRefresh(TokenManagerTestCase):
    async def test_refresh_uses_basic_auth_and_form_body(self):
        for refresh_token in ("R1", "r/with+special=chars"):
            with self.subTest(refresh_token=refresh_token):
                self.store.save(refresh_token)
                accounts = FakeAccounts(token_response("A2"))
                tm = self.make_manager(accounts)
                await tm.refresh()

                request = accounts.requests[0]
                self.assertEqual(request.headers["Authorization"], EXPECTED_BASIC)
                self.assertEqual(_form(request), {"grant_type": "refresh_token", "refresh_token": refresh_token})

    async def test_startup_restore_keeps_refresh_token_when_none_returned(self):
        self.store.save("R1")
        accounts = FakeAccounts(
            httpx.Response(200, json={"access_token": "A1", "expires_in": 3600, "token_type": "Bearer", "scope": "..."})
        )
        tm = self.make_manager(accounts)

        self.assertTrue(await tm.restore_session())

        self.assertEqual(tm.session, Session(access_token="A1", refresh_token="R1", authenticated=True))
        self.assertEqual(self.store.load(), "R1")
        self.assertEqual(len(accounts.requests), 1)

    async def test_refresh_replaces_and_persists_rotated_refresh_token(self):
        self.store.save("R1")
        tm = self.make_manager(FakeAccounts(token_response("A2", "R2")))
        await tm.refresh()
        self.assertEqual(tm.session.refresh_token, "R2")
        self.assertEqual(self.store.load(), "R2")

    async def test_repeated_refreshes_retain_refresh_token(self):
        self.store.save("R1")
        tm = self.make_manager(FakeAccounts(token_response("A1"), token_response("A2")))
        await tm.refresh()
        await tm.refresh()
        self.assertEqual(tm.access_token, "A2")
        self.assertEqual(tm.session.refresh_token, "R1")
        self.assertEqual(self.store.load(), "R1")

    async def test_refresh_without_refresh_token_is_unavailable(self):
        accounts = FakeAccounts()
        tm = self.make_manager(accounts)
        with self.assertRaises(RefreshUnavailable):
            await tm.refresh()
        self.assertEqual(tm.state, AuthState.UNAUTHENTICATED)
        self.assertEqual(accounts.requests, [])
        self.assertFalse(await tm.restore_session())

    async def test_refresh_failure_clears_credential_from_any_prior_state(self):
        failures = {
            "http-400": lambda: httpx.Response(400, json={"error": "invalid_grant"}),
            "http-500": lambda: httpx.Response(500),
            "transport": lambda: httpx.ConnectError("network down"),
            "not-json": lambda: httpx.Response(200, text="not json"),
        }
        for prior in (AuthState.UNAUTHENTICATED, AuthState.AUTHENTICATED):
            for name, failure in failures.items():
                with self.subTest(prior=prior.value, failure=name):
                    self.store.save("R1")
                    if prior == AuthState.AUTHENTICATED:
                        tm = self.make_manager(FakeAccounts(token_response("A1", "R1"), failure()))
                        await tm.exchange_code("CODE")
                    else:
                        tm = self.make_manager(FakeAccounts(failure()))
                    self.assertEqual(tm.state, prior)

                    with self.assertRaises((BadResponse, TransportError, DecodeError)):
                        await tm.refresh()

                    self.assertEqual(tm.state, AuthState.UNAUTHENTICATED)
                    self.assertIsNone(self.store.load())
                    self.assertIsNone(tm.session.refresh_token)
                    self.assertIsNone(tm.access_token)
                    self.assertFalse(tm.session.authenticated)

    async def test_failed_restore_is_reported_not_raised(self):
        self.store.save("R1")
        tm = self.make_manager(FakeAccounts(httpx.Response(400, json={"error": "invalid_grant"})))
        self.assertFalse(await tm.restore_session())
        self.assertIsNone(self.store.load())


class TestConcurrency(TokenManagerTestCase):
    async def test_concurrent_refreshes_never_overlap(self):
        self.store.save("R1")
        accounts = GatedAccounts(token_response("A2", "R2"), token_response("A3", "R3"))
        accounts.release.set()
        tm = self.make_manager(accounts)

        await asyncio.wait_for(asyncio.gather(tm.refresh(), tm.refresh()), timeout=5)

        self.assertEqual(accounts.max_active, 1)
        self.assertEqual([_form(r)["refresh_token"] for r in accounts.requests], ["R1", "R2"])
        self.assertEqual(tm.access_token, "A3")
        self.assertEqual(self.store.load(), "R3")
        self.assertEqual(tm.state, AuthState.AUTHENTICATED)

    async def test_refresh_queued_behind_exchange_uses_new_refresh_token(self):
        accounts = GatedAccounts(token_response("A1", "R1"), token_response("A2"))
        accounts.release.set()
        tm = self.make_manager(accounts)
        tm.start_authentication()

        await asyncio.wait_for(asyncio.gather(tm.exchange_code("CODE"), tm.refresh()), timeout=5)

        self.assertEqual(accounts.max_active, 1)
        self.assertEqual(_form(accounts.requests[0])["grant_type"], "authorization_code")
        self.assertEqual(_form(accounts.requests[1]), {"grant_type": "refresh_token", "refresh_token": "R1"})
        self.assertEqual(tm.session, Session(access_token="A2", refresh_token="R1", authenticated=True))

    async def test_cancelled_refresh_restores_prior_state(self):
        for prior in (Session("A0", "R0", True), Session(refresh_token="R0")):
            with self.subTest(authenticated=prior.authenticated):
                self.store.save("R0")
                accounts = GatedAccounts(token_response("A2"))
                tm = self.make_manager(accounts, session=prior)
                expected_state = tm.state

                task = asyncio.create_task(tm.refresh())
                await asyncio.wait_for(accounts.started.wait(), timeout=5)
                self.assertEqual(tm.state, AuthState.REFRESHING)
                task.cancel()
                with self.assertRaises(asyncio.CancelledError):
                    await task

                self.assertEqual(tm.state, expected_state)
                self.assertEqual(tm.session.refresh_token, "R0")
                self.assertEqual(self.store.load(), "R0")

                # The lock was released, so the next refresh goes through.
                accounts.release.set()
                await asyncio.wait_for(tm.refresh(), timeout=5)
                self.assertEqual(tm.access_token, "A2")
                self.assertEqual(_form(accounts.requests[-1])["refresh_token"], "R0")

    async def test_log_out_during_refresh_wins(self):
        self.store.save("R1")
        accounts = GatedAccounts(token_response("A2", "R2"))
        tm = self.make_manager(accounts, session=Session("A1", "R1", True))

        task = asyncio.create_task(tm.refresh())
        await asyncio.wait_for(accounts.started.wait(), timeout=5)
        tm.log_out()
        accounts.release.set()

        with self.assertRaises(RefreshUnavailable):
            await task
        self.assertEqual(tm.state, AuthState.UNAUTHENTICATED)
        self.assertEqual(tm.session, Session())
        self.assertIsNone(self.store.load())

    async def test_log_out_during_failed_refresh_is_reported_as_logged_out(self):
        self.store.save("R1")
        accounts = GatedAccounts(httpx.Response(500))
        tm = self.make_manager(accounts, session=Session("A1", "R1", True))

        task = asyncio.create_task(tm.refresh())
        await asyncio.wait_for(accounts.started.wait(), timeout=5)
        tm.log_out()
        accounts.release.set()

        with self.assertRaises(RefreshUnavailable):
            await task
        self.assertEqual(tm.session, Session())
        self.assertIsNone(self.store.load())

    async def test_log_out_during_code_exchange_wins(self):
        accounts = GatedAccounts(token_response("A1", "R1"))
        tm = self.make_manager(accounts)
        tm.start_authentication()

        task = asyncio.create_task(tm.exchange_code("CODE"))
        await asyncio.wait_for(accounts.started.wait(), timeout=5)
        tm.log_out()
        accounts.release.set()

        with self.assertRaises(FlowCancelled):
            await task
        self.assertEqual(tm.state, AuthState.UNAUTHENTICATED)
        self.assertEqual(tm.session, Session())
        self.assertIsNone(self.store.load())


class TestLogOut(TokenManagerTestCase):
    async def test_log_out_is_idempotent(self):
        tm = self.make_manager(FakeAccounts(token_response("A1", "R1")))
        await tm.exchange_code("CODE")

        tm.log_out()
        tm.log_out()

        self.assertEqual(tm.state, AuthState.UNAUTHENTICATED)
        self.assertEqual(tm.session, Session())
        self.assertIsNone(self.store.load())

    def test_from_config(self):
        config = {
            "spotify_client_id": " id ",
            "spotify_client_secret": "sec",
            "spotify_redirect_uri": REDIRECT_URI,
            "credential_store_path": self.store.path,
            "http_timeout": 5,
        }
        tm = TokenManager.from_config(config)
        self.assertEqual(tm.client_id, "id")
        self.assertEqual(tm.store.path, self.store.path)
        self.assertEqual(tm.timeout, 5.0)
        self.assertEqual(tm.state, AuthState.UNAUTHENTICATED)


if __name__ == "__main__":
    unittest.main(verbosity=2)
