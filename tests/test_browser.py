"""Tests for interactive session capture."""

import pytest

import ratefeed.providers  # noqa: F401
from ratefeed.core.browser import CAPTURE_SCRIPT, BrowserManager, capture_session
from ratefeed.core.errors import AuthenticationFailed
from ratefeed.core.schema import ProviderCode


class ScriptedBrowser:
    """Serves a sequence of page sources, then stays on the last one."""

    def __init__(self, pages, cookies="ASP.NET_SessionId=s9", tokens=None):
        self.pages = list(pages)
        self.cookies = cookies
        self.tokens = tokens
        self.visited = []
        self.closed = False

    @property
    def page_source(self):
        return self.pages.pop(0) if len(self.pages) > 1 else self.pages[0]

    def get(self, url, wait_for_load=True):
        self.visited.append(url)

    def get_cookies(self):
        return [{'name': "ASP.NET_SessionId", 'value': "s9"}] if self.cookies else []

    def cookie_header(self):
        return self.cookies

    def execute_script(self, script, *args):
        assert script == CAPTURE_SCRIPT
        return self.tokens

    def close(self):
        self.closed = True


class TestCaptureSession:

    def test_waits_for_login(self, session_store):
        browser = ScriptedBrowser(
            ['<input name="txtPassword">', '<input name="txtPassword">', "<html>Welcome</html>"],
            tokens={'csrfToken': "csrf-9", 'profile': {'SalesCode': "S42"}},
        )

        session = capture_session(
            ProviderCode.LEX, session_store, timeout=5,
            login_markers=['name="txtPassword"'], browser=browser, poll_interval=0,
        )

        assert browser.visited == ["https://associate.lexautolease.co.uk/"]
        assert session.cookie_jar == "ASP.NET_SessionId=s9"
        assert session.csrf_token == "csrf-9"
        assert session.profile == {'SalesCode': "S42"}
        assert session_store.get_valid_session(ProviderCode.LEX).session_id == session.session_id
        # Caller-owned browsers stay open
        assert not browser.closed

    def test_markers_default_to_client(self, session_store):
        browser = ScriptedBrowser(["<html>Quotes</html>"])

        session = capture_session("lex", session_store, timeout=0, browser=browser, poll_interval=0)

        assert session.csrf_token is None
        assert session.profile == {}

    def test_timeout(self, session_store):
        browser = ScriptedBrowser(['<input name="txtPassword">'])

        with pytest.raises(AuthenticationFailed):
            capture_session(
                ProviderCode.LEX, session_store, timeout=0,
                login_markers=['name="txtPassword"'], browser=browser, poll_interval=0,
            )
        assert session_store.get_valid_session(ProviderCode.LEX) is None


class TestBrowserManager:

    def test_driver_is_lazy(self):
        manager = BrowserManager(headless=True, request_delay=0)

        assert manager._driver is None
        manager.close()
        assert manager._driver is None
