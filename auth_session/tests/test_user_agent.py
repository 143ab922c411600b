"""Tests for the loopback callback app and browser agent."""
import asyncio
import socket

import httpx
import pytest
from fastapi.testclient import TestClient

from auth_session.errors import NetworkError
from auth_session.user_agent import LoopbackBrowserAgent, create_callback_app


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def test_health():
    client = TestClient(create_callback_app(lambda url: None, paths={"/callback"}))
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json().get("service") == "auth_session_callback"


def test_callback_hands_full_url_to_listener():
    seen = []
    client = TestClient(create_callback_app(seen.append, paths={"/callback"}))
    r = client.get("/callback", params={"code": "abc", "state": "xyz"})
    assert r.status_code == 200
    assert "return to the application" in r.text
    assert len(seen) == 1
    assert "code=abc" in seen[0]
    assert "state=xyz" in seen[0]


def test_callback_error_page_escapes_description():
    seen = []
    client = TestClient(create_callback_app(seen.append, paths={"/callback"}))
    r = client.get("/callback", params={"error": "access_denied", "error_description": "<script>x</script>"})
    assert r.status_code == 400
    assert "<script>" not in r.text
    assert "error=access_denied" in seen[0]


def test_unknown_path_is_ignored():
    seen = []
    client = TestClient(create_callback_app(seen.append, paths={"/callback"}))
    assert client.get("/favicon.ico").status_code == 404
    assert seen == []


@pytest.mark.asyncio
async def test_loopback_agent_round_trip():
    port = _free_port()
    redirect_uri = f"http://127.0.0.1:{port}/callback"
    opened = []

    def browser(url: str) -> bool:
        # Runs in an executor thread, like a real browser following the provider's redirect
        opened.append(url)
        httpx.get(f"{redirect_uri}?code=abc&state=xyz", timeout=5)
        return True

    agent = LoopbackBrowserAgent(open_browser=browser)
    result = await asyncio.wait_for(agent.authorize("https://tenant.example.com/authorize?x=1", redirect_uri), timeout=10)
    assert opened == ["https://tenant.example.com/authorize?x=1"]
    assert result.startswith(redirect_uri)
    assert "code=abc" in result


@pytest.mark.asyncio
async def test_loopback_agent_no_browser_is_network_error():
    agent = LoopbackBrowserAgent(open_browser=lambda url: False)
    with pytest.raises(NetworkError):
        await agent.authorize("https://tenant.example.com/authorize", f"http://127.0.0.1:{_free_port()}/callback")


@pytest.mark.asyncio
async def test_loopback_agent_port_in_use_is_network_error():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
        busy.bind(("127.0.0.1", 0))
        busy.listen(1)
        port = busy.getsockname()[1]
        agent = LoopbackBrowserAgent(open_browser=lambda url: True)
        with pytest.raises(NetworkError):
            await agent.authorize("https://tenant.example.com/authorize", f"http://127.0.0.1:{port}/callback")
