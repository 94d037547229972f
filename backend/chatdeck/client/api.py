"""
Entry points for programs that drive chat sessions against a running backend.

    token = await login("admin", "secret")
    manager, http = await connect(token)
    await manager.send("Hello")
    await http.aclose()
"""
import httpx
from loguru import logger

from chatdeck.client.manager import ChatSessionManager
from chatdeck.client.store import ApiSessionStore, StoreError
from chatdeck.client.transport import ProxyTransport
from chatdeck.config import ClientSettings, get_client_settings
from chatdeck.models.auth import TokenResponse, UserOut


async def login(username: str, password: str, settings: ClientSettings | None = None) -> str:
    settings = settings or get_client_settings()
    async with httpx.AsyncClient(base_url=settings.api_base_url, timeout=settings.request_timeout) as client:
        resp = await client.post("/api/auth/login", json={"username": username, "password": password})
    if resp.status_code != 200:
        raise StoreError(f"Login failed: {resp.status_code} {resp.reason_phrase}")
    return TokenResponse(**resp.json()).access_token


def create_http_client(token: str, settings: ClientSettings | None = None) -> httpx.AsyncClient:
    settings = settings or get_client_settings()
    return httpx.AsyncClient(
        base_url=settings.api_base_url,
        headers={"Authorization": f"Bearer {token}"},
        timeout=settings.request_timeout,
    )


async def connect(
    token: str, settings: ClientSettings | None = None
) -> tuple[ChatSessionManager, httpx.AsyncClient]:
    """
    Build a manager for the token's user with its sessions already loaded.
    The caller owns the returned client and must close it.
    """
    settings = settings or get_client_settings()
    http = create_http_client(token, settings)

    resp = await http.get("/api/auth/me")
    if resp.status_code != 200:
        await http.aclose()
        raise StoreError(f"Could not resolve the current user: {resp.status_code} {resp.reason_phrase}")
    user = UserOut(**resp.json())

    manager = ChatSessionManager(
        ApiSessionStore(http),
        ProxyTransport(http),
        initial_messages_load=settings.initial_messages_load,
        messages_per_page=settings.messages_per_page,
    )
    await manager.set_user(user.id)
    logger.info(f"Connected to {settings.api_base_url} as {user.username}")
    return manager, http
