from fastapi import APIRouter

from chatdeck.config import APP_VERSION, get_settings
from chatdeck.core.context import prompt_cache
from chatdeck.db import postgres
from chatdeck.models.system import HealthResponse

router = APIRouter(prefix="/api/system", tags=["system"])


async def check_postgres() -> bool:
    try:
        row = await postgres.fetch_one("SELECT 1")
        return row is not None
    except Exception:
        return False


def check_anthropic(settings) -> bool:
    # Configuration only, no live call.
    return bool(settings.anthropic_api_key)


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    settings = get_settings()
    postgres_ok = await check_postgres()
    anthropic_ok = check_anthropic(settings)

    return HealthResponse(
        status="ok" if postgres_ok and anthropic_ok else "error",
        version=APP_VERSION,
        dependencies={
            "postgres": "connected" if postgres_ok else "error",
            "anthropic": "configured" if anthropic_ok else "missing api key",
        },
        prompt_cache=prompt_cache.status(),
    )
