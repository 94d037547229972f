import asyncio
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from chatdeck.config import APP_VERSION, get_settings
from chatdeck.db import postgres
from chatdeck.core.security import hash_password
from chatdeck.api import admin, auth, chat, sessions, system


def configure_logging() -> None:
    settings = get_settings()
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level.upper())


async def seed_admin_user() -> None:
    settings = get_settings()
    existing = await postgres.fetch_one(
        "SELECT id FROM users WHERE username = 'admin'"
    )
    if not existing:
        hashed = hash_password(settings.seed_admin_password)
        await postgres.execute(
            "INSERT INTO users (username, hashed_password, role) VALUES ($1, $2, 'admin')",
            "admin",
            hashed,
        )
        logger.info("Seeded default admin user (username: admin)")
    else:
        logger.info("Admin user already exists, skipping seed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger.info("Starting chatdeck backend...")
    settings = get_settings()
    logger.info(
        f"Connecting to PostgreSQL at {settings.postgres_host}:{settings.postgres_port}"
    )

    for attempt in range(10):
        try:
            await postgres.create_pool()
            break
        except Exception as e:
            if attempt < 9:
                logger.warning(
                    f"DB connection attempt {attempt + 1} failed: {e}. Retrying in 2s..."
                )
                await asyncio.sleep(2)
            else:
                logger.error("Failed to connect to database after 10 attempts")
                raise

    await postgres.apply_schema()
    await seed_admin_user()
    if not settings.anthropic_api_key:
        logger.warning("ANTHROPIC_API_KEY is not set; /api/chat will answer 500 until it is")
    logger.info("chatdeck backend ready")
    yield

    await postgres.close_pool()
    logger.info("chatdeck backend shut down")


app = FastAPI(
    title="chatdeck API",
    version=APP_VERSION,
    description="Chat sessions, Claude streaming proxy and global prompt administration",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router)
app.include_router(chat.router)
app.include_router(sessions.router)
app.include_router(admin.router)
app.include_router(system.router)


@app.get("/")
async def root():
    return {"message": "chatdeck API", "version": APP_VERSION, "docs": "/docs"}
