import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger
from tortoise.contrib.fastapi import RegisterTortoise

from app import settings
from app.crud import booking_store
from app.errors import register_error_handlers
from app.routers.booking import router as booking_router
from app.routers.vehicles import router as vehicles_router
from app.scopes import BOOKING_SCOPE_DESCRIPTIONS
from app.sweeper import sweep_loop

TORTOISE_MODULES = {"models": ["app.models"]}


@asynccontextmanager
async def lifespan(app: FastAPI):
    stop_event = asyncio.Event()
    async with RegisterTortoise(
        app,
        db_url=settings.db_url,
        modules=TORTOISE_MODULES,
        generate_schemas=settings.ENVIRONMENT != "production",
    ):
        sweeper = asyncio.create_task(sweep_loop(booking_store, stop_event))
        logger.info(
            "Bookings service started (flow={}, hold={}m)",
            settings.ORDER_FLOW,
            settings.PENDING_HOLD_MINUTES,
        )
        try:
            yield
        finally:
            stop_event.set()
            await sweeper


def _scope_docs() -> str:
    lines = [f"- `{scope}`: {text}" for scope, text in BOOKING_SCOPE_DESCRIPTIONS.items()]
    return "Vehicle rental bookings.\n\nScopes:\n\n" + "\n".join(lines)


app = FastAPI(title="Rental Bookings Service", description=_scope_docs(), lifespan=lifespan)
register_error_handlers(app)
app.include_router(vehicles_router)
app.include_router(booking_router)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "bookings", "order_flow": settings.ORDER_FLOW}
