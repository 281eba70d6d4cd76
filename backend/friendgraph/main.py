from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from friendgraph.api.errors import register_exception_handlers
from friendgraph.api.v1.blocks import router as blocks_router
from friendgraph.api.v1.friends import router as friends_router
from friendgraph.api.v1.health import router as health_router
from friendgraph.api.v1.notifications import router as notifications_router
from friendgraph.api.v1.users import router as users_router
from friendgraph.core.logging import configure_logging
from friendgraph.core.settings import settings

configure_logging(settings.LOG_LEVEL)

app = FastAPI(title=settings.PROJECT_NAME)

# Local dev: allow the web client's dev server to call the API.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(
    health_router,
    prefix=settings.API_V1_STR,
    tags=["Health"],
)
app.include_router(
    users_router,
    prefix=settings.API_V1_STR,
    tags=["Users"],
)
app.include_router(
    friends_router,
    prefix=settings.API_V1_STR,
    tags=["Friends"],
)
app.include_router(
    blocks_router,
    prefix=settings.API_V1_STR,
    tags=["Blocks"],
)
app.include_router(
    notifications_router,
    prefix=settings.API_V1_STR,
    tags=["Notifications"],
)
