from fastapi import FastAPI
from fastapi.responses import ORJSONResponse
from lifespan.lifespan import lifespan
from api.api import router as api_router
from api.emotions import router as emotions_router
from api.notifications import router as notifications_router

app = FastAPI(
    lifespan=lifespan,
    title="Chat Emotion Service",
    version="1.0.0",
    default_response_class=ORJSONResponse
)

app.include_router(api_router)
app.include_router(notifications_router)
app.include_router(emotions_router)
