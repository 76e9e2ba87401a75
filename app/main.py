import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.db import engine, Base

from app.models.business import Business
from app.models.engagement_record import EngagementRecord
from app.models.import_run import ImportRun
from app.models.checkin_event import CheckinEvent
from app.models.reward_template import RewardTemplate
from app.models.reward_instance import RewardInstance

from app.routes.businesses import router as businesses_router
from app.routes.checkins import router as checkins_router
from app.routes.customers import router as customers_router
from app.routes.imports import router as imports_router
from app.routes.rewards import router as rewards_router, templates_router as reward_templates_router

DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "https://localhost:3000",
    "http://127.0.0.1:3000",
    "https://127.0.0.1:3000",
]


def _cors_origins() -> list[str]:
    raw = os.getenv("CORS_ORIGINS")
    if not raw:
        return DEFAULT_CORS_ORIGINS
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


app = FastAPI(title="Check-in Loyalty Engine")

# ─── CORS ─────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def startup():
    Base.metadata.create_all(bind=engine)


app.include_router(businesses_router)
app.include_router(checkins_router)
app.include_router(customers_router)
app.include_router(imports_router)
app.include_router(reward_templates_router)
app.include_router(rewards_router)


@app.get("/")
def read_root():
    return {"message": "Check-in Loyalty Engine is running"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=8001, reload=True)
