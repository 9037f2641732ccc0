import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware

from .db import GameStore, settings
from .driver import RoundDriver
from .events import EventStore
from .game import GameController
from .judge import JudgingOrchestrator
from .schemas import DisconnectIn, PublicGameOut, StartGameIn, build_public_game
from .stages import GeminiStages
from .storage import build_photo_store

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

event_store = EventStore()
photo_store = build_photo_store(settings)
controller = GameController(
    GameStore(),
    JudgingOrchestrator(GeminiStages(settings), stage_timeout=settings.STAGE_TIMEOUT_SEC),
    photo_store,
    event_store,
    round_duration=settings.ROUND_DURATION_SEC,
    tick_interval=settings.TICK_INTERVAL_SEC,
    default_total_rounds=settings.TOTAL_ROUNDS,
)
driver = RoundDriver(controller, event_store, photo_store, results_duration=settings.RESULTS_DURATION_SEC)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await driver.start()
    logger.info("Round driver listening for round ends")
    yield
    await driver.stop()
    for room_code in list(controller.store):
        await driver.end_game(room_code)


app = FastAPI(title="Photo Riddle Hunt API", lifespan=lifespan)

origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
origin_regex = settings.CORS_ORIGIN_REGEX or None

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_origin_regex=origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/api/game/{room_code}/events")
async def list_events(room_code: str, after: int | None = None, limit: int = 200):
    events = await event_store.list(room_code, after=after, limit=limit)
    latest_seq = events[-1]["seq"] if events else after
    return {"events": events, "latest_seq": latest_seq}


@app.post("/api/game", response_model=PublicGameOut)
async def start_game(payload: StartGameIn):
    try:
        game = await driver.start_game(payload.room_code, payload.players, payload.total_rounds)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return build_public_game(game, controller.clock())


@app.get("/api/game/{room_code}", response_model=PublicGameOut)
async def get_game(room_code: str):
    game = controller.get(room_code)
    if not game:
        raise HTTPException(404, "Game not found")
    return build_public_game(game, controller.clock())


@app.post("/api/game/{room_code}/photo")
async def submit_photo(
    room_code: str,
    player_id: str = Form(...),
    file: UploadFile = File(...),
):
    data = await file.read()
    try:
        ok = await driver.submit_photo(room_code, player_id, file.filename or "photo", data, file.content_type)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"accepted": ok}


@app.post("/api/game/{room_code}/disconnect")
async def disconnect(room_code: str, payload: DisconnectIn):
    await controller.disconnect(room_code, payload.player_id)
    return {"ok": True}


@app.delete("/api/game/{room_code}")
async def end_game(room_code: str):
    await driver.end_game(room_code)
    return {"ok": True}
