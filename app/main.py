"""Entry point for the FastAPI-powered movie matching service."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator

import httpx
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import Settings, settings
from .database import Database
from .errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    RaceLossError,
    SessionServiceError,
    UpstreamError,
    ValidationError,
)
from .models import (
    CandidateList,
    CandidateMovie,
    CatalogGenre,
    CatalogMovieDetail,
    CatalogProvider,
    CreateSessionRequest,
    CreateUserRequest,
    FeedView,
    JoinSessionRequest,
    MaterializeRequest,
    ParticipantView,
    SelectionKind,
    SessionView,
    ToggleSelectionRequest,
    TransitionRequest,
    UpdateUserRequest,
    UserProfile,
    VoteOutcome,
    VoteRequest,
)
from .services.configuration import ConfigurationEngine
from .services.feed import FeedService
from .services.identity import IdentityService
from .services.lifecycle import SessionLifecycle
from .services.materializer import MovieListMaterializer
from .services.notifier import ChangeNotifier
from .services.session_store import SessionStore
from .services.tmdb import TMDBClient
from .services.voting import VoteEngine

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI

EVENT_KEEPALIVE_SECONDS = 15.0


@dataclass(slots=True)
class MatchServices:
    """The wired-up service graph shared by all routes."""

    store: SessionStore
    identity: IdentityService
    lifecycle: SessionLifecycle
    configuration: ConfigurationEngine
    materializer: MovieListMaterializer
    feed: FeedService
    voting: VoteEngine
    catalog: TMDBClient | None = None


def build_services(
    app_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    catalog: TMDBClient | None = None,
    notifier: ChangeNotifier | None = None,
) -> MatchServices:
    store = SessionStore(session_factory, notifier)
    identity = IdentityService(store)
    lifecycle = SessionLifecycle(app_settings, store, identity)
    return MatchServices(
        store=store,
        identity=identity,
        lifecycle=lifecycle,
        configuration=ConfigurationEngine(app_settings, store, lifecycle),
        materializer=MovieListMaterializer(app_settings, store, lifecycle, catalog),
        feed=FeedService(store, lifecycle),
        voting=VoteEngine(app_settings, store, lifecycle),
        catalog=catalog,
    )


@asynccontextmanager
async def lifespan(_: FastAPI):
    exit_stack = AsyncExitStack()
    tmdb_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.tmdb_api_url),
            timeout=httpx.Timeout(20.0, connect=10.0),
        )
    )
    database = Database(settings.database_url)
    await database.create_all()

    catalog: TMDBClient | None = None
    if settings.tmdb_api_key:
        catalog = TMDBClient(settings, tmdb_http_client)
    else:
        logger.warning("TMDB_API_KEY is not set; movie lists cannot be fetched")

    app.state.services = build_services(settings, database.session_factory, catalog)
    app.state.database = database

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Shared sessions for agreeing on a movie to watch",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_services(app: FastAPI) -> MatchServices:
    services = getattr(app.state, "services", None)
    if not isinstance(services, MatchServices):
        raise RuntimeError("Match services not initialised")
    return services


def error_status(exc: SessionServiceError) -> int:
    """Map a domain error onto an HTTP status code."""

    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, PermissionDeniedError):
        return 403
    if isinstance(exc, (ConflictError, InvalidTransitionError, RaceLossError)):
        return 409
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, UpstreamError):
        return 502
    return 500


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.exception_handler(SessionServiceError)
    async def _service_error_handler(
        _: Request, exc: SessionServiceError
    ) -> JSONResponse:
        status_code = error_status(exc)
        payload: dict[str, Any] = {"detail": str(exc)}
        if isinstance(exc, UpstreamError):
            payload["retryable"] = True
            logger.warning("Upstream failure surfaced to client: %s", exc)
        return JSONResponse(payload, status_code=status_code)

    def _catalog() -> TMDBClient:
        catalog = get_services(fastapi_app).catalog
        if catalog is None:
            raise HTTPException(status_code=503, detail="Movie catalog is not configured")
        return catalog

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    # Identity ------------------------------------------------------------

    @fastapi_app.post("/users", status_code=201)
    async def create_user(body: CreateUserRequest) -> UserProfile:
        services = get_services(fastapi_app)
        return await services.identity.create_user(body.username, user_id=body.user_id)

    @fastapi_app.get("/users/{user_id}")
    async def get_user(user_id: str) -> UserProfile:
        return await get_services(fastapi_app).identity.get_user(user_id)

    @fastapi_app.patch("/users/{user_id}")
    async def rename_user(user_id: str, body: UpdateUserRequest) -> UserProfile:
        return await get_services(fastapi_app).identity.rename(user_id, body.username)

    @fastapi_app.get("/users/{user_id}/sessions")
    async def list_owned_sessions(user_id: str) -> list[SessionView]:
        return await get_services(fastapi_app).lifecycle.list_owned_sessions(user_id)

    # Sessions ------------------------------------------------------------

    @fastapi_app.post("/sessions", status_code=201)
    async def create_session(body: CreateSessionRequest) -> SessionView:
        return await get_services(fastapi_app).lifecycle.create_session(body.owner_id)

    @fastapi_app.post("/sessions/join")
    async def join_session(body: JoinSessionRequest) -> SessionView:
        return await get_services(fastapi_app).lifecycle.join_session(
            body.join_code, body.user_id
        )

    @fastapi_app.get("/sessions/{session_id}")
    async def get_session(session_id: str) -> SessionView:
        return await get_services(fastapi_app).lifecycle.get_session(session_id)

    @fastapi_app.delete("/sessions/{session_id}", status_code=204)
    async def end_session(session_id: str, user_id: str = Query(...)) -> None:
        await get_services(fastapi_app).lifecycle.end_session(session_id, user_id)

    @fastapi_app.get("/sessions/{session_id}/participants")
    async def list_participants(session_id: str) -> list[ParticipantView]:
        return await get_services(fastapi_app).lifecycle.list_participants(session_id)

    @fastapi_app.delete("/sessions/{session_id}/participants/{user_id}", status_code=204)
    async def leave_session(session_id: str, user_id: str) -> None:
        await get_services(fastapi_app).lifecycle.leave_session(session_id, user_id)

    @fastapi_app.post("/sessions/{session_id}/status")
    async def change_status(session_id: str, body: TransitionRequest) -> SessionView:
        return await get_services(fastapi_app).lifecycle.transition(
            session_id, body.user_id, body.status
        )

    @fastapi_app.post("/sessions/{session_id}/selections/{kind}")
    async def toggle_selection(
        session_id: str, kind: SelectionKind, body: ToggleSelectionRequest
    ) -> list[dict[str, Any]]:
        return await get_services(fastapi_app).configuration.toggle_selection(
            session_id, kind, body.item_id, body.user_id, body.username
        )

    # Matching ------------------------------------------------------------

    @fastapi_app.post("/sessions/{session_id}/movies")
    async def materialize(session_id: str, body: MaterializeRequest) -> CandidateList:
        return await get_services(fastapi_app).materializer.materialize(
            session_id, body.user_id
        )

    @fastapi_app.get("/sessions/{session_id}/feed")
    async def feed(
        session_id: str,
        user_id: str = Query(...),
        wait: bool = Query(False),
    ) -> FeedView:
        services = get_services(fastapi_app)
        if wait:
            await services.lifecycle.require_participant(session_id, user_id)
            await services.materializer.wait_until_ready(session_id)
        return await services.feed.feed(session_id, user_id)

    @fastapi_app.post("/sessions/{session_id}/votes")
    async def vote(session_id: str, body: VoteRequest) -> VoteOutcome:
        return await get_services(fastapi_app).voting.vote(
            session_id, body.user_id, body.movie_id, body.liked
        )

    @fastapi_app.get("/sessions/{session_id}/matches")
    async def matches(session_id: str) -> list[CandidateMovie]:
        return await get_services(fastapi_app).voting.list_matches(session_id)

    @fastapi_app.get("/sessions/{session_id}/events")
    async def events(request: Request, session_id: str) -> StreamingResponse:
        services = get_services(fastapi_app)
        await services.lifecycle.get_session(session_id)

        async def _stream() -> AsyncIterator[str]:
            async with services.store.notifier.subscribe(
                session_id, tables=("sessions", "session_users")
            ) as subscription:
                while not await request.is_disconnected():
                    event = await subscription.get(timeout=EVENT_KEEPALIVE_SECONDS)
                    if event is None:
                        yield ": keep-alive\n\n"
                        continue
                    yield f"event: {event.table}\ndata: {event.model_dump_json()}\n\n"
                    if event.table == "sessions" and event.event_type == "DELETE":
                        break

        return StreamingResponse(_stream(), media_type="text/event-stream")

    # Catalog lookups -------------------------------------------------------

    @fastapi_app.get("/catalog/providers")
    async def providers(
        region: str | None = None, language: str | None = None
    ) -> list[CatalogProvider]:
        return await _catalog().list_providers(region=region, language=language)

    @fastapi_app.get("/catalog/genres")
    async def genres(language: str | None = None) -> list[CatalogGenre]:
        return await _catalog().list_genres(language=language)

    @fastapi_app.get("/catalog/movies/{movie_id}")
    async def movie_details(movie_id: int) -> CatalogMovieDetail:
        catalog = _catalog()
        detail = await catalog.get_item_details(movie_id)
        providers = await catalog.get_item_providers(movie_id)
        return detail.model_copy(update={"providers": providers})


app = create_app()
