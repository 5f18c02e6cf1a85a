# main.py
"""
HTTP / WebSocket surface for the courier app.

Run with:  uvicorn courier_service.main:create_app --factory
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional, Set

from fastapi import (
    Depends, FastAPI, File, HTTPException, Query, Request, Response, UploadFile, WebSocket, WebSocketDisconnect,
)
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import ValidationError

from courier_service.assignment import Accepted, MissionAcceptance
from courier_service.backend import BackendClient, create_backend
from courier_service.config import Settings, load_settings
from courier_service.dispatcher import MissionDispatcher
from courier_service.errors import AuthError, InvalidTransition
from courier_service.events import build_event, publish_event
from courier_service.mission_feed import MissionFeed
from courier_service.navigation import NavigationSession
from courier_service.presence import (
    LocationReporter, PositionError, PositionErrorCode, QueuePositionSource, get_presence, list_online_drivers,
)
from courier_service.routing import OsrmClient, RouteEngine, heat_overlay
from courier_service.schemas import (
    LatLng, LoginRequest, Mission, MissionCreate, PositionSample, RouteRequest, SignupRequest,
)
from courier_service.stats import get_balance, get_daily_stats, get_transactions
from courier_service.storage import document_path
from courier_service.tracker import ActiveMissionTracker
from courier_service.ws_manager import ConnectionManager

logger = logging.getLogger("courier-service")

POSITION_ERRORS = {
    "permission_denied": PositionErrorCode.PERMISSION_DENIED,
    "position_unavailable": PositionErrorCode.POSITION_UNAVAILABLE,
    "timeout": PositionErrorCode.TIMEOUT,
}


def configure_logging() -> None:
    logger.setLevel(logging.INFO)
    if not logger.handlers:
        handler = logging.StreamHandler()
        fmt = "[%(asctime)s] [%(levelname)s] %(message)s"
        handler.setFormatter(logging.Formatter(fmt))
        logger.addHandler(handler)


@dataclass
class DriverRuntime:
    """Per-driver state that lives while the service runs."""
    driver_id: str
    source: QueuePositionSource
    reporter: LocationReporter
    feeds: Set[MissionFeed] = field(default_factory=set)


def create_app(
    settings: Optional[Settings] = None,
    backend: Optional[BackendClient] = None,
    route_engine: Optional[RouteEngine] = None,
) -> FastAPI:
    configure_logging()
    settings = settings or load_settings()
    backend = backend or create_backend(settings)
    route_engine = route_engine or RouteEngine(
        OsrmClient(settings.routing_base_url, settings.routing_profile, settings.routing_timeout),
        precision=settings.route_grid_precision,
        cache_size=settings.route_cache_size,
    )
    acceptance = MissionAcceptance(backend.store)
    dispatcher = MissionDispatcher(backend.store)
    manager = ConnectionManager()
    drivers: Dict[str, DriverRuntime] = {}
    stale_after = timedelta(seconds=settings.presence_stale_after)

    app = FastAPI(title="Courier Service", version="2.0.0")
    app.state.settings = settings
    app.state.backend = backend
    app.state.route_engine = route_engine
    app.state.drivers = drivers
    app.state.manager = manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ------------------------- MIDDLEWARE -------------------------
    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        trace_id = request.headers.get("x-trace-id") or str(uuid.uuid4())
        request.state.trace_id = trace_id
        response = await call_next(request)
        response.headers["x-trace-id"] = trace_id
        return response

    # ------------------------- STARTUP / SHUTDOWN -------------------------
    @app.on_event("startup")
    async def startup():
        logger.info("Connecting database...")
        await backend.connect()
        logger.info("Startup complete.")

    @app.on_event("shutdown")
    async def shutdown():
        for runtime in list(drivers.values()):
            for feed in list(runtime.feeds):
                feed.close()
            try:
                await runtime.reporter.go_offline()
            except Exception:
                logger.exception(f"Failed to take driver {runtime.driver_id} offline")
        await route_engine.provider.aclose()
        logger.info("Disconnecting database...")
        await backend.close()

    # ------------------------- AUTH HELPERS -------------------------
    def bearer_token(request: Request) -> Optional[str]:
        auth = request.headers.get("Authorization") or request.headers.get("authorization")
        if not auth or not auth.lower().startswith("bearer "):
            return None
        return auth.split(" ", 1)[1].strip()

    def get_current_user(request: Request) -> dict:
        token = bearer_token(request)
        session = backend.auth.get_session(token)
        if not session:
            raise HTTPException(status_code=401, detail="Not authenticated")
        return {"id": session.user_id, "role": session.role, "token": token, "trace_id": request.state.trace_id}

    def driver_required(user=Depends(get_current_user)) -> dict:
        if user["role"] != "driver":
            raise HTTPException(status_code=403, detail="Drivers only")
        return user

    def admin_required(user=Depends(get_current_user)) -> dict:
        if user["role"] != "admin":
            raise HTTPException(status_code=403, detail="Admins only")
        return user

    def ws_user(token: Optional[str]) -> Optional[dict]:
        session = backend.auth.get_session(token)
        if not session or session.role != "driver":
            return None
        return {"id": session.user_id, "role": session.role}

    def runtime_for(driver_id: str) -> DriverRuntime:
        runtime = drivers.get(driver_id)
        if runtime is None:
            source = QueuePositionSource()
            runtime = DriverRuntime(
                driver_id=driver_id,
                source=source,
                reporter=LocationReporter(backend.store, driver_id, source),
            )
            drivers[driver_id] = runtime
        return runtime

    # ------------------------- AUTH -------------------------
    @app.post("/auth/signup", status_code=201)
    async def signup(body: SignupRequest):
        try:
            user_id = await backend.auth.sign_up(
                body.email, body.password, {"name": body.name, "phone": body.phone, "cpf": body.cpf}
            )
        except AuthError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"user_id": user_id}

    @app.post("/auth/login")
    async def login(body: LoginRequest):
        try:
            session = await backend.auth.sign_in(body.email, body.password)
        except AuthError as e:
            raise HTTPException(status_code=401, detail=str(e))
        return session.model_dump(mode="json")

    @app.post("/auth/logout")
    async def logout(user=Depends(get_current_user)):
        runtime = drivers.get(user["id"])
        if runtime:
            await runtime.reporter.go_offline()
        backend.auth.sign_out(user["token"])
        return {"success": True}

    @app.get("/auth/session")
    async def current_session(request: Request):
        session = backend.auth.get_session(bearer_token(request))
        return session.model_dump(mode="json") if session else None

    # ------------------------- PRESENCE -------------------------
    @app.post("/drivers/me/online")
    async def go_online(user=Depends(driver_required)):
        runtime = runtime_for(user["id"])
        await runtime.reporter.go_online()
        return {"online": True, "location_state": runtime.reporter.state.value}

    @app.post("/drivers/me/offline")
    async def go_offline(user=Depends(driver_required)):
        runtime = drivers.get(user["id"])
        if runtime:
            await runtime.reporter.go_offline()
        return {"online": False}

    @app.post("/drivers/me/location/retry")
    async def retry_location(user=Depends(driver_required)):
        runtime = drivers.get(user["id"])
        if not runtime or not runtime.reporter.online:
            raise HTTPException(status_code=409, detail="Driver is offline")
        return {"retried": runtime.reporter.retry(), "location_state": runtime.reporter.state.value}

    @app.get("/drivers/me/presence")
    async def my_presence(user=Depends(driver_required)):
        presence = await get_presence(backend.store, user["id"])
        if not presence:
            raise HTTPException(status_code=404, detail="Profile not found")
        return {**presence.model_dump(mode="json"), "stale": presence.is_stale(threshold=stale_after)}

    @app.get("/drivers/online")
    async def online_drivers(fresh_only: bool = True, user=Depends(admin_required)):
        rows = await list_online_drivers(backend.store, fresh_only=fresh_only, threshold=stale_after)
        return [r.model_dump(mode="json") for r in rows]

    @app.get("/drivers/me/heatmap")
    async def my_heatmap(user=Depends(driver_required)):
        presence = await get_presence(backend.store, user["id"])
        if not presence or presence.lat is None or presence.lng is None:
            return []
        return [spot.to_dict() for spot in heat_overlay(LatLng(presence.lat, presence.lng))]

    # ------------------------- MISSIONS -------------------------
    @app.post("/missions", response_model=Mission, status_code=201)
    async def create_mission(body: MissionCreate, user=Depends(admin_required)):
        return await dispatcher.create(body)

    @app.post("/missions/{mission_id}/cancel", response_model=Mission)
    async def cancel_mission(mission_id: str, user=Depends(admin_required)):
        mission = await dispatcher.cancel(mission_id)
        if not mission:
            raise HTTPException(status_code=409, detail="Mission is not cancellable")
        return mission

    @app.post("/missions/{mission_id}/accept", response_model=Mission)
    async def accept_mission(mission_id: str, user=Depends(driver_required)):
        result = await acceptance.accept(mission_id, user["id"])
        if not isinstance(result, Accepted):
            raise HTTPException(status_code=409, detail={"reason": result.reason.value, "mission_id": mission_id})
        runtime = drivers.get(user["id"])
        for feed in list(runtime.feeds if runtime else ()):
            feed.hold(mission_id)
        await publish_event(manager, user["id"], "mission.accepted", result.mission.model_dump(mode="json"),
                            trace_id=user["trace_id"])
        return result.mission

    @app.post("/missions/{mission_id}/complete", response_model=Mission)
    async def complete_mission(mission_id: str, user=Depends(driver_required)):
        result = await acceptance.complete(mission_id, user["id"])
        if not isinstance(result, Accepted):
            raise HTTPException(status_code=409, detail={"reason": result.reason.value, "mission_id": mission_id})
        await publish_event(manager, user["id"], "mission.completed", result.mission.model_dump(mode="json"),
                            trace_id=user["trace_id"])
        return result.mission

    @app.post("/missions/{mission_id}/reject")
    async def reject_mission(mission_id: str, user=Depends(driver_required)):
        await acceptance.reject(mission_id, user["id"])
        runtime = drivers.get(user["id"])
        for feed in list(runtime.feeds if runtime else ()):
            feed.reject(mission_id)
        return {"success": True}

    @app.get("/drivers/me/deliveries", response_model=List[Mission])
    async def my_deliveries(user=Depends(driver_required)):
        return await acceptance.deliveries_for(user["id"])

    @app.get("/drivers/me/active-mission")
    async def my_active_mission(user=Depends(driver_required)):
        mission = await acceptance.active_mission(user["id"])
        return mission.model_dump(mode="json") if mission else None

    @app.get("/drivers/me/stats")
    async def my_stats(day: Optional[str] = None, user=Depends(driver_required)):
        stats = await get_daily_stats(backend.store, user["id"], day)
        return stats.model_dump()

    @app.get("/drivers/me/transactions")
    async def my_transactions(week: Optional[str] = None, user=Depends(driver_required)):
        rows = await get_transactions(backend.store, user["id"], week)
        return [t.model_dump(mode="json") for t in rows]

    @app.get("/drivers/me/balance")
    async def my_balance(user=Depends(driver_required)):
        return {"balance": await get_balance(backend.store, user["id"])}

    # ------------------------- ROUTES -------------------------
    @app.post("/routes")
    async def compute_route(body: RouteRequest, user=Depends(driver_required)):
        origin = LatLng(body.origin.lat, body.origin.lng) if body.origin else None
        waypoints = [LatLng(w.lat, w.lng) for w in body.waypoints]
        result = await route_engine.compute_route(origin, waypoints)
        return result.to_dict()

    # ------------------------- DOCUMENTS -------------------------
    @app.post("/documents/{kind}")
    async def upload_document(kind: str, file: UploadFile = File(...), user=Depends(get_current_user)):
        try:
            path = document_path(user["id"], kind, file.filename or "")
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        data = await file.read()
        backend.storage.upload(path, data, content_type=file.content_type)
        return {"path": path, "url": backend.storage.get_public_url(path)}

    # ------------------------- WEBSOCKETS -------------------------
    @app.websocket("/ws/location")
    async def location_ws(websocket: WebSocket, token: Optional[str] = Query(None)):
        user = ws_user(token)
        if not user:
            await websocket.close(code=4401)
            return
        runtime = runtime_for(user["id"])
        await manager.connect(user["id"], websocket)
        try:
            while True:
                msg = await websocket.receive_json()
                if "error" in msg:
                    code = POSITION_ERRORS.get(msg["error"], PositionErrorCode.POSITION_UNAVAILABLE)
                    runtime.source.push_error(PositionError(code=code, message=msg.get("message", "")))
                    await manager.send(websocket, build_event("location.state", {"state": runtime.reporter.state.value}))
                    continue
                try:
                    runtime.source.push(PositionSample(**msg))
                except (ValidationError, TypeError) as e:
                    await manager.send(websocket, build_event("error", {"detail": str(e)}))
        except WebSocketDisconnect:
            pass
        finally:
            await manager.disconnect(user["id"], websocket)

    @app.websocket("/ws/missions")
    async def missions_ws(websocket: WebSocket, token: Optional[str] = Query(None)):
        user = ws_user(token)
        if not user:
            await websocket.close(code=4401)
            return
        driver_id = user["id"]
        runtime = runtime_for(driver_id)
        await manager.connect(driver_id, websocket)

        feed = MissionFeed(backend.store, driver_id=driver_id, backlog=settings.feed_backlog)
        runtime.feeds.add(feed)
        subscription = feed.subscribe(
            on_offer=lambda m: manager.send(websocket, build_event("mission.offer", m.model_dump(mode="json"))),
            on_withdrawn=lambda mid: manager.send(websocket, build_event("mission.withdrawn", {"mission_id": mid})),
        )
        try:
            while True:
                msg = await websocket.receive_json()
                if msg.get("action") == "reject" and msg.get("mission_id"):
                    feed.reject(msg["mission_id"])
                    await acceptance.reject(msg["mission_id"], driver_id)
        except WebSocketDisconnect:
            pass
        finally:
            subscription.close()
            runtime.feeds.discard(feed)
            await manager.disconnect(driver_id, websocket)

    @app.websocket("/ws/missions/{mission_id}/track")
    async def track_ws(websocket: WebSocket, mission_id: str, token: Optional[str] = Query(None)):
        user = ws_user(token)
        if not user:
            await websocket.close(code=4401)
            return
        driver_id = user["id"]
        mission = await acceptance.active_mission(driver_id)
        if not mission or mission.id != mission_id:
            await websocket.close(code=4404)
            return
        await manager.connect(driver_id, websocket)

        tracker = ActiveMissionTracker(acceptance, mission, driver_id)

        async def on_tracker(t: ActiveMissionTracker):
            await manager.send(websocket, build_event("tracker.update", {
                "mission_id": t.mission.id,
                "phase": t.phase.value,
                "state": t.state.value,
                "error": t.error,
            }))

        tracker.add_listener(on_tracker)
        tracker.start()
        runtime = drivers.get(driver_id)
        navigation = NavigationSession(
            tracker,
            route_engine,
            on_update=lambda u: manager.send(websocket, build_event("navigation.update", u.to_dict())),
            reporter=runtime.reporter if runtime else None,
        )
        navigation.start()
        await on_tracker(tracker)

        try:
            while True:
                msg = await websocket.receive_json()
                action = msg.get("action")
                try:
                    if action == "advance":
                        await tracker.advance()
                    elif action == "finish":
                        result = await tracker.finish()
                        if not isinstance(result, Accepted):
                            await manager.send(websocket, build_event("error", {"detail": result.reason.value}))
                    elif action == "retry":
                        await tracker.retry()
                    elif action == "recenter":
                        await navigation.recenter()
                    elif action == "interact":
                        await navigation.mark_interaction()
                    else:
                        await manager.send(websocket, build_event("error", {"detail": f"Unknown action {action!r}"}))
                except InvalidTransition as e:
                    await manager.send(websocket, build_event("error", {"detail": str(e)}))
        except WebSocketDisconnect:
            pass
        finally:
            navigation.close()
            tracker.close()
            await manager.disconnect(driver_id, websocket)

    # ------------------------- HEALTH / METRICS -------------------------
    @app.get("/health")
    async def health():
        return {"status": "courier-service healthy"}

    @app.get("/metrics")
    async def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app
