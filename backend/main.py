from fastapi import FastAPI, Depends, HTTPException, Query, Path, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import HTTPConnection
from sqlalchemy.orm import Session
from contextlib import asynccontextmanager
from typing import List, Dict, Any
import asyncio
import uvicorn
import logging
import os

from config import get_settings
from database import SessionLocal, get_db, init_db
from broadcaster import make_message
from geo import GeoLookup, geo_stats, load_lookup, null_lookup
from logs import setup_logging
from service import MonitorService
from topology import build_topology
import schemas
import store

logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.log_level, settings.log_file)

    persistence = await asyncio.to_thread(init_db)
    if not persistence:
        logger.error("Database unavailable, continuing without persistence")

    service = MonitorService(settings, session_factory=SessionLocal if persistence else None)
    app.state.service = service
    app.state.geo_lookup = load_lookup(settings.geo_lookup)
    service.start()

    yield

    if not await service.shutdown():
        os._exit(1)


app = FastAPI(title="Portwatch API", lifespan=lifespan)


def server_options(settings) -> Dict[str, Any]:
    # Transport-level ping/pong keeps /ws subscribers alive without any reply from them
    return {
        "host": settings.host,
        "port": settings.port,
        "ws_ping_interval": settings.heartbeat_interval,
        "ws_ping_timeout": settings.ws_ping_timeout,
    }


def ok(data: Any = None) -> Dict[str, Any]:
    return {"success": True, "data": data}


def get_service(conn: HTTPConnection) -> MonitorService:
    return conn.app.state.service


def get_geo_lookup(conn: HTTPConnection) -> GeoLookup:
    return getattr(conn.app.state, "geo_lookup", null_lookup)


def require_persistence(service: MonitorService = Depends(get_service)) -> MonitorService:
    if not service.persistence_enabled:
        raise HTTPException(status_code=503, detail="Persistence unavailable")
    return service


# --- Error envelopes ---

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc: RequestValidationError):
    details = "; ".join(
        f"{'.'.join(str(part) for part in err['loc'][1:]) or 'request'}: {err['msg']}" for err in exc.errors()
    )
    return JSONResponse(status_code=400, content={"success": False, "error": f"Invalid request: {details}"})


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": str(exc.detail)})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})


# --- Live state ---

@app.get("/ports", response_model=schemas.Envelope[List[schemas.EnrichedPortRecord]])
async def get_ports(service: MonitorService = Depends(get_service)):
    if service.last_snapshot is not None:
        return ok(service.last_snapshot.ports)
    return ok(await service.current_ports())


@app.get("/security/alerts", response_model=schemas.Envelope[List[schemas.SecurityAlert]])
async def get_security_alerts(service: MonitorService = Depends(get_service)):
    if service.last_snapshot is not None:
        return ok(service.last_snapshot.alerts)
    ports = await service.current_ports()
    return ok(service.analyzer.analyze(ports, detect_scan=False))


@app.get("/traffic/current", response_model=schemas.Envelope[schemas.TrafficSnapshot])
def get_current_traffic(service: MonitorService = Depends(get_service)):
    if service.last_snapshot is not None:
        return ok(service.last_snapshot.traffic)
    return ok(service.traffic.latest)


@app.get("/topology")
async def get_topology(service: MonitorService = Depends(get_service)):
    if service.last_snapshot is not None:
        ports = service.last_snapshot.ports
    else:
        ports = await service.current_ports()
    connections = await service.collector.acquire_connections()
    return ok(build_topology(ports, connections))


@app.get("/health", response_model=schemas.Envelope[schemas.HealthDTO])
def health(service: MonitorService = Depends(get_service)):
    return ok(schemas.HealthDTO(
        status="ok" if service.persistence_enabled else "degraded",
        uptime=round(service.uptime, 1),
        clients=len(service.broadcaster),
        last_tick=service.last_tick,
        persistence=service.persistence_enabled,
    ))


@app.post("/trigger-scan")
async def trigger_scan(service: MonitorService = Depends(get_service)):
    service.trigger()
    return ok({"message": "Scan triggered in background"})


# --- Whitelist ---

@app.get("/security/whitelist", response_model=schemas.Envelope[schemas.Whitelist])
def get_whitelist(service: MonitorService = Depends(get_service)):
    return ok(service.analyzer.whitelist.load())


@app.post("/security/whitelist", response_model=schemas.Envelope[schemas.Whitelist])
def add_to_whitelist(entry: schemas.WhitelistRequest, service: MonitorService = Depends(get_service)):
    return ok(service.analyzer.whitelist.add(entry.port, entry.process))


@app.delete("/security/whitelist/{port}", response_model=schemas.Envelope[schemas.Whitelist])
def remove_from_whitelist(port: int = Path(ge=1, le=65535), service: MonitorService = Depends(get_service)):
    return ok(service.analyzer.whitelist.remove(port))


# --- History ---

@app.get("/security/alerts/history", response_model=schemas.Envelope[List[schemas.StoredAlertDTO]])
def get_alert_history(limit: int = Query(100, ge=1, le=1000),
                      service: MonitorService = Depends(require_persistence),
                      db: Session = Depends(get_db)):
    alerts = store.get_security_alerts(db, resolved=False, limit=limit)
    return ok([schemas.StoredAlertDTO.model_validate(a) for a in alerts])


@app.post("/security/alerts/{alert_id}/resolve")
def resolve_alert(alert_id: int, service: MonitorService = Depends(require_persistence),
                  db: Session = Depends(get_db)):
    if not store.resolve_alert(db, alert_id):
        raise HTTPException(status_code=404, detail=f"Alert {alert_id} not found")
    return ok({"id": alert_id, "resolved": True})


@app.get("/security/geo-stats")
def get_geo_stats(service: MonitorService = Depends(get_service),
                  lookup: GeoLookup = Depends(get_geo_lookup),
                  db: Session = Depends(get_db)):
    if service.persistence_enabled:
        connections = store.get_recent_connections(db, "24h")
    elif service.last_snapshot is not None:
        connections = service.last_snapshot.traffic.connections
    else:
        connections = []
    return ok(geo_stats(connections, lookup))


@app.get("/traffic/{port}", response_model=schemas.Envelope[List[schemas.TrafficHistoryRow]])
def get_port_traffic(port: int = Path(ge=1, le=65535),
                     period: schemas.PeriodEnum = Query(schemas.PeriodEnum.DAY),
                     service: MonitorService = Depends(require_persistence),
                     db: Session = Depends(get_db)):
    return ok(store.get_traffic_history(db, port, period.value))


@app.get("/history", response_model=schemas.Envelope[List[schemas.PortHistoryRow]])
def get_port_history(period: schemas.PeriodEnum = Query(schemas.PeriodEnum.DAY),
                     service: MonitorService = Depends(require_persistence),
                     db: Session = Depends(get_db)):
    return ok(store.get_port_history(db, period.value))


@app.get("/analytics/overview")
def get_analytics_overview(period: schemas.PeriodEnum = Query(schemas.PeriodEnum.DAY),
                           service: MonitorService = Depends(require_persistence),
                           db: Session = Depends(get_db)):
    return ok(store.get_traffic_analytics(db, period.value))


@app.get("/analytics/port-trends")
def get_port_trends(period: schemas.PeriodEnum = Query(schemas.PeriodEnum.DAY),
                    service: MonitorService = Depends(require_persistence),
                    db: Session = Depends(get_db)):
    return ok(store.get_port_trends(db, period.value))


# --- Push channel ---

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, service: MonitorService = Depends(get_service)):
    await websocket.accept()
    broadcaster = service.broadcaster
    session = broadcaster.register(websocket, websocket.client.host if websocket.client else "unknown")

    try:
        initial = await service.initial_data()
        if not await broadcaster.send(session, make_message("initial-data", initial)):
            return
        broadcaster.open(session)

        # Subscribers are not required to send anything; inbound frames only refresh last_ack_at
        while True:
            await websocket.receive_text()
            broadcaster.acknowledge(session)
    except WebSocketDisconnect:
        pass
    finally:
        await broadcaster.remove(session, close=False)


if __name__ == "__main__":
    uvicorn.run("main:app", **server_options(settings))
