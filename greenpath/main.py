from fastapi import FastAPI, Depends, HTTPException
import asyncio
import json
import logging
from fastapi.responses import StreamingResponse
from .config import get_settings
from .services.backend import BackendClient, BackendError, CityNotLoaded, CITY_NOT_LOADED_CODE, get_backend
from .services.preference_store import PreferenceStore, get_preference_store
from .services.progress import OperationMonitor, get_monitor
from .services.messages import pick_encouraging_message

logging.basicConfig(level=get_settings().log_level, format='[%(levelname)s] %(name)s: %(message)s')
log = logging.getLogger("greenpath")

app = FastAPI(title="GreenPath")

COORD_KEYS = ("start_lat", "start_lon", "end_lat", "end_lon")


def _backend_http_error(exc: BackendError) -> HTTPException:
    if isinstance(exc, CityNotLoaded):
        return HTTPException(status_code=409, detail={"message": exc.message, "code": CITY_NOT_LOADED_CODE})
    return HTTPException(status_code=502, detail=exc.message)


def _coords(payload: dict) -> tuple[float, float, float, float]:
    try:
        return tuple(float(payload[k]) for k in COORD_KEYS)
    except (KeyError, TypeError, ValueError):
        raise HTTPException(status_code=400, detail="Missing or invalid start/end coordinates")


def _sse(payload: dict, event: str | None = None) -> str:
    head = f"event: {event}\n" if event else ""
    return f"{head}data: {json.dumps(payload)}\n\n"


@app.get("/api/health")
async def api_health(backend: BackendClient = Depends(get_backend)):
    return {"status": "ok", "backend": await backend.health_check()}

@app.get("/api/cities")
async def api_cities(backend: BackendClient = Depends(get_backend)):
    try:
        return {"cities": await backend.get_cities()}
    except BackendError as exc:
        raise _backend_http_error(exc)

@app.get("/api/city/{name}/data")
async def api_city_data(
    name: str,
    backend: BackendClient = Depends(get_backend),
    store: PreferenceStore = Depends(get_preference_store),
):
    try:
        data = await backend.get_city_data(name)
    except BackendError as exc:
        raise _backend_http_error(exc)
    store.set_last_city(name)
    return data

@app.get("/api/city/{name}/load")
async def api_city_load(name: str, monitor: OperationMonitor = Depends(get_monitor)):
    # a failed start is reported before any stream opens
    try:
        operation_id = await monitor.start(name)
    except BackendError as exc:
        raise _backend_http_error(exc)

    async def event_stream():
        queue: asyncio.Queue = asyncio.Queue()
        task = asyncio.create_task(monitor.follow(operation_id, name, on_event=queue.put_nowait))
        task.add_done_callback(lambda _: queue.put_nowait(None))
        try:
            while True:
                frame = await queue.get()
                if frame is None:
                    break
                yield _sse(frame.model_dump())
            op = task.result()
            yield _sse({
                "operationId": op.operation_id,
                "state": op.state.value,
                "error": op.error,
                "data": op.result,
            }, event="result")
        finally:
            task.cancel()

    headers = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=headers)

@app.post("/api/routes/compare")
async def api_routes_compare(
    payload: dict,
    backend: BackendClient = Depends(get_backend),
    store: PreferenceStore = Depends(get_preference_store),
):
    city = payload.get("city")
    if not city:
        raise HTTPException(status_code=400, detail="Missing city")
    start_lat, start_lon, end_lat, end_lon = _coords(payload)
    try:
        comparison = await backend.compare_routes(city, start_lat, start_lon, end_lat, end_lon)
    except BackendError as exc:
        log.warning("Route comparison failed: %s", exc.message)
        raise HTTPException(status_code=502, detail="Could not find routes.")
    return {**comparison, "recommendation": store.get_recommendation().value}

@app.post("/api/routes/select")
async def api_routes_select(payload: dict, store: PreferenceStore = Depends(get_preference_store)):
    start_lat, start_lon, end_lat, end_lon = _coords(payload)
    selected = payload.get("selected_route")
    try:
        record = store.record_route_selection(start_lat, start_lon, end_lat, end_lon, selected)
    except ValueError:
        raise HTTPException(status_code=400, detail="selected_route must be 'cool' or 'fast'")
    try:
        comfort = float(payload.get("comfort_improvement") or 0)
        penalty = float(payload.get("distance_penalty") or 0)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="Invalid comfort/distance figures")
    return {
        "recorded": not record.privacy_mode,
        "recommendation": record.preferred_route_type.value,
        "message": pick_encouraging_message(comfort, penalty, selected == "cool"),
    }

@app.get("/api/preferences")
async def api_preferences(store: PreferenceStore = Depends(get_preference_store)):
    return store.load().to_dict()

@app.delete("/api/preferences")
async def api_preferences_clear(store: PreferenceStore = Depends(get_preference_store)):
    store.clear_all_data()
    return {"cleared": True}

@app.post("/api/preferences/privacy")
async def api_preferences_privacy(payload: dict, store: PreferenceStore = Depends(get_preference_store)):
    enabled = payload.get("enabled")
    if not isinstance(enabled, bool):
        raise HTTPException(status_code=400, detail="enabled must be true or false")
    return store.set_privacy_mode(enabled).to_dict()

@app.post("/api/preferences/accessibility")
async def api_preferences_accessibility(payload: dict, store: PreferenceStore = Depends(get_preference_store)):
    high_contrast = payload.get("high_contrast")
    if high_contrast is not None and not isinstance(high_contrast, bool):
        raise HTTPException(status_code=400, detail="high_contrast must be true or false")
    try:
        record = store.update_accessibility(high_contrast, payload.get("font_size"))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return record.accessibility.to_dict()

@app.post("/api/preferences/locations")
async def api_preferences_locations(payload: dict, store: PreferenceStore = Depends(get_preference_store)):
    try:
        name = str(payload["name"])
        lat = float(payload["lat"])
        lon = float(payload["lon"])
    except (KeyError, TypeError, ValueError):
        raise HTTPException(status_code=400, detail="Invalid payload")
    record = store.add_frequent_location(name, lat, lon)
    return {"frequentLocations": [loc.to_dict() for loc in record.frequent_locations]}

@app.post("/api/preferences/last-city")
async def api_preferences_last_city(payload: dict, store: PreferenceStore = Depends(get_preference_store)):
    city = payload.get("city")
    if not city:
        raise HTTPException(status_code=400, detail="Missing city")
    return {"lastCity": store.set_last_city(str(city)).last_city}

@app.get("/api/preferences/statistics")
async def api_preferences_statistics(store: PreferenceStore = Depends(get_preference_store)):
    return store.get_statistics().to_dict()

@app.get("/api/preferences/recommendation")
async def api_preferences_recommendation(store: PreferenceStore = Depends(get_preference_store)):
    return {"recommendation": store.get_recommendation().value}
