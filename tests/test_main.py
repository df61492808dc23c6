"""
Tests for the HTTP surface, with the routing backend mocked and
preferences kept in memory.
"""

import json

import httpx
import pytest
from fastapi.testclient import TestClient

from greenpath.main import app
from greenpath.services.backend import get_backend
from greenpath.services.preference_store import get_preference_store
from greenpath.services.progress import OperationMonitor, get_monitor


class FakeRoutingBackend:
    """Request handler standing in for the routing backend."""

    def __init__(self, sse_body):
        self.loaded = False
        self.start_status = 202
        self.compare_status = 200
        self.frames = sse_body(
            {"message": "Fetching satellite imagery", "progress": 10, "timestamp": "t1"},
            {"keepalive": True, "timestamp": "t2"},
            {"message": "Computing comfort scores", "progress": 60, "timestamp": "t3"},
            {"message": "Done", "complete": True, "timestamp": "t4"},
        )

    def __call__(self, request):
        path = request.url.path
        if path == "/api/cities":
            return httpx.Response(200, json={"cities": [{"name": "Lahore", "lat": 31.5, "lon": 74.3}]})
        if path == "/api/city/Lahore/data":
            if not self.loaded:
                return httpx.Response(404, json={"error": "City data not loaded yet"})
            return httpx.Response(200, json={"city": "Lahore", "stats": {"total": 2}})
        if path == "/api/city/Lahore/load":
            if self.start_status >= 400:
                return httpx.Response(self.start_status, json={"error": "Initiate city data loading failed"})
            self.loaded = True
            return httpx.Response(self.start_status, json={"operation_id": "op-7"})
        if path == "/api/progress/op-7":
            return httpx.Response(200, text=self.frames, headers={"content-type": "text/event-stream"})
        if path == "/api/routes/compare":
            if self.compare_status >= 400:
                return httpx.Response(self.compare_status, json={"error": "no path"})
            return httpx.Response(200, json={
                "fast_route": {"properties": {"distance_km": 1.2}},
                "cool_route": {"properties": {"distance_km": 1.4}},
                "comparison": {"used_fallback": False, "comfort_improvement": 18.0},
            })
        if path == "/api/health":
            return httpx.Response(200, json={"status": "ok"})
        return httpx.Response(404, json={"error": "not found"})


@pytest.fixture
def routing(sse_body):
    return FakeRoutingBackend(sse_body)


@pytest.fixture
def client(routing, make_backend, store):
    backend = make_backend(routing)
    app.dependency_overrides[get_backend] = lambda: backend
    app.dependency_overrides[get_preference_store] = lambda: store
    app.dependency_overrides[get_monitor] = lambda: OperationMonitor(backend, grace_seconds=0)
    yield TestClient(app)
    app.dependency_overrides.clear()


def _events(body):
    """Split an SSE body into (event, data) pairs."""
    out = []
    for block in body.strip().split("\n\n"):
        event = None
        data = []
        for line in block.splitlines():
            if line.startswith("event: "):
                event = line[len("event: "):]
            elif line.startswith("data: "):
                data.append(line[len("data: "):])
        out.append((event, json.loads("\n".join(data))))
    return out


COORDS = {"start_lat": 31.5, "start_lon": 74.3, "end_lat": 31.6, "end_lon": 74.4}


class TestCities:
    def test_health(self, client):
        assert client.get("/api/health").json() == {"status": "ok", "backend": True}

    def test_cities(self, client):
        assert client.get("/api/cities").json()["cities"][0]["name"] == "Lahore"

    def test_city_not_loaded(self, client):
        r = client.get("/api/city/Lahore/data")
        assert r.status_code == 409
        assert r.json()["detail"]["code"] == "city_not_loaded"

    def test_city_data_remembers_last_city(self, client, routing, store):
        routing.loaded = True
        r = client.get("/api/city/Lahore/data")
        assert r.status_code == 200
        assert store.load().last_city == "Lahore"

    def test_load_streams_progress_then_result(self, client):
        r = client.get("/api/city/Lahore/load")
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/event-stream")
        events = _events(r.text)
        messages = [data["message"] for event, data in events if event is None]
        assert messages == ["Fetching satellite imagery", "Computing comfort scores", "Complete!"]
        event, result = events[-1]
        assert event == "result"
        assert result["state"] == "complete"
        assert result["data"] == {"city": "Lahore", "stats": {"total": 2}}

    def test_load_start_failure(self, client, routing):
        routing.start_status = 500
        r = client.get("/api/city/Lahore/load")
        assert r.status_code == 502


class TestRoutes:
    def test_compare_adds_recommendation(self, client, store):
        store.record_route_selection(1, 2, 3, 4, "cool")
        r = client.post("/api/routes/compare", json={"city": "Lahore", **COORDS})
        assert r.status_code == 200
        assert r.json()["recommendation"] == "cool"
        assert r.json()["comparison"]["used_fallback"] is False

    def test_compare_missing_coords(self, client):
        assert client.post("/api/routes/compare", json={"city": "Lahore"}).status_code == 400

    def test_compare_backend_failure(self, client, routing):
        routing.compare_status = 500
        r = client.post("/api/routes/compare", json={"city": "Lahore", **COORDS})
        assert r.status_code == 502
        assert r.json()["detail"] == "Could not find routes."

    def test_select_cool(self, client, store):
        r = client.post("/api/routes/select", json={**COORDS, "selected_route": "cool", "comfort_improvement": 18, "distance_penalty": 5})
        body = r.json()
        assert body["recorded"] is True
        assert body["recommendation"] == "cool"
        assert body["message"]["category"] == "low_distance"
        assert store.get_statistics().total_routes == 1

    def test_select_fast_has_no_message(self, client):
        body = client.post("/api/routes/select", json={**COORDS, "selected_route": "fast"}).json()
        assert body["message"] is None
        assert body["recommendation"] == "fast"

    def test_select_invalid_route(self, client):
        r = client.post("/api/routes/select", json={**COORDS, "selected_route": "scenic"})
        assert r.status_code == 400

    def test_select_invalid_route_while_private(self, client):
        client.post("/api/preferences/privacy", json={"enabled": True})
        r = client.post("/api/routes/select", json={**COORDS, "selected_route": "scenic"})
        assert r.status_code == 400


class TestPreferences:
    def test_defaults(self, client):
        body = client.get("/api/preferences").json()
        assert body["preferredRouteType"] is None
        assert body["accessibilityPreferences"] == {"highContrast": False, "fontSize": "normal"}

    def test_privacy_mode_blocks_learning(self, client, stored):
        client.post("/api/routes/select", json={**COORDS, "selected_route": "cool"})
        body = client.post("/api/preferences/privacy", json={"enabled": True}).json()
        assert body["routeHistory"] == []
        assert stored() is None
        r = client.post("/api/routes/select", json={**COORDS, "selected_route": "cool"})
        assert r.json()["recorded"] is False
        assert client.get("/api/preferences/statistics").json()["totalRoutes"] == 0

    def test_privacy_requires_bool(self, client):
        assert client.post("/api/preferences/privacy", json={"enabled": "yes"}).status_code == 400

    def test_accessibility(self, client):
        r = client.post("/api/preferences/accessibility", json={"font_size": "xlarge"})
        assert r.json() == {"highContrast": False, "fontSize": "xlarge"}
        assert client.post("/api/preferences/accessibility", json={"font_size": "huge"}).status_code == 400

    def test_locations_and_statistics(self, client):
        client.post("/api/preferences/locations", json={"name": "Home", "lat": 31.5, "lon": 74.3})
        client.post("/api/preferences/locations", json={"name": "Home", "lat": 31.5, "lon": 74.3})
        body = client.post("/api/preferences/locations", json={"name": "Work", "lat": 31.6, "lon": 74.4}).json()
        assert [loc["name"] for loc in body["frequentLocations"]] == ["Home", "Work"]
        stats = client.get("/api/preferences/statistics").json()
        assert stats["mostUsedLocation"] == {"name": "Home", "count": 2}
        assert stats["coolRoutePercentage"] == 0

    def test_last_city_and_clear(self, client, stored):
        assert client.post("/api/preferences/last-city", json={"city": "Lahore"}).json() == {"lastCity": "Lahore"}
        assert client.delete("/api/preferences").json() == {"cleared": True}
        assert stored() is None

    def test_recommendation(self, client):
        assert client.get("/api/preferences/recommendation").json() == {"recommendation": "none"}
