from __future__ import annotations

from dataclasses import asdict

from fastapi import Depends, FastAPI, HTTPException, Query

from topo import db
from topo.api_models import GraphView, ResourcesView, RouteView, ServiceStatus
from topo.errors import TopologyError
from topo.orchestrator import Orchestrator
from topo.settings import settings

app = FastAPI(title="Service Topology Orchestrator")

# Set on startup from TOPO_TOPOLOGY_PATH, or injected directly (tests, embedding).
ORCH: Orchestrator | None = None


def get_orchestrator() -> Orchestrator:
    if ORCH is None:
        raise HTTPException(status_code=503, detail="No topology loaded. Set TOPO_TOPOLOGY_PATH.")
    return ORCH


@app.on_event("startup")
def startup() -> None:
    global ORCH
    db.init_db()
    if ORCH is None and settings.topology_path:
        try:
            ORCH = Orchestrator.from_file(settings.topology_path)
        except TopologyError as e:
            db.log_event("ERROR", f"Refusing to start: {e}")
            raise
    if ORCH is not None and settings.autostart:
        ORCH.start()


@app.on_event("shutdown")
def shutdown() -> None:
    if ORCH is not None:
        ORCH.stop()


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "healthy"}


@app.get("/status", response_model=list[ServiceStatus])
def status(orch: Orchestrator = Depends(get_orchestrator)):
    return orch.status()


@app.get("/status/{name}", response_model=ServiceStatus)
def service_status(name: str, orch: Orchestrator = Depends(get_orchestrator)):
    for entry in orch.status():
        if entry["name"] == name:
            return entry
    raise HTTPException(status_code=404, detail=f"Unknown service '{name}'")


@app.get("/routes", response_model=list[RouteView])
def routes(orch: Orchestrator = Depends(get_orchestrator)):
    return orch.route_table()


@app.get("/graph", response_model=GraphView)
def graph(orch: Orchestrator = Depends(get_orchestrator)):
    return orch.graph.to_dict()


@app.get("/resources", response_model=ResourcesView)
def resources(orch: Orchestrator = Depends(get_orchestrator)):
    return orch.ledger.snapshot()


@app.get("/events")
def events(limit: int = Query(100, ge=1, le=1000), service: str | None = None):
    return db.latest_events(limit=limit, service_name=service)


@app.get("/services/{name}/instances")
def instances(name: str, orch: Orchestrator = Depends(get_orchestrator)):
    if name not in orch.store:
        raise HTTPException(status_code=404, detail=f"Unknown service '{name}'")
    return [asdict(row) for row in db.list_instances(name)]


@app.post("/services/{name}/restart")
def restart(name: str, orch: Orchestrator = Depends(get_orchestrator)):
    if name not in orch.store:
        raise HTTPException(status_code=404, detail=f"Unknown service '{name}'")
    try:
        orch.restart(name)
    except KeyError as e:
        raise HTTPException(status_code=409, detail=str(e).strip("'\""))
    except RuntimeError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"ok": True, "service": name}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
