from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException, Query

from fieldsync.const import DEFAULT_PURGE_SYNCED_AFTER_MS, SYNC_ENDPOINT
from fieldsync.errors import ConflictNotFoundError
from fieldsync.events import ResolutionType
from fieldsync.remote import InMemoryRemote


def create_app(remote: InMemoryRemote | None = None) -> FastAPI:
    app = FastAPI()
    state = remote or InMemoryRemote()
    app.state.remote = state

    @app.post(SYNC_ENDPOINT)
    async def handle_sync(data: dict[str, Any]) -> dict[str, Any]:
        operations = data.get("operations")
        device_id = data.get("deviceId")
        if not isinstance(operations, list):
            raise HTTPException(status_code=400, detail="Operations array is required")
        if not device_id:
            raise HTTPException(status_code=400, detail="Device ID is required")
        return state.process_batch(operations, str(device_id))

    @app.get(f"{SYNC_ENDPOINT}/status/{{device_id}}")
    async def handle_status(device_id: str) -> dict[str, Any]:
        status = state.device_status(device_id)
        if status is None:
            raise HTTPException(status_code=404, detail=f"Device {device_id} not found")
        return status

    @app.post(f"{SYNC_ENDPOINT}/resolve-conflict")
    async def handle_resolve_conflict(data: dict[str, Any]) -> dict[str, Any]:
        operation_id = data.get("operationId")
        resolution = data.get("resolution")
        if not operation_id or not resolution or not data.get("deviceId"):
            raise HTTPException(status_code=400, detail="Operation ID, resolution, and device ID are required")
        if resolution not in (ResolutionType.LOCAL_WINS.value, ResolutionType.REMOTE_WINS.value):
            raise HTTPException(status_code=400, detail=f"Unsupported resolution {resolution}")
        try:
            result = state.resolve_conflict(str(operation_id), resolution)
        except ConflictNotFoundError as err:
            raise HTTPException(status_code=404, detail=str(err)) from err
        return {"message": "Conflict resolved", "result": result}

    @app.get(f"{SYNC_ENDPOINT}/stats")
    async def handle_stats() -> dict[str, int]:
        return state.stats()

    @app.post(f"{SYNC_ENDPOINT}/cleanup")
    async def handle_cleanup(
        older_than_ms: int = Query(DEFAULT_PURGE_SYNCED_AFTER_MS, ge=0),
    ) -> dict[str, int]:
        return {"removed": state.clear_old_operations(older_than_ms)}

    return app


def main() -> None:
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8080)


if __name__ == "__main__":
    main()
