from fastapi import APIRouter, Request

from finder_api.storage.registry import StorageRegistry

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint for monitoring API status and storage readiness.

    Returns status of the API and of every configured storage root.
    """
    registry: StorageRegistry = request.app.state.registry

    health_status = {
        "status": "ok",
        "components": {"api": "ready"},
        "storages": {},
        "ready": False,
    }

    for key, storage in registry.items():
        try:
            reachable = await storage.check()
        except Exception as e:
            health_status["storages"][key] = f"error: {str(e)}"
            health_status["status"] = "degraded"
            continue
        health_status["storages"][key] = "ready" if reachable else "unreachable"
        if not reachable:
            health_status["status"] = "degraded"

    # Overall ready status
    health_status["ready"] = all(state == "ready" for state in health_status["storages"].values())

    return health_status
