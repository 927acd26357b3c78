from fastapi import Request

from external_tasks.testing.engine import ExternalTaskStore


def get_store(request: Request) -> ExternalTaskStore:
    """FastAPI dependency for the app's in-memory task store."""
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise RuntimeError("External task store is not initialized.")
    return store
