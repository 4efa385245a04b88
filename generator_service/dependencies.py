"""FastAPI dependencies shared by the route modules."""

from fastapi import HTTPException, Request

from .context import ServiceContext


def get_context(request: Request) -> ServiceContext:
    """Return the service context built at start-up."""
    context = getattr(request.app.state, "context", None)
    if context is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return context
