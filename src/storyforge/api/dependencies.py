"""FastAPI dependencies shared by the API routes."""

from fastapi import Request

from storyforge.core.config import Settings
from storyforge.pipeline import Pipeline


def get_settings(request: Request) -> Settings:
    """Get the settings the application was started with.

    Returns:
        Settings instance stored on app.state during lifespan startup
    """
    return request.app.state.settings


def get_pipeline(request: Request) -> Pipeline:
    """Get the job pipeline from app state.

    Example:
        >>> @router.post("/endpoint")
        >>> async def endpoint(pipeline: Pipeline = Depends(get_pipeline)):
        ...     summary = await pipeline.run(mode="drain")
    """
    return request.app.state.pipeline
