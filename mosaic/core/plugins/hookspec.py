"""Hook specifications for Mosaic plugins."""
import pluggy
from fastapi import FastAPI

PROJECT_NAME = "mosaic"

hookspec = pluggy.HookspecMarker(PROJECT_NAME)
hookimpl = pluggy.HookimplMarker(PROJECT_NAME)


class MosaicSpecs:
    """Hook specifications for Mosaic plugins."""

    @hookspec
    async def on_startup(self, app: FastAPI) -> None:
        """Run startup logic once the application and event system are ready.

        Args:
            app: The FastAPI application instance
        """

    @hookspec
    async def on_shutdown(self, app: FastAPI) -> None:
        """Run cleanup logic before the event system shuts down.

        Args:
            app: The FastAPI application instance
        """
