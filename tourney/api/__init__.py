"""FastAPI integration for hosts that expose the engine over HTTP."""

from tourney.api.errors import create_error_response, install_error_handlers, status_for

__all__ = ["create_error_response", "install_error_handlers", "status_for"]
