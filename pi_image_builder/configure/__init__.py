"""Guest configuration: templates, file writes and in-container commands."""

from .container import container_command, run_in_container
from .files import RenderRequest, guest_path, idempotent_write
from .guest import GuestConfigurator
from .templates import TemplateRepository

__all__ = [
    "GuestConfigurator",
    "RenderRequest",
    "TemplateRepository",
    "container_command",
    "guest_path",
    "idempotent_write",
    "run_in_container",
]
