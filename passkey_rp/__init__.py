"""WebAuthn relying party ceremony orchestration."""

from .app import build_service, create_app
from .config import RPSettings
from .services import CeremonyService

__all__ = ["CeremonyService", "RPSettings", "build_service", "create_app"]
