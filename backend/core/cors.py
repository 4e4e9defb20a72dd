"""
CORS policy: allowed origins and the options handed to the CORS middleware.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from core.config import Settings, settings as default_settings

DEFAULT_METHODS = ["GET", "HEAD", "PUT", "PATCH", "POST", "DELETE", "OPTIONS"]


def allowed_origins(settings: Optional[Settings] = None) -> List[str]:
    """Origins allowed to call the API from a browser."""
    return list((settings or default_settings).allowed_origins)


@dataclass
class CorsOptions:
    """Options for ``CORSMiddleware``.

    Credentials are not granted here: the credentials check runs before CORS
    and adds ``Access-Control-Allow-Credentials`` for trusted origins only.
    """

    origins: Sequence[str] = field(default_factory=list)
    methods: Sequence[str] = field(default_factory=lambda: list(DEFAULT_METHODS))
    headers: Sequence[str] = field(default_factory=lambda: ["*"])
    expose_headers: Sequence[str] = field(default_factory=list)
    max_age: int = 600

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "CorsOptions":
        settings = settings or default_settings
        return cls(origins=allowed_origins(settings), max_age=settings.cors_max_age)

    def middleware_kwargs(self) -> Dict[str, Any]:
        return {
            "allow_origins": list(self.origins),
            "allow_methods": list(self.methods),
            "allow_headers": list(self.headers),
            "expose_headers": list(self.expose_headers),
            "allow_credentials": False,
            "max_age": self.max_age,
        }
