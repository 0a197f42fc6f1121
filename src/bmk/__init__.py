from .build import BookmarkletBuilder, BuildError, BuildOptions, BuildResult
from .hashing import make_filename_hasher, sha256_hex
from .ports import (
    PortFallbackExhaustedError,
    PortInUseError,
    PortUnavailableError,
    is_port_in_use,
    negotiate_port,
)
from .render import IndexEntry, render_bootstrap, render_index
from .server import (
    BookmarkletSource,
    DeliveryServer,
    DeliveryServerError,
    ServerConfig,
    create_app,
)

__all__ = [
    "BookmarkletBuilder",
    "BuildError",
    "BuildOptions",
    "BuildResult",
    "make_filename_hasher",
    "sha256_hex",
    "PortFallbackExhaustedError",
    "PortInUseError",
    "PortUnavailableError",
    "is_port_in_use",
    "negotiate_port",
    "IndexEntry",
    "render_bootstrap",
    "render_index",
    "BookmarkletSource",
    "DeliveryServer",
    "DeliveryServerError",
    "ServerConfig",
    "create_app",
]
