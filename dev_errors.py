"""Errors raised by the dev proxy.

Startup errors (config, upload, bind) are fatal. Everything else is scoped to
a single request and turned into a 502 by the server.
"""


class DevProxyError(Exception):
    """Base class for every dev proxy failure."""


# ─── Startup ─────────────────────────────────────────────────────────────────

class ConfigError(DevProxyError):
    pass


class UploadError(DevProxyError):
    pass


class BindError(DevProxyError):
    pass


# ─── Per request ─────────────────────────────────────────────────────────────

class HeaderEncodingError(DevProxyError):
    def __init__(self, name: bytes, reason: str = "not a valid header name"):
        self.name = name
        super().__init__(f"cannot forward header {name!r}: {reason}")


class HeaderDecodingError(DevProxyError):
    def __init__(self, name: bytes, reason: str = "not a valid header name"):
        self.name = name
        super().__init__(f"cannot restore header {name!r}: {reason}")


class UrlConstructionError(DevProxyError):
    pass


class UpstreamRequestError(DevProxyError):
    pass
