import ipaddress
import socket
from typing import Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict

from dev_errors import ConfigError

DEFAULT_HOST = "https://example.com"
DEFAULT_IP = "127.0.0.1"
DEFAULT_PORT = 8787


def _bracket(host: str) -> str:
    return f"[{host}]" if ":" in host else host


class Host(BaseModel):
    """The host the worker believes it is serving, e.g. `https://example.com`."""

    model_config = ConfigDict(frozen=True)

    scheme: str
    hostname: str
    port: Optional[int] = None

    @property
    def is_https(self) -> bool:
        return self.scheme == "https"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Host":
        value = (value or DEFAULT_HOST).strip()
        if "://" not in value:
            value = f"https://{value}"
        try:
            parts = urlsplit(value)
            port = parts.port
        except ValueError as e:
            raise ConfigError(f"Invalid host '{value}': {e}") from e

        if parts.scheme not in ("http", "https"):
            raise ConfigError(f"Invalid host '{value}': scheme must be http or https")
        if not parts.hostname:
            raise ConfigError(f"Invalid host '{value}': missing hostname")
        if parts.path not in ("", "/") or parts.query or parts.fragment:
            raise ConfigError(f"Invalid host '{value}': must not contain a path or query")

        hostname = parts.hostname
        if not hostname.isascii():
            # Ends up in the cf-ew-preview header, which must stay ASCII
            try:
                hostname = hostname.encode("idna").decode("ascii")
            except UnicodeError as e:
                raise ConfigError(f"Invalid host '{value}': {e}") from e
        return cls(scheme=parts.scheme, hostname=hostname, port=port)

    def __str__(self) -> str:
        host = _bracket(self.hostname)
        return f"{host}:{self.port}" if self.port is not None else host


class ListeningAddress(BaseModel):
    model_config = ConfigDict(frozen=True)

    ip: str
    port: int

    @property
    def family(self) -> int:
        return socket.AF_INET6 if ":" in self.ip else socket.AF_INET

    @classmethod
    def parse(cls, ip: Optional[str], port) -> "ListeningAddress":
        ip = ip or DEFAULT_IP
        port = DEFAULT_PORT if port is None else port
        try:
            port = int(port)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid port '{port}'") from e
        if not 0 <= port <= 65535:
            raise ConfigError(f"Invalid port '{port}': must be between 0 and 65535")

        try:
            return cls(ip=str(ipaddress.ip_address(ip)), port=port)
        except ValueError:
            pass

        # Not a literal address, resolve it once (e.g. "localhost")
        try:
            infos = socket.getaddrinfo(ip, port, type=socket.SOCK_STREAM)
        except socket.gaierror as e:
            raise ConfigError(f"Invalid ip '{ip}': {e}") from e
        if not infos:
            raise ConfigError(f"Invalid ip '{ip}': could not be resolved")
        return cls(ip=infos[0][4][0], port=port)

    def __str__(self) -> str:
        return f"{_bracket(self.ip)}:{self.port}"


class ServerConfig(BaseModel):
    """Everything a request handler needs to know about this run. Never mutated."""

    model_config = ConfigDict(frozen=True)

    host: Host
    listening_address: ListeningAddress
    upstream_timeout: Optional[float] = None

    @classmethod
    def new(
        cls,
        host: Optional[str] = None,
        ip: Optional[str] = None,
        port=None,
        upstream_timeout: Optional[float] = None,
    ) -> "ServerConfig":
        if upstream_timeout is not None and upstream_timeout <= 0:
            raise ConfigError("--upstream-timeout must be a positive number of seconds")
        return cls(
            host=Host.parse(host),
            listening_address=ListeningAddress.parse(ip, port),
            upstream_timeout=upstream_timeout,
        )
