import uuid

from dev_errors import UploadError
from preview_upload import upload
from server_config import ServerConfig


def new_session_id() -> str:
    """Random per-run session token, 32 lowercase hex chars."""
    return uuid.uuid4().hex


def build_preview_id(script_id: str, session_id: str, server_config: ServerConfig) -> str:
    """Credential sent in `cf-ew-preview`. Opaque to us, order matters to the preview host."""
    if not script_id:
        raise UploadError("Preview upload did not return a script id")
    host = server_config.host
    return f"{script_id}{session_id}{int(host.is_https)}{host}"


def get_preview_id(target, user, server_config: ServerConfig, session_id: str, uploader=upload) -> str:
    script_id = uploader(target, user, sites_preview=False, verbose=True)
    return build_preview_id(script_id, session_id, server_config)
