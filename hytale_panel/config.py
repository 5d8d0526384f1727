import os
from dataclasses import dataclass

from dotenv import load_dotenv


load_dotenv()


def _get_env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _get_env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    if value.strip().lower() in {"1", "true", "yes", "on"}:
        return True
    if value.strip().lower() in {"0", "false", "no", "off"}:
        return False
    return default


@dataclass(frozen=True)
class Settings:
    docker_base_url: str
    data_root: str
    host_data_root: str | None
    server_image: str
    timezone: str
    port_range_start: int
    panel_port: int
    hytale_base_path: str
    mods_dir: str
    mods_metadata_file: str
    update_metadata_file: str
    mods_storage: str
    modtale_base_url: str
    modtale_api_key: str | None
    status_interval_seconds: float
    reconnect_delay_seconds: float
    update_settle_seconds: float
    log_history_lines: int
    max_upload_bytes: int
    compose_command: str
    auth_disabled: bool
    auth_secret: str
    auth_cookie_name: str
    auth_cookie_secure: bool
    session_ttl_hours: int
    owner_username: str | None
    owner_password: str | None
    auth_db_path: str
    log_level: str


def load_settings() -> Settings:
    data_root = os.path.abspath(os.getenv("DATA_PATH", "/opt/hytale-panel/data"))
    host_data_root_env = os.getenv("HOST_DATA_PATH")
    base_path = os.getenv("HYTALE_BASE_PATH", "/opt/hytale").rstrip("/") or "/opt/hytale"
    return Settings(
        docker_base_url=os.getenv("DOCKER_BASE_URL", "unix://var/run/docker.sock"),
        data_root=data_root,
        host_data_root=os.path.abspath(host_data_root_env) if host_data_root_env else None,
        server_image=os.getenv("SERVER_IMAGE", "ketbom/hytale-server:latest"),
        timezone=os.getenv("TZ", "UTC"),
        port_range_start=_get_env_int("PORT_RANGE_START", 5520),
        panel_port=_get_env_int("PANEL_PORT", 3000),
        hytale_base_path=base_path,
        mods_dir=f"{base_path}/mods",
        mods_metadata_file=f"{base_path}/mods.json",
        update_metadata_file=f"{base_path}/.update-metadata.json",
        mods_storage=os.getenv("MODS_STORAGE", "container").strip().lower(),
        modtale_base_url=os.getenv("MODTALE_BASE_URL", "https://api.modtale.net/api/v1"),
        modtale_api_key=os.getenv("MODTALE_API_KEY") or None,
        status_interval_seconds=_get_env_float("STATUS_INTERVAL_SECONDS", 5.0),
        reconnect_delay_seconds=_get_env_float("RECONNECT_DELAY_SECONDS", 2.0),
        update_settle_seconds=_get_env_float("UPDATE_SETTLE_SECONDS", 5.0),
        log_history_lines=_get_env_int("LOG_HISTORY_LINES", 500),
        max_upload_bytes=_get_env_int("MAX_UPLOAD_MB", 500) * 1024 * 1024,
        compose_command=os.getenv("COMPOSE_COMMAND", "docker compose"),
        auth_disabled=_get_env_bool("AUTH_DISABLED", False),
        auth_secret=os.getenv("AUTH_SECRET", ""),
        auth_cookie_name=os.getenv("AUTH_COOKIE_NAME", "hytale_panel_session"),
        auth_cookie_secure=_get_env_bool("AUTH_COOKIE_SECURE", False),
        session_ttl_hours=_get_env_int("SESSION_TTL_HOURS", 24),
        owner_username=os.getenv("PANEL_USER") or None,
        owner_password=os.getenv("PANEL_PASS") or None,
        auth_db_path=os.path.join(data_root, "_auth", "auth.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


settings = load_settings()
