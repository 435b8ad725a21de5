"""
pocscan - Configuration Management
Centralized configuration for the scan engine, the nuclei invocation and the API.
"""

import os
import re
import json
import shutil
from pathlib import Path
from dataclasses import dataclass, field, asdict, fields
from typing import Dict, List, Optional

from loguru import logger


# Base paths
POCSCAN_HOME = Path(os.environ.get("POCSCAN_HOME", "~/.pocscan")).expanduser()
TEMPLATES_DIR = POCSCAN_HOME / "templates"
TASKS_DIR = POCSCAN_HOME / "tasks"
RESULTS_DIR = POCSCAN_HOME / "results"
LOGS_DIR = POCSCAN_HOME / "logs"
TMP_DIR = POCSCAN_HOME / "tmp"

# Persistence files
CONFIG_FILE = POCSCAN_HOME / "config.json"

# Above this many templates the selection is staged into one directory
STAGING_THRESHOLD = 100
SCAN_TIMEOUT_S = 30 * 60
STALE_TEMP_AGE_S = 24 * 60 * 60


def resolve_nuclei_bin() -> str:
    """Resolve the nuclei executable from env, common install locations or PATH."""
    env_path = os.environ.get("POCSCAN_NUCLEI_BIN", "").strip()
    if env_path:
        return str(Path(env_path).expanduser().resolve())

    home = Path.home()
    candidates = [
        Path("/usr/local/bin/nuclei"),
        Path("/usr/bin/nuclei"),
        home / "go" / "bin" / "nuclei",
        home / ".local" / "bin" / "nuclei",
        home / "bin" / "nuclei",
    ]
    for candidate in candidates:
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)

    system_bin = shutil.which("nuclei")
    if system_bin:
        return system_bin

    # Let the process start fail with a clear error later on
    return "nuclei"


@dataclass
class NucleiOptions:
    """Pass-through nuclei flags. Zero/empty values leave the tool default."""
    concurrency: int = 0
    bulk_size: int = 0
    rate_limit: int = 0
    rate_limit_minute: int = 0

    proxy_enabled: bool = False
    proxy_url: str = ""
    proxy_list: List[str] = field(default_factory=list)
    proxy_internal: bool = False

    # Out-of-band (interactsh) callback server
    interactsh_enabled: bool = True
    interactsh_server: str = ""
    interactsh_token: str = ""
    interactsh_disable: bool = False

    request_timeout: int = 30
    retries: int = 1
    max_host_error: int = 0
    disable_update_check: bool = False
    follow_redirects: bool = False
    max_redirects: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> "NucleiOptions":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class APIConfig:
    """Backend API configuration."""
    host: str = "127.0.0.1"
    port: int = 8765
    cors_origins: List[str] = field(default_factory=lambda: [
        "http://127.0.0.1:*",
        "http://localhost:*",
    ])

    def origin_regex(self) -> str:
        """cors_origins as one regex, `*` matching any run of characters."""
        return "|".join(re.escape(origin).replace(r"\*", ".*") for origin in self.cors_origins)


@dataclass
class EngineConfig:
    """Everything the task manager, orchestrator and command builder need."""
    data_dir: Path = POCSCAN_HOME
    templates_dir: Path = TEMPLATES_DIR
    nuclei_path: str = field(default_factory=resolve_nuclei_bin)
    scan_timeout_s: float = SCAN_TIMEOUT_S
    staging_threshold: int = STAGING_THRESHOLD
    stale_temp_age_s: float = STALE_TEMP_AGE_S
    event_queue_size: int = 100
    handler_timeout_s: float = 5.0
    # Minimum gap between periodic task-file writes while a scan runs
    persist_interval_s: float = 2.0
    options: NucleiOptions = field(default_factory=NucleiOptions)
    api: APIConfig = field(default_factory=APIConfig)

    @property
    def tasks_dir(self) -> Path:
        return Path(self.data_dir) / "tasks"

    @property
    def results_dir(self) -> Path:
        return Path(self.data_dir) / "results"

    @property
    def logs_dir(self) -> Path:
        return Path(self.data_dir) / "logs"

    @property
    def tmp_dir(self) -> Path:
        return Path(self.data_dir) / "tmp"

    def ensure_dirs(self):
        """Create all directories below data_dir."""
        for d in [self.tasks_dir, self.results_dir, self.logs_dir, self.tmp_dir, Path(self.templates_dir)]:
            d.mkdir(parents=True, exist_ok=True)


def ensure_dirs():
    """Create all required directories."""
    for d in [POCSCAN_HOME, TEMPLATES_DIR, TASKS_DIR, RESULTS_DIR, LOGS_DIR, TMP_DIR]:
        d.mkdir(parents=True, exist_ok=True)


# ── User Config Persistence ───────────────────────────────────────

def load_user_config(path: Optional[Path] = None) -> dict:
    """Load user config overrides (nuclei path, options, api port)."""
    path = Path(path) if path else CONFIG_FILE
    if not path.exists():
        return {}
    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"[Config] Error loading config: {e}")
        return {}
    return data if isinstance(data, dict) else {}


def save_user_config(config: dict, path: Optional[Path] = None):
    """Save user config overrides, merged with the existing file."""
    path = Path(path) if path else CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    existing = load_user_config(path)
    existing.update(config)
    with open(path, 'w') as f:
        json.dump(existing, f, indent=2)


def config_to_dict(cfg: EngineConfig) -> Dict:
    """Serializable view of an EngineConfig."""
    return {
        "data_dir": str(cfg.data_dir),
        "templates_dir": str(cfg.templates_dir),
        "nuclei_path": cfg.nuclei_path,
        "scan_timeout_s": cfg.scan_timeout_s,
        "staging_threshold": cfg.staging_threshold,
        "options": asdict(cfg.options),
        "api": asdict(cfg.api),
    }


def get_config(path: Optional[Path] = None) -> EngineConfig:
    """Get the current configuration, merging defaults with persisted overrides."""
    ensure_dirs()
    cfg = EngineConfig()

    user_cfg = load_user_config(path)
    if user_cfg.get("nuclei_path"):
        cfg.nuclei_path = str(user_cfg["nuclei_path"])
    if user_cfg.get("templates_dir"):
        cfg.templates_dir = Path(user_cfg["templates_dir"]).expanduser()
    if "scan_timeout_s" in user_cfg:
        cfg.scan_timeout_s = float(user_cfg["scan_timeout_s"])
    if "staging_threshold" in user_cfg:
        cfg.staging_threshold = int(user_cfg["staging_threshold"])
    if isinstance(user_cfg.get("options"), dict):
        cfg.options = NucleiOptions.from_dict(user_cfg["options"])
    if "api_port" in user_cfg:
        cfg.api.port = int(user_cfg["api_port"])
    if isinstance(user_cfg.get("cors_origins"), list):
        cfg.api.cors_origins = [str(o) for o in user_cfg["cors_origins"]]

    return cfg
