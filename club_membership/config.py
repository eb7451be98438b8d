"""
Club Membership -- Configuration Module

Centralizes all configuration for the membership engine.
Loads defaults from dataclasses, then overlays any overrides from config.yaml.

Usage:
    from club_membership.config import get_config
    cfg = get_config()                         # loads config.yaml if present
    cfg = get_config("path/to/custom.yaml")    # loads a specific file
    print(cfg.queue.batch_size)                # 50
    print(cfg.club.operator_email)             # membership-automation@sc3.club
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

# ---------------------------------------------------------------------------
# Path constants -- everything relative to the project root
# ---------------------------------------------------------------------------
_THIS_DIR = Path(__file__).resolve().parent          # club_membership/
PROJECT_ROOT = _THIS_DIR.parent
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"


# ===================================================================
# 1. Retry Queue
# ===================================================================

@dataclass
class QueueSettings:
    """Batch size, retry ceiling and backoff for the expiration queue."""
    batch_size: int = 50
    max_attempts: int = 5               # global default, entries may override
    base_delay_minutes: int = 5         # delay after the first failure
    max_delay_minutes: int = 240        # backoff ceiling
    continuation_delay_minutes: int = 1 # re-run delay while work remains


# ===================================================================
# 2. Test Mode
# ===================================================================

@dataclass
class TestModeFlags:
    """Redirect side effects to the log instead of performing them."""
    __test__ = False                    # not a pytest test class

    test_emails: bool = False
    test_group_adds: bool = False
    test_group_removes: bool = False
    log_only: bool = False              # migrations: compute, but do not write back


# ===================================================================
# 3. Club Identity
# ===================================================================

@dataclass
class ClubInfo:
    """Domain used for the operator and reply-to addresses."""
    domain: str = "sc3.club"
    name: str = "Santa Cruz County Cycling Club"

    @property
    def operator_email(self) -> str:
        return f"membership-automation@{self.domain}"

    @property
    def reply_to(self) -> str:
        return f"membership@{self.domain}"


# ===================================================================
# 4. SMTP Settings
# ===================================================================

@dataclass
class SMTPSettings:
    """SMTP relay used for member and operator email."""
    host: str = "smtp.gmail.com"
    port: int = 587
    use_tls: bool = True
    sender: str = ""          # defaults to the reply-to address when blank
    username: str = ""        # set via env var SMTP_USERNAME
    password: str = ""        # set via env var SMTP_PASSWORD

    def __post_init__(self):
        self.username = self.username or os.environ.get("SMTP_USERNAME", "")
        self.password = self.password or os.environ.get("SMTP_PASSWORD", "")


# ===================================================================
# 5. Table Names
# ===================================================================

@dataclass
class TableNames:
    """Sheet names inside the membership workbook."""
    members: str = "ActiveMembers"
    transactions: str = "Transactions"
    migrations: str = "MigratingMembers"
    expiry_schedule: str = "ExpirySchedule"
    queue: str = "ExpirationFIFO"
    dead_letter: str = "ExpirationDeadLetter"
    audit: str = "Audit"
    ambiguous: str = "AmbiguousTransactions"
    action_specs: str = "ActionSpecs"
    groups: str = "PublicGroups"


# ===================================================================
# 6. Data File Paths
# ===================================================================

@dataclass
class DataFilePaths:
    """Paths to the workbook and scheduler state (relative to project root unless absolute)."""
    workbook: str = "data/membership.xlsx"
    scheduler_state: str = "data/scheduler_state.json"

    def resolve(self, rel_path: str) -> Path:
        p = Path(rel_path)
        if not p.is_absolute():
            p = PROJECT_ROOT / p
        return p


# ===================================================================
# 7. Output
# ===================================================================

@dataclass
class OutputConfig:
    """Where the CLI writes its log file (blank = console only)."""
    log_file: str = ""

    def resolved_log_file(self) -> Path | None:
        if not self.log_file:
            return None
        path = Path(self.log_file)
        if not path.is_absolute():
            path = PROJECT_ROOT / path
        path.parent.mkdir(parents=True, exist_ok=True)
        return path


# ===================================================================
# Master Config
# ===================================================================

@dataclass
class MembershipConfig:
    """Top-level configuration container for the membership engine."""
    queue: QueueSettings = field(default_factory=QueueSettings)
    test_mode: TestModeFlags = field(default_factory=TestModeFlags)
    club: ClubInfo = field(default_factory=ClubInfo)
    smtp: SMTPSettings = field(default_factory=SMTPSettings)
    tables: TableNames = field(default_factory=TableNames)
    data_files: DataFilePaths = field(default_factory=DataFilePaths)
    output: OutputConfig = field(default_factory=OutputConfig)


# ===================================================================
# YAML Loading
# ===================================================================

def _apply_yaml_to_config(cfg: MembershipConfig, data: dict) -> None:
    """Apply a parsed YAML dict onto a MembershipConfig instance."""
    _section_map = {
        "queue": cfg.queue,
        "test_mode": cfg.test_mode,
        "club": cfg.club,
        "smtp": cfg.smtp,
        "tables": cfg.tables,
        "data_files": cfg.data_files,
        "output": cfg.output,
    }

    for section_key, section_obj in _section_map.items():
        if section_key in data and isinstance(data[section_key], dict):
            for attr, val in data[section_key].items():
                if hasattr(section_obj, attr):
                    setattr(section_obj, attr, val)


def get_config(yaml_path: Optional[str | Path] = None) -> MembershipConfig:
    """Build a MembershipConfig, optionally overlaying values from a YAML file.

    Args:
        yaml_path: Path to a config.yaml file.  If None, looks for the
                   default config.yaml at the project root.  If that file
                   doesn't exist, returns pure defaults.

    Returns:
        Fully populated MembershipConfig instance.

    Raises:
        FileNotFoundError: If an explicit ``yaml_path`` does not exist.
    """
    cfg = MembershipConfig()

    if yaml_path is not None and not Path(yaml_path).exists():
        raise FileNotFoundError(f"Config file not found: {yaml_path}")

    path = Path(yaml_path) if yaml_path else DEFAULT_CONFIG_PATH
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        _apply_yaml_to_config(cfg, data)

    return cfg
