"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    data_dir: Path = field(default_factory=lambda: Path.home() / ".autodev")
    db_path: Path | None = None
    max_workers: int = 4
    max_retries: int = 3
    agent_max_turns: int = 50
    branch_prefix: str = "autodev/"
    agent_path: str | None = None
    permission_mode: str = "skip"
    allowed_tools: list[str] = field(default_factory=list)
    tick_interval: float = 0.5
    clean_after_days: int = 7
    log_level: str = "WARNING"

    def __post_init__(self):
        if self.db_path is None:
            self.db_path = self.data_dir / "autodev.db"

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / "logs"

    @property
    def templates_dir(self) -> Path:
        return self.data_dir / "templates"

    def ensure_dirs(self) -> None:
        for path in (self.data_dir, self.logs_dir, self.templates_dir):
            path.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if data_dir := os.environ.get("AUTODEV_DATA_DIR"):
            config.data_dir = Path(data_dir)
            config.db_path = config.data_dir / "autodev.db"

        if db := os.environ.get("AUTODEV_DB_PATH"):
            config.db_path = Path(db)

        if workers := os.environ.get("AUTODEV_MAX_WORKERS"):
            config.max_workers = max(1, int(workers))

        if retries := os.environ.get("AUTODEV_MAX_RETRIES"):
            config.max_retries = max(0, int(retries))

        if turns := os.environ.get("AUTODEV_MAX_TURNS"):
            config.agent_max_turns = int(turns)

        if prefix := os.environ.get("AUTODEV_BRANCH_PREFIX"):
            config.branch_prefix = prefix

        config.agent_path = os.environ.get("AUTODEV_AGENT_PATH") or None

        if mode := os.environ.get("AUTODEV_PERMISSION_MODE"):
            config.permission_mode = mode

        if tools := os.environ.get("AUTODEV_ALLOWED_TOOLS"):
            config.allowed_tools = [t.strip() for t in tools.split(",") if t.strip()]

        if tick := os.environ.get("AUTODEV_TICK_INTERVAL"):
            config.tick_interval = float(tick)

        if days := os.environ.get("AUTODEV_CLEAN_AFTER_DAYS"):
            config.clean_after_days = int(days)

        if level := os.environ.get("AUTODEV_LOG_LEVEL"):
            config.log_level = level.upper()

        return config


def get_config() -> Config:
    return Config.from_env()
