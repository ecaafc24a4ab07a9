"""
Server configuration management
"""
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from cmdserver.models import FramingPolicy, ServerMode


class Settings(BaseSettings):
    """Command server settings"""

    model_config = SettingsConfigDict(env_prefix="CMDSERVER_", env_file=".env")

    # Listener
    host: str = "0.0.0.0"
    port: int = 9999
    mode: ServerMode = ServerMode.MULTI_CLIENT
    framing: Optional[FramingPolicy] = None  # None = default for the mode

    # Receive loop
    receive_min_bytes: int = 1
    receive_max_bytes: int = 512
    encoding: str = "utf-8"
    buffer_partial_lines: bool = False

    # Replies
    line_terminator: str = "\r\n"

    # Logging
    project_root: Path = Path(__file__).parent.parent
    log_dir: Path = project_root / "logs"
    log_level: str = "INFO"
    log_to_file: bool = True
    log_max_bytes: int = 5 * 1024 * 1024
    log_backup_count: int = 5


settings = Settings()
