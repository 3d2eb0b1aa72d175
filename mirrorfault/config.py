"""
Harness configuration management
"""
from pathlib import Path
from typing import List, Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Fault harness settings"""

    # Process under test
    binary: Optional[Path] = None
    bind_ip: str = "127.0.0.1"
    source_port: int = 41234
    dest_port: int = 41235

    # Paths; events only go to a file when log_dir is set
    work_dir: Path = Path("/tmp")
    log_dir: Optional[Path] = None

    # Limits handed to the process under test
    request_limit_secs: float = 4.0

    # Deadlines for the double (seconds)
    hello_timeout_sec: float = 5.0
    accept_timeout_sec: float = 10.0
    exchange_timeout_sec: float = 10.0
    close_timeout_sec: float = 2.0
    connect_deadline_sec: float = 2.0
    connect_backoff_sec: float = 0.2
    process_start_timeout_sec: float = 5.0
    process_exit_timeout_sec: float = 10.0

    # Exit statuses accepted for termination during an in-flight handoff
    killed_exit_codes: List[int] = [-9]

    # Size of the export served by the process under test
    export_size: int = 4096

    class Config:
        env_prefix = "MIRRORFAULT_"
        env_file = ".env"


settings = Settings()
