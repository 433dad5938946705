from __future__ import annotations

from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from convoy.constants import DEFAULT_MAX_CYCLES

# Load .env once at import so every BaseSettings section sees its variables
load_dotenv()


class BusSettings(BaseSettings):
    """Message bus delivery settings. Env vars prefixed with BUS_."""

    model_config = SettingsConfigDict(env_prefix="BUS_")

    delivery_mode: Literal["push", "pull"] = "push"
    poll_interval_s: float = Field(2.0, gt=0)  # pull cadence; push re-check for foreign writers


class SupervisorSettings(BaseSettings):
    """Coordination loop settings. Env vars prefixed with SUPERVISOR_."""

    model_config = SettingsConfigDict(env_prefix="SUPERVISOR_")

    poll_interval_s: float = Field(30.0, gt=0)
    max_cycles: int = Field(DEFAULT_MAX_CYCLES, ge=1)
    build_failure_routing: Literal["last_merged", "all"] = "last_merged"


class BuildSettings(BaseSettings):
    """Build gate commands. Env vars prefixed with BUILD_. Empty command = step skipped."""

    model_config = SettingsConfigDict(env_prefix="BUILD_")

    install_cmd: str = ""
    build_cmd: str = ""
    start_cmd: str = ""
    grace_period_s: float = Field(5.0, ge=0)
    stop_timeout_s: float = Field(10.0, gt=0)


class TrunkSettings(BaseSettings):
    """Integration branch settings. Env vars prefixed with TRUNK_."""

    model_config = SettingsConfigDict(env_prefix="TRUNK_")

    base_branch: str = "main"
    session_branch: bool = True  # merge into a fresh <prefix>/<project>-<timestamp> branch off base_branch
    session_prefix: str = "convoy"


class QASettings(BaseSettings):
    """QA agent settings. Env vars prefixed with QA_."""

    model_config = SettingsConfigDict(env_prefix="QA_")

    command: str = ""  # external QA runner; empty = qa agent cannot serve
    standards_file: Path | None = None  # defaults to <root>/STANDARDS.md


class PRSettings(BaseSettings):
    """Pull request settings. Env vars prefixed with PR_."""

    model_config = SettingsConfigDict(env_prefix="PR_")

    enabled: bool = False
    cli: str = "gh"
    remote: str = "origin"
    base_branch: str = "main"
    supported_hosts: str = "github.com"  # comma-separated

    @field_validator("supported_hosts")
    @classmethod
    def _validate_hosts(cls, v: str) -> str:
        if not any(part.strip() for part in v.split(",")):
            raise ValueError("PR_SUPPORTED_HOSTS must name at least one host")
        return v

    def host_list(self) -> tuple[str, ...]:
        return tuple(part.strip().lower() for part in self.supported_hosts.split(",") if part.strip())


class GatewaySettings(BaseSettings):
    """Gateway server settings. Env vars prefixed with GATEWAY_."""

    model_config = SettingsConfigDict(env_prefix="GATEWAY_")

    host: str = "127.0.0.1"
    port: int = 19790


class Settings(BaseSettings):
    """Root settings composing all sub-configurations. Env vars prefixed with CONVOY_."""

    model_config = SettingsConfigDict(env_prefix="CONVOY_", extra="ignore")

    project_dir: Path = Path(".")
    root_dir: Path = Path(".convoy")  # relative paths resolve against project_dir
    log_json: bool = False
    log_level: str = "INFO"

    bus: BusSettings = Field(default_factory=BusSettings)
    supervisor: SupervisorSettings = Field(default_factory=SupervisorSettings)
    build: BuildSettings = Field(default_factory=BuildSettings)
    trunk: TrunkSettings = Field(default_factory=TrunkSettings)
    qa: QASettings = Field(default_factory=QASettings)
    pr: PRSettings = Field(default_factory=PRSettings)
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if v.upper() not in allowed:
            raise ValueError(f"CONVOY_LOG_LEVEL must be one of {allowed} (got '{v}')")
        return v.upper()

    @property
    def coordination_root(self) -> Path:
        if self.root_dir.is_absolute():
            return self.root_dir
        return self.project_dir / self.root_dir


def get_settings() -> Settings:
    """Load and validate settings. Raises ValidationError on invalid values."""
    return Settings()
