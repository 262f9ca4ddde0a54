import os
from enum import Enum
from pathlib import Path
from typing import Annotated

from pydantic import BaseModel, Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

_CONFIG_PATH = os.getenv("HYCORE_CONFIG", "config.toml")
_ENV_PATH = os.getenv("HYCORE_ENV", ".env")


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class BackendKind(str, Enum):
    CONTAINER = "container"
    PROCESS = "process"


class LoggingSettings(BaseModel):
    level: str = "INFO"
    to_file: bool = False
    file_path: Path = Field(default=Path("logs"))


class ProcessSettings(BaseModel):
    java_path: str = "java"
    bind_host: str = "0.0.0.0"
    min_java_version: int = 25
    jar_name: str = "HytaleServer.jar"
    aot_cache_name: str = "HytaleServer.aot"
    stop_command: str = "/stop"
    auth_command: str = "/auth login device"
    output_history: int = 1000

    # The server prints no structured readiness signal, these substrings are
    # the best available hint and can be overridden per deployment.
    running_patterns: Annotated[
        list[str], Field(default_factory=lambda: ["Server started", "Done"])
    ]
    authenticated_patterns: Annotated[
        list[str], Field(default_factory=lambda: ["Authentication successful"])
    ]


class ContainerSettings(BaseModel):
    docker_path: str = "docker"
    prefix: str = "hycore-world"
    game_port: int = 25565
    restart_policy: str = "unless-stopped"
    console_command: list[str] = ["mc-send-to-console"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        toml_file=_CONFIG_PATH,
        env_file=_ENV_PATH,
        extra="ignore",
    )

    host: str = "0.0.0.0"
    port: int = 3000
    environment: Environment = Environment.DEVELOPMENT

    worlds_path: Path = Field(default=Path("worlds"))
    docker_image: str = "itzg/minecraft-server"
    default_kind: BackendKind = BackendKind.CONTAINER

    stop_timeout: float = 30.0
    log_buffer_size: int = 1000
    subscriber_queue_size: int = 1000
    status_poll_interval: float = 0.5
    exit_drain_timeout: float = 2.0

    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    process: ProcessSettings = Field(default_factory=ProcessSettings)
    container: ContainerSettings = Field(default_factory=ContainerSettings)

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Source order: init args > OS env > .env > config.toml > secrets
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )


settings = Settings()
