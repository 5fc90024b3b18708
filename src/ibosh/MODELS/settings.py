"""
Runtime settings, merged from defaults, an optional .env file and the environment.
"""
import os
from typing import Dict, List, Mapping, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ValidationError, field_validator

from ..errors import ConfigError

ENV_PREFIX = "IBOSH_"

DEFAULT_IMAGE = "ghcr.io/rkoster/instant-bosh:latest"
DEFAULT_STEMCELL_IMAGES = ["ghcr.io/cloudfoundry/ubuntu-noble-stemcell:latest"]


class Settings(BaseModel):
    """
    Settings for a single ibosh environment.

    Every field can be overridden with an ``IBOSH_<FIELD>`` variable, either
    exported or listed in a .env file.
    """
    image: str = DEFAULT_IMAGE
    stemcell_images: List[str] = list(DEFAULT_STEMCELL_IMAGES)

    # Startup
    ready_timeout: float = 300.0
    log_buffer_lines: int = 100
    log_grace_period: float = 2.0
    main_component: str = "main"
    skip_update: bool = False
    skip_stemcell_upload: bool = False

    # Incus
    incus_remote: Optional[str] = None
    incus_project: str = "default"
    incus_network: str = "ibosh-net"
    incus_storage_pool: str = "default"

    log_level: str = "WARNING"

    @field_validator("stemcell_images", mode="before")
    @classmethod
    def _split_list(cls, value):
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("ready_timeout", "log_grace_period")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("log_buffer_lines")
    @classmethod
    def _positive_lines(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @classmethod
    def load(cls,
             env_file: Optional[str] = None,
             environ: Optional[Mapping[str, str]] = None,
             **overrides) -> "Settings":
        """
        Build settings from an optional .env file and the process environment.

        Precedence, lowest first: field defaults, the .env file, ``environ``
        (``os.environ`` when omitted), then explicit ``overrides`` whose value
        is not None.

        Raises:
            ConfigError: if the .env file is missing or a value fails validation.
        """
        values: Dict[str, Optional[str]] = {}
        if env_file:
            if not os.path.exists(env_file):
                raise ConfigError(f"env file not found: {env_file}")
            values.update(dotenv_values(env_file))
        values.update(os.environ if environ is None else environ)

        data = {}
        for name in cls.model_fields:
            raw = values.get(ENV_PREFIX + name.upper())
            if raw is not None and raw != "":
                data[name] = raw
        data.update({k: v for k, v in overrides.items() if v is not None})

        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigError(f"invalid settings: {e}") from e
