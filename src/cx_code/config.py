# ~/repositories/cx-code/src/cx_code/config.py
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import structlog
import yaml
from pydantic import BaseModel, Field

from .utils import CX_HOME

logger = structlog.get_logger(__name__)

CX_CODE_HOME = Path(os.getenv("CX_CODE_HOME", CX_HOME / "code"))
CONFIG_FILENAME = "config.yaml"
ENV_PREFIX = "CX_CODE_"


class CodeSettings(BaseModel):
    """Tunable behaviour of the code step runtimes."""

    installer: Literal["uv", "pip"] = Field(
        "pip", description="The tool used to install snippet dependencies."
    )
    install_timeout: float = Field(
        300.0, description="Seconds allowed for a single dependency installation."
    )
    js_timeout: Optional[float] = Field(
        60.0, description="Wall-clock seconds a JavaScript snippet may run for."
    )
    js_max_memory: Optional[int] = Field(
        None, description="Heap limit in bytes for a JavaScript isolate."
    )
    scalar_policy: Literal["wrap", "reject"] = Field(
        "wrap",
        description="How a returned value that is not a mapping becomes an item.",
    )
    scalar_key: str = Field(
        "value", description="The json key a wrapped scalar is stored under."
    )
    extra_builtin_modules: List[str] = Field(
        default_factory=list,
        description="Module names that are always available and never installed.",
    )


def _env_overrides() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for field_name in CodeSettings.model_fields:
        raw = os.getenv(f"{ENV_PREFIX}{field_name.upper()}")
        if raw is None:
            continue
        if field_name == "extra_builtin_modules":
            overrides[field_name] = [m.strip() for m in raw.split(",") if m.strip()]
        elif raw == "":
            overrides[field_name] = None
        else:
            overrides[field_name] = raw
    return overrides


def load_settings(config_path: Optional[Path] = None) -> CodeSettings:
    """
    Loads settings from `config.yaml` in the code home directory, then applies
    any `CX_CODE_*` environment variable overrides on top.
    """
    path = config_path or CX_CODE_HOME / CONFIG_FILENAME
    data: Dict[str, Any] = {}
    if path.is_file():
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        logger.debug("config.loaded", path=str(path))
    data.update(_env_overrides())
    return CodeSettings.model_validate(data)
