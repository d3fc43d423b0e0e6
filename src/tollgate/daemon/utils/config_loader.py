import os
from pathlib import Path
from typing import Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from .logging_config import StructuredLogger

logger = StructuredLogger(__name__)

# --- Catalog Schema Models ---


class ServerInfo(BaseModel):
    name: str = "Tollgate"
    version: str = "1.0.0"


class SecuritySettings(BaseModel):
    sanitize_output: bool = True
    remove_html: bool = True
    remove_control_chars: bool = True
    normalize_whitespace: bool = True
    max_output_length: int = Field(5000, ge=1)
    redact_emails: bool = True
    redact_phones: bool = True
    redact_credit_cards: bool = True
    redact_ssn: bool = True
    redact_bank_accounts: bool = True
    redact_pesel: bool = True
    redact_polish_id: bool = True
    redact_polish_passport: bool = True
    redact_polish_phones: bool = True
    pii_placeholder: str = "[REDACTED]"


class OperationConfig(BaseModel):
    cost: int = Field(..., ge=0)
    description: str = ""
    enabled: bool = True


class CatalogConfig(BaseModel):
    version: int = Field(1, ge=1, le=1)
    server: ServerInfo = Field(default_factory=ServerInfo)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    operations: Dict[str, OperationConfig]

    @field_validator("operations")
    def validate_operation_names(cls, v):
        for name in v:
            if not name or name.strip() != name:
                raise ValueError(f"Invalid operation name '{name}'")
        return v


DEFAULT_CATALOG_YAML = """version: 1

server:
  name: Tollgate
  version: 1.0.0

security:
  sanitize_output: true
  max_output_length: 5000
  pii_placeholder: "[REDACTED]"

operations:
  echo:
    cost: 1
    description: Return the input payload unchanged.
"""

# --- Catalog Loader (Atomic Reload) ---


class ConfigLoader:
    def __init__(self):
        self.config_dir = Path(os.getenv("TOLLGATE_CONFIG_DIR", os.path.expanduser("~/.tollgate/config")))
        self.config_file = self.config_dir / "operations.yaml"
        self.config: Optional[CatalogConfig] = None

    def load_config(self) -> CatalogConfig:
        """
        Loads and validates the operation catalog from operations.yaml.
        ATOMIC: On failure, previous config is preserved.
        Raises ValueError if invalid and no previous config exists.
        """
        if not self.config_file.exists():
            logger.critical("Config file not found", path=str(self.config_file))
            raise FileNotFoundError(f"Config file not found at {self.config_file}")

        try:
            with open(self.config_file, "r") as f:
                raw_data = yaml.safe_load(f)

            logger.info("Loading configuration", path=str(self.config_file))

            # Validate into a temporary; self.config is untouched until success
            new_config = CatalogConfig(**raw_data)

            # Atomic swap
            self.config = new_config

            logger.info("Configuration loaded successfully",
                        version=self.config.version,
                        operations=list(self.config.operations.keys()))
            return self.config

        except Exception as e:
            logger.error("Configuration validation failed", error=str(e))
            if self.config is not None:
                logger.warning("Keeping previous valid configuration")
                raise ValueError(f"Invalid configuration (previous config retained): {e}")
            else:
                logger.critical("No previous configuration to fall back to")
                raise ValueError(f"Invalid configuration (no fallback): {e}")

    def _ensure_loaded(self) -> CatalogConfig:
        if not self.config:
            self.load_config()
        return self.config

    def get_operation(self, name: str) -> Optional[OperationConfig]:
        op = self._ensure_loaded().operations.get(name)
        if op is None or not op.enabled:
            return None
        return op

    def get_security(self) -> SecuritySettings:
        return self._ensure_loaded().security

    def get_server_info(self) -> ServerInfo:
        return self._ensure_loaded().server


config_loader = ConfigLoader()
